"""Generative edit service clients - OpenAI-compatible chat and Gemini REST."""

import base64
import logging
import re
from abc import ABC, abstractmethod
from typing import Any

import httpx

from genai_patcher.core.exceptions import ConfigurationError, EditServiceError
from genai_patcher.core.settings.app_settings import EditServiceSettings, TranslationSettings
from genai_patcher.core.utils import from_data_url, to_data_url
from genai_patcher.enums import AiProvider
from genai_patcher.services.concurrency import CancellationToken

logger = logging.getLogger(__name__)

MARKDOWN_IMAGE_PATTERN = re.compile(r"!\[.*?\]\((.*?)\)")
RAW_URL_PATTERN = re.compile(r"(https?://[^\s)]+)")
TRAILING_PUNCTUATION_PATTERN = re.compile(r"[.,;>]+$")

# Chat responses longer than this without spaces are treated as bare base64
BARE_BASE64_MIN_LENGTH = 1000

RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}

TRANSLATION_REFERENCE_HEADER = (
    "The following text found in the image, with its position, is provided for reference:"
)


def normalize_openai_base_url(base_url: str) -> str:
    """
    Ensure an OpenAI-compatible base URL ends with /v1.

    Args:
        base_url (str): Configured base URL, with or without /v1.

    Returns:
        str: Base URL ending in /v1 without a trailing slash.
    """
    clean = base_url.rstrip("/")
    if not clean.endswith("/v1"):
        clean += "/v1"
    return clean


def _raise_for_status(response: httpx.Response, provider: str) -> None:
    if response.is_success:
        return
    try:
        detail = response.json().get("error", {}).get("message") or response.reason_phrase
    except (ValueError, AttributeError):
        detail = response.reason_phrase
    raise EditServiceError(
        f"{provider} API error ({response.status_code}): {detail}",
        retryable=response.status_code in RETRYABLE_STATUS_CODES,
    )


class EditResponseAdapter(ABC):
    """Provider specific request building and response parsing."""

    name: str = "provider"

    @abstractmethod
    def validate(self) -> None:
        """
        Check that credentials and endpoints are configured.

        Raises:
            ConfigurationError: If something required is missing.
        """

    @abstractmethod
    def build_request(self, image: bytes, prompt: str) -> tuple[str, dict[str, str], dict[str, Any]]:
        """
        Build the HTTP request for an edit.

        Args:
            image (bytes): PNG payload.
            prompt (str): Edit prompt.

        Returns:
            tuple[str, dict[str, str], dict[str, Any]]: URL, headers and JSON body.
        """

    @abstractmethod
    async def parse_edit_response(self, raw: dict[str, Any], client: httpx.AsyncClient) -> bytes:
        """
        Extract the edited image from a provider response.

        Args:
            raw (dict[str, Any]): Decoded JSON response.
            client (httpx.AsyncClient): Client for follow-up downloads.

        Returns:
            bytes: Encoded image bytes.

        Raises:
            EditServiceError: If the response holds no image.
        """


class OpenAIChatAdapter(EditResponseAdapter):
    """OpenAI-compatible chat completions with a multimodal user message."""

    name = "OpenAI"

    def __init__(self, settings: EditServiceSettings) -> None:
        """
        Initialize the adapter.

        Args:
            settings (EditServiceSettings): Edit service settings.
        """
        self.settings = settings

    def validate(self) -> None:
        """Require an API key and base URL."""
        if not self.settings.openai_api_key:
            raise ConfigurationError("OpenAI API key is missing")
        if not self.settings.openai_base_url:
            raise ConfigurationError("OpenAI base URL is missing")

    def build_request(self, image: bytes, prompt: str) -> tuple[str, dict[str, str], dict[str, Any]]:
        """Build a non-streaming chat completion request."""
        url = f"{normalize_openai_base_url(self.settings.openai_base_url)}/chat/completions"
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.settings.openai_api_key}",
        }
        body = {
            "model": self.settings.openai_model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {"type": "image_url", "image_url": {"url": to_data_url(image)}},
                    ],
                }
            ],
            "stream": False,
            "max_tokens": self.settings.max_tokens,
        }
        return url, headers, body

    async def parse_edit_response(self, raw: dict[str, Any], client: httpx.AsyncClient) -> bytes:
        """
        Find an image in free-form chat content.

        Tries a markdown image link, then a raw URL, then a data URL or a
        bare base64 payload.
        """
        try:
            content = raw["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None
        if not content:
            raise EditServiceError("OpenAI returned no content")
        if isinstance(content, list):
            content = " ".join(
                str(part.get("text") or "") for part in content if isinstance(part, dict)
            ).strip()
        if not isinstance(content, str):
            raise EditServiceError(
                f"OpenAI returned unsupported content: {type(content).__name__}"
            )
        if not content:
            raise EditServiceError("OpenAI returned no content")

        markdown_match = MARKDOWN_IMAGE_PATTERN.search(content)
        if markdown_match and markdown_match.group(1):
            return await self._resolve(markdown_match.group(1).strip(), client)

        url_match = RAW_URL_PATTERN.search(content)
        if url_match:
            url = TRAILING_PUNCTUATION_PATTERN.sub("", url_match.group(1))
            return await self._resolve(url, client)

        if content.startswith("data:image") or (
            len(content) > BARE_BASE64_MIN_LENGTH and " " not in content
        ):
            try:
                return from_data_url(content)
            except ValueError as e:
                raise EditServiceError(f"OpenAI returned an invalid image payload: {e}") from e

        logger.warning(f"Could not find an image in response: {content[:100]}")
        raise EditServiceError(
            f"The model responded with text but no detectable image. Response: {content[:100]}..."
        )

    async def _resolve(self, reference: str, client: httpx.AsyncClient) -> bytes:
        if reference.startswith("data:"):
            try:
                return from_data_url(reference)
            except ValueError as e:
                raise EditServiceError(f"Invalid data URL in response: {e}") from e
        try:
            response = await client.get(reference)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise EditServiceError(
                f"Failed to download result image: {e}",
                retryable=e.response.status_code in RETRYABLE_STATUS_CODES,
            ) from e
        except httpx.RequestError as e:
            raise EditServiceError(f"Failed to download result image: {e}", retryable=True) from e
        return response.content


class GeminiAdapter(EditResponseAdapter):
    """Gemini generateContent REST endpoint."""

    name = "Gemini"

    def __init__(self, settings: EditServiceSettings) -> None:
        """
        Initialize the adapter.

        Args:
            settings (EditServiceSettings): Edit service settings.
        """
        self.settings = settings

    def validate(self) -> None:
        """Require an API key."""
        if not self.settings.gemini_api_key:
            raise ConfigurationError("Gemini API key is missing")

    def build_request(self, image: bytes, prompt: str) -> tuple[str, dict[str, str], dict[str, Any]]:
        """Build a generateContent request with inline image data."""
        base_url = self.settings.gemini_base_url.rstrip("/")
        url = f"{base_url}/models/{self.settings.gemini_model}:generateContent"
        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": self.settings.gemini_api_key or "",
        }
        body = {
            "contents": [
                {
                    "parts": [
                        {
                            "inlineData": {
                                "mimeType": "image/png",
                                "data": base64.b64encode(image).decode("ascii"),
                            }
                        },
                        {"text": prompt},
                    ]
                }
            ]
        }
        return url, headers, body

    async def parse_edit_response(self, raw: dict[str, Any], client: httpx.AsyncClient) -> bytes:
        """Return the first inline image part, or raise with the text parts."""
        if not isinstance(raw, dict):
            raise EditServiceError(f"Gemini returned an unexpected body: {type(raw).__name__}")
        candidates = raw.get("candidates")
        first = candidates[0] if isinstance(candidates, list) and candidates else None
        content = first.get("content") if isinstance(first, dict) else None
        parts = content.get("parts") if isinstance(content, dict) else None
        parts = [part for part in parts if isinstance(part, dict)] if isinstance(parts, list) else []

        for part in parts:
            inline = part.get("inlineData") or part.get("inline_data")
            if isinstance(inline, dict) and inline.get("data"):
                try:
                    return base64.b64decode(inline["data"])
                except (TypeError, ValueError) as e:
                    raise EditServiceError(f"Gemini returned invalid image data: {e}") from e

        text = " ".join(str(part["text"]) for part in parts if part.get("text"))
        if text:
            raise EditServiceError(f"Gemini response: {text}")
        raise EditServiceError("Gemini returned an empty response (no candidates or parts)")


def build_adapter(settings: EditServiceSettings) -> EditResponseAdapter:
    """
    Create the adapter for the configured provider.

    Args:
        settings (EditServiceSettings): Edit service settings.

    Returns:
        EditResponseAdapter: Provider adapter.
    """
    if settings.provider == AiProvider.GEMINI:
        return GeminiAdapter(settings)
    return OpenAIChatAdapter(settings)


class EditServiceClient:
    """Edit client enforcing timeout, bounded retry and cancellation."""

    def __init__(
        self,
        settings: EditServiceSettings,
        adapter: EditResponseAdapter | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            settings (EditServiceSettings): Edit service settings.
            adapter (EditResponseAdapter | None): Adapter, built from settings when None.
            transport (httpx.AsyncBaseTransport | None): Optional custom transport.
        """
        self.settings = settings
        self.adapter = adapter or build_adapter(settings)
        self._transport = transport

    def validate(self) -> None:
        """
        Fail fast on missing configuration.

        Raises:
            ConfigurationError: If the adapter is not configured.
        """
        self.adapter.validate()

    async def edit(self, image: bytes, prompt: str, token: CancellationToken) -> bytes:
        """
        Send an image and prompt, returning the edited image.

        Transport errors, timeouts and retryable HTTP statuses are retried up
        to max_retries times with exponential backoff.

        Args:
            image (bytes): PNG payload.
            prompt (str): Edit prompt.
            token (CancellationToken): Cancellation token.

        Returns:
            bytes: Encoded result image.

        Raises:
            EditServiceError: If every attempt failed.
            ProcessingCancelled: If the token fired.
        """
        attempts = self.settings.max_retries + 1
        last_error: EditServiceError | None = None
        for attempt in range(attempts):
            token.raise_if_cancelled()
            try:
                return await token.run(self._attempt(image, prompt))
            except EditServiceError as e:
                last_error = e
                if not e.retryable or attempt == attempts - 1:
                    raise
            delay = self.settings.retry_backoff * (2**attempt)
            logger.warning(
                f"{self.adapter.name} edit attempt {attempt + 1}/{attempts} failed: "
                f"{last_error}; retrying in {delay:.1f}s"
            )
            await token.sleep(delay)
        raise last_error or EditServiceError("Edit failed")

    async def _attempt(self, image: bytes, prompt: str) -> bytes:
        url, headers, body = self.adapter.build_request(image, prompt)
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.api_timeout,
                transport=self._transport,
                follow_redirects=True,
            ) as client:
                response = await client.post(url, headers=headers, json=body)
                _raise_for_status(response, self.adapter.name)
                try:
                    raw = response.json()
                except ValueError as e:
                    raise EditServiceError(f"{self.adapter.name} returned invalid JSON") from e
                return await self.adapter.parse_edit_response(raw, client)
        except httpx.TimeoutException as e:
            raise EditServiceError(
                f"{self.adapter.name} request timed out after {self.settings.api_timeout}s",
                retryable=True,
            ) from e
        except httpx.RequestError as e:
            raise EditServiceError(f"{self.adapter.name} request error: {e}", retryable=True) from e


class TranslationClient:
    """OpenAI-compatible chat client producing translation notes for a page."""

    def __init__(
        self,
        settings: TranslationSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            settings (TranslationSettings): Translation settings.
            transport (httpx.AsyncBaseTransport | None): Optional custom transport.
        """
        self.settings = settings
        self._transport = transport

    def validate(self) -> None:
        """
        Fail fast on missing configuration.

        Raises:
            ConfigurationError: If the API key or base URL is missing.
        """
        if not self.settings.api_key:
            raise ConfigurationError("Translation API key is missing")
        if not self.settings.base_url:
            raise ConfigurationError("Translation base URL is missing")

    async def translate(self, image: bytes, token: CancellationToken) -> str:
        """
        Ask the translation model to transcribe and translate the image.

        Args:
            image (bytes): PNG payload.
            token (CancellationToken): Cancellation token.

        Returns:
            str: Translation notes, possibly empty.

        Raises:
            EditServiceError: If the request fails.
            ProcessingCancelled: If the token fired.
        """
        token.raise_if_cancelled()
        return await token.run(self._request(image))

    async def _request(self, image: bytes) -> str:
        url = f"{normalize_openai_base_url(self.settings.base_url)}/chat/completions"
        body = {
            "model": self.settings.model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": self.settings.prompt},
                        {"type": "image_url", "image_url": {"url": to_data_url(image)}},
                    ],
                }
            ],
            "stream": False,
        }
        headers = {"Authorization": f"Bearer {self.settings.api_key}"}
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.timeout, transport=self._transport
            ) as client:
                response = await client.post(url, headers=headers, json=body)
                _raise_for_status(response, "Translation")
                data = response.json()
        except httpx.RequestError as e:
            raise EditServiceError(f"Translation request error: {e}", retryable=True) from e
        except ValueError as e:
            raise EditServiceError("Translation service returned invalid JSON") from e

        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError):
            content = ""
        return content.strip()


def append_translation(prompt: str, translation: str) -> str:
    """
    Append translation notes to an edit prompt.

    Args:
        prompt (str): Edit prompt.
        translation (str): Translation notes.

    Returns:
        str: Prompt with the notes appended, or the prompt unchanged if empty.
    """
    if not translation:
        return prompt
    return f"{prompt}\n\n{TRANSLATION_REFERENCE_HEADER}\n{translation}"


async def list_openai_models(
    base_url: str,
    api_key: str | None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[str]:
    """
    List model ids from an OpenAI-compatible endpoint.

    Args:
        base_url (str): Base URL, with or without /v1.
        api_key (str | None): API key, sent as a bearer token when set.
        transport (httpx.AsyncBaseTransport | None): Optional custom transport.

    Returns:
        list[str]: Sorted model ids.

    Raises:
        EditServiceError: If the request fails.
    """
    url = f"{normalize_openai_base_url(base_url)}/models"
    headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
    try:
        async with httpx.AsyncClient(timeout=30.0, transport=transport) as client:
            response = await client.get(url, headers=headers)
            response.raise_for_status()
            data = response.json()
    except httpx.HTTPStatusError as e:
        raise EditServiceError(f"Failed to fetch models: {e.response.reason_phrase}") from e
    except httpx.RequestError as e:
        raise EditServiceError(f"Failed to fetch models: {e}") from e

    models = data.get("data") if isinstance(data, dict) else None
    if not isinstance(models, list):
        return []
    return sorted(model["id"] for model in models if isinstance(model, dict) and "id" in model)
