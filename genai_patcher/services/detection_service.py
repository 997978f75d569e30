"""Detection service - speech bubble detection and OCR over HTTP."""

import logging
from collections.abc import Iterable

import httpx
from pydantic import ValidationError

from genai_patcher.core.exceptions import ConfigurationError, DetectionServiceError
from genai_patcher.core.settings.app_settings import DetectionSettings
from genai_patcher.enums import RegionSource, RegionStatus
from genai_patcher.models import DetectionResponse, OcrResponse, Region, TextBlock
from genai_patcher.services.compositing import decode_image, downscale_to_max, encode_jpeg
from genai_patcher.services.concurrency import CancellationToken

logger = logging.getLogger(__name__)


def boxes_to_regions(
    blocks: Iterable[TextBlock],
    width: int,
    height: int,
    settings: DetectionSettings,
) -> list[Region]:
    """
    Convert absolute pixel boxes into pending percent regions.

    Boxes below the confidence threshold are dropped. The rest are inflated
    around their center, shifted by a fraction of their original size,
    clamped to the image and discarded if they end up too small.

    Args:
        blocks (Iterable[TextBlock]): Detected boxes.
        width (int): Width of the image the detector saw.
        height (int): Height of the image the detector saw.
        settings (DetectionSettings): Tuning parameters.

    Returns:
        list[Region]: Regions with source "auto".
    """
    if width <= 0 or height <= 0:
        logger.warning(f"Detection returned invalid image size {width}x{height}")
        return []

    inflation = settings.inflation_percent / 100.0
    offset_x = settings.offset_x_percent / 100.0
    offset_y = settings.offset_y_percent / 100.0
    threshold = settings.confidence_threshold / 100.0

    regions: list[Region] = []
    for block in blocks:
        if block.prob < threshold:
            continue

        x1, y1, x2, y2 = block.xyxy
        box_width = x2 - x1
        box_height = y2 - y1
        if box_width <= 0 or box_height <= 0:
            continue

        inflated_width = box_width * (1 + inflation)
        inflated_height = box_height * (1 + inflation)
        center_x = x1 + box_width / 2 + box_width * offset_x
        center_y = y1 + box_height / 2 + box_height * offset_y

        left = center_x - inflated_width / 2
        top = center_y - inflated_height / 2
        right = left + inflated_width
        bottom = top + inflated_height

        x = min(max(left / width * 100.0, 0.0), 100.0)
        y = min(max(top / height * 100.0, 0.0), 100.0)
        w = min(max(right / width * 100.0, 0.0), 100.0) - x
        h = min(max(bottom / height * 100.0, 0.0), 100.0) - y

        if w > settings.min_region_percent and h > settings.min_region_percent:
            regions.append(
                Region(
                    x=x,
                    y=y,
                    width=w,
                    height=h,
                    status=RegionStatus.PENDING,
                    source=RegionSource.AUTO,
                )
            )
    return regions


def prepare_upload(image: bytes, max_dimension: int) -> bytes:
    """
    Downscale and JPEG-encode an image for upload.

    Args:
        image (bytes): Encoded image.
        max_dimension (int): Maximum side length.

    Returns:
        bytes: JPEG bytes.
    """
    return encode_jpeg(downscale_to_max(decode_image(image), max_dimension))


class DetectionClient:
    """Client for the bubble detection and OCR endpoints."""

    def __init__(
        self,
        settings: DetectionSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            settings (DetectionSettings): Detection settings.
            transport (httpx.AsyncBaseTransport | None): Optional custom transport.
        """
        self.settings = settings
        self._transport = transport

    def validate_detection(self) -> None:
        """
        Fail fast when the detection endpoint is not configured.

        Raises:
            ConfigurationError: If the URL is missing.
        """
        if not self.settings.detection_api_url:
            raise ConfigurationError("Detection API URL is not configured")

    def validate_ocr(self) -> None:
        """
        Fail fast when the OCR endpoint is not configured.

        Raises:
            ConfigurationError: If the URL is missing.
        """
        if not self.settings.ocr_api_url:
            raise ConfigurationError("OCR API URL is not configured")

    async def _post(self, url: str, files: dict, data: dict | None = None) -> dict:
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    url, files=files, data=data, headers={"Accept": "application/json"}
                )
                if not response.is_success:
                    raise DetectionServiceError(
                        f"Detection service error ({response.status_code}): {response.text}"
                    )
                return response.json()
        except httpx.RequestError as e:
            raise DetectionServiceError(f"Unable to connect to {url}: {e}") from e
        except ValueError as e:
            raise DetectionServiceError(f"Invalid JSON from {url}") from e

    async def detect(self, image: bytes, token: CancellationToken) -> list[Region]:
        """
        Detect text bubbles and return them as pending regions.

        Args:
            image (bytes): Encoded image.
            token (CancellationToken): Cancellation token.

        Returns:
            list[Region]: Detected regions.

        Raises:
            ConfigurationError: If the endpoint is not configured.
            DetectionServiceError: If the request or response is invalid.
            ProcessingCancelled: If the token fired.
        """
        self.validate_detection()
        token.raise_if_cancelled()
        upload = prepare_upload(image, self.settings.upload_max_dimension)
        raw = await token.run(
            self._post(
                self.settings.detection_api_url or "",
                files={"image": ("image.jpg", upload, "image/jpeg")},
                data={"return_mask": "false"},
            )
        )
        try:
            response = DetectionResponse.model_validate(raw)
        except ValidationError as e:
            raise DetectionServiceError(f"Malformed detection response: {e}") from e

        if not response.success:
            raise DetectionServiceError(response.error or "Detection service reported failure")
        if response.image_size is None:
            logger.warning("Detection response has no image size")
            return []

        regions = boxes_to_regions(
            response.text_blocks,
            response.image_size.width,
            response.image_size.height,
            self.settings,
        )
        logger.info(f"Detected {len(regions)} regions from {len(response.text_blocks)} boxes")
        return regions

    async def recognize(self, image: bytes, token: CancellationToken) -> str:
        """
        Recognize text in an image crop.

        Args:
            image (bytes): Encoded crop.
            token (CancellationToken): Cancellation token.

        Returns:
            str: Recognized text.

        Raises:
            ConfigurationError: If the endpoint is not configured.
            DetectionServiceError: If recognition fails.
            ProcessingCancelled: If the token fired.
        """
        self.validate_ocr()
        token.raise_if_cancelled()
        upload = prepare_upload(image, self.settings.ocr_max_dimension)
        raw = await token.run(
            self._post(
                self.settings.ocr_api_url or "",
                files={"image": ("crop.jpg", upload, "image/jpeg")},
            )
        )
        try:
            response = OcrResponse.model_validate(raw)
        except ValidationError as e:
            raise DetectionServiceError(f"Malformed OCR response: {e}") from e
        if not response.success:
            raise DetectionServiceError(response.error or "OCR failed")
        return response.text
