"""Application settings using pydantic-settings."""

import os
import re

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from genai_patcher.enums import AiProvider, AspectMismatchPolicy, ExecutionMode

HEX_COLOR_PATTERN = re.compile(r"^#[0-9a-fA-F]{6}([0-9a-fA-F]{2})?$")

DEFAULT_PROMPT = "Enhance this section with high detail, keeping realistic lighting."

DEFAULT_TRANSLATION_PROMPT = (
    "You are a professional manga translator. Extract every piece of text in the "
    "image, describe where it sits (panel and speaker), and translate it. Output "
    "only the translations, ordered panel by panel from top to bottom and right to "
    "left, one line per text as: [position] original -> translation."
)


def _validate_hex_color(value: str) -> str:
    if not HEX_COLOR_PATTERN.match(value):
        raise ValueError(f"Invalid hex color: {value}")
    return value.lower()


class ProcessingSettings(BaseModel):
    """Region processing configuration."""

    prompt: str = Field(default=DEFAULT_PROMPT, description="Default edit prompt")
    execution_mode: ExecutionMode = Field(
        default=ExecutionMode.CONCURRENT, description="Concurrent or serial execution"
    )
    concurrency_limit: int = Field(
        default=3, ge=1, le=32, description="Maximum number of in-flight remote calls"
    )
    process_full_image_if_no_regions: bool = Field(
        default=False, description="Treat an image without regions as one full-canvas region"
    )
    use_full_image_masking: bool = Field(
        default=False, description="Send one masked full image instead of one crop per region"
    )
    use_inverted_masking: bool = Field(
        default=False, description="Blank the regions and keep everything else as context"
    )
    full_image_opaque_percent: float = Field(
        default=90.0, ge=0.0, le=100.0, description="Opaque core of feathered crops (percent)"
    )
    enable_square_fill: bool = Field(
        default=False, description="Pad payloads to a square canvas before sending"
    )
    enable_translation_mode: bool = Field(
        default=False, description="Run a translation pre-pass and append it to the prompt"
    )
    mask_fill_color: str = Field(
        default="#ffffff", description="Fill color for masked and padded areas"
    )
    aspect_mismatch_policy: AspectMismatchPolicy = Field(
        default=AspectMismatchPolicy.STRETCH,
        description="How inverted mode handles results with a different aspect ratio",
    )

    @field_validator("mask_fill_color")
    @classmethod
    def validate_mask_fill_color(cls, v: str) -> str:
        """Validate mask fill color is a hex color."""
        return _validate_hex_color(v)

    @property
    def effective_concurrency(self) -> int:
        """
        Get the concurrency limit honoring the execution mode.

        Returns:
            int: 1 in serial mode, the configured limit otherwise.
        """
        if self.execution_mode == ExecutionMode.SERIAL:
            return 1
        return self.concurrency_limit


class EditServiceSettings(BaseModel):
    """Generative edit service configuration."""

    provider: AiProvider = Field(default=AiProvider.OPENAI, description="Edit service provider")
    openai_base_url: str = Field(
        default="http://localhost:7860/v1", description="OpenAI-compatible base URL"
    )
    openai_api_key: str | None = Field(default=None, description="OpenAI-compatible API key")
    openai_model: str = Field(default="gemini-imagen", description="OpenAI-compatible model")
    max_tokens: int = Field(default=4096, ge=1, description="Max tokens for chat completions")
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Gemini REST base URL",
    )
    gemini_api_key: str | None = Field(default=None, description="Gemini API key")
    gemini_model: str = Field(default="gemini-2.5-flash-image", description="Gemini model")
    api_timeout: float = Field(
        default=150.0, gt=0, description="Timeout for a single remote call in seconds"
    )
    max_retries: int = Field(default=1, ge=0, le=10, description="Extra attempts on failure")
    retry_backoff: float = Field(
        default=1.0, ge=0, description="Base delay in seconds for exponential backoff"
    )


class TranslationSettings(BaseModel):
    """Translation pre-pass configuration."""

    base_url: str = Field(
        default="http://localhost:7860/v1", description="OpenAI-compatible base URL"
    )
    api_key: str | None = Field(default=None, description="API key")
    model: str = Field(default="gemini-3-flash-preview", description="Translation model")
    prompt: str = Field(default=DEFAULT_TRANSLATION_PROMPT, description="Translation prompt")
    timeout: float = Field(default=120.0, gt=0, description="Request timeout in seconds")


class DetectionSettings(BaseModel):
    """Bubble detection and OCR service configuration."""

    detection_api_url: str | None = Field(
        default="http://localhost:5000/detect", description="Detection endpoint"
    )
    ocr_api_url: str | None = Field(default="http://localhost:5000/ocr", description="OCR endpoint")
    inflation_percent: float = Field(
        default=10.0, ge=-90.0, le=500.0, description="Box inflation around its center"
    )
    offset_x_percent: float = Field(
        default=0.0, description="Horizontal shift as a percentage of box width"
    )
    offset_y_percent: float = Field(
        default=0.0, description="Vertical shift as a percentage of box height"
    )
    confidence_threshold: float = Field(
        default=30.0, ge=0.0, le=100.0, description="Minimum confidence (percent)"
    )
    min_region_percent: float = Field(
        default=0.5, ge=0.0, description="Discard boxes smaller than this on either axis"
    )
    upload_max_dimension: int = Field(
        default=1500, ge=64, description="Downscale detection uploads to this size"
    )
    ocr_max_dimension: int = Field(default=1024, ge=64, description="Downscale OCR uploads")
    timeout: float = Field(default=60.0, gt=0, description="Request timeout in seconds")


class PatchEditorSettings(BaseModel):
    """Manual patch editor configuration."""

    history_limit: int = Field(default=30, ge=1, le=500, description="Undo stack capacity")
    default_vertical: bool = Field(default=False, description="New text is vertical")
    font_path: str | None = Field(default=None, description="TrueType font for text objects")
    brush_size: int = Field(default=15, ge=1, le=500, description="Default brush diameter")
    brush_color: str = Field(default="#ffffff", description="Default brush color")

    @field_validator("font_path")
    @classmethod
    def validate_font_path(cls, v: str | None) -> str | None:
        """Validate font path exists."""
        if v is None:
            return v
        if not os.path.isfile(v):
            # Fall back to the bundled fonts
            return None
        return v

    @field_validator("brush_color")
    @classmethod
    def validate_brush_color(cls, v: str) -> str:
        """Validate brush color is a hex color."""
        return _validate_hex_color(v)


class LoggingSettings(BaseModel):
    """Logging configuration."""

    loggers: dict[str, str] = Field(default={}, description="Loggers and their levels")
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(
        default="[%(asctime)s] %(levelname)s [%(name)s] %(message)s",
        description="Log format",
    )
    date_format: str = Field(default="%Y-%m-%d %H:%M:%S", description="Log date format")
    rotate_logs: bool = Field(default=False, description="Rotate logs daily")
    log_file: str | None = Field(default=None, description="Log file to write to")


class AppSettings(BaseSettings):
    """Root application settings."""

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="GENAI_PATCHER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    processing: ProcessingSettings = Field(default_factory=ProcessingSettings)
    edit_service: EditServiceSettings = Field(default_factory=EditServiceSettings)
    translation: TranslationSettings = Field(default_factory=TranslationSettings)
    detection: DetectionSettings = Field(default_factory=DetectionSettings)
    patch_editor: PatchEditorSettings = Field(default_factory=PatchEditorSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
