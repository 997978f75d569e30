"""Detection and OCR service payload models."""

from pydantic import BaseModel, ConfigDict, Field


class TextBlock(BaseModel):
    """One detected box in absolute pixels."""

    xyxy: tuple[float, float, float, float] = Field(description="[x1, y1, x2, y2] in pixels")
    prob: float = Field(description="Confidence between 0 and 1")

    model_config = ConfigDict(extra="ignore")


class ImageSize(BaseModel):
    """Size of the image the detector actually saw."""

    width: int = Field(description="Pixel width")
    height: int = Field(description="Pixel height")


class DetectionResponse(BaseModel):
    """Detection service response."""

    success: bool = Field(description="Whether detection succeeded")
    image_size: ImageSize | None = Field(default=None, description="Processed image size")
    text_blocks: list[TextBlock] = Field(default_factory=list, description="Detected boxes")
    error: str | None = Field(default=None, description="Error message on failure")

    model_config = ConfigDict(extra="ignore")


class OcrResponse(BaseModel):
    """OCR service response."""

    success: bool = Field(description="Whether recognition succeeded")
    text: str = Field(default="", description="Recognized text")
    error: str | None = Field(default=None, description="Error message on failure")

    model_config = ConfigDict(extra="ignore")
