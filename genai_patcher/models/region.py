"""Region model for image processing."""

import uuid

from pydantic import BaseModel, ConfigDict, Field, model_validator

from genai_patcher.enums import RegionSource, RegionStatus

# Float slack for percentages produced by clamping arithmetic
PERCENT_TOLERANCE = 1e-6


def new_region_id() -> str:
    """
    Create a new opaque region identifier.

    Returns:
        str: Random UUID string.
    """
    return str(uuid.uuid4())


class Region(BaseModel):
    """A rectangle in percent coordinates (0-100) relative to its image."""

    id: str = Field(default_factory=new_region_id, description="Opaque unique identifier")
    x: float = Field(ge=0.0, le=100.0, description="Left edge (percent)")
    y: float = Field(ge=0.0, le=100.0, description="Top edge (percent)")
    width: float = Field(gt=0.0, le=100.0, description="Width (percent)")
    height: float = Field(gt=0.0, le=100.0, description="Height (percent)")
    status: RegionStatus = Field(default=RegionStatus.PENDING, description="Lifecycle status")
    processed_result: bytes | None = Field(
        default=None, description="PNG bytes of the edited fragment"
    )
    source: RegionSource = Field(default=RegionSource.MANUAL, description="Manual or detected")
    custom_prompt: str | None = Field(default=None, description="Per-region prompt override")
    ocr_text: str | None = Field(default=None, description="Recognized text")

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        json_schema_extra={
            "example": {
                "id": "6f1c1f0e-8d0a-4f59-9a57-3f8e3bde1b10",
                "x": 10.0,
                "y": 12.5,
                "width": 20.0,
                "height": 8.0,
                "status": "pending",
                "source": "auto",
            }
        },
    )

    @model_validator(mode="after")
    def check_bounds(self) -> "Region":
        """Validate the rectangle stays inside the image."""
        if self.x + self.width > 100.0 + PERCENT_TOLERANCE:
            raise ValueError(f"Region exceeds right edge: x={self.x}, width={self.width}")
        if self.y + self.height > 100.0 + PERCENT_TOLERANCE:
            raise ValueError(f"Region exceeds bottom edge: y={self.y}, height={self.height}")
        if (self.status == RegionStatus.COMPLETED) != (self.processed_result is not None):
            raise ValueError("processed_result must be present exactly when status is completed")
        return self

    @classmethod
    def full_canvas(cls, **kwargs: object) -> "Region":
        """
        Create a region covering the whole image.

        Returns:
            Region: Region at (0, 0) sized 100x100 percent.
        """
        return cls(x=0.0, y=0.0, width=100.0, height=100.0, **kwargs)
