"""Patch editor text object model."""

import uuid

from pydantic import BaseModel, ConfigDict, Field, field_validator

from genai_patcher.core.settings.app_settings import HEX_COLOR_PATTERN


class TextObject(BaseModel):
    """A positioned text label, in source-image pixel space."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Identifier")
    x: float = Field(description="Anchor x in pixels")
    y: float = Field(description="Anchor y in pixels")
    width: float | None = Field(default=None, gt=0, description="Box width constraint")
    height: float | None = Field(default=None, gt=0, description="Box height constraint")
    text: str = Field(default="New Text", description="Text content")
    font_size: int = Field(default=24, ge=8, le=300, description="Font size in pixels")
    color: str = Field(default="#000000", description="Fill color")
    outline_color: str = Field(default="#ffffff", description="Outline color")
    outline_width: int = Field(default=4, ge=0, description="Outline width in pixels")
    background_color: str = Field(
        default="transparent", description="'transparent' or a hex color"
    )
    is_vertical: bool = Field(default=False, description="Top-to-bottom, right-to-left")
    is_bold: bool = Field(default=True, description="Bold font")
    rotation: float = Field(default=0.0, description="Clockwise rotation in degrees")

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        json_schema_extra={
            "example": {
                "x": 120.0,
                "y": 80.0,
                "width": 200.0,
                "height": 100.0,
                "text": "New Text",
                "font_size": 24,
                "color": "#000000",
                "outline_color": "#ffffff",
                "outline_width": 4,
                "background_color": "transparent",
                "is_vertical": False,
                "is_bold": True,
                "rotation": 0.0,
            }
        },
    )

    @field_validator("color", "outline_color")
    @classmethod
    def validate_color(cls, v: str) -> str:
        """Validate text and outline colors are hex colors."""
        if not HEX_COLOR_PATTERN.match(v):
            raise ValueError(f"Invalid hex color: {v}")
        return v

    @field_validator("background_color")
    @classmethod
    def validate_background_color(cls, v: str) -> str:
        """Validate background is 'transparent' or a hex color."""
        if v != "transparent" and not HEX_COLOR_PATTERN.match(v):
            raise ValueError(f"Invalid background color: {v}")
        return v

    @property
    def has_background(self) -> bool:
        """Whether a background rectangle is painted behind the text."""
        return self.background_color != "transparent"
