"""Image and history snapshot models."""

import uuid

from pydantic import BaseModel, ConfigDict, Field

from genai_patcher.models.region import Region


class ImageHistoryState(BaseModel):
    """Complete restorable copy of an image's working state."""

    preview: bytes = Field(description="PNG bytes of the baseline being edited")
    regions: tuple[Region, ...] = Field(default=(), description="Regions at this point")
    final_result: bytes | None = Field(default=None, description="Last stitched composite")
    full_ai_result: bytes | None = Field(default=None, description="Last raw full-image output")
    width: int = Field(gt=0, description="Baseline pixel width")
    height: int = Field(gt=0, description="Baseline pixel height")

    model_config = ConfigDict(frozen=True, extra="forbid")


class ImageRecord(BaseModel):
    """An image, its regions and its undo/redo history."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Image identifier")
    name: str = Field(default="image.png", description="Display name")
    preview: bytes = Field(description="PNG bytes of the current baseline")
    original_width: int = Field(gt=0, description="Baseline pixel width")
    original_height: int = Field(gt=0, description="Baseline pixel height")
    regions: tuple[Region, ...] = Field(default=(), description="Ordered regions")
    final_result: bytes | None = Field(default=None, description="Last stitched composite")
    full_ai_result: bytes | None = Field(default=None, description="Last raw full-image output")
    skip: bool = Field(default=False, description="Excluded from batch runs")
    custom_prompt: str | None = Field(default=None, description="Per-image prompt override")
    history: tuple[ImageHistoryState, ...] = Field(default=(), description="Snapshots")
    history_index: int = Field(default=0, ge=0, description="Index of the live snapshot")

    model_config = ConfigDict(frozen=True, extra="forbid")

    def snapshot(self) -> ImageHistoryState:
        """
        Capture the live fields as a history snapshot.

        Returns:
            ImageHistoryState: Snapshot of the current working state.
        """
        return ImageHistoryState(
            preview=self.preview,
            regions=self.regions,
            final_result=self.final_result,
            full_ai_result=self.full_ai_result,
            width=self.original_width,
            height=self.original_height,
        )

    def get_region(self, region_id: str) -> Region | None:
        """
        Find a region by id.

        Args:
            region_id (str): Region identifier.

        Returns:
            Region | None: The region, or None if it does not exist.
        """
        for region in self.regions:
            if region.id == region_id:
                return region
        return None

    @property
    def can_undo(self) -> bool:
        """Whether an older snapshot exists."""
        return self.history_index > 0

    @property
    def can_redo(self) -> bool:
        """Whether a newer snapshot exists."""
        return self.history_index < len(self.history) - 1
