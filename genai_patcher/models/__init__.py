"""Data models."""

from genai_patcher.models.detection import DetectionResponse, ImageSize, OcrResponse, TextBlock
from genai_patcher.models.image import ImageHistoryState, ImageRecord
from genai_patcher.models.region import Region, new_region_id
from genai_patcher.models.text_object import TextObject

__all__ = [
    "DetectionResponse",
    "ImageHistoryState",
    "ImageRecord",
    "ImageSize",
    "OcrResponse",
    "Region",
    "TextBlock",
    "TextObject",
    "new_region_id",
]
