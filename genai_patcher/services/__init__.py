"""Services."""

from genai_patcher.services.concurrency import (
    AsyncSemaphore,
    CancellationToken,
    run_with_concurrency,
)
from genai_patcher.services.image_store import ImageStore
from genai_patcher.services.patch_editor import PatchEditor, PatchHistoryState
from genai_patcher.services.processor import ProcessReport, RegionProcessor

__all__ = [
    "AsyncSemaphore",
    "CancellationToken",
    "ImageStore",
    "PatchEditor",
    "PatchHistoryState",
    "ProcessReport",
    "RegionProcessor",
    "run_with_concurrency",
]
