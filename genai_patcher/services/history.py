"""Image history manager - linear undo/redo over full snapshots."""

import logging

from genai_patcher.models import ImageHistoryState, ImageRecord
from genai_patcher.services.compositing import image_size

logger = logging.getLogger(__name__)


def initial_history(preview: bytes, width: int, height: int) -> tuple[ImageHistoryState, ...]:
    """
    Build the history of a freshly added image.

    Args:
        preview (bytes): Baseline PNG bytes.
        width (int): Baseline width.
        height (int): Baseline height.

    Returns:
        tuple[ImageHistoryState, ...]: Single blank-slate snapshot.
    """
    return (ImageHistoryState(preview=preview, width=width, height=height),)


def sync_current(image: ImageRecord) -> ImageRecord:
    """
    Write the live fields into the snapshot at the current index.

    Region updates and results between commits mutate the live image only;
    syncing before moving makes undo followed by redo restore them too.

    Args:
        image (ImageRecord): Image to sync.

    Returns:
        ImageRecord: Image whose current snapshot equals its live fields.
    """
    if not image.history:
        return image.model_copy(update={"history": (image.snapshot(),), "history_index": 0})
    history = list(image.history)
    history[image.history_index] = image.snapshot()
    return image.model_copy(update={"history": tuple(history)})


def _restore(image: ImageRecord, index: int) -> ImageRecord:
    state = image.history[index]
    return image.model_copy(
        update={
            "preview": state.preview,
            "regions": state.regions,
            "final_result": state.final_result,
            "full_ai_result": state.full_ai_result,
            "original_width": state.width,
            "original_height": state.height,
            "history_index": index,
        }
    )


def commit(image: ImageRecord, new_preview: bytes) -> ImageRecord:
    """
    Make new_preview the baseline, dropping any redo tail.

    The new snapshot is a blank slate: no regions and no results. Its size
    is read from new_preview, which may differ from the previous baseline.

    Args:
        image (ImageRecord): Image to commit on.
        new_preview (bytes): Encoded image that becomes the new baseline.

    Returns:
        ImageRecord: Updated image positioned at the new snapshot.
    """
    width, height = image_size(new_preview)
    synced = sync_current(image)
    history = synced.history[: synced.history_index + 1] + (
        ImageHistoryState(preview=new_preview, width=width, height=height),
    )
    logger.debug(f"Committed new baseline for image {image.id} ({len(history)} snapshots)")
    return _restore(synced.model_copy(update={"history": history}), len(history) - 1)


def undo(image: ImageRecord) -> ImageRecord:
    """
    Step back one snapshot. No-op at the first snapshot.

    Args:
        image (ImageRecord): Image to undo on.

    Returns:
        ImageRecord: Image restored to the previous snapshot.
    """
    if not image.can_undo:
        return image
    return _restore(sync_current(image), image.history_index - 1)


def redo(image: ImageRecord) -> ImageRecord:
    """
    Step forward one snapshot. No-op at the last snapshot.

    Args:
        image (ImageRecord): Image to redo on.

    Returns:
        ImageRecord: Image restored to the next snapshot.
    """
    if not image.can_redo:
        return image
    return _restore(sync_current(image), image.history_index + 1)
