"""Patch editor - brush layer plus text objects with a capped undo stack."""

import logging
from collections.abc import Iterable
from typing import Any, NamedTuple

import cv2
import numpy as np

from genai_patcher.core.settings.app_settings import PatchEditorSettings
from genai_patcher.core.utils import hex_to_bgra
from genai_patcher.models import TextObject
from genai_patcher.services.compositing import decode_image, encode_png, ensure_bgra, over
from genai_patcher.services.text_renderer import render_text_objects

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 30
DEFAULT_BRUSH_SIZE = 15
DEFAULT_BRUSH_COLOR = "#ffffff"

# Default box of a new horizontal text object
NEW_TEXT_WIDTH = 200.0
NEW_TEXT_HEIGHT = 100.0


class PatchHistoryState(NamedTuple):
    """Brush layer snapshot plus the full text object list."""

    raster: np.ndarray
    text_objects: tuple[TextObject, ...]


class _Stroke(NamedTuple):
    color: tuple[int, int, int, int]
    size: int
    last: tuple[int, int]


class PatchEditor:
    """
    Two-layer editor over a fixed base bitmap.

    The brush layer is a transparent BGRA bitmap the size of the base; text
    objects are kept as data and only rasterized by render(). Every settled
    action pushes one history entry. Strokes in progress, typing and drags
    do not push until they end.
    """

    def __init__(
        self,
        base: bytes | np.ndarray,
        initial_text_objects: Iterable[TextObject] = (),
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        default_vertical: bool = False,
        font_path: str | None = None,
        brush_size: int = DEFAULT_BRUSH_SIZE,
        brush_color: str = DEFAULT_BRUSH_COLOR,
    ) -> None:
        """
        Initialize the editor.

        Args:
            base (bytes | np.ndarray): Encoded image or BGRA bitmap being patched.
            initial_text_objects (Iterable[TextObject]): Text present at start.
            history_limit (int): Maximum number of undo entries.
            default_vertical (bool): Whether new text is vertical.
            font_path (str | None): TrueType font used to render text.
            brush_size (int): Brush diameter used when a stroke names none.
            brush_color (str): Hex brush color used when a stroke names none.

        Raises:
            ValueError: If history_limit is lower than 1 or brush_color is not a hex color.
        """
        if history_limit < 1:
            raise ValueError("history_limit must be at least 1")
        hex_to_bgra(brush_color)
        self.brush_size = max(1, int(brush_size))
        self.brush_color = brush_color
        self.base = decode_image(base) if isinstance(base, bytes) else ensure_bgra(base).copy()
        self.height, self.width = self.base.shape[:2]
        self.raster = np.zeros((self.height, self.width, 4), dtype=np.uint8)
        self.text_objects: tuple[TextObject, ...] = tuple(initial_text_objects)
        self.selected_text_id: str | None = None
        self.history_limit = history_limit
        self.default_vertical = default_vertical
        self.font_path = font_path
        self._history: list[PatchHistoryState] = []
        self._history_index = -1
        self._stroke: _Stroke | None = None
        self._drag_moved = False
        self._dragging = False
        self.record_history()

    @classmethod
    def from_settings(
        cls,
        base: bytes | np.ndarray,
        settings: PatchEditorSettings,
        initial_text_objects: Iterable[TextObject] = (),
    ) -> "PatchEditor":
        """
        Build an editor configured from the patch editor settings section.

        Args:
            base (bytes | np.ndarray): Encoded image or BGRA bitmap being patched.
            settings (PatchEditorSettings): Patch editor settings.
            initial_text_objects (Iterable[TextObject]): Text present at start.

        Returns:
            PatchEditor: Configured editor.
        """
        return cls(
            base,
            initial_text_objects=initial_text_objects,
            history_limit=settings.history_limit,
            default_vertical=settings.default_vertical,
            font_path=settings.font_path,
            brush_size=settings.brush_size,
            brush_color=settings.brush_color,
        )

    @property
    def history(self) -> tuple[PatchHistoryState, ...]:
        """Recorded history entries, oldest first."""
        return tuple(self._history)

    @property
    def history_index(self) -> int:
        """Position of the current state in the history."""
        return self._history_index

    @property
    def can_undo(self) -> bool:
        """Whether an earlier state exists."""
        return self._history_index > 0

    @property
    def can_redo(self) -> bool:
        """Whether a later state exists."""
        return self._history_index < len(self._history) - 1

    @property
    def selected_text(self) -> TextObject | None:
        """The selected text object, if any."""
        return self._find_text(self.selected_text_id)

    def _find_text(self, text_id: str | None) -> TextObject | None:
        if text_id is None:
            return None
        for obj in self.text_objects:
            if obj.id == text_id:
                return obj
        return None

    def record_history(self) -> None:
        """Push the current layers, dropping any redo tail and the oldest entry past the cap."""
        snapshot = self.raster.copy()
        snapshot.flags.writeable = False
        history = self._history[: self._history_index + 1]
        history.append(PatchHistoryState(raster=snapshot, text_objects=self.text_objects))
        if len(history) > self.history_limit:
            history = history[len(history) - self.history_limit :]
        self._history = history
        self._history_index = len(history) - 1

    def _restore(self, index: int) -> None:
        state = self._history[index]
        self.raster = state.raster.copy()
        self.text_objects = state.text_objects
        self._history_index = index
        self._stroke = None
        self._dragging = False
        if self._find_text(self.selected_text_id) is None:
            self.selected_text_id = None

    def undo(self) -> bool:
        """
        Restore the previous state.

        Returns:
            bool: False when already at the oldest state.
        """
        if not self.can_undo:
            return False
        self._restore(self._history_index - 1)
        return True

    def redo(self) -> bool:
        """
        Restore the next state.

        Returns:
            bool: False when already at the newest state.
        """
        if not self.can_redo:
            return False
        self._restore(self._history_index + 1)
        return True

    # Brush layer

    def _point(self, x: float, y: float) -> tuple[int, int]:
        return int(round(x)), int(round(y))

    def begin_stroke(
        self, x: float, y: float, color: str | None = None, size: int | None = None
    ) -> None:
        """
        Start a freehand stroke with a round dab at (x, y).

        Args:
            x (float): X in image pixels.
            y (float): Y in image pixels.
            color (str | None): Hex brush color, the editor's brush color when None.
            size (int | None): Brush diameter in pixels, the editor's brush size when None.
        """
        color = color if color is not None else self.brush_color
        size = size if size is not None else self.brush_size
        stroke = _Stroke(color=hex_to_bgra(color), size=max(1, int(size)), last=self._point(x, y))
        self._stroke = stroke
        cv2.circle(self.raster, stroke.last, max(1, stroke.size // 2), stroke.color, thickness=-1)

    def extend_stroke(self, x: float, y: float) -> None:
        """
        Continue the current stroke to (x, y). Ignored without a stroke.

        Args:
            x (float): X in image pixels.
            y (float): Y in image pixels.
        """
        if self._stroke is None:
            return
        point = self._point(x, y)
        cv2.line(self.raster, self._stroke.last, point, self._stroke.color, thickness=self._stroke.size)
        cv2.circle(self.raster, point, max(1, self._stroke.size // 2), self._stroke.color, thickness=-1)
        self._stroke = self._stroke._replace(last=point)

    def end_stroke(self) -> bool:
        """
        Finish the current stroke and record it.

        Returns:
            bool: False when no stroke was in progress.
        """
        if self._stroke is None:
            return False
        self._stroke = None
        self.record_history()
        return True

    def fill(self, color: str) -> None:
        """
        Paint the whole brush layer with one color and record it.

        Args:
            color (str): Hex color.
        """
        self.raster[:] = hex_to_bgra(color)
        self.record_history()

    # Text objects

    def add_text(self, **overrides: Any) -> TextObject:
        """
        Add a text object near the canvas center, select it and record it.

        Args:
            **overrides: TextObject fields replacing the defaults.

        Returns:
            TextObject: The new object.
        """
        vertical = overrides.pop("is_vertical", self.default_vertical)
        fields: dict[str, Any] = {
            "x": self.width / 2 - NEW_TEXT_WIDTH / 2,
            "y": self.height / 2 - NEW_TEXT_HEIGHT / 2,
            "width": None if vertical else NEW_TEXT_WIDTH,
            "height": NEW_TEXT_HEIGHT,
            "is_vertical": vertical,
        }
        fields.update(overrides)
        obj = TextObject(**fields)
        self.text_objects = self.text_objects + (obj,)
        self.selected_text_id = obj.id
        self.record_history()
        return obj

    def select_text(self, text_id: str | None) -> TextObject | None:
        """
        Select a text object, or clear the selection with None.

        Args:
            text_id (str | None): Object identifier.

        Returns:
            TextObject | None: The selected object.
        """
        obj = self._find_text(text_id)
        self.selected_text_id = obj.id if obj is not None else None
        return obj

    def update_text(self, text_id: str, commit: bool = False, **changes: Any) -> TextObject:
        """
        Change fields of a text object.

        Intermediate edits such as typing pass commit=False; the final edit
        passes commit=True to record one history entry.

        Args:
            text_id (str): Object identifier.
            commit (bool): Whether to record history.
            **changes: Fields to replace.

        Returns:
            TextObject: The updated object.

        Raises:
            KeyError: If the object does not exist.
        """
        current = self._find_text(text_id)
        if current is None:
            raise KeyError(f"Unknown text object: {text_id}")
        updated = TextObject.model_validate({**current.model_dump(), **changes})
        self.text_objects = tuple(
            updated if obj.id == text_id else obj for obj in self.text_objects
        )
        if commit:
            self.record_history()
        return updated

    def delete_selected_text(self) -> bool:
        """
        Delete the selected text object and record it.

        Returns:
            bool: False when nothing is selected.
        """
        if self.selected_text is None:
            return False
        self.text_objects = tuple(
            obj for obj in self.text_objects if obj.id != self.selected_text_id
        )
        self.selected_text_id = None
        self.record_history()
        return True

    def begin_drag(self, text_id: str) -> None:
        """
        Select a text object and start dragging it.

        Args:
            text_id (str): Object identifier.

        Raises:
            KeyError: If the object does not exist.
        """
        if self.select_text(text_id) is None:
            raise KeyError(f"Unknown text object: {text_id}")
        self._dragging = True
        self._drag_moved = False

    def drag_by(self, dx: float, dy: float) -> None:
        """
        Move the dragged object by an offset in image pixels.

        Args:
            dx (float): Horizontal offset.
            dy (float): Vertical offset.
        """
        obj = self.selected_text
        if not self._dragging or obj is None or (dx == 0 and dy == 0):
            return
        self.update_text(obj.id, x=obj.x + dx, y=obj.y + dy)
        self._drag_moved = True

    def end_drag(self) -> bool:
        """
        Finish a drag, recording history only if the object moved.

        Returns:
            bool: Whether a history entry was recorded.
        """
        moved = self._dragging and self._drag_moved
        self._dragging = False
        self._drag_moved = False
        if moved:
            self.record_history()
        return moved

    # Output

    def render(self) -> np.ndarray:
        """
        Merge base, brush layer and text into one bitmap.

        Returns:
            np.ndarray: BGRA bitmap the size of the base.
        """
        merged = over(self.base, self.raster)
        return render_text_objects(merged, self.text_objects, self.font_path)

    def save(self) -> bytes:
        """
        Render and encode the result.

        Returns:
            bytes: PNG bytes.
        """
        logger.debug(f"Saving patch with {len(self.text_objects)} text object(s)")
        return encode_png(self.render())
