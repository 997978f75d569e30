"""Tests for the patch editor."""

from collections.abc import Callable

import numpy as np
import pytest

from genai_patcher.core.settings.app_settings import PatchEditorSettings
from genai_patcher.models import TextObject
from genai_patcher.services import PatchEditor
from genai_patcher.services.compositing import decode_image


@pytest.fixture
def editor(white_png: bytes) -> PatchEditor:
    """
    Create an editor over a white 100x100 image.

    Args:
        white_png (bytes): White PNG fixture.

    Returns:
        PatchEditor: Editor with one history entry.
    """
    return PatchEditor(white_png)


def stroke(editor: PatchEditor, color: str = "#ff0000") -> None:
    """
    Draw a short horizontal stroke and finish it.

    Args:
        editor (PatchEditor): Editor to draw on.
        color (str): Brush color.

    """
    editor.begin_stroke(20, 50, color=color, size=10)
    editor.extend_stroke(80, 50)
    editor.end_stroke()


class TestConstruction:
    """Tests for PatchEditor construction."""

    def test_initial_state(self, editor: PatchEditor) -> None:
        """
        Test that the editor starts with a transparent layer and one entry.

        Args:
            editor (PatchEditor): Editor fixture.

        """
        assert (editor.width, editor.height) == (100, 100)
        assert not editor.raster.any()
        assert len(editor.history) == 1
        assert editor.can_undo is False
        assert editor.can_redo is False

    def test_accepts_bitmap(self, bitmap_factory: Callable[..., np.ndarray]) -> None:
        """
        Test that a bitmap base is copied.

        Args:
            bitmap_factory (Callable[..., np.ndarray]): Bitmap builder fixture.

        """
        base = bitmap_factory(30, 20)
        editor = PatchEditor(base)
        base[:] = 0
        assert (editor.base == 255).all()
        assert (editor.width, editor.height) == (30, 20)

    def test_invalid_history_limit(self, white_png: bytes) -> None:
        """
        Test that a history limit below one is rejected.

        Args:
            white_png (bytes): White PNG fixture.

        """
        with pytest.raises(ValueError):
            PatchEditor(white_png, history_limit=0)


class TestBrush:
    """Tests for brush strokes and fill."""

    def test_stroke_paints_raster(self, editor: PatchEditor) -> None:
        """
        Test that a stroke paints the brush layer and records one entry.

        Args:
            editor (PatchEditor): Editor fixture.

        """
        stroke(editor)
        assert tuple(editor.raster[50, 50]) == (0, 0, 255, 255)
        assert tuple(editor.raster[10, 10]) == (0, 0, 0, 0)
        assert len(editor.history) == 2

    def test_extend_without_stroke_ignored(self, editor: PatchEditor) -> None:
        """
        Test that moving without a stroke draws nothing.

        Args:
            editor (PatchEditor): Editor fixture.

        """
        editor.extend_stroke(50, 50)
        assert not editor.raster.any()
        assert editor.end_stroke() is False
        assert len(editor.history) == 1

    def test_stroke_in_progress_not_recorded(self, editor: PatchEditor) -> None:
        """
        Test that history grows only when the stroke ends.

        Args:
            editor (PatchEditor): Editor fixture.

        """
        editor.begin_stroke(10, 10)
        editor.extend_stroke(30, 30)
        assert len(editor.history) == 1
        editor.end_stroke()
        assert len(editor.history) == 2

    def test_undo_redo_restore_exact_raster(self, editor: PatchEditor) -> None:
        """
        Test that undo and redo restore the brush layer bit for bit.

        Args:
            editor (PatchEditor): Editor fixture.

        """
        stroke(editor)
        painted = editor.raster.copy()

        assert editor.undo() is True
        assert not editor.raster.any()
        assert editor.redo() is True
        assert np.array_equal(editor.raster, painted)
        assert editor.redo() is False

    def test_history_entries_not_mutated_by_drawing(self, editor: PatchEditor) -> None:
        """
        Test that drawing after an undo leaves stored entries intact.

        Args:
            editor (PatchEditor): Editor fixture.

        """
        stroke(editor)
        editor.undo()
        editor.begin_stroke(50, 10, color="#0000ff")
        assert not editor.history[0].raster.any()

    def test_new_action_discards_redo(self, editor: PatchEditor) -> None:
        """
        Test that acting after an undo drops the redo tail.

        Args:
            editor (PatchEditor): Editor fixture.

        """
        stroke(editor)
        editor.undo()
        editor.fill("#00ff00")
        assert editor.can_redo is False
        assert len(editor.history) == 2

    def test_fill(self, editor: PatchEditor) -> None:
        """
        Test that fill paints the whole layer.

        Args:
            editor (PatchEditor): Editor fixture.

        """
        editor.fill("#00ff0080")
        assert (editor.raster == (0, 255, 0, 128)).all()
        assert editor.can_undo is True


class TestHistoryCap:
    """Tests for the undo stack capacity."""

    def test_cap_never_exceeded(self, editor: PatchEditor) -> None:
        """
        Test that the oldest entries are dropped past the limit.

        Args:
            editor (PatchEditor): Editor fixture.

        """
        for _ in range(40):
            stroke(editor)
        assert len(editor.history) == 30
        assert editor.history_index == 29

        undone = 0
        while editor.undo():
            undone += 1
        assert undone == 29
        # The initial blank state was dropped
        assert editor.raster.any()

    def test_small_cap(self, white_png: bytes) -> None:
        """
        Test a cap of one keeps only the latest state.

        Args:
            white_png (bytes): White PNG fixture.

        """
        editor = PatchEditor(white_png, history_limit=1)
        stroke(editor)
        assert len(editor.history) == 1
        assert editor.undo() is False


class TestTextObjects:
    """Tests for text object editing."""

    def test_add_text_defaults(self, editor: PatchEditor) -> None:
        """
        Test that new text is centered, selected and recorded.

        Args:
            editor (PatchEditor): Editor fixture.

        """
        obj = editor.add_text()
        assert (obj.x, obj.y) == (-50.0, 0.0)
        assert (obj.width, obj.height) == (200.0, 100.0)
        assert editor.selected_text == obj
        assert len(editor.history) == 2

    def test_add_vertical_text_is_unbound(self, white_png: bytes) -> None:
        """
        Test that vertical text starts without a width constraint.

        Args:
            white_png (bytes): White PNG fixture.

        """
        editor = PatchEditor(white_png, default_vertical=True)
        obj = editor.add_text(text="縦")
        assert obj.is_vertical is True
        assert obj.width is None

    def test_add_undo_redo(self, editor: PatchEditor) -> None:
        """
        Test that adding text is undoable and clears a dangling selection.

        Args:
            editor (PatchEditor): Editor fixture.

        """
        obj = editor.add_text()
        editor.undo()
        assert editor.text_objects == ()
        assert editor.selected_text_id is None
        editor.redo()
        assert editor.text_objects == (obj,)

    def test_update_text_commit(self, editor: PatchEditor) -> None:
        """
        Test that only committed edits are recorded.

        Args:
            editor (PatchEditor): Editor fixture.

        """
        obj = editor.add_text()
        editor.update_text(obj.id, text="Hel")
        assert len(editor.history) == 2
        updated = editor.update_text(obj.id, commit=True, text="Hello")
        assert updated.text == "Hello"
        assert len(editor.history) == 3

    def test_update_text_validates(self, editor: PatchEditor) -> None:
        """
        Test that invalid values are rejected.

        Args:
            editor (PatchEditor): Editor fixture.

        """
        obj = editor.add_text()
        with pytest.raises(ValueError):
            editor.update_text(obj.id, font_size=2)

    def test_update_text_rejects_invalid_color(self, editor: PatchEditor) -> None:
        """
        Test that a non-hex color is refused and nothing is recorded.

        Args:
            editor (PatchEditor): Editor fixture.

        """
        obj = editor.add_text()
        with pytest.raises(ValueError):
            editor.update_text(obj.id, commit=True, color="red")
        assert editor.selected_text == obj
        assert len(editor.history) == 2
        assert editor.save()[:8] == b"\x89PNG\r\n\x1a\n"

    def test_update_unknown_raises(self, editor: PatchEditor) -> None:
        """
        Test that unknown ids raise KeyError.

        Args:
            editor (PatchEditor): Editor fixture.

        """
        with pytest.raises(KeyError):
            editor.update_text("missing", text="x")

    def test_delete_selected(self, editor: PatchEditor) -> None:
        """
        Test deleting the selected object.

        Args:
            editor (PatchEditor): Editor fixture.

        """
        editor.add_text()
        assert editor.delete_selected_text() is True
        assert editor.text_objects == ()
        assert editor.delete_selected_text() is False

    def test_initial_text_objects_kept(self, white_png: bytes) -> None:
        """
        Test that objects passed at start are part of the first entry.

        Args:
            white_png (bytes): White PNG fixture.

        """
        obj = TextObject(x=5, y=5, text="start")
        editor = PatchEditor(white_png, initial_text_objects=[obj])
        assert editor.history[0].text_objects == (obj,)


class TestDrag:
    """Tests for dragging text objects."""

    def test_drag_records_once_when_moved(self, editor: PatchEditor) -> None:
        """
        Test that a drag records a single entry at the end.

        Args:
            editor (PatchEditor): Editor fixture.

        """
        obj = editor.add_text()
        editor.begin_drag(obj.id)
        editor.drag_by(5, 0)
        editor.drag_by(5, 10)
        assert len(editor.history) == 2
        assert editor.end_drag() is True
        assert len(editor.history) == 3
        assert (editor.selected_text.x, editor.selected_text.y) == (obj.x + 10, obj.y + 10)

    def test_click_without_move_records_nothing(self, editor: PatchEditor) -> None:
        """
        Test that a drag without movement adds no entry.

        Args:
            editor (PatchEditor): Editor fixture.

        """
        obj = editor.add_text()
        editor.begin_drag(obj.id)
        editor.drag_by(0, 0)
        assert editor.end_drag() is False
        assert len(editor.history) == 2

    def test_drag_unknown_raises(self, editor: PatchEditor) -> None:
        """
        Test that dragging an unknown object raises KeyError.

        Args:
            editor (PatchEditor): Editor fixture.

        """
        with pytest.raises(KeyError):
            editor.begin_drag("missing")


class TestOutput:
    """Tests for render and save."""

    def test_render_merges_layers(self, editor: PatchEditor) -> None:
        """
        Test that the brush layer is drawn over the base.

        Args:
            editor (PatchEditor): Editor fixture.

        """
        stroke(editor)
        result = editor.render()
        assert tuple(result[50, 50]) == (0, 0, 255, 255)
        assert tuple(result[10, 10]) == (255, 255, 255, 255)

    def test_save_returns_png_of_base_size(self, editor: PatchEditor) -> None:
        """
        Test that save encodes a PNG the size of the base.

        Args:
            editor (PatchEditor): Editor fixture.

        """
        editor.add_text(text="Hi", x=10, y=10)
        data = editor.save()
        assert data[:8] == b"\x89PNG\r\n\x1a\n"
        assert decode_image(data).shape == (100, 100, 4)


class TestFromSettings:
    """Tests for building an editor from settings."""

    def test_settings_applied(self, white_png: bytes) -> None:
        """
        Test that every patch editor setting reaches the editor.

        Args:
            white_png (bytes): White PNG fixture.

        """
        settings = PatchEditorSettings(
            history_limit=5, default_vertical=True, brush_size=4, brush_color="#00FF00"
        )
        editor = PatchEditor.from_settings(white_png, settings)

        assert editor.history_limit == 5
        assert editor.default_vertical is True
        assert editor.font_path is None
        assert editor.add_text().is_vertical is True
        for _ in range(10):
            stroke(editor)
        assert len(editor.history) == 5

    def test_stroke_uses_brush_defaults(self, white_png: bytes) -> None:
        """
        Test that a stroke without color or size uses the configured brush.

        Args:
            white_png (bytes): White PNG fixture.

        """
        settings = PatchEditorSettings(brush_size=3, brush_color="#0000ff")
        editor = PatchEditor.from_settings(white_png, settings)

        editor.begin_stroke(50, 50)
        editor.end_stroke()

        assert tuple(editor.raster[50, 50]) == (255, 0, 0, 255)
        assert tuple(editor.raster[50, 55]) == (0, 0, 0, 0)

    def test_default_brush_is_white(self, editor: PatchEditor) -> None:
        """
        Test the brush defaults of a directly built editor.

        Args:
            editor (PatchEditor): Editor fixture.

        """
        assert (editor.brush_size, editor.brush_color) == (15, "#ffffff")
        editor.begin_stroke(50, 50)
        assert tuple(editor.raster[50, 56]) == (255, 255, 255, 255)

    def test_invalid_brush_color_rejected(self, white_png: bytes) -> None:
        """
        Test that a non-hex brush color is refused at construction.

        Args:
            white_png (bytes): White PNG fixture.

        """
        with pytest.raises(ValueError):
            PatchEditor(white_png, brush_color="white")
