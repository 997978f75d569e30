"""Text rasterization for the patch editor."""

import logging
from collections.abc import Callable, Sequence
from functools import lru_cache

import cv2
import numpy as np
from PIL import Image, ImageDraw, ImageFont

from genai_patcher.core.utils import hex_to_bgra
from genai_patcher.models import TextObject
from genai_patcher.services.compositing import ensure_bgra

logger = logging.getLogger(__name__)

# Inner padding of a vertical text box, in pixels
VERTICAL_PADDING = 4

REGULAR_FONT = "DejaVuSans.ttf"
BOLD_FONT = "DejaVuSans-Bold.ttf"

Measure = Callable[[str], float]
Font = ImageFont.FreeTypeFont | ImageFont.ImageFont


@lru_cache(maxsize=64)
def load_font(size: int, bold: bool = True, font_path: str | None = None) -> Font:
    """
    Load a TrueType font, falling back to Pillow's bundled default.

    Args:
        size (int): Font size in pixels.
        bold (bool): Prefer the bold face.
        font_path (str | None): Explicit font file, tried first.

    Returns:
        Font: Loaded font.
    """
    candidates = [font_path] if font_path else []
    candidates.append(BOLD_FONT if bold else REGULAR_FONT)
    for candidate in candidates:
        try:
            return ImageFont.truetype(candidate, size)
        except OSError:
            logger.debug(f"Font {candidate} not available")
    return ImageFont.load_default(size=size)


def to_rgba(color: str) -> tuple[int, int, int, int]:
    """
    Convert a hex color to an RGBA tuple for Pillow.

    Args:
        color (str): "#rrggbb" or "#rrggbbaa".

    Returns:
        tuple[int, int, int, int]: (red, green, blue, alpha).
    """
    blue, green, red, alpha = hex_to_bgra(color)
    return red, green, blue, alpha


def wrap_horizontal(text: str, max_width: float, measure: Measure) -> list[str]:
    """
    Greedily wrap text character by character to a maximum width.

    A line breaks when appending the next character would exceed max_width.
    The very first character never breaks, so a box narrower than one glyph
    still shows one glyph per line. Newlines always break.

    Args:
        text (str): Text to wrap.
        max_width (float): Box width in pixels.
        measure (Measure): Returns the rendered width of a string.

    Returns:
        list[str]: Lines in top-to-bottom order.
    """
    lines: list[str] = []
    line = ""
    for index, char in enumerate(text):
        if char == "\n":
            lines.append(line)
            line = ""
            continue
        candidate = line + char
        if index > 0 and line and measure(candidate) > max_width:
            lines.append(line)
            line = char
        else:
            line = candidate
    lines.append(line)
    return lines


def layout_vertical(
    text: str,
    font_size: int,
    box_width: float | None,
    measure: Measure,
) -> list[tuple[str, float, float]]:
    """
    Place characters in top-to-bottom columns read right to left.

    Each newline-separated line becomes one column font_size pixels wide.
    With a bound box width the columns hang from the right edge of the box;
    unbound, the box wraps the columns and the first line is the rightmost.
    Every character is centered horizontally in its column.

    Args:
        text (str): Text to lay out.
        font_size (int): Font size, also the column width and line advance.
        box_width (float | None): Box width, or None when unbound.
        measure (Measure): Returns the rendered width of a string.

    Returns:
        list[tuple[str, float, float]]: (character, x, y) relative to the anchor.
    """
    lines = text.split("\n")
    glyphs: list[tuple[str, float, float]] = []
    for line_index, line in enumerate(lines):
        if box_width is not None:
            column_x = box_width - VERTICAL_PADDING - (line_index + 1) * font_size
        else:
            column_x = VERTICAL_PADDING + (len(lines) - 1 - line_index) * font_size
        cursor_y = float(VERTICAL_PADDING)
        for char in line:
            glyphs.append((char, column_x + (font_size - measure(char)) / 2, cursor_y))
            cursor_y += font_size
    return glyphs


def _background_box(obj: TextObject, measure: Measure) -> tuple[float, float, float, float]:
    if obj.width is not None and obj.height is not None:
        return 0.0, 0.0, obj.width, obj.height
    text_width = measure(obj.text)
    if obj.is_vertical:
        inset = obj.font_size * 0.1
        height = text_width + obj.font_size + len(obj.text) * obj.font_size
        return -inset, -inset, obj.font_size * 1.2 - inset, height - inset
    return -2.0, -2.0, text_width + 2, obj.font_size * 1.2 + 2


def _render_text_object(canvas: Image.Image, obj: TextObject, font_path: str | None) -> Image.Image:
    font = load_font(obj.font_size, obj.is_bold, font_path)
    layer = Image.new("RGBA", canvas.size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(layer)

    def measure(value: str) -> float:
        return draw.textlength(value, font=font)

    if obj.has_background:
        left, top, right, bottom = _background_box(obj, measure)
        draw.rectangle(
            (obj.x + left, obj.y + top, obj.x + right, obj.y + bottom),
            fill=to_rgba(obj.background_color),
        )

    fill = to_rgba(obj.color)
    stroke_width = round(obj.outline_width / 2)
    stroke_fill = to_rgba(obj.outline_color)

    def put(value: str, dx: float, dy: float) -> None:
        draw.text(
            (obj.x + dx, obj.y + dy),
            value,
            font=font,
            fill=fill,
            stroke_width=stroke_width,
            stroke_fill=stroke_fill,
        )

    if obj.is_vertical:
        for char, dx, dy in layout_vertical(obj.text, obj.font_size, obj.width, measure):
            put(char, dx, dy)
    elif obj.width is not None:
        for line_index, line in enumerate(wrap_horizontal(obj.text, obj.width, measure)):
            put(line, 0, line_index * obj.font_size)
    else:
        put(obj.text, 0, 0)

    if obj.rotation:
        # Pillow rotates counter-clockwise
        layer = layer.rotate(
            -obj.rotation, resample=Image.Resampling.BICUBIC, center=(obj.x, obj.y)
        )
    return Image.alpha_composite(canvas, layer)


def render_text_objects(
    canvas: np.ndarray,
    objects: Sequence[TextObject],
    font_path: str | None = None,
) -> np.ndarray:
    """
    Rasterize text objects over a BGRA bitmap, in list order.

    Args:
        canvas (np.ndarray): BGRA bitmap to draw on (not modified).
        objects (Sequence[TextObject]): Text objects, later ones on top.
        font_path (str | None): Optional TrueType font file.

    Returns:
        np.ndarray: New BGRA bitmap.
    """
    canvas = ensure_bgra(canvas)
    if not objects:
        return canvas.copy()

    image = Image.fromarray(cv2.cvtColor(canvas, cv2.COLOR_BGRA2RGBA))
    for obj in objects:
        image = _render_text_object(image, obj, font_path)
    return cv2.cvtColor(np.asarray(image), cv2.COLOR_RGBA2BGRA)
