"""Masking and compositing engine.

Pure transforms over BGRA bitmaps (numpy arrays of shape (height, width, 4)).
Region percentages are always projected onto the dimensions that are stated
for the call, never onto an assumed size, because results coming back from
the edit service may have been resized.
"""

import logging
from collections.abc import Iterable, Sequence
from typing import NamedTuple

import cv2
import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from genai_patcher.core.exceptions import CompositingError
from genai_patcher.enums import AspectMismatchPolicy, RegionStatus
from genai_patcher.models import Region

logger = logging.getLogger(__name__)

Color = tuple[int, int, int, int]

WHITE: Color = (255, 255, 255, 255)

# Relative aspect ratio difference tolerated before a mismatch is reported
ASPECT_TOLERANCE = 0.01

JPEG_QUALITY = 85


class PixelRect(NamedTuple):
    """Absolute pixel rectangle, right and bottom edges exclusive."""

    x1: int
    y1: int
    x2: int
    y2: int

    @property
    def width(self) -> int:
        """Rectangle width in pixels."""
        return self.x2 - self.x1

    @property
    def height(self) -> int:
        """Rectangle height in pixels."""
        return self.y2 - self.y1


class PaddingInfo(BaseModel):
    """Metadata needed to undo pad_to_square."""

    original_width: int = Field(gt=0, description="Width before padding")
    original_height: int = Field(gt=0, description="Height before padding")

    model_config = ConfigDict(frozen=True, extra="forbid")


def _check_size(width: int, height: int) -> None:
    if width <= 0 or height <= 0:
        raise CompositingError(f"Invalid canvas size {width}x{height}")


def _size(bitmap: np.ndarray) -> tuple[int, int]:
    if bitmap is None or bitmap.ndim < 2:
        raise CompositingError("Bitmap is empty")
    height, width = bitmap.shape[:2]
    _check_size(width, height)
    return width, height


def ensure_bgra(bitmap: np.ndarray) -> np.ndarray:
    """
    Normalize a decoded bitmap to 8-bit BGRA.

    Args:
        bitmap (np.ndarray): Grayscale, BGR or BGRA bitmap (8 or 16 bit).

    Returns:
        np.ndarray: BGRA uint8 bitmap.

    Raises:
        CompositingError: If the bitmap is empty or has an unsupported layout.
    """
    _size(bitmap)
    if bitmap.dtype == np.uint16:
        bitmap = (bitmap >> 8).astype(np.uint8)
    elif bitmap.dtype != np.uint8:
        bitmap = np.clip(bitmap, 0, 255).astype(np.uint8)

    if bitmap.ndim == 2:
        return cv2.cvtColor(src=bitmap, code=cv2.COLOR_GRAY2BGRA)
    channels = bitmap.shape[2]
    if channels == 1:
        return cv2.cvtColor(src=bitmap, code=cv2.COLOR_GRAY2BGRA)
    if channels == 3:
        return cv2.cvtColor(src=bitmap, code=cv2.COLOR_BGR2BGRA)
    if channels == 4:
        return bitmap
    raise CompositingError(f"Unsupported channel count: {channels}")


def decode_image(data: bytes) -> np.ndarray:
    """
    Decode encoded image bytes into a BGRA bitmap.

    Args:
        data (bytes): PNG, JPEG or any format OpenCV reads.

    Returns:
        np.ndarray: BGRA uint8 bitmap.

    Raises:
        CompositingError: If the bytes cannot be decoded.
    """
    if not data:
        raise CompositingError("Cannot decode empty image data")
    image = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_UNCHANGED)
    if image is None:
        raise CompositingError("Unreadable image data")
    return ensure_bgra(image)


def encode_png(bitmap: np.ndarray) -> bytes:
    """
    Encode a bitmap as PNG.

    Args:
        bitmap (np.ndarray): Bitmap to encode.

    Returns:
        bytes: PNG bytes.

    Raises:
        CompositingError: If encoding fails.
    """
    _size(bitmap)
    ok, buffer = cv2.imencode(".png", bitmap)
    if not ok:
        raise CompositingError("PNG encoding failed")
    return buffer.tobytes()


def encode_jpeg(bitmap: np.ndarray, quality: int = JPEG_QUALITY) -> bytes:
    """
    Encode a bitmap as JPEG, flattening alpha onto white.

    Args:
        bitmap (np.ndarray): Bitmap to encode.
        quality (int): JPEG quality (0-100).

    Returns:
        bytes: JPEG bytes.
    """
    width, height = _size(bitmap)
    background = np.full((height, width, 4), WHITE, dtype=np.uint8)
    flattened = over(background, ensure_bgra(bitmap))
    bgr = cv2.cvtColor(src=flattened, code=cv2.COLOR_BGRA2BGR)
    ok, buffer = cv2.imencode(".jpg", bgr, [cv2.IMWRITE_JPEG_QUALITY, quality])
    if not ok:
        raise CompositingError("JPEG encoding failed")
    return buffer.tobytes()


def image_size(data: bytes) -> tuple[int, int]:
    """
    Get the pixel size of encoded image bytes.

    Args:
        data (bytes): Encoded image.

    Returns:
        tuple[int, int]: (width, height).
    """
    return _size(decode_image(data))


def resize(bitmap: np.ndarray, width: int, height: int) -> np.ndarray:
    """
    Rescale a bitmap, returning a copy when the size is unchanged.

    Args:
        bitmap (np.ndarray): Source bitmap.
        width (int): Target width.
        height (int): Target height.

    Returns:
        np.ndarray: Resized bitmap.
    """
    source_width, source_height = _size(bitmap)
    _check_size(width, height)
    if (source_width, source_height) == (width, height):
        return bitmap.copy()
    shrinking = width < source_width and height < source_height
    return cv2.resize(
        src=bitmap,
        dsize=(width, height),
        interpolation=cv2.INTER_AREA if shrinking else cv2.INTER_LINEAR,
    )


def downscale_to_max(bitmap: np.ndarray, max_dimension: int) -> np.ndarray:
    """
    Shrink a bitmap so neither side exceeds max_dimension.

    Args:
        bitmap (np.ndarray): Source bitmap.
        max_dimension (int): Maximum side length.

    Returns:
        np.ndarray: The original bitmap if small enough, a scaled copy otherwise.
    """
    width, height = _size(bitmap)
    if width <= max_dimension and height <= max_dimension:
        return bitmap
    ratio = min(max_dimension / width, max_dimension / height)
    return resize(bitmap, max(1, round(width * ratio)), max(1, round(height * ratio)))


def region_to_pixel_rect(region: Region, width: int, height: int) -> PixelRect:
    """
    Project a percent region onto a canvas of the given size.

    Both edges are rounded independently and clamped to the canvas, so
    adjacent regions tile without gaps or overlap.

    Args:
        region (Region): Region in percent coordinates.
        width (int): Reference width in pixels.
        height (int): Reference height in pixels.

    Returns:
        PixelRect: Pixel rectangle.

    Raises:
        CompositingError: If the canvas is empty or the rectangle collapses.
    """
    _check_size(width, height)
    left = min(max(region.x, 0.0), 100.0)
    top = min(max(region.y, 0.0), 100.0)
    right = min(max(region.x + region.width, 0.0), 100.0)
    bottom = min(max(region.y + region.height, 0.0), 100.0)

    rect = PixelRect(
        x1=round(left / 100.0 * width),
        y1=round(top / 100.0 * height),
        x2=round(right / 100.0 * width),
        y2=round(bottom / 100.0 * height),
    )
    if rect.width <= 0 or rect.height <= 0:
        raise CompositingError(
            f"Region {region.id} collapses to {rect.width}x{rect.height} on a {width}x{height} canvas"
        )
    return rect


def over(base: np.ndarray, layer: np.ndarray) -> np.ndarray:
    """
    Composite layer over base (source-over), both BGRA and the same size.

    Args:
        base (np.ndarray): Bottom bitmap.
        layer (np.ndarray): Top bitmap.

    Returns:
        np.ndarray: New composited bitmap.
    """
    if base.shape[:2] != layer.shape[:2]:
        raise CompositingError(f"Size mismatch: {base.shape[:2]} vs {layer.shape[:2]}")

    src_alpha = layer[..., 3:4].astype(np.float32) / 255.0
    dst_alpha = base[..., 3:4].astype(np.float32) / 255.0
    out_alpha = src_alpha + dst_alpha * (1.0 - src_alpha)

    src_color = layer[..., :3].astype(np.float32)
    dst_color = base[..., :3].astype(np.float32)
    premultiplied = src_color * src_alpha + dst_color * dst_alpha * (1.0 - src_alpha)
    safe_alpha = np.where(out_alpha > 0, out_alpha, 1.0)
    out_color = np.where(out_alpha > 0, premultiplied / safe_alpha, 0.0)

    result = np.empty_like(base)
    result[..., :3] = np.clip(np.rint(out_color), 0, 255).astype(np.uint8)
    result[..., 3:4] = np.clip(np.rint(out_alpha * 255.0), 0, 255).astype(np.uint8)
    return result


def draw_into(canvas: np.ndarray, patch: np.ndarray, rect: PixelRect) -> None:
    """
    Scale patch into rect and composite it over canvas in place.

    Args:
        canvas (np.ndarray): Destination bitmap, modified in place.
        patch (np.ndarray): Fragment to draw.
        rect (PixelRect): Destination rectangle.
    """
    scaled = resize(ensure_bgra(patch), rect.width, rect.height)
    target = canvas[rect.y1 : rect.y2, rect.x1 : rect.x2]
    canvas[rect.y1 : rect.y2, rect.x1 : rect.x2] = over(target, scaled)


def crop(image: np.ndarray, region: Region) -> np.ndarray:
    """
    Extract the pixel rectangle implied by a region.

    Args:
        image (np.ndarray): Source bitmap.
        region (Region): Region projected onto the image's natural size.

    Returns:
        np.ndarray: Cropped copy.
    """
    width, height = _size(image)
    rect = region_to_pixel_rect(region, width, height)
    return image[rect.y1 : rect.y2, rect.x1 : rect.x2].copy()


def multi_mask(
    image: np.ndarray,
    regions: Iterable[Region],
    inverted: bool = False,
    fill: Color = WHITE,
) -> np.ndarray:
    """
    Build a masked full-size image for the edit service.

    Standard mode fills everything with the background color except the
    union of the regions, which show the original pixels. Inverted mode keeps
    the original everywhere and blanks the regions instead.

    Args:
        image (np.ndarray): Source bitmap.
        regions (Iterable[Region]): Regions to reveal or blank.
        inverted (bool): Blank the regions instead of revealing them.
        fill (Color): BGRA background color.

    Returns:
        np.ndarray: Masked bitmap of the same size.
    """
    width, height = _size(image)
    source = ensure_bgra(image)
    rects = [region_to_pixel_rect(region, width, height) for region in regions]

    if inverted:
        canvas = source.copy()
        for rect in rects:
            canvas[rect.y1 : rect.y2, rect.x1 : rect.x2] = fill
        return canvas

    canvas = np.empty_like(source)
    canvas[...] = fill
    for rect in rects:
        canvas[rect.y1 : rect.y2, rect.x1 : rect.x2] = source[rect.y1 : rect.y2, rect.x1 : rect.x2]
    return canvas


def pad_to_square(bitmap: np.ndarray, fill: Color = WHITE) -> tuple[np.ndarray, PaddingInfo]:
    """
    Center a bitmap on a square canvas of side max(width, height).

    Args:
        bitmap (np.ndarray): Source bitmap.
        fill (Color): BGRA color of the padding.

    Returns:
        tuple[np.ndarray, PaddingInfo]: Square bitmap and inversion metadata.
    """
    width, height = _size(bitmap)
    side = max(width, height)
    offset_x = (side - width) // 2
    offset_y = (side - height) // 2

    square = np.empty((side, side, 4), dtype=np.uint8)
    square[...] = fill
    square[offset_y : offset_y + height, offset_x : offset_x + width] = ensure_bgra(bitmap)
    return square, PaddingInfo(original_width=width, original_height=height)


def depad_from_square(square: np.ndarray, info: PaddingInfo) -> np.ndarray:
    """
    Recover the content of a padded square, tolerating a rescaled square.

    The content sub-rectangle is recomputed from the original aspect ratio
    against the square's actual size and scaled back to the original size.
    Exact when the square was not rescaled; best effort otherwise.

    Args:
        square (np.ndarray): Square bitmap, possibly rescaled by the service.
        info (PaddingInfo): Metadata returned by pad_to_square.

    Returns:
        np.ndarray: Bitmap of size (original_width, original_height).
    """
    actual_width, actual_height = _size(square)
    longest = max(info.original_width, info.original_height)

    content_width = max(1, min(actual_width, round(actual_width * info.original_width / longest)))
    content_height = max(
        1, min(actual_height, round(actual_height * info.original_height / longest))
    )
    offset_x = (actual_width - content_width) // 2
    offset_y = (actual_height - content_height) // 2

    content = ensure_bgra(square)[
        offset_y : offset_y + content_height, offset_x : offset_x + content_width
    ]
    return resize(content, info.original_width, info.original_height)


def _edge_ramp(length: int, opaque_fraction: float) -> np.ndarray:
    """Alpha multipliers along one axis: 0 at both ends, 1 across the opaque core."""
    ramp_width = length * (1.0 - opaque_fraction) / 2.0
    if ramp_width <= 0:
        return np.ones(length, dtype=np.float32)
    index = np.arange(length, dtype=np.float32)
    distance = np.minimum(index, length - 1 - index)
    return np.clip(distance / ramp_width, 0.0, 1.0)


def feather(bitmap: np.ndarray, opaque_percent: float) -> np.ndarray:
    """
    Apply a center-opaque, edge-transparent alpha gradient.

    Each axis gets its own ramp, with an opaque core of exactly
    opaque_percent of that axis split symmetrically between the edges. The
    ramps are multiplied into the existing alpha, so corners fade faster than
    edges.

    Args:
        bitmap (np.ndarray): Source bitmap.
        opaque_percent (float): Opaque core size in percent (100 = no feathering).

    Returns:
        np.ndarray: Feathered copy.
    """
    width, height = _size(bitmap)
    result = ensure_bgra(bitmap).copy()
    opaque_fraction = min(max(opaque_percent, 0.0), 100.0) / 100.0
    if opaque_fraction >= 1.0:
        return result

    mask = _edge_ramp(height, opaque_fraction)[:, None] * _edge_ramp(width, opaque_fraction)[None, :]
    alpha = result[..., 3].astype(np.float32) * mask
    result[..., 3] = np.clip(np.rint(alpha), 0, 255).astype(np.uint8)
    return result


def extract_crop_feathered(
    full_result: np.ndarray,
    region: Region,
    original_width: int,
    original_height: int,
    opaque_percent: float = 100.0,
) -> np.ndarray:
    """
    Cut a region out of a full-image result and size it for stitching.

    The region is projected onto the result's actual size, which may differ
    from the original, then scaled to the size the region has on the
    original image.

    Args:
        full_result (np.ndarray): Full-image output of the edit service.
        region (Region): Region to extract.
        original_width (int): Width of the image the region belongs to.
        original_height (int): Height of the image the region belongs to.
        opaque_percent (float): Opaque core for feathering (100 = none).

    Returns:
        np.ndarray: Fragment sized to the region on the original image.
    """
    actual_width, actual_height = _size(full_result)
    source_rect = region_to_pixel_rect(region, actual_width, actual_height)
    target_rect = region_to_pixel_rect(region, original_width, original_height)

    fragment = ensure_bgra(full_result)[
        source_rect.y1 : source_rect.y2, source_rect.x1 : source_rect.x2
    ]
    fragment = resize(fragment, target_rect.width, target_rect.height)
    return feather(fragment, opaque_percent)


def stitch(base: np.ndarray, regions: Sequence[Region]) -> np.ndarray:
    """
    Draw every completed region's result into its rectangle on the base.

    Later regions overwrite earlier ones where they overlap; only a
    fragment's own alpha blends against what is beneath it.

    Args:
        base (np.ndarray): Baseline bitmap.
        regions (Sequence[Region]): Regions, in drawing order.

    Returns:
        np.ndarray: Composited bitmap.
    """
    width, height = _size(base)
    canvas = ensure_bgra(base).copy()
    for region in regions:
        if region.status != RegionStatus.COMPLETED or region.processed_result is None:
            continue
        rect = region_to_pixel_rect(region, width, height)
        draw_into(canvas, decode_image(region.processed_result), rect)
    return canvas


def _aspect_mismatch(width_a: int, height_a: int, width_b: int, height_b: int) -> float:
    ratio_a = width_a / height_a
    ratio_b = width_b / height_b
    return abs(ratio_a - ratio_b) / ratio_b


def stitch_inverted(
    base: np.ndarray,
    full_result: np.ndarray,
    regions: Iterable[Region],
    policy: AspectMismatchPolicy = AspectMismatchPolicy.STRETCH,
) -> np.ndarray:
    """
    Use the full-image result as background and restore the base inside regions.

    Args:
        base (np.ndarray): Baseline bitmap whose regions are kept verbatim.
        full_result (np.ndarray): Full-image output of the edit service.
        regions (Iterable[Region]): Regions to restore from the base.
        policy (AspectMismatchPolicy): Handling of a result with another aspect ratio.

    Returns:
        np.ndarray: Composited bitmap the size of the base.

    Raises:
        CompositingError: If the aspect ratio differs and policy is REJECT.
    """
    width, height = _size(base)
    result_width, result_height = _size(full_result)

    mismatch = _aspect_mismatch(result_width, result_height, width, height)
    if mismatch > ASPECT_TOLERANCE:
        if policy == AspectMismatchPolicy.REJECT:
            raise CompositingError(
                f"Result aspect {result_width}x{result_height} does not match {width}x{height}"
            )
        logger.warning(
            f"Stretching {result_width}x{result_height} result onto {width}x{height} base "
            f"({mismatch:.1%} aspect difference)"
        )

    source = ensure_bgra(base)
    canvas = resize(ensure_bgra(full_result), width, height)
    for region in regions:
        rect = region_to_pixel_rect(region, width, height)
        canvas[rect.y1 : rect.y2, rect.x1 : rect.x2] = source[rect.y1 : rect.y2, rect.x1 : rect.x2]
    return canvas
