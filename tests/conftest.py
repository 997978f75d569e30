"""Pytest configuration and fixtures."""

from collections.abc import Callable

import cv2
import numpy as np
import pytest

from genai_patcher.core.settings import AppSettings, reload_settings
from genai_patcher.core.settings.app_settings import (
    DetectionSettings,
    EditServiceSettings,
    LoggingSettings,
    ProcessingSettings,
)


def make_bitmap(
    width: int, height: int, color: tuple[int, int, int, int] = (255, 255, 255, 255)
) -> np.ndarray:
    """
    Create a solid BGRA bitmap.

    Args:
        width (int): Width in pixels.
        height (int): Height in pixels.
        color (tuple[int, int, int, int]): BGRA fill color.

    Returns:
        np.ndarray: Bitmap.
    """
    bitmap = np.zeros((height, width, 4), dtype=np.uint8)
    bitmap[:] = color
    return bitmap


def to_png(bitmap: np.ndarray) -> bytes:
    """
    Encode a bitmap as PNG bytes.

    Args:
        bitmap (np.ndarray): Bitmap to encode.

    Returns:
        bytes: PNG bytes.
    """
    ok, buffer = cv2.imencode(".png", bitmap)
    assert ok
    return buffer.tobytes()


@pytest.fixture
def mock_settings() -> AppSettings:
    """
    Create mock application settings for testing.

    Returns:
        AppSettings: Mock settings instance.
    """
    return AppSettings(
        processing=ProcessingSettings(
            prompt="Remove the text",
            concurrency_limit=2,
        ),
        edit_service=EditServiceSettings(
            openai_base_url="http://edit.test/v1",
            openai_api_key="test-key",
            openai_model="test-model",
            max_retries=0,
            retry_backoff=0.0,
        ),
        detection=DetectionSettings(
            detection_api_url="http://detect.test/detect",
            ocr_api_url="http://detect.test/ocr",
        ),
        logging=LoggingSettings(
            log_level="DEBUG",
            log_format="%(message)s",
        ),
    )


@pytest.fixture
def gradient_bitmap() -> np.ndarray:
    """
    Create a 100x100 bitmap whose pixels encode their own coordinates.

    Returns:
        np.ndarray: BGRA bitmap with blue = x and green = y.
    """
    bitmap = np.zeros((100, 100, 4), dtype=np.uint8)
    xs, ys = np.meshgrid(np.arange(100), np.arange(100))
    bitmap[..., 0] = xs
    bitmap[..., 1] = ys
    bitmap[..., 2] = 50
    bitmap[..., 3] = 255
    return bitmap


@pytest.fixture
def white_png() -> bytes:
    """
    Create a 100x100 opaque white PNG.

    Returns:
        bytes: PNG image bytes.
    """
    return to_png(make_bitmap(100, 100))


@pytest.fixture
def red_png() -> bytes:
    """
    Create a 50x50 opaque red PNG.

    Returns:
        bytes: PNG image bytes.
    """
    return to_png(make_bitmap(50, 50, (0, 0, 255, 255)))


@pytest.fixture
def invalid_image_bytes() -> bytes:
    """
    Create invalid image bytes for testing error handling.

    Returns:
        bytes: Invalid image data.
    """
    return b"not a valid image"


@pytest.fixture(autouse=True)
def reset_settings_cache() -> None:
    """Reset settings cache before each test."""
    reload_settings()


@pytest.fixture
def bitmap_factory() -> Callable[..., np.ndarray]:
    """
    Provide a solid bitmap builder.

    Returns:
        Callable[..., np.ndarray]: make_bitmap.
    """
    return make_bitmap


@pytest.fixture
def png_factory() -> Callable[..., bytes]:
    """
    Provide a solid PNG builder.

    Returns:
        Callable[..., bytes]: Builds PNG bytes from width, height and color.
    """
    return lambda width, height, color=(255, 255, 255, 255): to_png(make_bitmap(width, height, color))
