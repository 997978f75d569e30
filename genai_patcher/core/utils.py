"""Core utilities."""

import base64
import binascii
import logging
import re
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

from genai_patcher.core.settings.app_settings import LoggingSettings

logger = logging.getLogger(__name__)

# Handler names used to identify handlers and avoid duplicates
APP_STREAM_HANDLER_NAME = "genai_patcher_stream_handler"
APP_FILE_HANDLER_NAME = "genai_patcher_file_handler"

DATA_URL_PATTERN = re.compile(r"^data:(?P<mime>[\w/+.-]+)?(;base64)?,(?P<data>.*)$", re.DOTALL)


def to_data_url(data: bytes, mime_type: str = "image/png") -> str:
    """
    Encode bytes as a base64 data URL.

    Args:
        data (bytes): Raw bytes.
        mime_type (str): MIME type to declare.

    Returns:
        str: Data URL string.
    """
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


def from_data_url(value: str) -> bytes:
    """
    Decode a data URL or a bare base64 string.

    Args:
        value (str): Data URL ("data:image/png;base64,...") or raw base64.

    Returns:
        bytes: Decoded bytes.

    Raises:
        ValueError: If the payload is not valid base64.
    """
    match = DATA_URL_PATTERN.match(value.strip())
    payload = match.group("data") if match else value.strip()
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 payload: {e}") from e


def hex_to_bgra(color: str, alpha: int = 255) -> tuple[int, int, int, int]:
    """
    Convert a "#rrggbb" or "#rrggbbaa" color to a BGRA tuple.

    Args:
        color (str): Hex color string.
        alpha (int): Alpha used when the color has no alpha component.

    Returns:
        tuple[int, int, int, int]: (blue, green, red, alpha).

    Raises:
        ValueError: If the color is not a hex color.
    """
    value = color.lstrip("#")
    if len(value) not in (6, 8):
        raise ValueError(f"Invalid hex color: {color}")
    red = int(value[0:2], 16)
    green = int(value[2:4], 16)
    blue = int(value[4:6], 16)
    if len(value) == 8:
        alpha = int(value[6:8], 16)
    return blue, green, red, alpha


def natural_sort_key(name: str) -> list[int | str]:
    """
    Build a sort key that orders embedded numbers numerically.

    Args:
        name (str): File or image name.

    Returns:
        list[int | str]: Key where "page2" sorts before "page10".
    """
    return [int(part) if part.isdigit() else part.lower() for part in re.split(r"(\d+)", name)]


def _get_handler_by_name(root_logger: logging.Logger, name: str) -> logging.Handler | None:
    """
    Get a handler by name from a logger.

    Args:
        root_logger (logging.Logger): Logger to search.
        name (str): Handler name to find.

    Returns:
        logging.Handler | None: Handler if found, None otherwise.
    """
    for handler in root_logger.handlers:
        if getattr(handler, "name", None) == name:
            return handler
    return None


def _remove_handler_by_name(root_logger: logging.Logger, name: str) -> None:
    """
    Remove a handler by name from a logger.

    Args:
        root_logger (logging.Logger): Logger to remove from.
        name (str): Handler name to remove.
    """
    handler = _get_handler_by_name(root_logger=root_logger, name=name)
    if handler:
        root_logger.removeHandler(handler)
        handler.close()


def _get_min_level(root_level: str, loggers: dict[str, str]) -> int:
    """
    Get the minimum log level from root and all custom loggers.

    Args:
        root_level (str): The root logger level string.
        loggers (dict[str, str]): Dict of logger name to level string.

    Returns:
        int: The minimum numeric log level.
    """
    levels: list[int] = [logging.getLevelName(root_level.upper())]
    for level in loggers.values():
        levels.append(logging.getLevelName(level.upper()))
    return min(levels)


def setup_logging(settings: LoggingSettings) -> None:
    """
    Setup logging configuration for the application.

    Args:
        settings (LoggingSettings): Logging settings to configure logging.
    """
    root_logger = logging.getLogger()

    # Calculate minimum level across root and all custom loggers
    min_level = _get_min_level(
        root_level=settings.log_level,
        loggers=settings.loggers,
    )

    root_logger.setLevel(settings.log_level)

    # Remove any existing app handlers
    _remove_handler_by_name(root_logger=root_logger, name=APP_STREAM_HANDLER_NAME)
    _remove_handler_by_name(root_logger=root_logger, name=APP_FILE_HANDLER_NAME)

    formatter = logging.Formatter(
        fmt=settings.log_format,
        datefmt=settings.date_format,
    )

    if settings.log_file:
        log_path = Path(settings.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        if settings.rotate_logs:
            handler: logging.Handler = TimedRotatingFileHandler(
                filename=log_path,
                when="midnight",
                encoding="utf-8",
            )
        else:
            handler = logging.FileHandler(log_path)

        handler.set_name(APP_FILE_HANDLER_NAME)
    else:
        handler = logging.StreamHandler(sys.stdout)
        handler.set_name(APP_STREAM_HANDLER_NAME)

    handler.setFormatter(formatter)
    handler.setLevel(min_level)
    root_logger.addHandler(handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    for logger_name, level in settings.loggers.items():
        logging.getLogger(logger_name).setLevel(level)
