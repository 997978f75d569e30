"""Processing enums."""

from enum import StrEnum


class ProcessingStep(StrEnum):
    """Coarse progress of a processing run."""

    IDLE = "idle"
    CROPPING = "cropping"
    API_CALLING = "api_calling"
    STITCHING = "stitching"
    DONE = "done"


class ProcessScope(StrEnum):
    """Which images a run targets."""

    SELECTED = "selected"
    ALL = "all"


class ExecutionMode(StrEnum):
    """Concurrent runs honor the concurrency limit, serial runs use a limit of 1."""

    CONCURRENT = "concurrent"
    SERIAL = "serial"


class AspectMismatchPolicy(StrEnum):
    """What to do when a full-image result comes back with another aspect ratio."""

    STRETCH = "stretch"
    REJECT = "reject"
