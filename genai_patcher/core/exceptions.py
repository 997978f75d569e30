"""Exception hierarchy."""


class PatcherError(Exception):
    """Base class for all errors raised by the package."""


class ConfigurationError(PatcherError):
    """A required service URL or credential is missing."""


class CompositingError(PatcherError):
    """A geometry or decode operation could not produce a bitmap."""


class EditServiceError(PatcherError):
    """The generative edit service failed or returned no image."""

    def __init__(self, message: str, retryable: bool = False) -> None:
        """
        Initialize the error.

        Args:
            message (str): Error message.
            retryable (bool): Whether another attempt may succeed.
        """
        super().__init__(message)
        self.retryable = retryable


class DetectionServiceError(PatcherError):
    """The detection or OCR service failed."""


class ProcessingCancelled(PatcherError):
    """The run was stopped by the user. Not a failure."""
