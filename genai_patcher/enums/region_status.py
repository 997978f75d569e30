"""Region status enum."""

from enum import StrEnum


class RegionStatus(StrEnum):
    """Lifecycle status of a region."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_submittable(self) -> bool:
        """
        Check whether a region in this status may be sent for editing.

        Returns:
            bool: True for pending and failed regions.
        """
        return self in (RegionStatus.PENDING, RegionStatus.FAILED)


class RegionSource(StrEnum):
    """Where a region came from."""

    MANUAL = "manual"
    AUTO = "auto"
