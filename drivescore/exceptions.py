"""Exception types raised at the engine boundaries."""


class DriveScoreError(Exception):
    """Base class for drivescore errors."""


class InvalidSampleError(DriveScoreError, ValueError):
    """A sample failed validation at ingestion (corrupt coordinates, bad speed, missing time)."""


class SpeedLimitLookupError(DriveScoreError):
    """The speed limit provider could not answer a lookup."""


class PersistenceError(DriveScoreError):
    """A trip or driver score could not be written to storage."""
