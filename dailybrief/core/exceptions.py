"""Error taxonomy for the brief scheduler.

A dedup skip is not an error: it is recorded as a ``skipped`` delivery record.
"""


class BriefError(Exception):
    """Base class for all brief scheduler errors."""


class ConfigurationError(BriefError):
    """A user's schedule data is unusable (bad timezone, time string or missing field).

    Callers skip the affected user; this is never fatal to a sync cycle.
    """


class UpstreamError(BriefError):
    """A registry, data-source, generation or delivery call failed."""

    def __init__(self, message: str, *, source: str = "upstream", status_code: int | None = None):
        super().__init__(message)
        self.source = source
        self.status_code = status_code


class SynchronizationError(BriefError):
    """The preference registry could not be read during a sync cycle."""


class UserNotFoundError(BriefError):
    """No active registry entry exists for the requested user."""
