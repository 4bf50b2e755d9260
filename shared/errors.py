"""Error taxonomy for the sync engine."""

from typing import Optional


class MissionControlError(Exception):
    """Base class for all sync engine errors."""


class SourceError(MissionControlError):
    """A remote source could not be reached, authenticated against or parsed.

    Adapters translate every transport, authentication and payload failure into
    this error so the coordinator can treat them uniformly.
    """

    def __init__(self, source: str, message: str, status_code: Optional[int] = None):
        self.source = source
        self.message = message
        self.status_code = status_code
        super().__init__(f"[{source}] {message}")


class ReconciliationError(MissionControlError):
    """A replace-set or upsert transaction against the record store failed."""


class ActionError(MissionControlError):
    """A user action (dismiss, dismiss-all, complete) could not be applied."""

    def __init__(self, message: str, retryable: bool = True):
        self.message = message
        self.retryable = retryable
        super().__init__(message)
