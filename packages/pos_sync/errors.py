"""Exception taxonomy for a sync pass.

Everything deriving from :class:`SyncError` is fatal for the current pass: the
orchestrator stops before any write and reports a failed pass. Per-record
problems are not exceptions; they travel as :class:`~pos_sync.models.RecordError`
values inside fetch and write results.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for errors that abort a sync pass."""


class SchemaEnsureError(SyncError):
    """The cache table or its indexes could not be guaranteed."""


class StoreError(SyncError):
    """Reading local state (watermark, snapshot) failed."""


class UpstreamError(SyncError):
    """The POS API could not be read completely."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamAuthError(UpstreamError):
    """The static credential was missing or rejected."""


class UpstreamPayloadError(UpstreamError):
    """The response could not be interpreted as a transaction collection."""


class RetriesExhaustedError(UpstreamError):
    """Transient failures (rate limit, 5xx, network) outlasted the retry budget."""


class PassAlreadyRunning(Exception):
    """Another pass holds the lock on this cache."""


__all__ = [
    "PassAlreadyRunning",
    "RetriesExhaustedError",
    "SchemaEnsureError",
    "StoreError",
    "SyncError",
    "UpstreamAuthError",
    "UpstreamError",
    "UpstreamPayloadError",
]
