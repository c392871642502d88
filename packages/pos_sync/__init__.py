"""Public interface for the ``pos_sync`` package.

Symbol re-exports only; the pass itself lives in :mod:`pos_sync.orchestrator`.
"""

from .errors import (
    PassAlreadyRunning,
    RetriesExhaustedError,
    SchemaEnsureError,
    StoreError,
    SyncError,
    UpstreamAuthError,
    UpstreamError,
    UpstreamPayloadError,
)
from .models import (
    Anomaly,
    FetchResult,
    FetchWindow,
    LocalTransactionRecord,
    RecordError,
    RemoteTransaction,
    SyncDiff,
    SyncSummary,
    WriteResult,
)
from .orchestrator import run
from .settings import SyncSettings
from .telemetry import LoggingTelemetry, TelemetrySink

__all__ = [
    # Entry point
    "run",
    "SyncSettings",
    # Telemetry
    "LoggingTelemetry",
    "TelemetrySink",
    # Models / types
    "Anomaly",
    "FetchResult",
    "FetchWindow",
    "LocalTransactionRecord",
    "RecordError",
    "RemoteTransaction",
    "SyncDiff",
    "SyncSummary",
    "WriteResult",
    # Errors
    "PassAlreadyRunning",
    "RetriesExhaustedError",
    "SchemaEnsureError",
    "StoreError",
    "SyncError",
    "UpstreamAuthError",
    "UpstreamError",
    "UpstreamPayloadError",
]
