"""Telemetry sink for sync passes.

The orchestrator reports progress breadcrumbs, anomalies and the final pass
summary through a :class:`TelemetrySink`. Production wiring may forward these
to an error tracker; the default :class:`LoggingTelemetry` writes structured
``event key=value`` log lines.
"""

from __future__ import annotations

import json
from typing import Any, Protocol

from .logging_setup import get_logger
from .models import Anomaly, SyncSummary


class TelemetrySink(Protocol):
    def breadcrumb(self, message: str, **data: Any) -> None: ...

    def anomaly(self, anomaly: Anomaly) -> None: ...

    def pass_completed(self, summary: SyncSummary) -> None: ...

    def pass_failed(self, summary: SyncSummary) -> None: ...

    def pass_skipped(self, reason: str) -> None: ...


def _fmt(value: Any) -> str:
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return str(value)


def format_fields(data: dict[str, Any]) -> str:
    return " ".join(f"{k}={_fmt(v)}" for k, v in data.items())


class LoggingTelemetry:
    """Default sink: every event becomes one log line on ``pos_sync.telemetry``."""

    def __init__(self, logger_name: str = "pos_sync.telemetry") -> None:
        self._logger = get_logger(logger_name)

    def breadcrumb(self, message: str, **data: Any) -> None:
        self._logger.info("sync:breadcrumb %s %s", message, format_fields(data))

    def anomaly(self, anomaly: Anomaly) -> None:
        self._logger.warning("sync:anomaly kind=%s %s", anomaly.kind, format_fields(anomaly.detail))

    def pass_completed(self, summary: SyncSummary) -> None:
        payload = summary.to_dict()
        payload["errors"] = len(summary.errors)
        payload["anomalies"] = [a.kind for a in summary.anomalies]
        self._logger.info("sync:pass_completed %s", format_fields(payload))
        for err in summary.errors[:20]:
            self._logger.warning("sync:record_error id=%s reason=%s", err.transaction_id, err.reason)

    def pass_failed(self, summary: SyncSummary) -> None:
        self._logger.error(
            "sync:pass_failed error=%s window=%s",
            summary.error,
            _fmt(summary.window.to_dict()) if summary.window else None,
        )

    def pass_skipped(self, reason: str) -> None:
        self._logger.info("sync:pass_skipped reason=%s", reason)


__all__ = ["LoggingTelemetry", "TelemetrySink", "format_fields"]
