"""One sync pass, end to end.

``run`` takes every collaborator as an argument (credential, store, telemetry,
optionally a pre-built upstream client and a fixed clock) and executes:

    lock -> ensure schema -> watermark -> window -> fetch (fully drained)
    -> snapshot -> diff -> write -> summary -> telemetry

Anything deriving from :class:`~pos_sync.errors.SyncError` before the write
stage aborts the pass with nothing written and a ``failed`` summary. The
function never raises for those; the scheduler decides what happens next
tick. There is no retry loop here: transient upstream failures are retried
inside the client, and the next scheduled pass picks up whatever this one
missed.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from db.client import create_store_engine

from .errors import PassAlreadyRunning, StoreError, SyncError
from .fetch import TransactionSource, fetch_all
from .lock import pass_lock
from .logging_setup import get_logger
from .models import SyncSummary
from .poster_client import PosterClient
from .reconcile import diff
from .schema import ensure_schema
from .settings import SyncSettings
from .telemetry import LoggingTelemetry, TelemetrySink
from .watermark import load_snapshot, plan_fetch_window, read_watermark
from .writer import apply_diff

_logger = get_logger("pos_sync.orchestrator")


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _fail(summary: SyncSummary, exc: BaseException, telemetry: TelemetrySink) -> SyncSummary:
    summary.status = "failed"
    summary.error = f"{exc.__class__.__name__}: {exc}"
    summary.finished_at = _utcnow()
    _logger.error("sync:pass_aborted error=%s", summary.error)
    telemetry.pass_failed(summary)
    return summary


def _run_locked(
    *,
    credential: str | None,
    engine: Engine,
    telemetry: TelemetrySink,
    settings: SyncSettings,
    client: TransactionSource | None,
    summary: SyncSummary,
) -> SyncSummary:
    started_at = summary.started_at
    try:
        telemetry.breadcrumb("ensure_schema")
        ensure_schema(engine)

        watermark = read_watermark(engine)
        window = plan_fetch_window(watermark, now=started_at, settings=settings)
        summary.window = window
        telemetry.breadcrumb("fetch", rows_cached=watermark.row_count, **window.to_dict())

        source = client or PosterClient(
            credential or "",
            base_url=settings.poster_api_url,
            timeout=settings.http_timeout,
            max_attempts=settings.max_attempts,
        )
        fetched = fetch_all(
            source,
            window,
            per_page=settings.page_size,
            chunk_days=settings.chunk_days,
            concurrency=settings.fetch_concurrency,
        )
        summary.fetched = len(fetched.ids)

        snapshot = load_snapshot(engine, window, fetched.observed_ids)
        plan = diff(
            snapshot,
            fetched,
            delete_after_misses=settings.delete_after_misses,
            max_delete_ratio=settings.max_delete_ratio,
        )
    except SyncError as e:
        return _fail(summary, e, telemetry)

    summary.anomalies = list(plan.anomalies)
    for anomaly in plan.anomalies:
        telemetry.anomaly(anomaly)

    telemetry.breadcrumb(
        "write",
        create=len(plan.to_create),
        update=len(plan.to_update),
        unchanged=len(plan.unchanged),
        mark_missed=len(plan.to_mark_missed),
        delete=len(plan.to_delete),
        held=len(plan.held),
    )
    try:
        written = apply_diff(
            plan, engine=engine, started_at=started_at, batch_size=settings.batch_size
        )
    except SyncError as e:
        return _fail(summary, e, telemetry)

    summary.created = len(written.created)
    summary.updated = len(written.updated)
    summary.deleted = len(written.deleted)
    summary.synced = len(written.created) + len(written.updated) + len(written.touched)
    summary.errors = [*fetched.rejected, *written.errors]
    summary.status = "partial" if summary.errors else "ok"
    summary.finished_at = _utcnow()

    _logger.info(
        "sync:pass_done status=%s full=%s created=%d updated=%d deleted=%d synced=%d errors=%d",
        summary.status,
        window.full,
        summary.created,
        summary.updated,
        summary.deleted,
        summary.synced,
        len(summary.errors),
    )
    telemetry.pass_completed(summary)
    return summary


def run(
    credential: str | None,
    store: Engine | str,
    telemetry: TelemetrySink | None = None,
    *,
    settings: SyncSettings | None = None,
    client: TransactionSource | None = None,
    now: datetime | None = None,
) -> SyncSummary:
    """Execute one sync pass and return its summary.

    Parameters
    ----------
    credential:
        Static Poster API token. Ignored when ``client`` is given.
    store:
        SQLAlchemy engine of the cache, or a database URL (an engine is then
        created for the pass and disposed afterwards).
    telemetry:
        Sink for breadcrumbs, anomalies and the final summary. Defaults to
        :class:`~pos_sync.telemetry.LoggingTelemetry`.
    settings:
        Tunables; defaults to :class:`~pos_sync.settings.SyncSettings` defaults.
    client:
        Upstream page source; defaults to a :class:`~pos_sync.poster_client.PosterClient`.
    now:
        Pass start time (aware). Also the ``synced_at`` stamp for every row
        this pass confirms.
    """

    settings = settings or SyncSettings()
    telemetry = telemetry or LoggingTelemetry()
    if now is not None and now.tzinfo is None:
        raise ValueError("now must be timezone-aware")
    started_at = (now or _utcnow()).astimezone(UTC)
    summary = SyncSummary(status="ok", started_at=started_at)

    owned = isinstance(store, str)
    engine = (
        create_store_engine(store, statement_timeout_ms=settings.statement_timeout_ms)
        if isinstance(store, str)
        else store
    )
    _logger.info("sync:pass_start started_at=%s", started_at.isoformat())
    try:
        with pass_lock(engine):
            return _run_locked(
                credential=credential,
                engine=engine,
                telemetry=telemetry,
                settings=settings,
                client=client,
                summary=summary,
            )
    except PassAlreadyRunning as e:
        summary.status = "skipped"
        summary.error = str(e)
        summary.finished_at = _utcnow()
        telemetry.pass_skipped(str(e))
        return summary
    except SQLAlchemyError as e:
        # Store unreachable while taking or releasing the lock.
        return _fail(summary, StoreError(str(e)), telemetry)
    finally:
        if owned:
            engine.dispose()


__all__ = ["run"]
