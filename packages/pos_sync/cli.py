"""CLI for the ``pos_sync`` package.

Command handlers (``cmd_*``) hold the logic and return a process exit code;
the Typer commands below only parse options and delegate. The root callback
loads a local ``.env`` with ``python-dotenv`` (never overriding variables that
are already set) and configures logging before any command runs.

Commands
--------
- ``run``: one sync pass; prints the summary as JSON. Suitable for cron.
- ``schedule``: in-process timer running a pass every ``--interval`` seconds.
  Ticks never overlap and a failing pass never stops the loop.
- ``ensure-schema``: create the cache table and indexes if missing.
- ``status``: print the watermark derived from the cache.
"""

from __future__ import annotations

import json
import sys
import time
from pathlib import Path

import typer
from dotenv import load_dotenv

from .logging_setup import configure_logging, get_logger
from .settings import SyncSettings

_logger = get_logger("pos_sync.cli")


def _load_settings(*, database_url: str | None, token: str | None) -> SyncSettings | None:
    try:
        settings = SyncSettings.from_env()
    except ValueError as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        return None
    settings = settings.with_overrides(database_url=database_url, poster_token=token)
    if not settings.database_url:
        print("Error: DATABASE_URL is not set in the environment.", file=sys.stderr)
        return None
    return settings


def cmd_run(*, database_url: str | None = None, token: str | None = None) -> int:
    """Run one pass and print its summary. Exit code 1 when the pass failed."""

    settings = _load_settings(database_url=database_url, token=token)
    if settings is None:
        return 1
    if not settings.poster_token:
        print("Error: POSTER_TOKEN is not set in the environment.", file=sys.stderr)
        return 1

    from .orchestrator import run

    assert settings.database_url is not None  # checked by _load_settings
    summary = run(settings.poster_token, settings.database_url, settings=settings)
    print(json.dumps(summary.to_dict(), sort_keys=True))
    return 1 if summary.status == "failed" else 0


def cmd_schedule(
    *,
    interval: int | None = None,
    database_url: str | None = None,
    token: str | None = None,
    max_ticks: int | None = None,
) -> int:
    """Run passes on a fixed interval until interrupted (or ``max_ticks`` passes)."""

    settings = _load_settings(database_url=database_url, token=token)
    if settings is None:
        return 1
    if not settings.poster_token:
        print("Error: POSTER_TOKEN is not set in the environment.", file=sys.stderr)
        return 1
    period = interval if interval is not None else settings.interval_seconds
    if period < 1:
        print("Error: --interval must be a positive number of seconds.", file=sys.stderr)
        return 1

    from db.client import dispose_engine, get_engine

    from .orchestrator import run

    engine = get_engine(
        database_url=settings.database_url, statement_timeout_ms=settings.statement_timeout_ms
    )
    _logger.info("sync:schedule_start interval_s=%d", period)
    ticks = 0
    try:
        while max_ticks is None or ticks < max_ticks:
            t0 = time.monotonic()
            ticks += 1
            try:
                summary = run(settings.poster_token, engine, settings=settings)
                _logger.info("sync:tick_done tick=%d status=%s", ticks, summary.status)
            except Exception:
                # One bad tick must not stop the schedule.
                _logger.exception("sync:tick_crashed tick=%d", ticks)
            if max_ticks is not None and ticks >= max_ticks:
                break
            time.sleep(max(0.0, period - (time.monotonic() - t0)))
    except KeyboardInterrupt:
        _logger.info("sync:schedule_stopped ticks=%d", ticks)
    finally:
        dispose_engine()
    return 0


def cmd_ensure_schema(*, database_url: str | None = None) -> int:
    settings = _load_settings(database_url=database_url, token=None)
    if settings is None:
        return 1

    from db.client import dispose_engine, get_engine

    from .errors import SchemaEnsureError
    from .schema import ensure_schema

    engine = get_engine(
        database_url=settings.database_url, statement_timeout_ms=settings.statement_timeout_ms
    )
    try:
        created = ensure_schema(engine)
    except SchemaEnsureError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        dispose_engine()
    print("created: " + ", ".join(created) if created else "schema up to date")
    return 0


def cmd_status(*, database_url: str | None = None) -> int:
    """Print the watermark derived from the cache as JSON."""

    settings = _load_settings(database_url=database_url, token=None)
    if settings is None:
        return 1

    from db.client import dispose_engine, get_engine

    from .errors import SyncError
    from .schema import schema_exists
    from .watermark import read_watermark

    engine = get_engine(
        database_url=settings.database_url, statement_timeout_ms=settings.statement_timeout_ms
    )
    try:
        if not schema_exists(engine):
            print(
                "Error: pos_transactions does not exist; run `pos-sync ensure-schema` first.",
                file=sys.stderr,
            )
            return 1
        watermark = read_watermark(engine)
    except SyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        dispose_engine()
    print(json.dumps(watermark.to_dict(), sort_keys=True))
    return 0


# ---- Typer-based console interface -------------------------------------------


app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Sync Poster POS transactions into the local pos_transactions cache. "
        "Loads POSTER_TOKEN and DATABASE_URL from a local .env before running."
    ),
)


@app.command("run")
def run_cmd(
    *,
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
    token: str | None = typer.Option(
        None, help="Override POSTER_TOKEN (falls back to env var)."
    ),
) -> None:
    """Run a single sync pass."""

    raise typer.Exit(cmd_run(database_url=database_url, token=token))


@app.command("schedule")
def schedule_cmd(
    *,
    interval: int | None = typer.Option(
        None, help="Seconds between pass starts (default POS_SYNC_INTERVAL_SECONDS or 300)."
    ),
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
    token: str | None = typer.Option(
        None, help="Override POSTER_TOKEN (falls back to env var)."
    ),
    max_ticks: int | None = typer.Option(
        None, hidden=True, help="Stop after this many passes."
    ),
) -> None:
    """Run sync passes on a fixed interval until interrupted."""

    raise typer.Exit(
        cmd_schedule(
            interval=interval, database_url=database_url, token=token, max_ticks=max_ticks
        )
    )


@app.command("ensure-schema")
def ensure_schema_cmd(
    *,
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> None:
    """Create the cache table and indexes when missing."""

    raise typer.Exit(cmd_ensure_schema(database_url=database_url))


@app.command("status")
def status_cmd(
    *,
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> None:
    """Print the cache watermark."""

    raise typer.Exit(cmd_status(database_url=database_url))


@app.callback()
def _root(
    log_level: str | None = typer.Option(
        None, help="Log level (default POS_SYNC_LOG_LEVEL or INFO)."
    ),
) -> None:
    """Root command.

    Loads ``.env`` from the current working directory (without overriding any
    already-set environment variables) and configures logging.
    """

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging(log_level)


if __name__ == "__main__":  # pragma: no cover
    app()
