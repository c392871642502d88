from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine, inspect
from typer.testing import CliRunner

import pos_sync.cli as cli_mod
import pos_sync.orchestrator as orchestrator_mod
from pos_sync.cli import app
from tests.helpers.fake_poster import FakePoster, poster_row

runner = CliRunner()


@pytest.fixture
def fake(monkeypatch: pytest.MonkeyPatch) -> FakePoster:
    now = datetime.now(UTC)
    poster = FakePoster([poster_row(i, created=now - timedelta(hours=i)) for i in range(1, 4)])
    monkeypatch.setattr(orchestrator_mod, "PosterClient", lambda *a, **kw: poster)
    return poster


@pytest.fixture
def db_url(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    url = f"sqlite+pysqlite:///{tmp_path / 'cache.sqlite3'}"
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.setenv("POSTER_TOKEN", "tok")
    return url


def test_run_prints_summary(fake: FakePoster, db_url: str) -> None:
    result = runner.invoke(app, ["run"])
    assert result.exit_code == 0, result.output
    summary = json.loads(result.stdout)
    assert summary["status"] == "ok"
    assert summary["created"] == 3
    assert summary["errors"] == []


def test_run_requires_token(monkeypatch: pytest.MonkeyPatch, db_url: str) -> None:
    monkeypatch.delenv("POSTER_TOKEN")
    result = runner.invoke(app, ["run"])
    assert result.exit_code == 1
    assert "POSTER_TOKEN" in result.output


def test_run_reads_dotenv_without_overriding(
    fake: FakePoster, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    url = f"sqlite+pysqlite:///{tmp_path / 'from-env-file.sqlite3'}"
    Path(".env").write_text(f"DATABASE_URL={url}\nPOSTER_TOKEN=from-file\n", encoding="utf-8")
    result = runner.invoke(app, ["run"])
    assert result.exit_code == 0, result.output
    assert (tmp_path / "from-env-file.sqlite3").exists()


def test_failed_pass_exits_non_zero(fake: FakePoster, tmp_path: Path) -> None:
    url = f"sqlite+pysqlite:///{tmp_path / 'missing' / 'cache.sqlite3'}"
    result = runner.invoke(app, ["run", "--database-url", url, "--token", "tok"])
    assert result.exit_code == 1
    assert json.loads(result.stdout)["status"] == "failed"


def test_invalid_setting_is_reported(monkeypatch: pytest.MonkeyPatch, db_url: str) -> None:
    monkeypatch.setenv("POS_SYNC_PAGE_SIZE", "many")
    result = runner.invoke(app, ["run"])
    assert result.exit_code == 1
    assert "POS_SYNC_PAGE_SIZE" in result.output


def test_ensure_schema_then_status(db_url: str) -> None:
    first = runner.invoke(app, ["ensure-schema"])
    assert first.exit_code == 0
    assert "pos_transactions" in first.stdout
    again = runner.invoke(app, ["ensure-schema"])
    assert "schema up to date" in again.stdout

    status = runner.invoke(app, ["status"])
    assert status.exit_code == 0
    assert json.loads(status.stdout)["row_count"] == 0


def test_schedule_survives_a_crashing_tick(
    monkeypatch: pytest.MonkeyPatch, fake: FakePoster, db_url: str
) -> None:
    calls = {"n": 0}

    def flaky_client(*a, **kw):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("boom")
        return fake

    monkeypatch.setattr(orchestrator_mod, "PosterClient", flaky_client)
    slept: list[float] = []
    monkeypatch.setattr(cli_mod.time, "sleep", lambda s: slept.append(s))

    result = runner.invoke(app, ["schedule", "--interval", "60", "--max-ticks", "2"])

    assert result.exit_code == 0, result.output
    assert calls["n"] == 2
    assert len(slept) == 1
    status = runner.invoke(app, ["status"])
    assert json.loads(status.stdout)["row_count"] == 3


def test_status_does_not_create_the_table(db_url: str) -> None:
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 1
    assert "ensure-schema" in result.output

    engine = create_engine(db_url)
    try:
        assert not inspect(engine).has_table("pos_transactions")
    finally:
        engine.dispose()


def test_statement_timeout_reaches_the_engine(
    monkeypatch: pytest.MonkeyPatch, fake: FakePoster, db_url: str
) -> None:
    seen: list[int | None] = []
    real = orchestrator_mod.create_store_engine

    def recording(url: str, *, statement_timeout_ms: int | None = None):
        seen.append(statement_timeout_ms)
        return real(url, statement_timeout_ms=statement_timeout_ms)

    monkeypatch.setattr(orchestrator_mod, "create_store_engine", recording)
    monkeypatch.setenv("POS_SYNC_STATEMENT_TIMEOUT_MS", "5000")

    result = runner.invoke(app, ["run"])

    assert result.exit_code == 0, result.output
    assert seen == [5000]
