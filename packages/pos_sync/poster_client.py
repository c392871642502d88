"""Thin read-only client for the Poster POS web API.

GET ``<base_url>/<method>?token=...&...`` with ``urllib.request``. Poster wraps
every result as ``{"response": ...}`` and reports failures as
``{"error": ...}`` (often with HTTP 200), so the envelope is checked on every
call.

Retry scope is narrow: HTTP 429, HTTP 5xx, timeouts and connection errors
are retried with exponential backoff and jitter, honoring ``Retry-After``
when the server sends one. Everything else (401/403, other 4xx, error
envelopes, undecodable bodies) is terminal. Exhausting the attempts raises
:class:`~pos_sync.errors.RetriesExhaustedError`.
"""

from __future__ import annotations

import json
import random
import time
from dataclasses import dataclass
from datetime import date
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from .errors import (
    RetriesExhaustedError,
    UpstreamAuthError,
    UpstreamError,
    UpstreamPayloadError,
)
from .logging_setup import get_logger
from .settings import DEFAULT_POSTER_API_URL

# ---- Tunables (private) ------------------------------------------------------

_BACKOFF_SCHEDULE_SEC: tuple[float, ...] = (1.0, 2.0, 4.0, 8.0, 16.0)
_JITTER_PCT: float = 0.20
_MAX_RETRY_AFTER_SEC: float = 60.0
_USER_AGENT = "pos-sync/0.1"

_logger = get_logger("pos_sync.poster_client")


class _TransientError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, retry_after: float | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


@dataclass(frozen=True, slots=True)
class TransactionPage:
    """One page of raw transaction rows plus the total when the API reports it."""

    rows: list[Any]
    total: int | None = None


def _is_retryable(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code < 600


def _parse_retry_after(raw: str | None) -> float | None:
    if not raw:
        return None
    try:
        return max(0.0, min(float(raw.strip()), _MAX_RETRY_AFTER_SEC))
    except ValueError:
        # HTTP-date form is rare for this API; fall back to the schedule.
        return None


def _sleep_backoff(attempt_no: int, retry_after: float | None = None) -> None:
    if retry_after is not None:
        time.sleep(retry_after)
        return
    if attempt_no - 1 < len(_BACKOFF_SCHEDULE_SEC):
        base = _BACKOFF_SCHEDULE_SEC[attempt_no - 1]
    else:
        base = _BACKOFF_SCHEDULE_SEC[-1]
    jitter = base * _JITTER_PCT
    time.sleep(max(0.0, base + random.uniform(-jitter, jitter)))


def _format_api_date(d: date) -> str:
    return d.isoformat()


def _unwrap_envelope(body: bytes, *, method: str) -> Any:
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise UpstreamPayloadError(f"{method}: response is not valid JSON") from e
    if not isinstance(payload, dict):
        raise UpstreamPayloadError(f"{method}: unexpected response envelope {type(payload).__name__}")

    if payload.get("response") is not None:
        return payload["response"]

    err = payload.get("error")
    if err is not None:
        if isinstance(err, dict):
            code = err.get("code")
            message = err.get("message") or "unknown error"
        else:
            code = err
            message = payload.get("message") or "unknown error"
        raise UpstreamError(f"{method}: Poster API error {code}: {message}")
    raise UpstreamPayloadError(f"{method}: response envelope has no 'response' field")


def _parse_page(result: Any, *, method: str) -> TransactionPage:
    if isinstance(result, list):
        return TransactionPage(rows=result)
    if isinstance(result, dict) and isinstance(result.get("data"), list):
        raw_total = result.get("count")
        total: int | None = None
        if raw_total is not None:
            try:
                total = int(raw_total)
            except (TypeError, ValueError) as e:
                raise UpstreamPayloadError(f"{method}: non-integer count {raw_total!r}") from e
        return TransactionPage(rows=result["data"], total=total)
    raise UpstreamPayloadError(f"{method}: expected a list of transactions, got {type(result).__name__}")


class PosterClient:
    """Read-only Poster API client authenticated by a static token."""

    TRANSACTIONS_METHOD = "dash.getTransactions"

    def __init__(
        self,
        token: str,
        *,
        base_url: str = DEFAULT_POSTER_API_URL,
        timeout: float = 30.0,
        max_attempts: int = 5,
    ) -> None:
        if not token:
            raise UpstreamAuthError("Poster API token is not set")
        if max_attempts < 1:
            raise ValueError("max_attempts must be a positive integer")
        self._token = token
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_attempts = max_attempts

    def get_transactions_page(
        self, *, date_from: date, date_to: date, page: int, per_page: int
    ) -> TransactionPage:
        """Fetch one page of transactions created within ``[date_from, date_to]``."""

        result = self._get(
            self.TRANSACTIONS_METHOD,
            {
                "date_from": _format_api_date(date_from),
                "date_to": _format_api_date(date_to),
                "include_products": "true",
                "page": page,
                "per_page": per_page,
            },
        )
        return _parse_page(result, method=self.TRANSACTIONS_METHOD)

    # ---- transport ---------------------------------------------------------

    def _get(self, method: str, params: dict[str, Any]) -> Any:
        query = urlencode({"token": self._token, **params})
        url = f"{self._base_url}/{method}?{query}"
        attempt = 1
        while True:
            t0 = time.perf_counter()
            try:
                body = self._request_once(url, method=method)
                return _unwrap_envelope(body, method=method)
            except _TransientError as e:
                dt_ms = (time.perf_counter() - t0) * 1000.0
                if attempt >= self._max_attempts:
                    _logger.error(
                        "sync:upstream_failed_terminal method=%s attempts=%d latency_ms=%.2f error=%s",
                        method,
                        attempt,
                        dt_ms,
                        e,
                    )
                    raise RetriesExhaustedError(
                        f"{method} failed after {attempt} attempts: {e}",
                        status_code=e.status_code,
                    ) from e
                _logger.warning(
                    "sync:upstream_retry method=%s attempt=%d latency_ms=%.2f error=%s",
                    method,
                    attempt,
                    dt_ms,
                    e,
                )
                _sleep_backoff(attempt, e.retry_after)
                attempt += 1

    def _request_once(self, url: str, *, method: str) -> bytes:
        req = Request(url, method="GET")
        req.add_header("Accept", "application/json")
        req.add_header("User-Agent", _USER_AGENT)
        try:
            with urlopen(req, timeout=self._timeout) as resp:
                return resp.read()
        except HTTPError as e:
            if _is_retryable(e.code):
                raise _TransientError(
                    f"HTTP {e.code}",
                    status_code=e.code,
                    retry_after=_parse_retry_after(e.headers.get("Retry-After") if e.headers else None),
                ) from e
            if e.code in (401, 403):
                raise UpstreamAuthError(
                    f"{method}: credential rejected (HTTP {e.code})", status_code=e.code
                ) from e
            raise UpstreamError(f"{method}: HTTP {e.code} {e.reason}", status_code=e.code) from e
        except (URLError, TimeoutError, ConnectionError) as e:
            reason = getattr(e, "reason", None) or e.__class__.__name__
            raise _TransientError(f"network error: {reason}") from e


__all__ = ["PosterClient", "TransactionPage"]
