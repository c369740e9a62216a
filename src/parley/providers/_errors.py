"""Shared provider-side error helpers.

Providers map SDK exceptions into the APIError family so the session can
tell request-setup failures (``DependencyUnavailableError``) from transport
failures after a stream opened (``StreamInterruptedError``), and so retry
decisions rest on structured metadata.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any

import httpx

from parley._http import RETRYABLE_STATUS_CODES, UNAVAILABLE_STATUS_CODES
from parley.errors import (
    APIError,
    DependencyUnavailableError,
    RateLimitError,
    StreamInterruptedError,
    _walk_exception_chain,
)

# Phases that happen before any unit reaches the caller.
_SETUP_PHASES = frozenset({"generate", "connect", "lookup", "upload"})

# google.rpc durations, e.g. "8s" or "0.5s".
_DURATION_RE = re.compile(r"^(\d+(?:\.\d+)?)s$")


def _http_status(value: Any) -> int | None:
    if isinstance(value, int) and not isinstance(value, bool) and 100 <= value <= 599:
        return value
    return None


def extract_status_code(exc: BaseException) -> int | None:
    """First HTTP status found on *exc* or its cause chain."""
    for e in _walk_exception_chain(exc):
        candidates = (
            getattr(e, "status_code", None),
            getattr(e, "status", None),
            getattr(e, "code", None),
            getattr(getattr(e, "response", None), "status_code", None),
        )
        for value in candidates:
            status = _http_status(value)
            if status is not None:
                return status
    return None


def _header_retry_after(exc: BaseException) -> float | None:
    headers: Any = getattr(getattr(exc, "response", None), "headers", None)
    getter = getattr(headers, "get", None)
    if not callable(getter):
        return None
    raw = getter("Retry-After")
    if not isinstance(raw, str):
        return None
    try:
        seconds = float(raw.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def _google_retry_info(exc: BaseException) -> float | None:
    """Retry delay from a Google ``RetryInfo`` entry in ``exc.details``.

    The SDK's ``ClientError`` keeps the parsed error body there::

        {"error": {"details": [{"@type": "...RetryInfo", "retryDelay": "8s"}]}}
    """
    details: Any = getattr(exc, "details", None)
    error: Any = details.get("error") if isinstance(details, dict) else None
    entries: Any = error.get("details") if isinstance(error, dict) else None
    for entry in entries if isinstance(entries, list) else ():
        if not isinstance(entry, dict) or "RetryInfo" not in str(entry.get("@type", "")):
            continue
        match = _DURATION_RE.match(str(entry.get("retryDelay", "")))
        if match:
            return float(match.group(1))
    return None


def extract_retry_after_s(exc: BaseException) -> float | None:
    """Retry-after delay in seconds from *exc* or its cause chain."""
    for e in _walk_exception_chain(exc):
        value = getattr(e, "retry_after", None)
        if isinstance(value, (int, float)) and value >= 0:
            return float(value)
        for source in (_header_retry_after, _google_retry_info):
            seconds = source(e)
            if seconds is not None:
                return seconds
    return None


def is_transport_error(exc: BaseException) -> bool:
    """Whether *exc* (or its chain) is a connection-level failure."""
    for e in _walk_exception_chain(exc):
        if isinstance(e, (httpx.TimeoutException, httpx.RequestError)):
            return True
        if isinstance(e, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
            return True
    return False


def _auth_hint(status_code: int | None, cause_message: str) -> str | None:
    """Generate a hint for auth errors where naming the env var is useful."""
    cause_lower = cause_message.lower()
    if status_code in {401, 403} or (
        status_code == 400 and ("api key" in cause_lower or "api_key" in cause_lower)
    ):
        return "Check credentials/permissions (try setting GEMINI_API_KEY or Config.api_key)."
    return None


def wrap_provider_error(
    exc: BaseException,
    *,
    provider: str,
    phase: str,
    message: str | None = None,
    hint: str | None = None,
    depth: int | None = None,
) -> APIError:
    """Map provider SDK exceptions into APIError with stable retry metadata.

    Phases:
    - ``generate`` / ``connect``: opening a request (non-streaming or stream).
    - ``lookup`` / ``upload``: file-store calls made while encoding.
    - ``stream``: iterating a stream that already opened.
    """
    if isinstance(exc, asyncio.CancelledError):
        raise exc

    # Already wrapped: fill in missing context only.
    if isinstance(exc, APIError):
        if exc.provider is None:
            exc.provider = provider
        if exc.phase is None:
            exc.phase = phase
        if exc.depth is None:
            exc.depth = depth
        if hint is not None and exc.hint is None:
            exc.hint = hint
        return exc

    status_code = extract_status_code(exc)
    retry_after_s = extract_retry_after_s(exc)
    transport = is_transport_error(exc)

    retryable = retry_after_s is not None or transport
    if isinstance(status_code, int) and status_code in RETRYABLE_STATUS_CODES:
        retryable = True

    derived_hint = hint if hint is not None else _auth_hint(status_code, str(exc))

    err_cls: type[APIError] = APIError
    if phase == "stream":
        err_cls = StreamInterruptedError
        retryable = False
    elif status_code == 429:
        err_cls = RateLimitError
    elif phase in _SETUP_PHASES and (
        transport or status_code in UNAVAILABLE_STATUS_CODES
    ):
        err_cls = DependencyUnavailableError

    msg = message or f"{provider} {phase} failed"
    status_note = f" (status={status_code})" if isinstance(status_code, int) else ""
    cause = str(exc)
    return err_cls(
        f"{msg}{status_note}: {cause}" if cause else f"{msg}{status_note}",
        hint=derived_hint,
        retryable=retryable,
        status_code=status_code,
        retry_after_s=retry_after_s,
        provider=provider,
        phase=phase,
        depth=depth,
    )
