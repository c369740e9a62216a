"""Timing and token accounting for one completion session."""

from __future__ import annotations

from collections.abc import Callable, Mapping
import time
from typing import Any

from parley.errors import InternalError
from parley.types import ChunkMetrics, Usage, zero_usage

_USAGE_KEYS = ("prompt_tokens", "completion_tokens", "total_tokens")


def _coerce_usage(raw: Mapping[str, Any] | None) -> Usage:
    usage = zero_usage()
    if not raw:
        return usage
    for key in _USAGE_KEYS:
        value = raw.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            usage[key] = value  # type: ignore[literal-required]
    return usage


class MetricsTracker:
    """Per-session clock and usage counters.

    ``usage`` always mirrors the most recent unit. ``total_usage`` sums the
    final usage of each stream in a tool-call chain, folded in once when the
    stream closes.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._start: float | None = None
        self._last_elapsed_ms = 0
        self._first_token_ms: int | None = None
        self._usage = zero_usage()
        self._open_streams: list[Usage | None] = []
        self.total_usage = zero_usage()

    def start(self) -> None:
        """Capture the session start time. Only the first call counts."""
        if self._start is None:
            self._start = self._clock()

    def elapsed_ms(self) -> int:
        """Milliseconds since ``start()``, never smaller than a previous reading."""
        if self._start is None:
            raise InternalError("MetricsTracker.elapsed_ms() called before start()")
        elapsed = round((self._clock() - self._start) * 1000)
        self._last_elapsed_ms = max(self._last_elapsed_ms, elapsed)
        return self._last_elapsed_ms

    def mark_first_token(self, depth: int) -> None:
        """Record time-to-first-token on the first top-level unit only."""
        if depth == 0 and self._first_token_ms is None:
            self._first_token_ms = self.elapsed_ms()

    @property
    def first_token_ms(self) -> int:
        return self._first_token_ms or 0

    @property
    def usage(self) -> Usage:
        return Usage(**self._usage)

    def record_usage(self, raw: Mapping[str, Any] | None) -> Usage:
        """Take usage verbatim from the latest unit, zero-filling gaps."""
        self._usage = _coerce_usage(raw)
        if self._open_streams:
            self._open_streams[-1] = self._usage
        return self.usage

    def open_stream(self) -> None:
        self._open_streams.append(None)

    def close_stream(self) -> None:
        """Fold the closing stream's last usage into ``total_usage``."""
        if not self._open_streams:
            return
        last = self._open_streams.pop()
        if last is None:
            return
        for key in _USAGE_KEYS:
            self.total_usage[key] += last[key]  # type: ignore[literal-required]

    def metrics(self) -> ChunkMetrics:
        """Metrics stamped on a chunk emitted now."""
        return ChunkMetrics(
            completion_tokens=self._usage["completion_tokens"],
            time_completion_millsec=self.elapsed_ms(),
            time_first_token_millsec=self.first_token_ms,
        )
