"""Bounded async retry for opening provider requests.

Only the *open* of a request is retried (a non-streaming generate call, or
the first round trip of a stream). Uploads and mid-stream iteration are never
retried here: once a unit has been relayed to the caller, replaying the
request would duplicate output.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
import time
from typing import TYPE_CHECKING, TypeVar

import httpx

from parley._http import RETRYABLE_STATUS_CODES
from parley.cancellation import CancelledException
from parley.errors import APIError, StreamInterruptedError, _walk_exception_chain

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from parley.cancellation import CancelToken

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """How often, and how patiently, a failed request open is retried.

    ``max_attempts`` counts the first try. Sleeps grow by
    ``backoff_multiplier`` from ``initial_delay_s`` up to ``max_delay_s``;
    with ``jitter`` each sleep is drawn uniformly below that ceiling. A
    provider-supplied retry-after hint is honored as a lower bound, and no
    retry starts once ``max_elapsed_s`` has passed.
    """

    max_attempts: int = 2
    initial_delay_s: float = 0.5
    backoff_multiplier: float = 2.0
    max_delay_s: float = 5.0
    jitter: bool = True
    max_elapsed_s: float | None = 15.0

    def __post_init__(self) -> None:
        """Reject settings that would make retry timing undefined."""
        checks = (
            (self.max_attempts >= 1, "max_attempts must be >= 1"),
            (self.initial_delay_s >= 0, "initial_delay_s must be >= 0"),
            (self.backoff_multiplier > 0, "backoff_multiplier must be > 0"),
            (self.max_delay_s >= 0, "max_delay_s must be >= 0"),
            (
                self.max_elapsed_s is None or self.max_elapsed_s >= 0,
                "max_elapsed_s must be >= 0 or None",
            ),
        )
        for ok, message in checks:
            if not ok:
                raise ValueError(f"RetryPolicy.{message}")

    def delay_for(self, retry_number: int, retry_after_s: float | None = None) -> float:
        """Seconds to sleep before retry number *retry_number* (1-based)."""
        ceiling = min(
            self.max_delay_s,
            self.initial_delay_s * self.backoff_multiplier ** (retry_number - 1),
        )
        delay = ceiling
        if self.jitter and ceiling > 0:
            delay = random.uniform(0, ceiling)  # noqa: S311
        if retry_after_s is not None:
            delay = max(delay, retry_after_s)
        return delay


def should_retry_open(exc: BaseException) -> bool:
    """Return True when a failed request *open* should be retried.

    Cancellation and interrupted streams are never retried. ``APIError`` is
    retried when the provider marked it retryable or its status is a known
    transient one; bare timeout and transport exceptions are retried too.
    """
    if isinstance(exc, (asyncio.CancelledError, StreamInterruptedError)):
        return False

    if isinstance(exc, APIError):
        if exc.retryable is True:
            return True
        return exc.status_code in RETRYABLE_STATUS_CODES

    return any(
        isinstance(
            e,
            (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException, httpx.RequestError),
        )
        for e in _walk_exception_chain(exc)
    )


async def retry_async(
    factory: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    should_retry: Callable[[BaseException], bool] = should_retry_open,
    token: CancelToken | None = None,
) -> T:
    """Await ``factory()``, calling it again on retryable failures.

    With a *token*, no attempt starts after cancellation and backoff sleeps
    end early; both raise ``CancelledException``.
    """
    deadline = (
        None if policy.max_elapsed_s is None else time.monotonic() + policy.max_elapsed_s
    )
    attempt = 1
    while True:
        if token is not None and token.is_cancelled:
            raise CancelledException("Cancelled before request open")
        try:
            return await factory()
        except Exception as exc:
            if attempt >= policy.max_attempts or not should_retry(exc):
                raise

            retry_after = exc.retry_after_s if isinstance(exc, APIError) else None
            delay = policy.delay_for(attempt, retry_after)
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise
                delay = min(delay, remaining)

            logger.debug(
                "Request open failed (attempt %d/%d), retrying in %.2fs: %s",
                attempt,
                policy.max_attempts,
                delay,
                exc,
            )
            if token is not None:
                if not await token.sleep(delay):
                    raise CancelledException("Cancelled during retry backoff") from exc
            elif delay > 0:
                await asyncio.sleep(delay)
            attempt += 1
