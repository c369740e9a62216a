"""Exception hierarchy for Parley.

Only request-setup and transport failures are raised out of a session. Tool
failures, unresolved tool calls and cancellation are represented as data.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator


class ParleyError(Exception):
    """Base exception for all Parley errors."""

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint


class ConfigurationError(ParleyError):
    """Configuration or per-call options failed validation."""


class AttachmentError(ParleyError):
    """An attachment could not be loaded or encoded."""


class InternalError(ParleyError):
    """A Parley internal error (bug) or invariant violation."""


class APIError(ParleyError):
    """A provider call failed.

    Providers attach retry metadata so request setup can perform bounded
    retries without brittle substring matching.
    """

    def __init__(
        self,
        message: str,
        *,
        hint: str | None = None,
        retryable: bool | None = None,
        status_code: int | None = None,
        retry_after_s: float | None = None,
        provider: str | None = None,
        phase: str | None = None,
        depth: int | None = None,
    ) -> None:
        super().__init__(message, hint=hint)
        self.retryable = retryable
        self.status_code = status_code
        self.retry_after_s = retry_after_s
        self.provider = provider
        self.phase = phase
        self.depth = depth


class RateLimitError(APIError):
    """Rate limit exceeded (HTTP 429)."""


class DependencyUnavailableError(APIError):
    """The file store or the model endpoint was unreachable during setup.

    Raised before any chunk of the session is emitted.
    """


class StreamInterruptedError(APIError):
    """The response stream failed after it was opened.

    Chunks delivered before the failure remain valid partial output.
    """


def _walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield *exc* and its ``__cause__``/``__context__`` chain, with cycle protection."""
    seen: set[int] = set()
    stack: list[BaseException] = [exc]
    while stack:
        cur = stack.pop()
        if id(cur) in seen:
            continue
        seen.add(id(cur))
        yield cur

        cause = cur.__cause__
        if isinstance(cause, BaseException):
            stack.append(cause)
        context = cur.__context__
        if isinstance(context, BaseException):
            stack.append(context)
