"""Cooperative cancellation for completion sessions.

A ``CancelToken`` is polled by the session at each suspension point: while
a stream opens (retry backoff included), before each stream unit, and before
and during each tool invocation. It can be signalled from any thread.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator
from contextlib import contextmanager
import logging
import threading
from typing import Any

logger = logging.getLogger(__name__)


class CancelledException(Exception):
    """Raised inside the session when a ``CancelToken`` interrupts a wait.

    Never escapes ``CompletionSession.run()``; a cancelled session returns
    normally.
    """

    def __init__(self, message: str = "Operation was cancelled") -> None:
        super().__init__(message)


class CancelToken:
    """Thread-safe cancellation signal for one session.

    Example:
        token = CancelToken()
        task = asyncio.create_task(work())
        if not await token.wait_for(task):
            return  # cancelled; ``task`` keeps running in the background
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    def cancel(self) -> None:
        """Request cancellation.

        Idempotent: callbacks run once, on the first call only.
        """
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        # Outside the lock so callbacks may touch the token.
        for callback in callbacks:
            self._run_callback(callback)

    @property
    def is_cancelled(self) -> bool:
        """Whether ``cancel()`` has been called."""
        return self._cancelled

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Register *callback* to run on cancellation.

        Runs immediately when the token is already cancelled.
        """
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        self._run_callback(callback)

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

    @staticmethod
    def _run_callback(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception:
            logger.exception("Cancellation callback failed")

    async def wait_for(self, task: asyncio.Future[Any], *, cancel_task: bool = False) -> bool:
        """Wait until *task* finishes or the token is cancelled.

        Returns True when the task finished first. On cancellation returns
        False; the task is left running unless *cancel_task* is set.
        """
        if not self._cancelled and not task.done():
            loop = asyncio.get_running_loop()
            waiter: asyncio.Future[None] = loop.create_future()

            def wake() -> None:
                if not waiter.done():
                    waiter.set_result(None)

            def on_cancel() -> None:
                loop.call_soon_threadsafe(wake)

            self.add_callback(on_cancel)
            try:
                await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                self.remove_callback(on_cancel)
                waiter.cancel()

        if self._cancelled:
            if cancel_task and not task.done():
                task.cancel()
            return False
        return True

    async def sleep(self, delay_s: float) -> bool:
        """Sleep for *delay_s* seconds unless cancelled first.

        Returns False when the sleep was cut short by cancellation.
        """
        if self._cancelled:
            return False
        return await self.wait_for(
            asyncio.ensure_future(asyncio.sleep(delay_s)), cancel_task=True
        )


class CancellationRegistry:
    """Tokens keyed by the id of the message being answered."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tokens: dict[str, CancelToken] = {}

    @contextmanager
    def open(self, key: str, token: CancelToken | None = None) -> Iterator[CancelToken]:
        """Register a token under *key* for the duration of the block."""
        token = token or CancelToken()
        with self._lock:
            self._tokens[key] = token
        try:
            yield token
        finally:
            with self._lock:
                if self._tokens.get(key) is token:
                    del self._tokens[key]

    def get(self, key: str) -> CancelToken | None:
        with self._lock:
            return self._tokens.get(key)

    def cancel(self, key: str) -> bool:
        """Cancel the session answering *key*. Returns False if none is active."""
        token = self.get(key)
        if token is None:
            return False
        logger.debug("Cancelling session for message %s", key)
        token.cancel()
        return True

    def cancel_all(self) -> int:
        """Cancel every registered session and return how many were signalled."""
        with self._lock:
            tokens = list(self._tokens.values())
        for token in tokens:
            token.cancel()
        return len(tokens)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)
