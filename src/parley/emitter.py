"""Ordered chunk delivery to the caller's sink."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
import inspect
from typing import TYPE_CHECKING, Any, Union

from parley.types import StreamChunk

if TYPE_CHECKING:
    from parley.cancellation import CancelToken
    from parley.metrics import MetricsTracker
    from parley.parts import FunctionCallPart
    from parley.types import ToolStatus

ChunkSink = Callable[[StreamChunk], Union[Awaitable[None], None]]


class ChunkEmitter:
    """Single-consumer, in-order delivery of ``StreamChunk`` events.

    Every depth of a tool-call chain writes through the same emitter, so
    chunks reach the sink in production order. The sink is awaited before the
    next chunk is built; nothing is buffered or dropped. Once the token is
    cancelled no further chunks are delivered.

    Usage and metrics are read from the tracker when a chunk is emitted, which
    keeps ``time_completion_millsec`` non-decreasing across the session.
    """

    def __init__(
        self,
        sink: ChunkSink,
        *,
        tracker: MetricsTracker,
        token: CancelToken,
    ) -> None:
        self._sink = sink
        self._tracker = tracker
        self._token = token
        self._statuses: dict[str, ToolStatus] = {}
        self.emitted = 0

    @property
    def tool_statuses(self) -> list[ToolStatus]:
        return list(self._statuses.values())

    def upsert_status(self, status: ToolStatus) -> None:
        """Track *status* by id; a later upsert replaces the same entry."""
        self._statuses[status.id] = status

    async def emit(
        self,
        text: str = "",
        *,
        search_metadata: Any = None,
        function_calls: list[FunctionCallPart] | None = None,
    ) -> bool:
        """Deliver one chunk. Returns False when cancelled and nothing was sent."""
        if self._token.is_cancelled:
            return False

        chunk = StreamChunk(
            text=text,
            usage=self._tracker.usage,
            metrics=self._tracker.metrics(),
        )
        if self._statuses:
            chunk["tool_statuses"] = self.tool_statuses
        if search_metadata is not None:
            chunk["search_metadata"] = search_metadata
        if function_calls:
            chunk["function_calls"] = list(function_calls)

        result = self._sink(chunk)
        if inspect.isawaitable(result):
            await result
        self.emitted += 1
        return True
