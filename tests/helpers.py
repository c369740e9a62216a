"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: it exists to prevent test suites from
growing lots of one-off provider subclasses as coverage expands.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Union

from parley.parts import FunctionCallPart
from parley.providers.base import ProviderCapabilities
from parley.providers.models import FileReference, ProviderRequest, ProviderResponse
from parley.types import ToolDescriptor

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from parley.types import Attachment, StreamChunk

Unit = Union[ProviderResponse, BaseException]


def unit(
    text: str = "", *, calls: list[FunctionCallPart] | None = None, **usage: int
) -> ProviderResponse:
    """Build one stream unit; keyword args become usage counters."""
    return ProviderResponse(
        text=text, usage=dict(usage), function_calls=list(calls or [])
    )


def call(name: str, **args: Any) -> FunctionCallPart:
    return FunctionCallPart(name=name, args=args)


@dataclass
class FakeFileStore:
    """File store double keyed by attachment name."""

    stored: dict[str, FileReference] = field(default_factory=dict)
    upload_error: BaseException | None = None
    lookups: list[str] = field(default_factory=list)
    uploads: list[str] = field(default_factory=list)

    async def lookup_file(self, attachment: Attachment) -> FileReference | None:
        self.lookups.append(attachment.name)
        return self.stored.get(attachment.name)

    async def upload_file(self, attachment: Attachment) -> FileReference:
        self.uploads.append(attachment.name)
        if self.upload_error is not None:
            raise self.upload_error
        ref = FileReference(
            uri=f"files/{attachment.name}", mime_type=attachment.mime_type
        )
        self.stored[attachment.name] = ref
        return ref


@dataclass
class ScriptedProvider(FakeFileStore):
    """Provider that plays back scripted streams and responses.

    Each ``stream()`` open consumes the next entry of ``streams``: a list of
    units, where an exception entry is raised at that point of the stream.
    An exception in place of the list fails the open itself.
    """

    streams: list[list[Unit] | BaseException] = field(default_factory=list)
    responses: list[Unit] = field(default_factory=list)
    requests: list[ProviderRequest] = field(default_factory=list)
    opened: int = 0
    closed: int = 0

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(streaming=True, uploads=True, tools=True, web_search=True)

    async def generate(self, request: ProviderRequest) -> ProviderResponse:
        self.requests.append(request)
        item = self.responses.pop(0) if self.responses else unit("ok")
        if isinstance(item, BaseException):
            raise item
        return item

    @asynccontextmanager
    async def stream(
        self, request: ProviderRequest
    ) -> AsyncIterator[AsyncIterator[ProviderResponse]]:
        self.requests.append(request)
        script = self.streams.pop(0) if self.streams else [unit("ok")]
        if isinstance(script, BaseException):
            raise script
        self.opened += 1

        async def units() -> AsyncIterator[ProviderResponse]:
            for item in script:
                await asyncio.sleep(0)
                if isinstance(item, BaseException):
                    raise item
                yield item

        gen = units()
        try:
            yield gen
        finally:
            await gen.aclose()
            self.closed += 1


@dataclass
class ChunkLog:
    """Sink that records chunks plus a snapshot of their tool statuses.

    Statuses are mutated in place after emission, so assertions about what a
    chunk carried must use ``statuses(i)`` rather than the chunk itself.
    """

    chunks: list[StreamChunk] = field(default_factory=list)
    seen: list[list[tuple[str, str]]] = field(default_factory=list)

    def __call__(self, chunk: StreamChunk) -> None:
        self.seen.append([(s.id, s.status) for s in chunk.get("tool_statuses", [])])
        self.chunks.append(chunk)

    @property
    def texts(self) -> list[str]:
        return [c["text"] for c in self.chunks]

    def statuses(self, i: int) -> list[tuple[str, str]]:
        """(id, status) pairs carried by chunk *i* when it was sent."""
        return self.seen[i]


def tool(
    name: str,
    result: Any = None,
    *,
    server: str | None = None,
    fail: bool = False,
) -> ToolDescriptor:
    """Tool double returning *result* or raising when *fail* is set."""

    def execute(invocation: Any) -> Any:
        if fail:
            raise RuntimeError(f"{name} exploded")
        return result if result is not None else {"ok": invocation.arguments}

    return ToolDescriptor(
        id=name, execute=execute, description=f"{name} tool", server=server
    )
