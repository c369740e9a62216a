"""Provider protocol: minimal interface for model endpoints."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from contextlib import AbstractAsyncContextManager

    from parley.providers.models import FileReference, ProviderRequest, ProviderResponse
    from parley.types import Attachment


@dataclass(frozen=True)
class ProviderCapabilities:
    """Feature flags exposed by providers."""

    streaming: bool
    uploads: bool
    tools: bool = False
    web_search: bool = False


@runtime_checkable
class FileStore(Protocol):
    """Remote file store used for attachments too large to send inline.

    Both operations must be idempotent under caller retry; the encoder does
    not retry them.
    """

    async def lookup_file(self, attachment: Attachment) -> FileReference | None:
        """Return the stored reference for *attachment*, or None when absent."""
        ...

    async def upload_file(self, attachment: Attachment) -> FileReference:
        """Upload *attachment* and return its reference."""
        ...


@runtime_checkable
class Provider(FileStore, Protocol):
    """Minimal provider protocol: generate, stream, and the file store."""

    async def generate(self, request: ProviderRequest) -> ProviderResponse:
        """Issue one request and return the full response."""
        ...

    def stream(
        self, request: ProviderRequest
    ) -> AbstractAsyncContextManager[AsyncIterator[ProviderResponse]]:
        """Open a response stream.

        Entering the context issues the request; exiting it releases the
        underlying network stream on every path.
        """
        ...

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Feature capabilities for option validation."""
        ...
