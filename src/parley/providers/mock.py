"""Mock provider for testing."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from parley.parts import TextPart
from parley.providers.base import ProviderCapabilities
from parley.providers.models import FileReference, ProviderRequest, ProviderResponse

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from parley.types import Attachment


class MockProvider:
    """Mock provider for testing without API calls.

    Echoes the text of the last request turn. Streams it word by word, with
    usage reported on the final unit only.
    """

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Return supported feature flags."""
        return ProviderCapabilities(streaming=True, uploads=True)

    @staticmethod
    def _echo(request: ProviderRequest) -> str:
        last = request.contents[-1] if request.contents else None
        texts = [p.text for p in (last.parts if last else ()) if isinstance(p, TextPart)]
        text = next((t for t in texts if t.strip()), "")
        return f"echo: {text[:100]}"

    async def generate(self, request: ProviderRequest) -> ProviderResponse:
        """Return a deterministic mock response."""
        return ProviderResponse(
            text=self._echo(request),
            usage={"prompt_tokens": 10, "completion_tokens": 10, "total_tokens": 20},
        )

    @asynccontextmanager
    async def stream(
        self, request: ProviderRequest
    ) -> AsyncIterator[AsyncIterator[ProviderResponse]]:
        """Stream the echo one word per unit."""
        words = self._echo(request).split(" ")

        final_usage = {
            "prompt_tokens": 10,
            "completion_tokens": len(words),
            "total_tokens": 10 + len(words),
        }

        async def units() -> AsyncIterator[ProviderResponse]:
            for i, word in enumerate(words):
                last = i == len(words) - 1
                yield ProviderResponse(
                    text=word if last else f"{word} ",
                    usage=final_usage if last else {},
                )

        gen = units()
        try:
            yield gen
        finally:
            await gen.aclose()

    async def lookup_file(self, attachment: Attachment) -> FileReference | None:  # noqa: ARG002
        """Nothing is ever stored."""
        return None

    async def upload_file(self, attachment: Attachment) -> FileReference:
        """Return a mock upload reference."""
        return FileReference(
            uri=f"mock://uploaded/{attachment.name}", mime_type=attachment.mime_type
        )
