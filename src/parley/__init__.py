"""Parley: streamed, tool-calling conversations with LLM endpoints.

Public API:
    - completions(): Answer the last message, delivering chunks to a callback
    - stream(): The same, as an async iterator of chunks
    - cancel(): Stop the session answering a message
    - Message / Attachment / ToolDescriptor: Conversation inputs
    - Config / Options: Provider configuration and per-call settings
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable, Sequence
import logging
from typing import TYPE_CHECKING

from parley.cancellation import CancellationRegistry, CancelToken
from parley.config import Config
from parley.errors import (
    APIError,
    AttachmentError,
    ConfigurationError,
    DependencyUnavailableError,
    InternalError,
    ParleyError,
    RateLimitError,
    StreamInterruptedError,
)
from parley.options import Options
from parley.retry import RetryPolicy
from parley.session import CompletionSession, FilteredMessagesHook, SessionState
from parley.types import (
    Attachment,
    Message,
    StreamChunk,
    ToolDescriptor,
    ToolInvocation,
    ToolStatus,
)

if TYPE_CHECKING:
    from parley.emitter import ChunkSink
    from parley.providers.base import Provider

try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("parley-ai")
except PackageNotFoundError:
    __version__ = "0.0.0+unknown"

# Library-level NullHandler: stay silent unless the consumer configures logging.
logging.getLogger("parley").addHandler(logging.NullHandler())

logger = logging.getLogger(__name__)

# Tokens of running sessions, keyed by the id of the message being answered.
_cancellations = CancellationRegistry()


async def completions(
    messages: Sequence[Message],
    *,
    config: Config,
    options: Options | None = None,
    tools: Iterable[ToolDescriptor] = (),
    on_chunk: ChunkSink,
    on_filtered_messages: FilteredMessagesHook | None = None,
    token: CancelToken | None = None,
) -> CompletionSession:
    """Answer the last message of *messages*, streaming chunks to *on_chunk*.

    Returns after the tool-call chain resolves or the session is cancelled
    via ``cancel(message_id)`` or *token*.

    Args:
        messages: Conversation, oldest first. The last user-visible message is
            the current ask.
        config: Configuration specifying provider and model.
        options: Optional assistant settings (prompt, context size, streaming).
        tools: Tools the model may call, narrowed by the ask's enabled set.
        on_chunk: Receives each chunk in order; may be sync or async.
        on_filtered_messages: Receives the messages kept as context.
        token: Optional caller-held cancellation token.

    Returns:
        The finished session, exposing final ``state``, ``usage`` and
        ``tool_statuses``.

    Example:
        config = Config(provider="gemini", model="gemini-2.0-flash")
        session = await completions(
            [Message(role="user", content="Hi")],
            config=config,
            on_chunk=lambda chunk: print(chunk["text"], end=""),
        )
        print(session.usage["total_tokens"])
    """
    provider = _get_provider(config)
    session = CompletionSession(
        provider,
        config=config,
        options=options,
        tools=tools,
        sink=on_chunk,
        token=token,
    )

    try:
        await session.run(messages, on_filtered_messages, registry=_cancellations)
    finally:
        aclose = getattr(provider, "aclose", None)
        if callable(aclose):
            try:
                await aclose()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # Cleanup should never mask the primary failure.
                logger.warning("Provider cleanup failed: %s", exc)

    return session


async def stream(
    messages: Sequence[Message],
    *,
    config: Config,
    options: Options | None = None,
    tools: Iterable[ToolDescriptor] = (),
    token: CancelToken | None = None,
) -> AsyncIterator[StreamChunk]:
    """Answer the last message of *messages* as an async iterator of chunks.

    Leaving the loop early cancels the session. Session errors are raised
    from the iterator after the chunks delivered before them.

    Example:
        async for chunk in stream(messages, config=config):
            print(chunk["text"], end="")
    """
    token = token or CancelToken()
    queue: asyncio.Queue[StreamChunk | None] = asyncio.Queue()

    async def produce() -> None:
        try:
            await completions(
                messages,
                config=config,
                options=options,
                tools=tools,
                on_chunk=queue.put,
                token=token,
            )
        finally:
            queue.put_nowait(None)

    task = asyncio.create_task(produce())
    try:
        while True:
            chunk = await queue.get()
            if chunk is None:
                break
            yield chunk
        await task
    finally:
        if not task.done():
            token.cancel()
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)


def cancel(message_id: str) -> bool:
    """Cancel the session answering *message_id*.

    Returns False when no such session is running.
    """
    return _cancellations.cancel(message_id)


def _get_provider(config: Config) -> Provider:
    """Get the appropriate provider based on configuration."""
    if config.use_mock:
        from parley.providers.mock import MockProvider

        return MockProvider()

    from parley.providers.gemini import GeminiProvider

    if not config.api_key:
        raise ConfigurationError(
            "api_key required for real API",
            hint="Set GEMINI_API_KEY or pass Config(api_key=...).",
        )
    return GeminiProvider(config.api_key, base_url=config.base_url)


# Re-export for convenience
__all__ = [
    "APIError",
    "Attachment",
    "AttachmentError",
    "CancelToken",
    "CompletionSession",
    "Config",
    "ConfigurationError",
    "DependencyUnavailableError",
    "InternalError",
    "Message",
    "Options",
    "ParleyError",
    "RateLimitError",
    "RetryPolicy",
    "SessionState",
    "StreamChunk",
    "StreamInterruptedError",
    "ToolDescriptor",
    "ToolInvocation",
    "ToolStatus",
    "cancel",
    "completions",
    "stream",
]
