"""Completion session: dispatch, streaming, and the tool-call replay loop."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Sequence
from contextlib import AsyncExitStack, nullcontext
from enum import Enum
import inspect
import logging
from typing import TYPE_CHECKING, Any, Union

from parley.cancellation import CancelledException, CancelToken
from parley.emitter import ChunkEmitter
from parley.encoder import ConversationEncoder, build_context
from parley.errors import (
    APIError,
    ConfigurationError,
    DependencyUnavailableError,
    InternalError,
    StreamInterruptedError,
)
from parley.metrics import MetricsTracker
from parley.options import Options
from parley.parts import (
    ContentPart,
    ConversationTurn,
    FunctionResponsePart,
    History,
    TextPart,
)
from parley.providers.models import ProviderRequest
from parley.retry import retry_async
from parley.tools import filter_tools, invoke_tool, resolve_tool, to_declarations
from parley.types import ToolInvocation, ToolStatus, Usage

if TYPE_CHECKING:
    from parley.cancellation import CancellationRegistry
    from parley.config import Config
    from parley.emitter import ChunkSink
    from parley.parts import FunctionCallPart
    from parley.providers.base import Provider
    from parley.providers.models import ProviderResponse
    from parley.types import Message, ToolDescriptor

logger = logging.getLogger(__name__)

FilteredMessagesHook = Callable[[list["Message"]], Union[Awaitable[None], None]]


class SessionState(str, Enum):
    """Lifecycle of a completion session."""

    IDLE = "idle"
    DISPATCHED = "dispatched"
    STREAMING = "streaming"
    COMPLETED = "completed"
    TOOL_PAUSE = "tool_pause"
    RESUMED = "resumed"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


_TERMINAL = frozenset({SessionState.DONE, SessionState.CANCELLED, SessionState.FAILED})


class CompletionSession:
    """One "ask the model something" interaction.

    The session owns its history and every stream it opens. Chunks from all
    recursion depths go through one ``ChunkEmitter`` in production order.
    Cancellation is polled while a stream opens, before each stream unit,
    before each tool invocation and while a tool runs; a cancelled session
    returns normally.

    Example:
        session = CompletionSession(provider, config=config, sink=print)
        await session.run(messages)
    """

    def __init__(
        self,
        provider: Provider,
        *,
        config: Config,
        options: Options | None = None,
        tools: Iterable[ToolDescriptor] = (),
        sink: ChunkSink,
        token: CancelToken | None = None,
    ) -> None:
        self._provider = provider
        self._config = config
        self._options = options or Options()
        self._tools = tuple(tools)
        self.token = token or CancelToken()
        self.tracker = MetricsTracker()
        self._emitter = ChunkEmitter(sink, tracker=self.tracker, token=self.token)
        self._encoder = ConversationEncoder(
            provider, pdf_inline_limit_bytes=config.pdf_inline_limit_bytes
        )
        self.history = History()
        self.state = SessionState.IDLE
        self._active_tools: list[ToolDescriptor] = []
        self._declarations: list[dict[str, Any]] | None = None
        # Tool runs outlived by a cancellation finish here.
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def usage(self) -> Usage:
        """Token usage summed over every stream in the tool-call chain."""
        return Usage(**self.tracker.total_usage)

    @property
    def tool_statuses(self) -> list[ToolStatus]:
        return self._emitter.tool_statuses

    @property
    def chunks_emitted(self) -> int:
        return self._emitter.emitted

    def _transition(self, state: SessionState) -> None:
        logger.debug("Session %s -> %s", self.state.value, state.value)
        self.state = state

    async def run(
        self,
        messages: Sequence[Message],
        on_filtered_messages: FilteredMessagesHook | None = None,
        *,
        registry: CancellationRegistry | None = None,
    ) -> None:
        """Answer the last message of *messages*.

        Returns once the tool-call chain resolves or the session is
        cancelled. Setup failures raise before any chunk is emitted.

        Args:
            messages: The full conversation, oldest first.
            on_filtered_messages: Receives the messages kept as context.
            registry: When given, the session's token is registered under the
                current ask's message id while it runs.

        Raises:
            ConfigurationError: No user message is left in the context window,
                or the provider lacks a requested feature.
            DependencyUnavailableError: The file store or endpoint was
                unreachable during setup.
            StreamInterruptedError: A stream failed mid-way, or a nested stream
                failed to open after chunks were emitted; chunks already
                delivered stand.
        """
        if self.state is not SessionState.IDLE:
            raise InternalError(
                "CompletionSession.run() may only be called once",
                hint="Create a new session per ask.",
            )

        try:
            context = build_context(messages, self._options.context_count)
            if on_filtered_messages is not None:
                result = on_filtered_messages(list(context))
                if inspect.isawaitable(result):
                    await result

            current = context[-1]
            guard = registry.open(current.id, self.token) if registry else nullcontext()
            with guard:
                for turn in await self._encoder.encode_all(context[:-1]):
                    self.history.append(turn)
                self.history.append(await self._encoder.encode(current))

                self._active_tools = filter_tools(self._tools, current.enabled_tools)
                self._declarations = to_declarations(self._active_tools) or None
                self._check_capabilities()

                self.tracker.start()
                self._transition(SessionState.DISPATCHED)
                if self._options.stream_output:
                    await self._run_turn(depth=0)
                else:
                    await self._run_once()
        except asyncio.CancelledError:
            self._transition(SessionState.CANCELLED)
            raise
        except Exception:
            self._transition(SessionState.FAILED)
            raise

        if self.token.is_cancelled:
            logger.debug("Session cancelled after %d chunk(s)", self.chunks_emitted)
            self._transition(SessionState.CANCELLED)
        else:
            self._transition(SessionState.DONE)

    def _check_capabilities(self) -> None:
        caps = self._provider.capabilities
        if self._options.stream_output and not caps.streaming:
            raise ConfigurationError(
                "Provider does not support streaming",
                hint="Pass Options(stream_output=False).",
            )
        if self._declarations and not caps.tools:
            raise ConfigurationError(
                "Provider does not support tool calls",
                hint="Disable the message's tools or choose a provider with tool support.",
            )
        if self._options.enable_web_search and not caps.web_search:
            raise ConfigurationError(
                "Provider does not support web search",
                hint="Remove enable_web_search or choose a provider with search grounding.",
            )

    def _request(self) -> ProviderRequest:
        opts = self._options
        return ProviderRequest(
            model=self._config.model,
            contents=self.history.turns,
            system_instruction=opts.system_instruction,
            tools=self._declarations,
            enable_web_search=opts.enable_web_search,
            temperature=opts.temperature,
            top_p=opts.top_p,
            max_output_tokens=opts.max_tokens,
            custom_parameters=dict(opts.custom_parameters),
            safety_settings=opts.safety_settings,
        )

    async def _run_once(self) -> None:
        """Non-streaming path: one request, one chunk."""
        request = self._request()
        task = asyncio.create_task(
            retry_async(
                lambda: self._provider.generate(request), policy=self._config.retry
            )
        )
        if not await self.token.wait_for(task, cancel_task=True):
            return

        response = task.result()
        self._transition(SessionState.COMPLETED)

        self.tracker.open_stream()
        self.tracker.record_usage(response.usage)
        self.tracker.close_stream()

        if response.function_calls:
            logger.warning(
                "Tool calls are not executed without streaming; surfacing %s",
                [c.name for c in response.function_calls],
            )
        await self._emitter.emit(
            response.text,
            search_metadata=response.grounding_metadata,
            function_calls=response.function_calls,
        )

    async def _run_turn(self, depth: int) -> None:
        """Stream one request over the current history.

        A unit with resolvable tool calls runs them, extends the history and
        recurses at ``depth + 1``; the outer stream is then abandoned.
        """
        if self.token.is_cancelled:
            return
        request = self._request()
        logger.debug("Opening stream at depth %d (%d turns)", depth, len(request.contents))

        async with AsyncExitStack() as stack:
            self.tracker.open_stream()
            stack.callback(self.tracker.close_stream)
            try:
                units = await retry_async(
                    lambda: stack.enter_async_context(self._provider.stream(request)),
                    policy=self._config.retry,
                    token=self.token,
                )
            except CancelledException:
                logger.debug("Stream open at depth %d stopped by cancellation", depth)
                return
            except DependencyUnavailableError as e:
                if self._emitter.emitted:
                    # Chunks already reached the caller: not a setup failure.
                    raise StreamInterruptedError(
                        f"Stream at depth {depth} failed to open: {e}",
                        hint=e.hint,
                        retryable=False,
                        status_code=e.status_code,
                        retry_after_s=e.retry_after_s,
                        provider=e.provider,
                        phase=e.phase,
                        depth=depth if e.depth is None else e.depth,
                    ) from e
                if e.depth is None:
                    e.depth = depth
                raise
            except APIError as e:
                if e.depth is None:
                    e.depth = depth
                raise
            self._transition(SessionState.STREAMING)

            try:
                async for unit in units:
                    if self.token.is_cancelled:
                        logger.debug("Stream at depth %d stopped by cancellation", depth)
                        return
                    self.tracker.mark_first_token(depth)
                    self.tracker.record_usage(unit.usage)

                    if not unit.function_calls:
                        await self._emitter.emit(
                            unit.text, search_metadata=unit.grounding_metadata
                        )
                        continue

                    if await self._handle_tool_calls(unit, depth):
                        return
            except APIError as e:
                if e.depth is None:
                    e.depth = depth
                raise

    async def _handle_tool_calls(self, unit: ProviderResponse, depth: int) -> bool:
        """Run the unit's resolvable tool calls, then recurse.

        Returns True when the current stream must not be read further.
        """
        calls = unit.function_calls
        resolved: list[tuple[FunctionCallPart, ToolDescriptor]] = []
        for call in calls:
            tool = resolve_tool(self._active_tools, call.name)
            if tool is None:
                logger.warning("Ignoring call to unregistered tool %r", call.name)
                continue
            resolved.append((call, tool))

        if not resolved:
            await self._emitter.emit(
                unit.text,
                search_metadata=unit.grounding_metadata,
                function_calls=calls,
            )
            return False

        self._transition(SessionState.TOOL_PAUSE)
        results: list[FunctionResponsePart] = []
        seen: dict[str, int] = {}
        for i, (call, tool) in enumerate(resolved):
            if self.token.is_cancelled:
                return True

            invocation = ToolInvocation(
                name=call.name,
                arguments=dict(call.args),
                correlation_id=self._correlation_id(call.name, depth, seen),
                depth=depth,
                call_id=call.id,
            )
            status = ToolStatus(
                id=invocation.correlation_id,
                tool=tool,
                status="invoking",
                arguments=invocation.arguments,
            )
            self._emitter.upsert_status(status)
            if i == 0:
                # The first status rides on the chunk that announced the calls.
                await self._emitter.emit(
                    unit.text,
                    search_metadata=unit.grounding_metadata,
                    function_calls=calls,
                )
            else:
                await self._emitter.emit()

            task = asyncio.create_task(invoke_tool(tool, invocation))
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            if not await self.token.wait_for(task):
                logger.debug(
                    "Cancelled while %s was running; it will finish in the background",
                    invocation.correlation_id,
                )
                return True

            status.status = "done"
            status.response = task.result()
            self._emitter.upsert_status(status)
            await self._emitter.emit()
            results.append(
                FunctionResponsePart(name=call.name, response=status.response, id=call.id)
            )

        model_parts: list[ContentPart] = []
        if unit.text:
            model_parts.append(TextPart(unit.text))
        model_parts.extend(call for call, _ in resolved)
        self.history.append(ConversationTurn(role="model", parts=tuple(model_parts)))
        self.history.append(ConversationTurn(role="user", parts=tuple(results)))

        self._transition(SessionState.RESUMED)
        await self._run_turn(depth + 1)
        return True

    @staticmethod
    def _correlation_id(name: str, depth: int, seen: dict[str, int]) -> str:
        """``{name}-{depth}``, suffixed ``-{n}`` for repeats within one unit."""
        n = seen.get(name, 0)
        seen[name] = n + 1
        base = f"{name}-{depth}"
        return base if n == 0 else f"{base}-{n}"

    @property
    def finished(self) -> bool:
        return self.state in _TERMINAL
