"""Completion session behavior: dispatch, tool replay, cancellation, errors.

All tests drive the session through ``ScriptedProvider`` so the exact unit
sequence each stream produces is known up front.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from typing import Any

import pytest

from parley.cancellation import CancellationRegistry, CancelToken
from parley.config import Config
from parley.errors import (
    ConfigurationError,
    DependencyUnavailableError,
    InternalError,
    StreamInterruptedError,
)
from parley.options import Options
from parley.parts import FunctionCallPart, FunctionResponsePart, TextPart
from parley.providers.models import ProviderRequest, ProviderResponse
from parley.retry import RetryPolicy
from parley.session import CompletionSession, SessionState
from parley.types import Attachment, Message, ToolDescriptor
from tests.conftest import GEMINI_MODEL
from tests.helpers import ChunkLog, ScriptedProvider, call, tool, unit

pytestmark = pytest.mark.integration


def _ask(content: str = "weather?", *, tools: set[str] | None = None) -> Message:
    return Message(role="user", content=content, enabled_tools=tools)


def _session(
    provider: ScriptedProvider,
    config: Config,
    log: ChunkLog,
    *,
    tools: list[ToolDescriptor] | None = None,
    options: Options | None = None,
    token: CancelToken | None = None,
) -> CompletionSession:
    return CompletionSession(
        provider,
        config=config,
        options=options,
        tools=tools or [],
        sink=log,
        token=token,
    )


# =============================================================================
# End-to-end scenarios
# =============================================================================


@pytest.mark.asyncio
async def test_non_streaming_emits_exactly_one_chunk_with_full_usage(
    config: Config,
) -> None:
    provider = ScriptedProvider(
        responses=[unit("Hello there!", prompt_tokens=3, completion_tokens=4, total_tokens=7)]
    )
    log = ChunkLog()
    session = _session(provider, config, log, options=Options(stream_output=False))

    await session.run([Message(role="user", content="Hi")])

    assert log.texts == ["Hello there!"]
    chunk = log.chunks[0]
    assert chunk["usage"] == {"prompt_tokens": 3, "completion_tokens": 4, "total_tokens": 7}
    assert chunk["metrics"]["time_first_token_millsec"] == 0
    assert chunk["metrics"]["completion_tokens"] == 4
    assert session.usage["total_tokens"] == 7
    assert session.state is SessionState.DONE
    assert provider.opened == 0


@pytest.mark.asyncio
async def test_streamed_tool_call_is_executed_and_replayed(config: Config) -> None:
    provider = ScriptedProvider(
        streams=[
            [
                unit("Let me check. "),
                unit(
                    calls=[call("get_weather", city="Oslo")],
                    prompt_tokens=5,
                    completion_tokens=3,
                    total_tokens=8,
                ),
            ],
            [unit("It is sunny.", prompt_tokens=20, completion_tokens=4, total_tokens=24)],
        ]
    )
    log = ChunkLog()
    session = _session(
        provider, config, log, tools=[tool("get_weather", {"temp": 21})]
    )

    await session.run([_ask(tools={"get_weather"})])

    assert log.texts == ["Let me check. ", "", "", "It is sunny."]
    assert log.statuses(0) == []
    assert log.statuses(1) == [("get_weather-0", "invoking")]
    assert log.statuses(2) == [("get_weather-0", "done")]
    assert log.chunks[1]["function_calls"][0].name == "get_weather"
    assert log.chunks[1]["usage"]["total_tokens"] == 8
    assert log.chunks[3]["usage"]["total_tokens"] == 24

    status = session.tool_statuses[0]
    assert status.response == {"temp": 21}
    assert status.arguments == {"city": "Oslo"}

    assert session.state is SessionState.DONE
    assert session.usage == {"prompt_tokens": 25, "completion_tokens": 7, "total_tokens": 32}
    assert provider.opened == provider.closed == 2


@pytest.mark.asyncio
async def test_unresolved_tool_call_continues_same_stream(config: Config) -> None:
    provider = ScriptedProvider(
        streams=[[unit("a", calls=[call("launch_rockets")]), unit("b")]]
    )
    log = ChunkLog()
    session = _session(provider, config, log, tools=[tool("get_weather")])

    await session.run([_ask(tools={"get_weather"})])

    assert log.texts == ["a", "b"]
    assert log.chunks[0]["function_calls"] == [FunctionCallPart(name="launch_rockets")]
    assert all("tool_statuses" not in c for c in log.chunks)
    assert session.tool_statuses == []
    assert len(session.history) == 1
    assert provider.opened == 1


# =============================================================================
# History and requests
# =============================================================================


@pytest.mark.asyncio
async def test_history_gets_call_turn_then_result_turn(config: Config) -> None:
    provider = ScriptedProvider(
        streams=[
            [unit("Checking.", calls=[call("get_weather", city="Oslo")])],
            [unit("Sunny.")],
        ]
    )
    session = _session(provider, config, ChunkLog(), tools=[tool("get_weather", {"t": 1})])

    await session.run([_ask(tools={"get_weather"})])

    ask, model_turn, result_turn = session.history.turns
    assert ask.role == "user"
    assert model_turn.role == "model"
    assert model_turn.parts == (
        TextPart("Checking."),
        FunctionCallPart(name="get_weather", args={"city": "Oslo"}),
    )
    assert result_turn.role == "user"
    assert result_turn.parts == (FunctionResponsePart(name="get_weather", response={"t": 1}),)
    # The nested request replays the whole accumulated history.
    assert provider.requests[1].contents == session.history.turns


@pytest.mark.asyncio
async def test_tools_are_declared_only_when_enabled_for_the_ask(config: Config) -> None:
    provider = ScriptedProvider()
    session = _session(provider, config, ChunkLog(), tools=[tool("get_weather")])

    await session.run([_ask()])

    assert provider.requests[0].tools is None

    provider = ScriptedProvider()
    session = _session(provider, config, ChunkLog(), tools=[tool("get_weather")])

    await session.run([_ask(tools={"get_weather"})])

    assert [d["name"] for d in provider.requests[0].tools or []] == ["get_weather"]


@pytest.mark.asyncio
async def test_request_carries_options(config: Config) -> None:
    provider = ScriptedProvider()
    options = Options(
        system_instruction="Be brief.",
        temperature=0.3,
        top_p=0.9,
        max_tokens=128,
        custom_parameters={"top_k": 40},
        enable_web_search=True,
    )
    session = _session(provider, config, ChunkLog(), options=options)

    await session.run([_ask()])

    request: ProviderRequest = provider.requests[0]
    assert request.model == GEMINI_MODEL
    assert request.system_instruction == "Be brief."
    assert request.temperature == 0.3
    assert request.top_p == 0.9
    assert request.max_output_tokens == 128
    assert request.custom_parameters == {"top_k": 40}
    assert request.enable_web_search is True


@pytest.mark.asyncio
async def test_filtered_messages_hook_sees_context(config: Config) -> None:
    seen: list[list[Message]] = []
    messages = [
        Message(role="system", content="scaffold"),
        Message(role="assistant", content="Welcome!"),
        Message(role="user", content="Hi"),
        Message(role="assistant", content="Hello"),
        Message(role="user", content="How are you?"),
    ]
    provider = ScriptedProvider()
    session = _session(provider, config, ChunkLog())

    await session.run(messages, seen.append)

    assert [m.content for m in seen[0]] == ["Hi", "Hello", "How are you?"]
    assert [t.role for t in provider.requests[0].contents] == ["user", "model", "user"]


@pytest.mark.asyncio
async def test_session_without_user_message_fails_before_dispatch(config: Config) -> None:
    provider = ScriptedProvider()
    log = ChunkLog()
    session = _session(provider, config, log)

    with pytest.raises(ConfigurationError):
        await session.run([Message(role="assistant", content="Hello")])

    assert log.chunks == []
    assert provider.requests == []
    assert session.state is SessionState.FAILED


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("options", "tools", "match"),
    [
        (Options(), {"get_weather"}, "tool calls"),
        (Options(enable_web_search=True), None, "web search"),
    ],
)
async def test_session_rejects_features_the_provider_lacks(
    config: Config, options: Options, tools: set[str] | None, match: str
) -> None:
    from parley.providers.mock import MockProvider

    log = ChunkLog()
    session = CompletionSession(
        MockProvider(),
        config=config,
        options=options,
        tools=[tool("get_weather")],
        sink=log,
    )

    with pytest.raises(ConfigurationError, match=match):
        await session.run([_ask(tools=tools)])

    assert log.chunks == []
    assert session.state is SessionState.FAILED


@pytest.mark.asyncio
async def test_session_runs_only_once(config: Config) -> None:
    session = _session(ScriptedProvider(), config, ChunkLog())
    await session.run([_ask()])

    with pytest.raises(InternalError):
        await session.run([_ask()])


# =============================================================================
# Ordering and metrics
# =============================================================================


@pytest.mark.asyncio
async def test_outer_stream_is_abandoned_after_tool_recursion(config: Config) -> None:
    provider = ScriptedProvider(
        streams=[
            [unit("one "), unit(calls=[call("get_weather")]), unit("never")],
            [unit("nested "), unit("answer")],
        ]
    )
    log = ChunkLog()
    session = _session(provider, config, log, tools=[tool("get_weather")])

    await session.run([_ask(tools={"get_weather"})])

    assert log.texts == ["one ", "", "", "nested ", "answer"]
    assert provider.closed == 2


@pytest.mark.asyncio
async def test_elapsed_is_monotonic_and_first_token_constant(config: Config) -> None:
    provider = ScriptedProvider(
        streams=[
            [unit("a"), unit("b"), unit(calls=[call("get_weather")])],
            [unit("c"), unit("d")],
        ]
    )
    log = ChunkLog()
    session = _session(provider, config, log, tools=[tool("get_weather")])

    await session.run([_ask(tools={"get_weather"})])

    elapsed = [c["metrics"]["time_completion_millsec"] for c in log.chunks]
    first = {c["metrics"]["time_first_token_millsec"] for c in log.chunks}
    assert elapsed == sorted(elapsed)
    assert len(first) == 1
    assert first.pop() <= elapsed[0]


@pytest.mark.asyncio
async def test_missing_usage_is_zero_filled(config: Config) -> None:
    log = ChunkLog()
    await _session(ScriptedProvider(streams=[[unit("x")]]), config, log).run([_ask()])

    assert log.chunks[0]["usage"] == {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}


# =============================================================================
# Tool execution
# =============================================================================


@pytest.mark.asyncio
async def test_tool_failure_is_reported_to_the_model(config: Config) -> None:
    provider = ScriptedProvider(
        streams=[[unit(calls=[call("get_weather")])], [unit("Sorry, no data.")]]
    )
    log = ChunkLog()
    session = _session(provider, config, log, tools=[tool("get_weather", fail=True)])

    await session.run([_ask(tools={"get_weather"})])

    failure = session.tool_statuses[0].response
    assert failure == {
        "isError": True,
        "content": [
            {"type": "text", "text": "Error calling tool get_weather: get_weather exploded"}
        ],
    }
    assert session.history.turns[2].parts[0].response == failure
    assert log.texts[-1] == "Sorry, no data."
    assert session.state is SessionState.DONE


@pytest.mark.asyncio
async def test_async_tools_are_awaited(config: Config) -> None:
    async def fetch(invocation: Any) -> str:
        await asyncio.sleep(0)
        return f"fetched {invocation.arguments['url']}"

    provider = ScriptedProvider(
        streams=[[unit(calls=[call("fetch", url="a.io")])], [unit("done")]]
    )
    session = _session(
        provider,
        config,
        ChunkLog(),
        tools=[ToolDescriptor(id="fetch", execute=fetch, server="web")],
    )

    await session.run([_ask(tools={"web"})])

    assert session.tool_statuses[0].response == {"result": "fetched a.io"}


@pytest.mark.asyncio
async def test_recursion_tags_statuses_by_depth(config: Config) -> None:
    provider = ScriptedProvider(
        streams=[
            [unit(calls=[call("lookup", q="a")])],
            [unit(calls=[call("lookup", q="b")])],
            [unit("final")],
        ]
    )
    log = ChunkLog()
    session = _session(provider, config, log, tools=[tool("lookup")])

    await session.run([_ask(tools={"lookup"})])

    assert [(s.id, s.status) for s in session.tool_statuses] == [
        ("lookup-0", "done"),
        ("lookup-1", "done"),
    ]
    assert len(session.history) == 5
    assert provider.opened == provider.closed == 3
    assert log.texts[-1] == "final"


@pytest.mark.asyncio
async def test_repeated_tool_in_one_unit_gets_distinct_ids(config: Config) -> None:
    provider = ScriptedProvider(
        streams=[
            [unit("hm", calls=[call("lookup", q=1), call("lookup", q=2)])],
            [unit("both found")],
        ]
    )
    log = ChunkLog()
    session = _session(provider, config, log, tools=[tool("lookup")])

    await session.run([_ask(tools={"lookup"})])

    assert log.texts == ["hm", "", "", "", "both found"]
    assert log.statuses(0) == [("lookup-0", "invoking")]
    assert log.statuses(1) == [("lookup-0", "done")]
    assert log.statuses(2) == [("lookup-0", "done"), ("lookup-0-1", "invoking")]
    assert log.statuses(3) == [("lookup-0", "done"), ("lookup-0-1", "done")]
    assert len(session.history.turns[2].parts) == 2


# =============================================================================
# Cancellation
# =============================================================================


@pytest.mark.asyncio
async def test_cancel_after_chunk_stops_further_chunks(config: Config) -> None:
    token = CancelToken()
    provider = ScriptedProvider(streams=[[unit("1"), unit("2"), unit("3"), unit("4")]])
    log = ChunkLog()

    def sink(chunk: Any) -> None:
        log(chunk)
        if len(log.chunks) == 2:
            token.cancel()

    session = CompletionSession(provider, config=config, sink=sink, token=token)

    await session.run([_ask()])

    assert log.texts == ["1", "2"]
    assert session.state is SessionState.CANCELLED
    assert provider.closed == 1


@pytest.mark.asyncio
async def test_cancel_before_dispatch_opens_nothing(config: Config) -> None:
    token = CancelToken()
    token.cancel()
    provider = ScriptedProvider()
    log = ChunkLog()

    await _session(provider, config, log, token=token).run([_ask()])

    assert log.chunks == []
    assert provider.opened == 0


@pytest.mark.asyncio
async def test_cancel_during_tool_leaves_it_running(config: Config) -> None:
    started = asyncio.Event()
    release = asyncio.Event()
    finished: list[str] = []

    async def slow(invocation: Any) -> dict[str, Any]:
        started.set()
        await release.wait()
        finished.append(invocation.correlation_id)
        return {"ok": True}

    token = CancelToken()
    provider = ScriptedProvider(
        streams=[[unit(calls=[call("slow")])], [unit("never")]]
    )
    log = ChunkLog()
    session = _session(
        provider,
        config,
        log,
        tools=[ToolDescriptor(id="slow", execute=slow)],
        token=token,
    )

    run = asyncio.create_task(session.run([_ask(tools={"slow"})]))
    await started.wait()
    token.cancel()
    await asyncio.wait_for(run, timeout=1)

    assert session.state is SessionState.CANCELLED
    assert log.statuses(-1) == [("slow-0", "invoking")]
    assert provider.opened == 1
    assert finished == []

    release.set()
    for _ in range(5):
        await asyncio.sleep(0)
    assert finished == ["slow-0"]
    # The background result is not folded in after cancellation.
    assert session.tool_statuses[0].status == "invoking"
    assert len(session.history) == 1


@dataclass
class _GatedProvider(ScriptedProvider):
    gate: asyncio.Event = field(default_factory=asyncio.Event)

    async def generate(self, request: ProviderRequest) -> ProviderResponse:
        await self.gate.wait()
        return await super().generate(request)


@pytest.mark.asyncio
async def test_cancel_during_non_streaming_request(config: Config) -> None:
    token = CancelToken()
    provider = _GatedProvider()
    log = ChunkLog()
    session = _session(
        provider, config, log, options=Options(stream_output=False), token=token
    )

    run = asyncio.create_task(session.run([_ask()]))
    await asyncio.sleep(0)
    token.cancel()
    await asyncio.wait_for(run, timeout=1)

    assert log.chunks == []
    assert session.state is SessionState.CANCELLED


@pytest.mark.asyncio
async def test_registry_tracks_session_by_ask_id(config: Config) -> None:
    registry = CancellationRegistry()
    ask = _ask()
    log = ChunkLog()

    def sink(chunk: Any) -> None:
        log(chunk)
        assert registry.cancel(ask.id) is True

    provider = ScriptedProvider(streams=[[unit("1"), unit("2")]])
    session = CompletionSession(provider, config=config, sink=sink)

    await session.run([ask], registry=registry)

    assert log.texts == ["1"]
    assert len(registry) == 0
    assert registry.cancel(ask.id) is False


# =============================================================================
# Errors
# =============================================================================


@pytest.mark.asyncio
async def test_unreachable_endpoint_fails_before_any_chunk(config: Config) -> None:
    provider = ScriptedProvider(
        streams=[DependencyUnavailableError("endpoint down", retryable=True)]
    )
    log = ChunkLog()
    session = _session(provider, config, log)

    with pytest.raises(DependencyUnavailableError) as exc_info:
        await session.run([_ask()])

    assert exc_info.value.depth == 0
    assert log.chunks == []
    assert session.state is SessionState.FAILED


@pytest.mark.asyncio
async def test_stream_open_is_retried(config: Config) -> None:
    retrying = Config(
        provider="gemini",
        model=GEMINI_MODEL,
        api_key="test-key",
        retry=RetryPolicy(max_attempts=2, initial_delay_s=0, jitter=False),
    )
    provider = ScriptedProvider(
        streams=[
            DependencyUnavailableError("blip", retryable=True),
            [unit("recovered")],
        ]
    )
    log = ChunkLog()

    await _session(provider, retrying, log).run([_ask()])

    assert log.texts == ["recovered"]
    assert len(provider.requests) == 2


@pytest.mark.asyncio
async def test_unreachable_file_store_fails_before_any_chunk() -> None:
    config = Config(
        provider="gemini", model=GEMINI_MODEL, api_key="k", pdf_inline_limit_bytes=4
    )
    provider = ScriptedProvider(
        upload_error=DependencyUnavailableError("store down", retryable=True)
    )
    log = ChunkLog()
    message = Message(
        role="user",
        content="Summarize",
        attachments=(Attachment.from_bytes(b"%PDF-1.7 ...", name="big.pdf"),),
    )

    with pytest.raises(DependencyUnavailableError):
        await _session(provider, config, log).run([message])

    assert provider.uploads == ["big.pdf"]
    assert provider.requests == []
    assert log.chunks == []


@pytest.mark.asyncio
async def test_stream_interruption_keeps_delivered_chunks(config: Config) -> None:
    provider = ScriptedProvider(
        streams=[[unit("partial "), unit("output "), StreamInterruptedError("reset")]]
    )
    log = ChunkLog()
    session = _session(provider, config, log)

    with pytest.raises(StreamInterruptedError) as exc_info:
        await session.run([_ask()])

    assert exc_info.value.depth == 0
    assert log.texts == ["partial ", "output "]
    assert provider.closed == 1
    assert session.state is SessionState.FAILED


@pytest.mark.asyncio
async def test_nested_stream_interruption_reports_depth(config: Config) -> None:
    provider = ScriptedProvider(
        streams=[
            [unit(calls=[call("get_weather")])],
            [unit("half"), StreamInterruptedError("reset")],
        ]
    )
    log = ChunkLog()
    session = _session(provider, config, log, tools=[tool("get_weather")])

    with pytest.raises(StreamInterruptedError) as exc_info:
        await session.run([_ask(tools={"get_weather"})])

    assert exc_info.value.depth == 1
    assert log.texts == ["", "", "half"]
    assert provider.opened == provider.closed == 2


@pytest.mark.asyncio
async def test_nested_stream_open_failure_after_chunks_is_interruption(
    config: Config,
) -> None:
    provider = ScriptedProvider(
        streams=[
            [unit("hello "), unit(calls=[call("get_weather")])],
            DependencyUnavailableError("endpoint down", status_code=503, provider="gemini"),
        ]
    )
    log = ChunkLog()
    session = _session(provider, config, log, tools=[tool("get_weather")])

    with pytest.raises(StreamInterruptedError) as exc_info:
        await session.run([_ask(tools={"get_weather"})])

    err = exc_info.value
    assert not isinstance(err, DependencyUnavailableError)
    assert isinstance(err.__cause__, DependencyUnavailableError)
    assert err.depth == 1
    assert err.status_code == 503
    assert err.provider == "gemini"
    assert log.texts == ["hello ", "", ""]
    assert session.state is SessionState.FAILED


@pytest.mark.asyncio
async def test_cancel_during_open_backoff_stops_retrying() -> None:
    patient = Config(
        provider="gemini",
        model=GEMINI_MODEL,
        api_key="test-key",
        retry=RetryPolicy(max_attempts=3, initial_delay_s=5.0, jitter=False),
    )
    provider = ScriptedProvider(
        streams=[
            DependencyUnavailableError("blip", retryable=True),
            DependencyUnavailableError("blip", retryable=True),
            [unit("never")],
        ]
    )
    token = CancelToken()
    log = ChunkLog()
    session = _session(provider, patient, log, token=token)

    asyncio.get_running_loop().call_later(0.05, token.cancel)
    await asyncio.wait_for(session.run([_ask()]), timeout=1)

    assert len(provider.requests) == 1
    assert log.chunks == []
    assert session.state is SessionState.CANCELLED


@pytest.mark.asyncio
async def test_cancel_from_sync_tool_thread_returns_without_waiting(
    config: Config,
) -> None:
    token = CancelToken()
    release = threading.Event()
    finished: list[str] = []

    def blocking(invocation: Any) -> dict[str, Any]:
        token.cancel()
        release.wait(timeout=5)
        finished.append(invocation.correlation_id)
        return {"ok": True}

    provider = ScriptedProvider(
        streams=[[unit(calls=[call("blocking")])], [unit("never")]]
    )
    log = ChunkLog()
    session = _session(
        provider,
        config,
        log,
        tools=[ToolDescriptor(id="blocking", execute=blocking)],
        token=token,
    )

    try:
        await asyncio.wait_for(session.run([_ask(tools={"blocking"})]), timeout=1)

        assert session.state is SessionState.CANCELLED
        assert finished == []
        assert provider.opened == 1
    finally:
        release.set()
        await asyncio.gather(*session._background)

    assert finished == ["blocking-0"]
    assert session.tool_statuses[0].status == "invoking"
