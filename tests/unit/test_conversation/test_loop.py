"""Unit tests for casalibre.conversation.loop.AgenticLoop."""

from __future__ import annotations

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from casalibre.conversation.loop import (
    DEFAULT_SYSTEM_PROMPT,
    NO_RESPONSE_TEXT,
    AgenticLoop,
    MaxIterationsExceeded,
    compose_system_prompt,
    summarize_tool_calls,
)
from casalibre.conversation.messages import (
    AssistantMessage,
    Message,
    SystemMessage,
    ToolCall,
    ToolMessage,
    ToolResult,
    UserMessage,
)
from casalibre.conversation.providers import LLMConnectionError
from casalibre.conversation.tracing import AgentTracer, EventType


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _stop(text: str) -> AssistantMessage:
    """An assistant turn that ends the loop (no tool calls)."""
    return AssistantMessage(content=text)


def _calls(*calls: tuple[str, str, dict[str, Any]], text: str = "") -> AssistantMessage:
    """An assistant turn requesting tool calls given as (id, name, arguments)."""
    return AssistantMessage(
        content=text,
        tool_calls=tuple(ToolCall(id=i, name=n, arguments=a) for i, n, a in calls),
    )


def _make_provider(*replies: AssistantMessage) -> MagicMock:
    """Return a mock LLMProvider that yields replies in sequence."""
    mock = MagicMock()
    mock.complete = AsyncMock(side_effect=list(replies))
    return mock


async def _echo_dispatcher(name: str, args: dict[str, Any]) -> ToolResult:
    return ToolResult.success(name, {"tool": name, "args": args})


def _types(tracer: AgentTracer) -> list[EventType]:
    return [e.type for e in tracer.events]


# ---------------------------------------------------------------------------
# Direct response (no tool calls)
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_run_returns_text_without_tools() -> None:
    provider = _make_provider(_stop("Hello!"))
    loop = AgenticLoop(provider=provider, tool_dispatcher=_echo_dispatcher)
    tracer = AgentTracer()

    result = await loop.run([UserMessage("Hi")], tracer=tracer)

    assert result.reply == "Hello!"
    assert result.history[-1] == AssistantMessage("Hello!")
    assert _types(tracer) == [EventType.LLM_PROMPT, EventType.ASSISTANT]
    provider.complete.assert_awaited_once()


@pytest.mark.anyio
async def test_empty_final_turn_uses_fallback_text() -> None:
    loop = AgenticLoop(provider=_make_provider(_stop("")), tool_dispatcher=_echo_dispatcher)

    result = await loop.run([UserMessage("Hi")])

    assert result.reply == NO_RESPONSE_TEXT


@pytest.mark.anyio
async def test_reply_is_last_non_empty_assistant_text() -> None:
    provider = _make_provider(
        _calls(("c1", "ha_smart_search", {"query": "ac"}), text="Let me look that up."),
        _stop(""),
    )
    loop = AgenticLoop(provider=provider, tool_dispatcher=_echo_dispatcher)

    result = await loop.run([UserMessage("Is the ac on?")])

    assert result.reply == "Let me look that up."


def test_max_iterations_must_be_positive() -> None:
    with pytest.raises(ValueError):
        AgenticLoop(provider=_make_provider(), tool_dispatcher=_echo_dispatcher, max_iterations=0)


# ---------------------------------------------------------------------------
# System prompt
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_system_prompt_prepended_once() -> None:
    provider = _make_provider(_stop("first"), _stop("second"))
    loop = AgenticLoop(
        provider=provider, tool_dispatcher=_echo_dispatcher, system_prompt="Be brief."
    )

    first = await loop.run([UserMessage("one")])
    second = await loop.run([*first.history, UserMessage("two")])

    assert first.history[0] == SystemMessage("Be brief.")
    system_messages = [m for m in second.history if isinstance(m, SystemMessage)]
    assert system_messages == [SystemMessage("Be brief.")]
    sent = provider.complete.await_args_list[1].args[0]
    assert isinstance(sent[0], SystemMessage)


@pytest.mark.anyio
async def test_default_system_prompt_is_prepended() -> None:
    provider = _make_provider(_stop("ok"))
    loop = AgenticLoop(provider=provider, tool_dispatcher=_echo_dispatcher)

    result = await loop.run([UserMessage("hi")])

    assert result.history[0] == SystemMessage(DEFAULT_SYSTEM_PROMPT)
    assert provider.complete.await_args.args[0][0] == SystemMessage(DEFAULT_SYSTEM_PROMPT)


@pytest.mark.anyio
async def test_none_system_prompt_sends_history_as_is() -> None:
    provider = _make_provider(_stop("ok"))
    loop = AgenticLoop(provider=provider, tool_dispatcher=_echo_dispatcher, system_prompt=None)

    result = await loop.run([UserMessage("hi")])

    assert result.history == [UserMessage("hi"), AssistantMessage("ok")]


def test_compose_system_prompt_appends_house_context() -> None:
    prompt = compose_system_prompt("Base.", "  Kitchen: switch.kitchen\n")

    assert prompt == "Base.\n\nHOUSE CONTEXT:\nKitchen: switch.kitchen"
    assert compose_system_prompt("Base.", None) == "Base."
    assert compose_system_prompt("Base.", "   ") == "Base."


@pytest.mark.anyio
async def test_input_history_is_not_mutated() -> None:
    loop = AgenticLoop(
        provider=_make_provider(_stop("ok")),
        tool_dispatcher=_echo_dispatcher,
        system_prompt="sys",
    )
    history: list[Message] = [UserMessage("hi")]

    await loop.run(history)

    assert history == [UserMessage("hi")]


# ---------------------------------------------------------------------------
# Tool calling
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_tool_error_is_fed_back_and_run_completes() -> None:
    """The model asks for a tool that raises, sees the error, then answers."""
    dispatcher = AsyncMock(side_effect=RuntimeError("device offline"))
    provider = _make_provider(
        _calls(("c1", "ha_call_service", {"domain": "switch", "service": "turn_on"})),
        _stop("Sorry, the switch is offline."),
    )
    loop = AgenticLoop(provider=provider, tool_dispatcher=dispatcher)
    tracer = AgentTracer()

    result = await loop.run([UserMessage("Turn on the kitchen light")], tracer=tracer)

    assert result.reply == "Sorry, the switch is offline."
    types = _types(tracer)
    assert types.count(EventType.LLM_PROMPT) == 2
    assert types.count(EventType.TOOL_CALL) == 1
    assert types.count(EventType.TOOL_RESULT) == 1
    assert types == [
        EventType.LLM_PROMPT,
        EventType.TOOL_CALL,
        EventType.TOOL_RESULT,
        EventType.LLM_PROMPT,
        EventType.ASSISTANT,
    ]
    result_event = tracer.events[2].to_dict()
    assert result_event["isError"] is True
    assert result_event["toolResult"] == {"error": "device offline"}

    # Second model call saw the error-tagged tool message.
    second_history = provider.complete.await_args_list[1].args[0]
    tool_msg = second_history[-1]
    assert isinstance(tool_msg, ToolMessage)
    assert tool_msg.is_error
    assert json.loads(tool_msg.content) == {"error": "device offline"}


@pytest.mark.anyio
async def test_tool_results_follow_request_order() -> None:
    async def dispatcher(name: str, args: dict[str, Any]) -> ToolResult:
        # The first requested tool finishes last.
        await asyncio.sleep(0.05 if name == "slow" else 0)
        return ToolResult.success(name, name)

    provider = _make_provider(
        _calls(("c1", "slow", {}), ("c2", "fast", {})),
        _stop("done"),
    )
    loop = AgenticLoop(provider=provider, tool_dispatcher=dispatcher)
    tracer = AgentTracer()

    result = await loop.run([UserMessage("go")], tracer=tracer)

    tool_messages = [m for m in result.history if isinstance(m, ToolMessage)]
    assert [m.tool_call_id for m in tool_messages] == ["c1", "c2"]
    assert [m.tool_name for m in tool_messages] == ["slow", "fast"]
    result_names = [
        e.to_dict()["toolName"] for e in tracer.events if e.type == EventType.TOOL_RESULT
    ]
    assert result_names == ["slow", "fast"]


@pytest.mark.anyio
async def test_every_tool_call_has_exactly_one_result() -> None:
    provider = _make_provider(
        _calls(("c1", "a", {}), ("c2", "b", {"x": 1})),
        _calls(("c3", "a", {})),
        _stop("ok"),
    )
    loop = AgenticLoop(provider=provider, tool_dispatcher=_echo_dispatcher)

    result = await loop.run([UserMessage("go")])

    call_ids = [
        tc.id
        for m in result.history
        if isinstance(m, AssistantMessage)
        for tc in m.tool_calls
    ]
    result_ids = [m.tool_call_id for m in result.history if isinstance(m, ToolMessage)]
    assert call_ids == result_ids == ["c1", "c2", "c3"]
    assert summarize_tool_calls(result.history) == [
        {"name": "a", "arguments": {}},
        {"name": "b", "arguments": {"x": 1}},
        {"name": "a", "arguments": {}},
    ]


@pytest.mark.anyio
async def test_intermediate_text_emits_assistant_event() -> None:
    provider = _make_provider(
        _calls(("c1", "a", {}), text="Checking..."),
        _stop("Done."),
    )
    loop = AgenticLoop(provider=provider, tool_dispatcher=_echo_dispatcher)
    tracer = AgentTracer()

    await loop.run([UserMessage("go")], tracer=tracer)

    assistant = [e.content for e in tracer.events if e.type == EventType.ASSISTANT]
    assert assistant == ["Checking...", "Done."]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_max_iterations_exceeded_emits_error() -> None:
    provider = MagicMock()
    provider.complete = AsyncMock(return_value=_calls(("c1", "a", {})))
    loop = AgenticLoop(provider=provider, tool_dispatcher=_echo_dispatcher, max_iterations=3)
    tracer = AgentTracer()

    with pytest.raises(MaxIterationsExceeded):
        await loop.run([UserMessage("loop forever")], tracer=tracer)

    assert provider.complete.await_count == 3
    assert tracer.events[-1].type == EventType.ERROR
    assert tracer.finished


@pytest.mark.anyio
async def test_backend_error_is_fatal_and_traced() -> None:
    provider = MagicMock()
    provider.complete = AsyncMock(side_effect=LLMConnectionError("unreachable"))
    loop = AgenticLoop(provider=provider, tool_dispatcher=_echo_dispatcher)
    tracer = AgentTracer()

    with pytest.raises(LLMConnectionError):
        await loop.run([UserMessage("hi")], tracer=tracer)

    assert _types(tracer) == [EventType.LLM_PROMPT, EventType.ERROR]
    assert tracer.events[-1].to_dict()["error"] == "unreachable"


@pytest.mark.anyio
async def test_cancellation_does_not_emit_error() -> None:
    started = asyncio.Event()

    async def hang(messages: list[Message], tools: Any) -> AssistantMessage:
        started.set()
        await asyncio.sleep(999)
        return _stop("never")

    provider = MagicMock()
    provider.complete = hang
    loop = AgenticLoop(provider=provider, tool_dispatcher=_echo_dispatcher)
    tracer = AgentTracer()

    task = asyncio.create_task(loop.run([UserMessage("hi")], tracer=tracer))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert EventType.ERROR not in _types(tracer)


# ---------------------------------------------------------------------------
# Replay
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_replaying_stored_history_leaves_prior_messages_intact() -> None:
    call = ToolCall("c1", "ha_smart_search", {"query": "blinds"})
    stored: list[Message] = [
        SystemMessage("sys"),
        UserMessage("close the blinds"),
        AssistantMessage(tool_calls=(call,)),
        ToolMessage(content="{}", tool_name="ha_smart_search", tool_call_id="c1"),
        AssistantMessage("Closed."),
    ]
    snapshot = list(stored)
    loop = AgenticLoop(
        provider=_make_provider(_stop("Anything else?")),
        tool_dispatcher=_echo_dispatcher,
        system_prompt="sys",
    )
    tracer = AgentTracer()

    result = await loop.run(stored, tracer=tracer)

    assert stored == snapshot
    assert result.history[: len(snapshot)] == snapshot
    assert result.history[len(snapshot):] == [AssistantMessage("Anything else?")]
    assert _types(tracer)[-1] == EventType.ASSISTANT
