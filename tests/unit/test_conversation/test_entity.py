"""Unit tests for casalibre.conversation.entity.CasaLibreConversationEntity."""

from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from casalibre.conversation.entity import (
    CasaLibreConversationEntity,
    ConversationInput,
    ConversationResult,
    InputValidationError,
)
from casalibre.conversation.messages import (
    AssistantMessage,
    Message,
    SystemMessage,
    ToolCall,
    ToolResult,
    UserMessage,
)
from casalibre.conversation.providers import (
    LLMAPIError,
    LLMConnectionError,
    LLMRateLimitError,
)
from casalibre.conversation.threads import InMemoryThreadStore
from casalibre.conversation.tracing import EventType


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _echo_dispatcher(name: str, args: dict[str, Any]) -> ToolResult:
    return ToolResult.success(name, {"ok": True})


def _make_entity(*replies: Any, **kwargs: Any) -> CasaLibreConversationEntity:
    """Entity whose provider yields *replies* (or raises them) in sequence."""
    provider = MagicMock()
    provider.complete = AsyncMock(side_effect=list(replies))
    return CasaLibreConversationEntity(
        provider=provider,
        tool_dispatcher=_echo_dispatcher,
        system_prompt="You are a test assistant.",
        **kwargs,
    )


def _types(result: ConversationResult) -> list[EventType]:
    return [e.type for e in result.trace]


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("text", [None, "", "   ", 42])
def test_validate_rejects_missing_or_non_string_message(text: Any) -> None:
    with pytest.raises(InputValidationError, match="Message is required"):
        CasaLibreConversationEntity.validate(ConversationInput(text=text))


def test_validate_rejects_non_string_thread_id() -> None:
    with pytest.raises(InputValidationError, match="threadId"):
        CasaLibreConversationEntity.validate(ConversationInput(text="hi", conversation_id=7))


def test_validate_echoes_or_creates_thread_id() -> None:
    assert CasaLibreConversationEntity.validate(ConversationInput("hi", "t-1")) == "t-1"
    created = CasaLibreConversationEntity.validate(ConversationInput("hi"))
    assert isinstance(created, str) and len(created) == 36


@pytest.mark.anyio
async def test_invalid_input_starts_no_run() -> None:
    entity = _make_entity(AssistantMessage("never"))

    with pytest.raises(InputValidationError):
        await entity.async_process(ConversationInput(text=""))

    entity._loop.provider.complete.assert_not_awaited()


# ---------------------------------------------------------------------------
# async_process
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_async_process_returns_reply_and_trace() -> None:
    entity = _make_entity(AssistantMessage("Hello there!"))

    result = await entity.async_process(ConversationInput(text="Hi", conversation_id="t1"))

    assert result.success
    assert result.response_text == "Hello there!"
    assert result.conversation_id == "t1"
    assert _types(result) == [
        EventType.USER,
        EventType.LLM_PROMPT,
        EventType.ASSISTANT,
        EventType.DONE,
    ]
    assert [e.step for e in result.trace] == [0, 1, 2, 3]
    done = result.trace[-1].to_dict()
    assert done["threadId"] == "t1"
    assert done["reply"] == "Hello there!"


@pytest.mark.anyio
async def test_history_persists_across_turns() -> None:
    entity = _make_entity(AssistantMessage("first"), AssistantMessage("second"))

    await entity.async_process(ConversationInput("one", "t1"))
    await entity.async_process(ConversationInput("two", "t1"))

    history = await entity.store.get("t1")
    assert history == [
        SystemMessage("You are a test assistant."),
        UserMessage("one"),
        AssistantMessage("first"),
        UserMessage("two"),
        AssistantMessage("second"),
    ]
    second_call = entity._loop.provider.complete.await_args_list[1].args[0]
    assert len(second_call) == 4


@pytest.mark.anyio
async def test_extra_lists_tool_calls_of_this_turn() -> None:
    entity = _make_entity(
        AssistantMessage(tool_calls=(ToolCall("c1", "ha_smart_search", {"query": "ac"}),)),
        AssistantMessage("The ac is on."),
    )

    result = await entity.async_process(ConversationInput("is the ac on?", "t1"))

    assert result.extra["tool_calls"] == [
        {"name": "ha_smart_search", "arguments": {"query": "ac"}}
    ]


@pytest.mark.anyio
async def test_clear_history() -> None:
    entity = _make_entity(AssistantMessage("hi"))
    await entity.async_process(ConversationInput("hello", "t1"))

    await entity.clear_history("t1")

    assert await entity.store.get("t1") == []


# ---------------------------------------------------------------------------
# Failed runs
# ---------------------------------------------------------------------------


@pytest.mark.anyio
@pytest.mark.parametrize(
    "exc, apology",
    [
        (LLMRateLimitError("429"), "too many requests"),
        (LLMConnectionError("refused"), "can't reach"),
        (LLMAPIError("500", status_code=500), "returned an error"),
        (RuntimeError("weird"), "encountered an error"),
    ],
)
async def test_failed_run_ends_with_single_error(exc: Exception, apology: str) -> None:
    entity = _make_entity(exc)

    result = await entity.async_process(ConversationInput("hi", "t1"))

    assert not result.success
    assert result.error == str(exc)
    assert apology in result.response_text
    types = _types(result)
    assert types[-1] == EventType.ERROR
    assert types.count(EventType.ERROR) == 1
    assert EventType.DONE not in types


@pytest.mark.anyio
async def test_failed_run_does_not_touch_stored_history() -> None:
    entity = _make_entity(AssistantMessage("first"), LLMConnectionError("down"))
    await entity.async_process(ConversationInput("one", "t1"))
    before = await entity.store.get("t1")

    result = await entity.async_process(ConversationInput("two", "t1"))

    assert not result.success
    assert await entity.store.get("t1") == before


@pytest.mark.anyio
async def test_max_iterations_reported_as_error() -> None:
    provider = MagicMock()
    provider.complete = AsyncMock(
        return_value=AssistantMessage(tool_calls=(ToolCall("c", "a", {}),))
    )
    entity = CasaLibreConversationEntity(
        provider=provider, tool_dispatcher=_echo_dispatcher, max_iterations=2
    )

    result = await entity.async_process(ConversationInput("hi", "t1"))

    assert not result.success
    assert "max_iterations=2" in result.error
    assert "stuck" in result.response_text


# ---------------------------------------------------------------------------
# Failing thread store
# ---------------------------------------------------------------------------


class _UnavailableStore(InMemoryThreadStore):
    def __init__(self, fail_on: str) -> None:
        super().__init__()
        self.fail_on = fail_on

    async def get(self, thread_id: str) -> list[Message]:
        if self.fail_on == "get":
            raise OSError("store unavailable")
        return await super().get(thread_id)

    async def put(self, thread_id: str, history: list[Message]) -> None:
        if self.fail_on == "put":
            raise OSError("store unavailable")
        await super().put(thread_id, history)


@pytest.mark.anyio
@pytest.mark.parametrize("fail_on", ["get", "put"])
async def test_store_failure_ends_buffered_run_with_error(fail_on: str) -> None:
    entity = _make_entity(AssistantMessage("hi"), store=_UnavailableStore(fail_on))

    result = await entity.async_process(ConversationInput("hello", "t1"))

    assert not result.success
    assert result.error == "store unavailable"
    assert "encountered an error" in result.response_text
    types = _types(result)
    assert types[0] == EventType.USER
    assert types[-1] == EventType.ERROR
    assert EventType.DONE not in types


@pytest.mark.anyio
async def test_store_failure_ends_stream_with_error() -> None:
    entity = _make_entity(AssistantMessage("hi"), store=_UnavailableStore("get"))

    events = [e async for e in entity.async_stream(ConversationInput("hello", "t1"))]

    assert [e.type for e in events] == [EventType.USER, EventType.ERROR]
    assert events[-1].to_dict()["error"] == "store unavailable"
    entity._loop.provider.complete.assert_not_awaited()


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_concurrent_threads_do_not_interleave() -> None:
    async def complete(messages: list[Message], tools: Any) -> AssistantMessage:
        user = next(m for m in reversed(messages) if isinstance(m, UserMessage))
        if not any(m.role == "tool" for m in messages):
            await asyncio.sleep(0.01)
            return AssistantMessage(tool_calls=(ToolCall("c", "lookup", {"q": user.content}),))
        await asyncio.sleep(0)
        return AssistantMessage(f"answer to {user.content}")

    provider = MagicMock()
    provider.complete = complete
    store = InMemoryThreadStore()
    entity = CasaLibreConversationEntity(
        provider=provider, tool_dispatcher=_echo_dispatcher, store=store
    )

    first, second = await asyncio.gather(
        entity.async_process(ConversationInput("alpha", "ta")),
        entity.async_process(ConversationInput("beta", "tb")),
    )

    for result, word in ((first, "alpha"), (second, "beta")):
        assert result.response_text == f"answer to {word}"
        assert [e.step for e in result.trace] == list(range(len(result.trace)))
        assert result.trace[0].content == word
        tool_args = [
            e.to_dict()["toolArgs"] for e in result.trace if e.type == EventType.TOOL_CALL
        ]
        assert tool_args == [{"q": word}]

    history_a = await store.get("ta")
    history_b = await store.get("tb")
    assert all("beta" not in m.content for m in history_a)
    assert all("alpha" not in m.content for m in history_b)


# ---------------------------------------------------------------------------
# async_stream
# ---------------------------------------------------------------------------


@pytest.mark.anyio
async def test_async_stream_yields_events_until_done() -> None:
    entity = _make_entity(
        AssistantMessage(tool_calls=(ToolCall("c1", "ha_smart_search", {"query": "blinds"}),)),
        AssistantMessage("Blinds closed."),
    )

    events = [e async for e in entity.async_stream(ConversationInput("close blinds", "t1"))]

    assert [e.type for e in events] == [
        EventType.USER,
        EventType.LLM_PROMPT,
        EventType.TOOL_CALL,
        EventType.TOOL_RESULT,
        EventType.LLM_PROMPT,
        EventType.ASSISTANT,
        EventType.DONE,
    ]
    assert events[-1].to_dict()["reply"] == "Blinds closed."
    assert len(await entity.store.get("t1")) == 5


@pytest.mark.anyio
async def test_async_stream_ends_with_error_on_backend_failure() -> None:
    entity = _make_entity(LLMConnectionError("down"))

    events = [e async for e in entity.async_stream(ConversationInput("hi", "t1"))]

    assert events[-1].type == EventType.ERROR
    assert sum(1 for e in events if e.is_terminal) == 1


@pytest.mark.anyio
async def test_async_stream_validates_before_first_event() -> None:
    entity = _make_entity()
    stream = entity.async_stream(ConversationInput(text=None))

    with pytest.raises(InputValidationError):
        await stream.__anext__()


@pytest.mark.anyio
async def test_closing_stream_cancels_run() -> None:
    started = asyncio.Event()
    cancelled = asyncio.Event()

    async def hang(messages: list[Message], tools: Any) -> AssistantMessage:
        started.set()
        try:
            await asyncio.sleep(999)
        except asyncio.CancelledError:
            cancelled.set()
            raise
        return AssistantMessage("never")

    provider = MagicMock()
    provider.complete = hang
    entity = CasaLibreConversationEntity(provider=provider, tool_dispatcher=_echo_dispatcher)

    stream = entity.async_stream(ConversationInput("hi", "t1"))
    first = await stream.__anext__()
    assert first.type == EventType.USER
    await started.wait()
    await stream.aclose()

    await asyncio.wait_for(cancelled.wait(), timeout=1.0)
    assert await entity.store.get("t1") == []
