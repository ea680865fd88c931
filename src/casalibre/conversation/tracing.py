"""
Trace events for agent runs.

Every run produces an ordered sequence of ``TraceEvent`` values.  Each event
type is its own frozen dataclass, so the fields an event carries are exactly
the ones valid for its type.  ``AgentTracer`` numbers the events of one run,
keeps them for buffered consumers and pushes them to an optional listener for
incremental (server-sent events) consumers.

Wire format (one JSON object per event)::

    {"step": 3, "type": "TOOL_CALL", "timestamp": "...", "content": "...",
     "toolName": "ha_smart_search", "toolArgs": {"query": "blinds"}}
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, ClassVar, Union

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    USER = "USER"
    LLM_PROMPT = "LLM_PROMPT"
    ASSISTANT = "ASSISTANT"
    TOOL_CALL = "TOOL_CALL"
    TOOL_RESULT = "TOOL_RESULT"
    ERROR = "ERROR"
    DONE = "DONE"


TERMINAL_EVENT_TYPES = frozenset({EventType.ERROR, EventType.DONE})


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class _BaseEvent:
    type: ClassVar[EventType]

    step: int
    content: str
    timestamp: str = field(default_factory=_now)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES

    def _extra(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "step": self.step,
            "type": self.type.value,
            "timestamp": self.timestamp,
            "content": self.content,
        }
        data.update(self._extra())
        return data

    def to_sse(self) -> str:
        """Encode as one ``text/event-stream`` frame."""
        return f"data: {json.dumps(self.to_dict(), ensure_ascii=False, default=str)}\n\n"


@dataclass(frozen=True)
class UserEvent(_BaseEvent):
    type: ClassVar[EventType] = EventType.USER


@dataclass(frozen=True)
class AssistantEvent(_BaseEvent):
    type: ClassVar[EventType] = EventType.ASSISTANT


@dataclass(frozen=True)
class LLMPromptEvent(_BaseEvent):
    type: ClassVar[EventType] = EventType.LLM_PROMPT
    messages: tuple[dict[str, str], ...] = ()

    def _extra(self) -> dict[str, Any]:
        return {"messages": list(self.messages)}


@dataclass(frozen=True)
class ToolCallEvent(_BaseEvent):
    type: ClassVar[EventType] = EventType.TOOL_CALL
    tool_name: str = ""
    tool_args: dict[str, Any] = field(default_factory=dict)

    def _extra(self) -> dict[str, Any]:
        return {"toolName": self.tool_name, "toolArgs": self.tool_args}


@dataclass(frozen=True)
class ToolResultEvent(_BaseEvent):
    type: ClassVar[EventType] = EventType.TOOL_RESULT
    tool_name: str = ""
    tool_result: Any = None
    is_error: bool = False

    def _extra(self) -> dict[str, Any]:
        return {
            "toolName": self.tool_name,
            "toolResult": self.tool_result,
            "isError": self.is_error,
        }


@dataclass(frozen=True)
class ErrorEvent(_BaseEvent):
    type: ClassVar[EventType] = EventType.ERROR
    error: str = ""

    def _extra(self) -> dict[str, Any]:
        return {"error": self.error}


@dataclass(frozen=True)
class DoneEvent(_BaseEvent):
    type: ClassVar[EventType] = EventType.DONE
    thread_id: str = ""
    reply: str = ""

    def _extra(self) -> dict[str, Any]:
        return {"threadId": self.thread_id, "reply": self.reply}


TraceEvent = Union[
    UserEvent,
    LLMPromptEvent,
    AssistantEvent,
    ToolCallEvent,
    ToolResultEvent,
    ErrorEvent,
    DoneEvent,
]

TraceListener = Callable[[TraceEvent], None]


class AgentTracer:
    """Numbers and records the events of a single run.

    Args:
        listener: Called synchronously with every event as it is emitted.
            Used by the streaming endpoint to push events to a queue.
        start_step: Step assigned to the first event.

    Once an ``ERROR`` or ``DONE`` event has been emitted the run is
    finished and emitting again raises ``RuntimeError``.  After ``close()``
    (the consumer went away) events are silently discarded.
    """

    def __init__(self, listener: TraceListener | None = None, start_step: int = 0) -> None:
        self._listener = listener
        self._next_step = start_step
        self._events: list[TraceEvent] = []
        self._finished = False
        self._closed = False

    @property
    def events(self) -> list[TraceEvent]:
        return list(self._events)

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    def _emit(self, factory: type[_BaseEvent], **kwargs: Any) -> TraceEvent | None:
        if self._closed:
            logger.debug("Tracer closed; dropping %s event", factory.type.value)
            return None
        if self._finished:
            raise RuntimeError(
                f"Cannot emit {factory.type.value} after the run finished"
            )
        event = factory(step=self._next_step, **kwargs)
        self._next_step += 1
        self._events.append(event)
        if event.is_terminal:
            self._finished = True
        if self._listener is not None:
            self._listener(event)
        return event

    # ------------------------------------------------------------------
    # Emitters, one per event type
    # ------------------------------------------------------------------

    def add_user_message(self, content: str) -> TraceEvent | None:
        return self._emit(UserEvent, content=content)

    def add_llm_prompt(self, messages: list[dict[str, str]]) -> TraceEvent | None:
        return self._emit(
            LLMPromptEvent,
            content=f"Sending {len(messages)} messages to LLM",
            messages=tuple(messages),
        )

    def add_assistant_message(self, content: str) -> TraceEvent | None:
        return self._emit(AssistantEvent, content=content)

    def add_tool_call(self, tool_name: str, tool_args: dict[str, Any]) -> TraceEvent | None:
        return self._emit(
            ToolCallEvent,
            content=f"Calling tool: {tool_name}",
            tool_name=tool_name,
            tool_args=dict(tool_args),
        )

    def add_tool_result(
        self, tool_name: str, result: Any, is_error: bool = False
    ) -> TraceEvent | None:
        status = "failed" if is_error else "completed"
        return self._emit(
            ToolResultEvent,
            content=f"Tool {tool_name} {status}",
            tool_name=tool_name,
            tool_result=result,
            is_error=is_error,
        )

    def add_error(self, error: str) -> TraceEvent | None:
        return self._emit(ErrorEvent, content=error, error=error)

    def add_done(self, thread_id: str, reply: str) -> TraceEvent | None:
        return self._emit(DoneEvent, content=reply, thread_id=thread_id, reply=reply)

    def to_dicts(self) -> list[dict[str, Any]]:
        return [event.to_dict() for event in self._events]
