"""
Message types for the La Casa Libre conversation loop.

A history is an ordered list of ``Message`` values.  ``Message`` is a tagged
union of four frozen dataclasses, one per chat role.  Only
``AssistantMessage`` may carry tool-call requests, and only ``ToolMessage``
names the tool whose outcome it reports.

Also defines ``ToolCall`` (a tool invocation requested by the model) and
``ToolResult`` (the outcome of dispatching one ``ToolCall``), plus helpers
that convert a history to the OpenAI chat format and to the simplified
``{role, content}`` view used in trace events.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar, Union

if TYPE_CHECKING:
    from casalibre.conversation.providers import UsageStats


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the LLM.

    Attributes:
        id: Unique call ID returned by the LLM (used to correlate the result).
        name: Name of the tool to invoke.
        arguments: Parsed JSON arguments dict.
    """

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    """Outcome of one tool invocation.

    Exactly one of ``payload`` / ``error`` is meaningful: a result with
    ``error`` set is a recoverable failure that is fed back to the model.

    Attributes:
        tool_name: Name of the tool that was invoked.
        payload: JSON-serialisable value (or pre-encoded string) on success.
        error: Human-readable error text on failure, ``None`` on success.
    """

    tool_name: str
    payload: Any = None
    error: str | None = None

    @classmethod
    def success(cls, tool_name: str, payload: Any) -> ToolResult:
        return cls(tool_name=tool_name, payload=payload)

    @classmethod
    def failure(cls, tool_name: str, error: str) -> ToolResult:
        return cls(tool_name=tool_name, error=error)

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def content(self) -> str:
        """The text sent back to the model in the ``tool`` message."""
        if self.error is not None:
            return json.dumps({"error": self.error})
        if isinstance(self.payload, str):
            return self.payload
        return json.dumps(self.payload, default=str)

    def trace_value(self) -> Any:
        """Structured form of the outcome for trace events.

        String payloads that hold JSON are decoded so consumers see the
        object, not its encoding.
        """
        if self.error is not None:
            return {"error": self.error}
        if isinstance(self.payload, str):
            try:
                return json.loads(self.payload)
            except json.JSONDecodeError:
                return self.payload
        return self.payload


# ---------------------------------------------------------------------------
# Message variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SystemMessage:
    role: ClassVar[str] = "system"
    content: str


@dataclass(frozen=True)
class UserMessage:
    role: ClassVar[str] = "user"
    content: str


@dataclass(frozen=True)
class AssistantMessage:
    """A model turn.

    Attributes:
        content: Text of the turn (may be empty when only tools are called).
        tool_calls: Tool invocations requested by this turn, in order.
        usage: Token usage reported by the backend, if any.
    """

    role: ClassVar[str] = "assistant"
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    usage: UsageStats | None = field(default=None, compare=False)

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0


@dataclass(frozen=True)
class ToolMessage:
    """The result of one tool call, appended after the assistant turn."""

    role: ClassVar[str] = "tool"
    content: str
    tool_name: str
    tool_call_id: str = ""
    is_error: bool = False

    @classmethod
    def from_result(cls, call: ToolCall, result: ToolResult) -> ToolMessage:
        return cls(
            content=result.content,
            tool_name=result.tool_name,
            tool_call_id=call.id,
            is_error=result.is_error,
        )


Message = Union[SystemMessage, UserMessage, AssistantMessage, ToolMessage]


# ---------------------------------------------------------------------------
# Conversions
# ---------------------------------------------------------------------------


def to_openai_message(message: Message) -> dict[str, Any]:
    """Serialise one message to the OpenAI chat-completions format."""
    if isinstance(message, AssistantMessage):
        data: dict[str, Any] = {"role": "assistant", "content": message.content or None}
        if message.tool_calls:
            data["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {
                        "name": tc.name,
                        "arguments": json.dumps(tc.arguments),
                    },
                }
                for tc in message.tool_calls
            ]
        return data
    if isinstance(message, ToolMessage):
        return {
            "role": "tool",
            "tool_call_id": message.tool_call_id,
            "name": message.tool_name,
            "content": message.content,
        }
    return {"role": message.role, "content": message.content}


def simplify(messages: list[Message]) -> list[dict[str, str]]:
    """Return the ``{role, content}`` view of *messages* used in traces."""
    return [{"role": m.role, "content": m.content} for m in messages]


def last_reply(messages: list[Message]) -> str | None:
    """Return the text of the last assistant message with non-empty content."""
    for message in reversed(messages):
        if isinstance(message, AssistantMessage) and message.content:
            return message.content
    return None
