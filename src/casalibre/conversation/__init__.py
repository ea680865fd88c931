"""
La Casa Libre conversation package.

Implements the agentic tool-calling loop, its trace events, thread storage
and the conversation entity that ties them together.

The loop is a small custom state machine over ``openai.AsyncOpenAI`` rather
than a graph framework: the tool-calling pattern is linear (one model, one
tool table, no branching).
"""

from casalibre.conversation.entity import (
    CasaLibreConversationEntity,
    ConversationInput,
    ConversationResult,
    InputValidationError,
)
from casalibre.conversation.loop import AgenticLoop, MaxIterationsExceeded, RunResult
from casalibre.conversation.messages import (
    AssistantMessage,
    Message,
    SystemMessage,
    ToolCall,
    ToolMessage,
    ToolResult,
    UserMessage,
)
from casalibre.conversation.providers import (
    LLMError,
    LLMProvider,
    OpenAICompatibleProvider,
    ToolDefinition,
)
from casalibre.conversation.threads import InMemoryThreadStore, ThreadStore
from casalibre.conversation.tracing import AgentTracer, EventType, TraceEvent

__all__ = [
    "AgentTracer",
    "AgenticLoop",
    "AssistantMessage",
    "CasaLibreConversationEntity",
    "ConversationInput",
    "ConversationResult",
    "EventType",
    "InMemoryThreadStore",
    "InputValidationError",
    "LLMError",
    "LLMProvider",
    "MaxIterationsExceeded",
    "Message",
    "OpenAICompatibleProvider",
    "RunResult",
    "SystemMessage",
    "ThreadStore",
    "ToolCall",
    "ToolDefinition",
    "ToolMessage",
    "ToolResult",
    "TraceEvent",
    "UserMessage",
]
