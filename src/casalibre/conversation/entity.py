"""
CasaLibreConversationEntity - the conversation front door.

Connects a thread store, the `AgenticLoop` and an `AgentTracer` for one
request.  Two consumption modes share the same run:

- ``async_process`` runs to completion and returns the reply together with
  the full trace (buffered mode).
- ``async_stream`` yields every trace event as soon as it is produced
  (incremental mode).  Closing the iterator cancels the run.

In both modes the trace ends with exactly one ``DONE`` or ``ERROR`` event,
and the thread history is only written back after a successful run.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from casalibre.conversation.loop import (
    DEFAULT_SYSTEM_PROMPT,
    AgenticLoop,
    MaxIterationsExceeded,
    summarize_tool_calls,
)
from casalibre.conversation.messages import UserMessage
from casalibre.conversation.providers import (
    LLMAPIError,
    LLMConnectionError,
    LLMError,
    LLMProvider,
    LLMRateLimitError,
    ToolDefinition,
)
from casalibre.conversation.threads import InMemoryThreadStore, ThreadStore
from casalibre.conversation.tools.registry import ToolDispatcher
from casalibre.conversation.tracing import AgentTracer, TraceEvent

logger = logging.getLogger(__name__)


class InputValidationError(ValueError):
    """The request was rejected before a run started."""


@dataclass
class ConversationInput:
    """Input to a single conversation turn.

    Attributes:
        text: The user's message.
        conversation_id: Thread id for multi-turn context.  A new id is
            created when omitted.
    """

    text: str | None
    conversation_id: str | None = None


@dataclass
class ConversationResult:
    """Result of a single conversation turn.

    Attributes:
        response_text: The reply, or a short apology when the run failed.
        conversation_id: Thread id (echoed or newly created).
        trace: Every event of the run, ``DONE`` or ``ERROR`` last.
        error: Error text when the run failed, ``None`` on success.
        extra: Metadata (tool calls used, history length).
    """

    response_text: str
    conversation_id: str
    trace: list[TraceEvent] = field(default_factory=list)
    error: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.error is None


def _apology_for(exc: BaseException) -> str:
    if isinstance(exc, MaxIterationsExceeded):
        return "I'm sorry, I got stuck trying to answer that. Please try again."
    if isinstance(exc, LLMRateLimitError):
        return (
            "I'm sorry, I'm receiving too many requests right now. "
            "Please try again in a moment."
        )
    if isinstance(exc, LLMConnectionError):
        return (
            "I'm sorry, I can't reach my language model right now. "
            "Please check the connection and try again."
        )
    if isinstance(exc, LLMAPIError):
        return "I'm sorry, my language model returned an error. Please try again."
    return "I'm sorry, I encountered an error. Please try again."


class CasaLibreConversationEntity:
    """Conversation agent backed by the AgenticLoop.

    Attributes:
        name: Display name reported by the health endpoint.
        tools: Tool definitions offered to the model.
        store: Thread store holding per-conversation histories.
    """

    def __init__(
        self,
        provider: LLMProvider,
        tool_dispatcher: ToolDispatcher,
        tools: list[ToolDefinition] | None = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        max_iterations: int = 10,
        store: ThreadStore | None = None,
        name: str = "La Casa Libre",
    ) -> None:
        self.name = name
        self.tools = tools or []
        self.store: ThreadStore = store if store is not None else InMemoryThreadStore()
        self._loop = AgenticLoop(
            provider=provider,
            tool_dispatcher=tool_dispatcher,
            max_iterations=max_iterations,
            system_prompt=system_prompt,
        )

    @property
    def max_iterations(self) -> int:
        return self._loop.max_iterations

    @staticmethod
    def validate(user_input: ConversationInput) -> str:
        """Return the thread id for *user_input* or raise ``InputValidationError``."""
        if not isinstance(user_input.text, str) or not user_input.text.strip():
            raise InputValidationError("Message is required and must be a string")
        if user_input.conversation_id is not None and not isinstance(
            user_input.conversation_id, str
        ):
            raise InputValidationError("threadId must be a string")
        conv_id = user_input.conversation_id or str(uuid.uuid4())
        return conv_id

    async def _execute(
        self, conv_id: str, text: str, tracer: AgentTracer
    ) -> ConversationResult:
        """Run one turn and record its terminal event on *tracer*."""
        logger.info("Processing conversation turn: id=%r, text=%r", conv_id, text)

        tracer.add_user_message(text)
        try:
            history = await self.store.get(conv_id)
            logger.debug("Loaded history for id=%r: %d messages", conv_id, len(history))
            result = await self._loop.run(
                history=[*history, UserMessage(text)],
                tools=self.tools,
                tracer=tracer,
            )
            await self.store.put(conv_id, result.history)
        except LLMError as exc:
            logger.error("LLM failure for conversation id=%r: %s", conv_id, exc)
            return self._failed(conv_id, tracer, exc)
        except MaxIterationsExceeded as exc:
            logger.error(
                "AgenticLoop exceeded iteration limit for conversation id=%r: %s",
                conv_id,
                exc,
            )
            return self._failed(conv_id, tracer, exc)
        except Exception as exc:
            logger.error(
                "Unexpected error in agentic loop for conversation id=%r: %s",
                conv_id,
                exc,
                exc_info=True,
            )
            return self._failed(conv_id, tracer, exc)

        tracer.add_done(conv_id, result.reply)
        logger.info("Conversation turn complete: id=%r, response=%r", conv_id, result.reply)
        return ConversationResult(
            response_text=result.reply,
            conversation_id=conv_id,
            trace=tracer.events,
            extra={
                "tool_calls": summarize_tool_calls(result.history[len(history):]),
                "history_len": len(result.history),
            },
        )

    @staticmethod
    def _failed(
        conv_id: str, tracer: AgentTracer, exc: Exception
    ) -> ConversationResult:
        message = str(exc) or type(exc).__name__
        if not tracer.finished:
            tracer.add_error(message)
        return ConversationResult(
            response_text=_apology_for(exc),
            conversation_id=conv_id,
            trace=tracer.events,
            error=message,
        )

    async def async_process(self, user_input: ConversationInput) -> ConversationResult:
        """Process one conversation turn and return the reply plus its trace.

        Raises:
            InputValidationError: If the input is malformed.  No run starts.
        """
        conv_id = self.validate(user_input)
        return await self._execute(conv_id, user_input.text, AgentTracer())

    async def async_stream(self, user_input: ConversationInput) -> AsyncIterator[TraceEvent]:
        """Yield the events of one conversation turn as they are produced.

        Validation happens before the first event, so an invalid request
        raises ``InputValidationError`` on the first ``__anext__``.  If the
        consumer stops iterating early, the run is cancelled and no further
        events are produced.
        """
        conv_id = self.validate(user_input)
        queue: asyncio.Queue[TraceEvent | None] = asyncio.Queue()
        tracer = AgentTracer(listener=queue.put_nowait)

        task = asyncio.create_task(
            self._execute(conv_id, user_input.text, tracer),
            name=f"conversation-{conv_id}",
        )
        task.add_done_callback(lambda _task: queue.put_nowait(None))

        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
                if event.is_terminal:
                    break
        finally:
            tracer.close()
            if not task.done():
                logger.info("Stream consumer went away; cancelling conversation id=%r", conv_id)
                task.cancel()

    async def clear_history(self, conversation_id: str) -> None:
        await self.store.delete(conversation_id)
