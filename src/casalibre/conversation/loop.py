"""
AgenticLoop - the async tool-calling engine for La Casa Libre.

This module implements the core "agentic" behaviour: calling the LLM,
dispatching tool calls the LLM requests, feeding results back, and
repeating until the LLM produces a turn without tool calls.

State machine per run::

    AWAIT_MODEL --(no tool calls)--> DONE
    AWAIT_MODEL --(tool calls)-----> DISPATCH_TOOLS --> AWAIT_MODEL
    any backend failure / cycle limit --> ERROR

Every step is reported to an ``AgentTracer``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Sequence

from casalibre.conversation.messages import (
    AssistantMessage,
    Message,
    SystemMessage,
    ToolCall,
    ToolMessage,
    ToolResult,
    last_reply,
    simplify,
)
from casalibre.conversation.providers import LLMProvider, ToolDefinition
from casalibre.conversation.tools.registry import ToolDispatcher
from casalibre.conversation.tracing import AgentTracer

logger = logging.getLogger(__name__)

NO_RESPONSE_TEXT = "No response generated."

DEFAULT_SYSTEM_PROMPT = (
    "You are the home automation assistant for La Casa Libre. "
    "You MUST use the available tools for any home automation request and "
    "never assume the state of a device without checking it first. "
    "To control a device, find it with ha_smart_search, then act on it with "
    "ha_call_service. To answer questions about devices, use ha_smart_search "
    "or ha_get_entity_state. Most lights in this house are switch entities "
    "(switch.*), not light entities. Keep answers short and say what you did."
)


def compose_system_prompt(base: str, house_context: str | None = None) -> str:
    """Append a house description (rooms, aliases, device mappings) to *base*."""
    if not house_context or not house_context.strip():
        return base
    return f"{base}\n\nHOUSE CONTEXT:\n{house_context.strip()}"


class MaxIterationsExceeded(RuntimeError):
    """The model kept requesting tools past the per-run cycle limit."""


@dataclass
class RunResult:
    """Outcome of a completed run.

    Attributes:
        reply: Text of the last non-empty assistant turn, or the fallback text.
        history: The input history extended with every message of this run.
    """

    reply: str
    history: list[Message]


class AgenticLoop:
    """Executes the LLM + tool-calling loop for a single conversation turn.

    Typical usage::

        loop = AgenticLoop(provider=my_provider, tool_dispatcher=my_dispatcher)
        result = await loop.run(
            history=[*previous, UserMessage("Close the bedroom blinds")],
            tools=registry.get_definitions(),
            tracer=tracer,
        )

    Attributes:
        provider: The LLM backend (any `LLMProvider` implementation).
        tool_dispatcher: Async callable ``(name, args) → ToolResult``.
        max_iterations: Maximum number of model/tool cycles per run.
        system_prompt: System message prepended when the history lacks one.
            Pass ``None`` to send the history as-is.
    """

    def __init__(
        self,
        provider: LLMProvider,
        tool_dispatcher: ToolDispatcher,
        max_iterations: int = 10,
        system_prompt: str | None = DEFAULT_SYSTEM_PROMPT,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.provider = provider
        self.tool_dispatcher = tool_dispatcher
        self.max_iterations = max_iterations
        self.system_prompt = system_prompt

    def _with_system_prompt(self, history: Sequence[Message]) -> list[Message]:
        messages = list(history)
        if self.system_prompt and not (messages and isinstance(messages[0], SystemMessage)):
            messages.insert(0, SystemMessage(self.system_prompt))
        return messages

    async def run(
        self,
        history: Sequence[Message],
        tools: list[ToolDefinition] | None = None,
        tracer: AgentTracer | None = None,
    ) -> RunResult:
        """Run the loop over *history* until the model stops calling tools.

        Args:
            history: Prior messages plus the new user message.  Not mutated;
                the loop works on a copy.
            tools: Tool definitions offered to the model.
            tracer: Receives one event per step.  A private tracer is used
                when omitted.

        Returns:
            A `RunResult` with the reply text and the extended history.

        Raises:
            LLMError: The backend failed; an ``ERROR`` event was emitted.
            MaxIterationsExceeded: The cycle limit was hit; an ``ERROR``
                event was emitted.
        """
        tools = tools or []
        tracer = tracer or AgentTracer()
        messages = self._with_system_prompt(history)
        turn_start = time.monotonic()

        try:
            for iteration in range(self.max_iterations):
                logger.debug("Agentic loop iteration %d/%d", iteration + 1, self.max_iterations)

                tracer.add_llm_prompt(simplify(messages))
                llm_t0 = time.monotonic()
                reply = await self.provider.complete(list(messages), tools)
                logger.debug(
                    "LLM call %d took %.3fs (tool_calls=%d)",
                    iteration + 1,
                    time.monotonic() - llm_t0,
                    len(reply.tool_calls),
                )
                messages.append(reply)

                if not reply.has_tool_calls:
                    tracer.add_assistant_message(reply.content)
                    logger.info(
                        "Loop complete after %d iteration(s) in %.3fs",
                        iteration + 1,
                        time.monotonic() - turn_start,
                    )
                    return RunResult(
                        reply=last_reply(messages) or NO_RESPONSE_TEXT,
                        history=messages,
                    )

                if reply.content:
                    tracer.add_assistant_message(reply.content)
                await self._dispatch_tool_calls(reply, messages, tracer)

            raise MaxIterationsExceeded(
                f"AgenticLoop exceeded max_iterations={self.max_iterations} "
                "without reaching a final response. Check for tool call loops."
            )
        except asyncio.CancelledError:
            logger.info("Agentic loop cancelled after %.3fs", time.monotonic() - turn_start)
            raise
        except Exception as exc:
            logger.error("Agentic loop failed: %s", exc)
            tracer.add_error(str(exc) or type(exc).__name__)
            raise

    async def _dispatch_tool_calls(
        self,
        reply: AssistantMessage,
        messages: list[Message],
        tracer: AgentTracer,
    ) -> None:
        """Run every tool call of *reply* and append the results in request order.

        All calls are announced first, then executed concurrently via
        ``asyncio.gather``; results are appended and reported in the order
        the model requested them.
        """
        for tc in reply.tool_calls:
            tracer.add_tool_call(tc.name, tc.arguments)

        tools_t0 = time.monotonic()
        results = await asyncio.gather(*[self._run_one(tc) for tc in reply.tool_calls])
        logger.debug(
            "Dispatched %d tool(s) concurrently in %.3fs",
            len(reply.tool_calls),
            time.monotonic() - tools_t0,
        )

        for tc, result in zip(reply.tool_calls, results):
            messages.append(ToolMessage.from_result(tc, result))
            tracer.add_tool_result(result.tool_name, result.trace_value(), result.is_error)

    async def _run_one(self, tc: ToolCall) -> ToolResult:
        logger.debug("Dispatching tool: %s(%s)", tc.name, tc.arguments)
        try:
            return await self.tool_dispatcher(tc.name, tc.arguments)
        except Exception as exc:
            logger.error("Tool %r failed: %s", tc.name, exc, exc_info=True)
            return ToolResult.failure(tc.name, str(exc) or type(exc).__name__)


def summarize_tool_calls(history: Sequence[Message]) -> list[dict[str, Any]]:
    """Return ``[{"name", "arguments"}]`` for every tool call in *history*."""
    return [
        {"name": tc.name, "arguments": tc.arguments}
        for message in history
        if isinstance(message, AssistantMessage)
        for tc in message.tool_calls
    ]
