"""
LLM Provider abstractions for the La Casa Libre conversation package.

Defines the `LLMProvider` Protocol so the `AgenticLoop` can work with any
OpenAI-compatible backend (OpenAI, Ollama, Claude via LiteLLM proxy, etc.)
without being tied to a specific vendor or SDK.

The concrete implementation, `OpenAICompatibleProvider`, uses `openai.AsyncOpenAI`
which supports any OpenAI-compatible base URL.

Also provides:
- Custom exception hierarchy for LLM API errors.
- ``UsageStats`` / ``CostEstimator`` for token usage and cost tracking.
- ``RateLimiter`` for client-side call-rate throttling.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from openai import APIConnectionError, APIStatusError, AsyncOpenAI, RateLimitError

from casalibre.conversation.messages import (
    AssistantMessage,
    Message,
    ToolCall,
    to_openai_message,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Custom exception hierarchy
# ---------------------------------------------------------------------------


class LLMError(Exception):
    """Base exception for all LLM provider errors."""


class LLMRateLimitError(LLMError):
    """Raised when the LLM API returns a rate-limit (429) response."""


class LLMConnectionError(LLMError):
    """Raised when the LLM API endpoint cannot be reached."""


class LLMAPIError(LLMError):
    """Raised for other LLM API errors (e.g., 5xx, authentication failures).

    Attributes:
        status_code: HTTP status code from the API, or ``None`` if unavailable.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class LLMResponseError(LLMError):
    """Raised when the API answers with a response the loop cannot use."""


# ---------------------------------------------------------------------------
# Usage statistics and cost estimation
# ---------------------------------------------------------------------------


@dataclass
class UsageStats:
    """Token usage recorded for a single LLM completion call.

    Attributes:
        prompt_tokens: Number of input tokens consumed.
        completion_tokens: Number of output tokens generated.
        total_tokens: Combined token count.
        estimated_cost_usd: Estimated cost in USD, or ``None`` if the model is
            not in the ``CostEstimator`` database.
    """

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    estimated_cost_usd: float | None = None


# (input_per_1k_tokens, output_per_1k_tokens) in USD
_MODEL_COSTS: dict[str, tuple[float, float]] = {
    "gpt-4o": (0.005, 0.015),
    "gpt-4o-mini": (0.000150, 0.000600),
    "gpt-4-turbo": (0.010, 0.030),
    "gpt-4.1": (0.002, 0.008),
    "gpt-4.1-mini": (0.0004, 0.0016),
    "claude-3-5-haiku-20241022": (0.001, 0.005),
    "claude-3-5-sonnet-20241022": (0.003, 0.015),
}


class CostEstimator:
    """Estimates USD cost for an LLM completion based on token counts.

    Unknown models return ``None`` rather than raising an error.
    """

    def estimate(
        self,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
    ) -> float | None:
        costs = _MODEL_COSTS.get(model)
        if costs is None:
            return None
        input_cost_per_1k, output_cost_per_1k = costs
        return (
            prompt_tokens * input_cost_per_1k / 1000.0
            + completion_tokens * output_cost_per_1k / 1000.0
        )


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------


class RateLimiter:
    """Async client-side rate limiter using a sliding window.

    Enforces a maximum number of calls per minute. Callers ``await
    acquire()`` before making an LLM request; the method sleeps until
    the window allows another call.

    Attributes:
        calls_per_minute: Maximum calls allowed in any 60-second window.
    """

    def __init__(self, calls_per_minute: int) -> None:
        if calls_per_minute <= 0:
            raise ValueError("calls_per_minute must be a positive integer.")
        self.calls_per_minute = calls_per_minute
        self._window_seconds = 60.0
        self._timestamps: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self) -> None:
        cutoff = time.monotonic() - self._window_seconds
        while self._timestamps and self._timestamps[0] < cutoff:
            self._timestamps.popleft()

    async def acquire(self) -> None:
        """Wait until a call slot is available within the current window."""
        async with self._lock:
            self._prune()
            if len(self._timestamps) >= self.calls_per_minute:
                sleep_secs = self._timestamps[0] + self._window_seconds - time.monotonic()
                if sleep_secs > 0:
                    logger.debug(
                        "RateLimiter: at capacity (%d/%d), sleeping %.2fs",
                        len(self._timestamps),
                        self.calls_per_minute,
                        sleep_secs,
                    )
                    await asyncio.sleep(sleep_secs)
                self._prune()
            self._timestamps.append(time.monotonic())


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------


@dataclass
class ToolDefinition:
    """Describes a callable tool available to the LLM.

    Attributes:
        name: The tool's unique name (used by the LLM to invoke it).
        description: Human-readable description shown in the LLM's tool prompt.
        parameters: JSON Schema dict describing the tool's input parameters.
    """

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_openai_format(self) -> dict[str, Any]:
        """Serialise to OpenAI tool definition format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


# ---------------------------------------------------------------------------
# LLMProvider Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class LLMProvider(Protocol):
    """Protocol for LLM backends used by AgenticLoop."""

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition],
    ) -> AssistantMessage:
        """Send the full history to the LLM and return its assistant turn.

        Raises:
            LLMError: Any backend failure. Fatal to the run.
        """
        ...


# ---------------------------------------------------------------------------
# Concrete provider implementation
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """LLM provider backed by any OpenAI-compatible endpoint.

    Attributes:
        base_url: The API base URL.
        model: The model identifier.
        temperature: Sampling temperature (0.0–2.0).
        rate_limiter: Optional ``RateLimiter`` for client-side call throttling.
        cost_estimator: Optional ``CostEstimator`` for tracking USD cost.
    """

    def __init__(
        self,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4o",
        api_key: str = "",
        temperature: float = 0.0,
        rate_limiter: RateLimiter | None = None,
        cost_estimator: CostEstimator | None = None,
    ) -> None:
        self.base_url = base_url
        self.model = model
        self.temperature = temperature
        self.rate_limiter = rate_limiter
        self.cost_estimator = cost_estimator
        self._client = AsyncOpenAI(base_url=base_url, api_key=api_key)

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolDefinition],
    ) -> AssistantMessage:
        """Call the LLM and return the parsed assistant turn.

        Raises:
            LLMRateLimitError: If the API returns a 429 response.
            LLMConnectionError: If the API endpoint cannot be reached.
            LLMAPIError: For other API-level failures (e.g. 4xx/5xx).
            LLMResponseError: If the response carries no choices.
        """
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()

        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": [to_openai_message(m) for m in messages],
            "temperature": self.temperature,
        }
        if tools:
            kwargs["tools"] = [t.to_openai_format() for t in tools]

        logger.debug(
            "LLM request: model=%s, messages=%d, tools=%d",
            self.model,
            len(messages),
            len(tools),
        )

        try:
            response = await self._client.chat.completions.create(**kwargs)
        except RateLimitError as exc:
            logger.warning("LLM rate limit exceeded: %s", exc)
            raise LLMRateLimitError(f"Rate limit exceeded: {exc}") from exc
        except APIConnectionError as exc:
            logger.error("LLM connection failed: %s", exc)
            raise LLMConnectionError(f"Could not connect to LLM endpoint: {exc}") from exc
        except APIStatusError as exc:
            logger.error("LLM API error %d: %s", exc.status_code, exc)
            raise LLMAPIError(
                f"LLM API returned status {exc.status_code}: {exc}",
                status_code=exc.status_code,
            ) from exc

        if not response.choices:
            raise LLMResponseError("LLM response contained no choices")
        message = response.choices[0].message

        tool_calls: list[ToolCall] = []
        for tc in message.tool_calls or []:
            try:
                args = json.loads(tc.function.arguments or "{}")
            except json.JSONDecodeError:
                args = None
            if not isinstance(args, dict):
                logger.warning(
                    "Tool call %r carried malformed arguments: %r",
                    tc.function.name,
                    tc.function.arguments,
                )
                args = {}
            tool_calls.append(ToolCall(id=tc.id, name=tc.function.name, arguments=args))

        usage: UsageStats | None = None
        if response.usage is not None:
            prompt_tokens = response.usage.prompt_tokens
            completion_tokens = response.usage.completion_tokens
            estimated_cost: float | None = None
            if self.cost_estimator is not None:
                estimated_cost = self.cost_estimator.estimate(
                    self.model, prompt_tokens, completion_tokens
                )
            usage = UsageStats(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=response.usage.total_tokens,
                estimated_cost_usd=estimated_cost,
            )

        logger.debug(
            "LLM response: tool_calls=%d, tokens=%s",
            len(tool_calls),
            usage.total_tokens if usage else "n/a",
        )

        return AssistantMessage(
            content=message.content or "",
            tool_calls=tuple(tool_calls),
            usage=usage,
        )
