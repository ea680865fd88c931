"""
Tool registry for the La Casa Libre agentic loop.

Provides ``ToolRegistry``, a container for registering tool handlers and
building a dispatcher callable with optional timeout and retry support.

Typical usage::

    from casalibre.conversation.tools.registry import ToolRegistry

    registry = ToolRegistry()
    registry.register(SmartSearchTool.TOOL_DEFINITION, search.as_dispatcher_entry())

    dispatcher = registry.build_dispatcher(timeout=10.0, max_retries=1)
    loop = AgenticLoop(provider=provider, tool_dispatcher=dispatcher)
    result = await loop.run(history, tools=registry.get_definitions())

The table is resolved once, when ``build_dispatcher()`` is called; the
dispatcher never looks tools up anywhere else.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from casalibre.conversation.messages import ToolResult
from casalibre.conversation.providers import ToolDefinition

logger = logging.getLogger(__name__)

# Type alias for a single tool handler: async (args_dict) -> JSON-serialisable value
AsyncToolHandler = Callable[[dict[str, Any]], Awaitable[Any]]

ToolDispatcher = Callable[[str, dict[str, Any]], Awaitable[ToolResult]]


class ToolError(Exception):
    """Raised by a tool handler for a failure the model should see and adapt to."""


class ToolRegistry:
    """Registry mapping tool names to their definitions and async handlers.

    Manages a ``name -> (ToolDefinition, AsyncToolHandler)`` mapping.
    Use ``get_definitions()`` to obtain the list of ``ToolDefinition`` objects
    for ``AgenticLoop.run()``, and ``build_dispatcher()`` to produce the
    dispatcher callable for ``AgenticLoop.__init__()``.
    """

    def __init__(self) -> None:
        self._tools: dict[str, tuple[ToolDefinition, AsyncToolHandler]] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        definition: ToolDefinition,
        handler: AsyncToolHandler,
    ) -> None:
        """Register a tool with its async handler.

        Raises:
            ValueError: If a tool with the same name is already registered.
        """
        if definition.name in self._tools:
            raise ValueError(
                f"Tool {definition.name!r} is already registered. "
                "Deregister it first before re-registering."
            )
        self._tools[definition.name] = (definition, handler)
        logger.debug("Registered tool: %r", definition.name)

    def deregister(self, name: str) -> None:
        """Remove a registered tool by name.

        Raises:
            KeyError: If the tool is not registered.
        """
        if name not in self._tools:
            raise KeyError(f"Tool {name!r} is not registered.")
        del self._tools[name]
        logger.debug("Deregistered tool: %r", name)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_definitions(self) -> list[ToolDefinition]:
        """Return all registered ``ToolDefinition`` objects (insertion order)."""
        return [defn for defn, _handler in self._tools.values()]

    def names(self) -> list[str]:
        return list(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    # ------------------------------------------------------------------
    # Dispatcher factory
    # ------------------------------------------------------------------

    def build_dispatcher(
        self,
        timeout: float | None = 30.0,
        max_retries: int = 0,
        retry_exceptions: tuple[type[BaseException], ...] = (asyncio.TimeoutError,),
    ) -> ToolDispatcher:
        """Build an async dispatcher compatible with ``AgenticLoop.tool_dispatcher``.

        The returned callable wraps each tool invocation with:

        - **Timeout** - ``asyncio.wait_for(handler(...), timeout=timeout)``
          if *timeout* is set.
        - **Retry** - re-attempts the call up to *max_retries* additional times
          when the exception is an instance of *retry_exceptions*.

        Every outcome is returned as a ``ToolResult``: unknown tool names,
        handler exceptions and exhausted retries become error results so the
        model can correct itself.  Cancellation is never converted.

        Args:
            timeout: Maximum seconds per tool call.  ``None`` disables the
                timeout.  Default: ``30.0``.
            max_retries: Number of *additional* attempts on retryable failures.
            retry_exceptions: Exception types that trigger a retry.

        Returns:
            An async callable ``(name, args) -> ToolResult``.
        """
        # Later registrations are not reflected in this dispatcher.
        registry_snapshot = dict(self._tools)
        total_attempts = max_retries + 1

        async def _dispatch(name: str, args: dict[str, Any]) -> ToolResult:
            entry = registry_snapshot.get(name)
            if entry is None:
                logger.warning("Unknown tool requested: %r", name)
                return ToolResult.failure(name, f"Unknown tool: {name!r}")

            _definition, handler = entry

            for attempt in range(1, total_attempts + 1):
                try:
                    if timeout is not None:
                        payload = await asyncio.wait_for(handler(args), timeout=timeout)
                    else:
                        payload = await handler(args)
                    return ToolResult.success(name, payload)
                except asyncio.TimeoutError as exc:
                    error: Exception = exc
                    message = f"Tool {name!r} timed out after {timeout}s"
                except ToolError as exc:
                    error = exc
                    message = str(exc)
                except Exception as exc:
                    logger.error("Tool %r raised: %s", name, exc, exc_info=True)
                    error = exc
                    message = f"{type(exc).__name__}: {exc}"

                if isinstance(error, retry_exceptions) and attempt < total_attempts:
                    logger.warning(
                        "Tool %r attempt %d/%d failed (%s); retrying…",
                        name,
                        attempt,
                        total_attempts,
                        message,
                    )
                    continue
                return ToolResult.failure(name, message)

            # Unreachable, but keeps type checkers happy.
            raise RuntimeError("build_dispatcher: retry loop exited unexpectedly")  # pragma: no cover

        return _dispatch
