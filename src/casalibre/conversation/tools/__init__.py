"""
Tools for the La Casa Libre agentic loop.

Each tool class exposes:
- A ``TOOL_DEFINITION`` attribute (``ToolDefinition``) for registering the
  tool with the ``AgenticLoop``.
- An ``as_dispatcher_entry()`` method returning a handler for ``ToolRegistry``.

The ``ToolRegistry`` class manages tool registration and produces a dispatcher
callable (with timeout and retry support) that always answers with a
``ToolResult``.

Quick-start example::

    from casalibre.conversation.tools import ToolRegistry, register_home_assistant_tools

    registry = ToolRegistry()
    register_home_assistant_tools(registry, ha_client, resolver)
    dispatcher = registry.build_dispatcher(timeout=10.0, max_retries=1)
"""

from casalibre.conversation.tools.home_assistant import (
    CallServiceTool,
    GetEntityStateTool,
    ListEntitiesTool,
    SmartSearchTool,
    register_home_assistant_tools,
)
from casalibre.conversation.tools.registry import (
    AsyncToolHandler,
    ToolDispatcher,
    ToolError,
    ToolRegistry,
)

__all__ = [
    "AsyncToolHandler",
    "CallServiceTool",
    "GetEntityStateTool",
    "ListEntitiesTool",
    "SmartSearchTool",
    "ToolDispatcher",
    "ToolError",
    "ToolRegistry",
    "register_home_assistant_tools",
]
