"""
La Casa Libre Agent - a tool-calling home automation assistant.

This library turns natural-language requests into a bounded sequence of LLM
calls and Home Assistant tool calls, and exposes an exact, replayable trace
of every run. It includes:

- The agentic tool-calling loop and its trace events
- A synonym- and typo-aware entity resolver
- Home Assistant tools guarded by an allow-list
- A FastAPI server with buffered and streaming (SSE) chat endpoints

Quick Start:
    >>> from casalibre.config import get_settings
    >>> from casalibre.main import build_app
    >>> app = build_app(get_settings())
"""

from casalibre.config import Settings, get_settings

__version__ = "0.1.0"
__all__ = ["Settings", "get_settings"]
