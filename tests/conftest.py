"""
Pytest configuration for the casalibre test suite.

Async tests use the anyio plugin (``@pytest.mark.anyio``); they run on the
asyncio backend only because the agent relies on ``asyncio.Task`` directly.
"""

import pytest


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"
