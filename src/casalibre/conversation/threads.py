"""
Thread storage for multi-turn conversations.

A thread maps an opaque id to the ordered message history of that
conversation.  The ``ThreadStore`` protocol is what the conversation entity
depends on; ``InMemoryThreadStore`` is the reference implementation and may
be swapped for a durable one without changing the entity.
"""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

from casalibre.conversation.messages import Message

logger = logging.getLogger(__name__)


@runtime_checkable
class ThreadStore(Protocol):
    async def get(self, thread_id: str) -> list[Message]:
        """Return the history for *thread_id*, or an empty list if unknown."""
        ...

    async def put(self, thread_id: str, history: list[Message]) -> None:
        ...

    async def delete(self, thread_id: str) -> None:
        ...


class InMemoryThreadStore:
    """Process-local thread store.

    Histories are copied on the way in and on the way out, so a caller
    holding a list returned by ``get`` can never change what another run
    sees.  Messages themselves are immutable.
    """

    def __init__(self) -> None:
        self._threads: dict[str, list[Message]] = {}

    async def get(self, thread_id: str) -> list[Message]:
        return list(self._threads.get(thread_id, ()))

    async def put(self, thread_id: str, history: list[Message]) -> None:
        self._threads[thread_id] = list(history)
        logger.debug("Stored thread %r (%d messages)", thread_id, len(history))

    async def delete(self, thread_id: str) -> None:
        if self._threads.pop(thread_id, None) is not None:
            logger.debug("Deleted thread %r", thread_id)

    async def clear(self) -> None:
        self._threads.clear()

    def __len__(self) -> int:
        return len(self._threads)

    def __contains__(self, thread_id: str) -> bool:
        return thread_id in self._threads
