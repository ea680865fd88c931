"""Unit tests for casalibre.conversation.threads."""

from __future__ import annotations

import pytest

from casalibre.conversation.messages import AssistantMessage, UserMessage
from casalibre.conversation.threads import InMemoryThreadStore, ThreadStore


def test_in_memory_store_satisfies_protocol() -> None:
    assert isinstance(InMemoryThreadStore(), ThreadStore)


@pytest.mark.anyio
async def test_unknown_thread_is_empty() -> None:
    store = InMemoryThreadStore()
    assert await store.get("nope") == []
    assert "nope" not in store


@pytest.mark.anyio
async def test_put_get_delete() -> None:
    store = InMemoryThreadStore()
    history = [UserMessage("hi"), AssistantMessage("hello")]

    await store.put("t1", history)
    assert await store.get("t1") == history
    assert len(store) == 1

    await store.delete("t1")
    assert await store.get("t1") == []
    assert len(store) == 0


@pytest.mark.anyio
async def test_delete_unknown_thread_is_noop() -> None:
    store = InMemoryThreadStore()
    await store.delete("missing")
    assert len(store) == 0


@pytest.mark.anyio
async def test_histories_are_copied_in_and_out() -> None:
    store = InMemoryThreadStore()
    history = [UserMessage("hi")]
    await store.put("t1", history)

    history.append(UserMessage("sneaky"))
    fetched = await store.get("t1")
    fetched.append(UserMessage("also sneaky"))

    assert await store.get("t1") == [UserMessage("hi")]


@pytest.mark.anyio
async def test_clear() -> None:
    store = InMemoryThreadStore()
    await store.put("a", [UserMessage("1")])
    await store.put("b", [UserMessage("2")])

    await store.clear()

    assert len(store) == 0
