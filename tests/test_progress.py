from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from atlas.models.events import EventType
from atlas.services import streaming
from atlas.services.progress import ProgressEmitter
from atlas.services.session_store import InMemorySessionStore


async def _drain(emitter: ProgressEmitter, timeout: float = 2.0):
    return [event async for event in emitter.events(timeout=timeout)]


@pytest.mark.asyncio
async def test_progress_is_clamped_to_last_emitted_value():
    emitter = ProgressEmitter("s1", floor=20)

    first = await emitter.emit("Searching for information", 10)
    second = await emitter.emit("Sources gathered", 40, "Found 9 potential sources")
    third = await emitter.emit("Evaluating sources", 30)

    assert [first.progress, second.progress, third.progress] == [20, 40, 40]
    assert second.data["details"] == "Found 9 potential sources"
    assert "details" not in first.data
    assert first.data["sessionId"] == "s1"


@pytest.mark.asyncio
async def test_terminal_event_closes_the_stream():
    emitter = ProgressEmitter("s1")
    await emitter.emit("Initializing research pipeline", 0)
    await emitter.finish(streaming.error("s1", "boom"))
    assert await emitter.emit("Late", 50) is None

    events = await _drain(emitter)

    assert [e.event for e in events] == [EventType.PROGRESS, EventType.ERROR]
    assert events[-1].is_terminal
    assert events[-1].data["success"] is False


@pytest.mark.asyncio
async def test_events_raise_timeout_without_terminal_event():
    emitter = ProgressEmitter("s1")
    await emitter.emit("Planning research strategy", 10)

    received = []
    with pytest.raises(TimeoutError):
        async for event in emitter.events(timeout=0.05):
            received.append(event)

    assert len(received) == 1


@pytest.mark.asyncio
async def test_heartbeat_repeats_progress_while_work_runs():
    emitter = ProgressEmitter("s1")

    async with emitter.heartbeat("Evaluating sources", 45, ["tick", "tock"], interval=0.01):
        await asyncio.sleep(0.08)
    emitter.close()

    events = await _drain(emitter)

    assert len(events) >= 2
    assert {e.progress for e in events} == {45}
    assert events[0].data["details"] == "tick"
    assert events[1].data["details"] == "tock"


@pytest.mark.asyncio
async def test_heartbeat_stops_when_block_exits():
    emitter = ProgressEmitter("s1")

    async with emitter.heartbeat("Planning research strategy", 10, ["tick"], interval=0.05):
        pass
    await asyncio.sleep(0.1)
    emitter.close()

    assert [event async for event in emitter.events(timeout=1)] == []


@pytest.mark.asyncio
async def test_progress_is_persisted_to_store():
    store = InMemorySessionStore(cleanup_interval_seconds=0)
    session = await store.create("What are the economic impacts of remote work?")
    emitter = ProgressEmitter(session.id, store)

    await emitter.emit("Planning research strategy", 10, "working")

    stored = await store.get(session.id)
    assert stored.progress == 10
    assert stored.current_phase == "Planning research strategy"
    assert stored.details == "working"


@pytest.mark.asyncio
async def test_persistence_failures_do_not_interrupt_emission():
    store = MagicMock()
    store.update = AsyncMock(side_effect=RuntimeError("disk full"))
    emitter = ProgressEmitter("s1", store)

    event = await emitter.emit("Planning research strategy", 10)

    assert event.progress == 10
    store.update.assert_awaited_once()
