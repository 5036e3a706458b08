from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import pytest

from atlas.models.research import (
    PlanningResult,
    ResearchMode,
    ResearchStatus,
    SearchResults,
    SessionMetadata,
    utcnow,
)
from atlas.services.session_store import (
    InMemorySessionStore,
    SessionSlotError,
    SessionTransitionError,
)

QUESTION = "What are the economic impacts of remote work?"


def _store(**kwargs) -> InMemorySessionStore:
    kwargs.setdefault("cleanup_interval_seconds", 0)
    return InMemorySessionStore(**kwargs)


def _planning() -> PlanningResult:
    return PlanningResult(subtopics=["a", "b", "c"], original_query=QUESTION)


@pytest.mark.asyncio
async def test_create_and_get_return_independent_copies():
    store = _store()
    session = await store.create(QUESTION, ResearchMode.MAX)

    assert session.id.startswith("session_")
    assert session.status == ResearchStatus.PENDING
    assert session.progress == 0
    assert session.research_mode == ResearchMode.MAX

    fetched = await store.get(session.id)
    fetched.question = "mutated"
    assert (await store.get(session.id)).question == QUESTION


@pytest.mark.asyncio
async def test_result_slots_are_write_once():
    store = _store()
    session = await store.create(QUESTION)

    await store.update(session.id, planning_result=_planning())

    with pytest.raises(SessionSlotError):
        await store.update(session.id, planning_result=_planning())
    assert (await store.get(session.id)).planning_result.subtopics == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_status_moves_forward_only():
    store = _store()
    session = await store.create(QUESTION)

    await store.update(session.id, status=ResearchStatus.SEARCHING)
    with pytest.raises(SessionTransitionError):
        await store.update(session.id, status=ResearchStatus.PLANNING)

    await store.mark_failed(session.id, "boom")
    with pytest.raises(SessionTransitionError):
        await store.update(session.id, status=ResearchStatus.EVALUATING)


@pytest.mark.asyncio
async def test_progress_never_decreases_and_reaches_100_only_on_completion():
    store = _store()
    session = await store.create(QUESTION)

    await store.update(session.id, progress=40, current_phase="Sources gathered")
    await store.update(session.id, progress=25)
    assert (await store.get(session.id)).progress == 40

    await store.update(session.id, progress=100)
    assert (await store.get(session.id)).progress == 40

    completed = await store.mark_completed(session.id, SessionMetadata(total_tokens=10, models_used=["m"]))
    assert completed.progress == 100
    assert completed.status == ResearchStatus.COMPLETED
    assert completed.completed_at is not None
    assert completed.metadata.models_used == ["m"]


@pytest.mark.asyncio
async def test_update_unknown_session_returns_none():
    store = _store()

    assert await store.update("session_missing", progress=10) is None
    assert await store.delete("session_missing") is False


@pytest.mark.asyncio
async def test_update_rejects_unknown_fields():
    store = _store()
    session = await store.create(QUESTION)

    with pytest.raises(ValueError):
        await store.update(session.id, question="other")


@pytest.mark.asyncio
async def test_find_resumable_matches_recent_unfinished_exact_question():
    store = _store()
    old = await store.create(QUESTION)
    store._sessions[old.id].created_at = utcnow() - timedelta(hours=3)
    done = await store.create(QUESTION)
    await store.mark_completed(done.id, SessionMetadata())
    await store.create("A different question entirely")
    live = await store.create(QUESTION)

    found = await store.find_resumable(QUESTION)

    assert found is not None
    assert found.id == live.id
    assert await store.find_resumable(QUESTION.upper()) is None


@pytest.mark.asyncio
async def test_prepare_resume_keeps_live_session_state():
    store = _store()
    session = await store.create(QUESTION)
    await store.update(session.id, status=ResearchStatus.SEARCHING, progress=25, planning_result=_planning())

    resumed = await store.prepare_resume(session.id)

    assert resumed.id == session.id
    assert resumed.progress == 25
    assert resumed.planning_result is not None
    assert resumed.current_phase == "Resuming research"


@pytest.mark.asyncio
async def test_prepare_resume_forks_failed_session():
    store = _store()
    session = await store.create(QUESTION)
    await store.update(
        session.id,
        planning_result=_planning(),
        search_results=[SearchResults(subtopic="a", search_query="a")],
    )
    await store.mark_failed(session.id, "Rate limit exceeded. Please try again later.")

    forked = await store.prepare_resume(session.id)

    assert forked.id != session.id
    assert forked.resumed_from == session.id
    assert forked.status == ResearchStatus.PENDING
    assert forked.planning_result == _planning()
    assert forked.search_results[0].subtopic == "a"
    assert forked.evaluation_results is None
    assert (await store.get(session.id)).status == ResearchStatus.FAILED


@pytest.mark.asyncio
async def test_prepare_resume_refuses_completed_and_unknown_sessions():
    store = _store()
    session = await store.create(QUESTION)
    await store.mark_completed(session.id, SessionMetadata())

    assert await store.prepare_resume(session.id) is None
    assert await store.prepare_resume("session_missing") is None


@pytest.mark.asyncio
async def test_list_active_and_completed():
    store = _store()
    live = await store.create(QUESTION)
    done = await store.create(QUESTION)
    failed = await store.create(QUESTION)
    await store.mark_completed(done.id, SessionMetadata())
    await store.mark_failed(failed.id, "boom")

    assert [s.id for s in await store.list_active()] == [live.id]
    assert [s.id for s in await store.list_completed()] == [done.id]


@pytest.mark.asyncio
async def test_cleanup_removes_only_old_terminal_sessions():
    store = _store(retention_hours=24)
    old_done = await store.create(QUESTION)
    await store.mark_completed(old_done.id, SessionMetadata())
    old_live = await store.create(QUESTION)
    for session_id in (old_done.id, old_live.id):
        store._sessions[session_id].updated_at = utcnow() - timedelta(hours=30)

    removed = await store.cleanup_expired()

    assert removed == 1
    assert await store.get(old_done.id) is None
    assert await store.get(old_live.id) is not None


@pytest.mark.asyncio
async def test_snapshot_round_trip(tmp_path):
    path = tmp_path / "sessions.json"
    store = _store(snapshot_path=path, autosave_seconds=0)
    await store.start()
    session = await store.create(QUESTION)
    await store.update(session.id, status=ResearchStatus.PLANNING, progress=10, planning_result=_planning())
    await store.stop()

    assert path.exists()

    reloaded = _store(snapshot_path=path, autosave_seconds=0)
    await reloaded.start()
    restored = await reloaded.get(session.id)
    await reloaded.stop()

    assert restored.status == ResearchStatus.PLANNING
    assert restored.progress == 10
    assert restored.planning_result == _planning()


@pytest.mark.asyncio
async def test_autosave_loop_writes_pending_changes(tmp_path):
    path = tmp_path / "sessions.json"
    store = _store(snapshot_path=path, autosave_seconds=0.01)
    await store.start()
    session = await store.create(QUESTION)
    await store.update(session.id, status=ResearchStatus.PLANNING, progress=10)

    await asyncio.sleep(0.1)
    records = json.loads(path.read_text(encoding="utf-8"))
    await store.stop()

    assert [r["id"] for r in records] == [session.id]
    assert records[0]["status"] == "planning"
    assert records[0]["progress"] == 10


@pytest.mark.asyncio
async def test_cleanup_loop_removes_expired_sessions():
    store = InMemorySessionStore(cleanup_interval_seconds=0.01, retention_hours=24)
    done = await store.create(QUESTION)
    await store.mark_completed(done.id, SessionMetadata(), report_filename="2026-10-19_08-05-03.md")
    live = await store.create(QUESTION)
    store._sessions[done.id].updated_at = utcnow() - timedelta(hours=30)

    await store.start()
    await asyncio.sleep(0.1)
    await store.stop()

    assert await store.get(done.id) is None
    assert await store.get(live.id) is not None


@pytest.mark.asyncio
async def test_mark_completed_records_report_filename():
    store = _store()
    session = await store.create(QUESTION)

    completed = await store.mark_completed(session.id, SessionMetadata(), report_filename="2026-10-19_08-05-03.md")

    assert completed.report_filename == "2026-10-19_08-05-03.md"
    assert completed.to_wire()["reportFilename"] == "2026-10-19_08-05-03.md"
