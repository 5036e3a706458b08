from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException

from atlas.api.deps import get_orchestrator, get_session_store
from atlas.agents.orchestrator import ResearchOrchestrator
from atlas.models.schemas import DeleteResponse, SessionListResponse, SessionSummary
from atlas.services.session_store import SessionStore

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


@router.get("", response_model=SessionListResponse)
async def list_sessions(
    status: Literal["active", "completed"] = "active",
    store: SessionStore = Depends(get_session_store),
):
    sessions = await (store.list_completed() if status == "completed" else store.list_active())
    sessions.sort(key=lambda s: s.updated_at, reverse=True)
    return SessionListResponse(
        sessions=[SessionSummary.from_session(s) for s in sessions],
        total=len(sessions),
    )


@router.get("/{session_id}")
async def get_session(session_id: str, store: SessionStore = Depends(get_session_store)):
    """Full session record including phase results."""
    session = await store.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session.to_wire()


@router.delete("/{session_id}", response_model=DeleteResponse)
async def delete_session(
    session_id: str,
    store: SessionStore = Depends(get_session_store),
    orchestrator: ResearchOrchestrator = Depends(get_orchestrator),
):
    if orchestrator.is_running(session_id):
        raise HTTPException(status_code=409, detail="Session has a running research job")
    if not await store.delete(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return DeleteResponse(message=f"Session {session_id} deleted")
