from __future__ import annotations

import json as _json

from fastapi import APIRouter, Depends, HTTPException
from sse_starlette.sse import EventSourceResponse

from atlas.api.deps import get_orchestrator
from atlas.agents.orchestrator import (
    ResearchOrchestrator,
    ResumeAvailable,
    SessionBusyError,
    SessionNotFoundError,
    SessionNotResumableError,
)
from atlas.config import settings
from atlas.models.schemas import ResearchRequest, ResumeAvailableResponse
from atlas.services import logger as log_service
from atlas.services import streaming

router = APIRouter(prefix="/api/research", tags=["research"])


@router.post("")
async def start_research(
    request: ResearchRequest,
    orchestrator: ResearchOrchestrator = Depends(get_orchestrator),
):
    """Start, continue or resume a research job and stream its progress.

    Returns a JSON resume notice instead of a stream when an unfinished
    session for the same question exists and no session id was given.
    """
    if not settings.openrouter_api_key:
        raise HTTPException(status_code=500, detail="API key not configured on server")

    question = request.question.strip()
    if len(question) < settings.min_question_length:
        raise HTTPException(
            status_code=400,
            detail=f"Question must be at least {settings.min_question_length} characters long",
        )

    try:
        outcome = await orchestrator.submit(
            question,
            session_id=request.session_id,
            resume=request.resume,
            research_mode=request.research_mode,
        )
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")
    except (SessionNotResumableError, SessionBusyError) as e:
        raise HTTPException(status_code=409, detail=str(e))

    if isinstance(outcome, ResumeAvailable):
        return ResumeAvailableResponse(
            session_id=outcome.session_id,
            existing_progress=outcome.existing_progress,
            existing_phase=outcome.existing_phase,
        )

    job = outcome
    timeout = request.timeout_seconds or settings.client_timeout_seconds

    async def event_generator():
        try:
            async for event in job.events(timeout=timeout):
                yield {
                    "event": event.event.value,
                    "data": _json.dumps(event.data),
                }
        except TimeoutError:
            log_service.log_event(
                event_type="stream_timeout",
                message="Client wait exceeded; job continues server-side",
                level="WARNING",
                session_id=job.session_id,
                timeout_seconds=timeout,
            )
            error_event = streaming.error(
                job.session_id,
                "Research is taking longer than expected and continues in the background. "
                "Check the session status later.",
            )
            yield {
                "event": error_event.event.value,
                "data": _json.dumps(error_event.data),
            }

    return EventSourceResponse(event_generator())
