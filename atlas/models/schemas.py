from __future__ import annotations

from pydantic import Field

from atlas.models.research import CamelModel, ResearchMode, ResearchSession
from atlas.services.report_store import ReportMetadata


# --- Requests ---


class ResearchRequest(CamelModel):
    question: str
    session_id: str | None = None
    resume: bool = False
    research_mode: ResearchMode = ResearchMode.NORMAL
    timeout_seconds: float | None = Field(default=None, gt=0)


# --- Responses ---


class ResumeAvailableResponse(CamelModel):
    resume_available: bool = True
    session_id: str
    existing_progress: int
    existing_phase: str


class SessionSummary(CamelModel):
    id: str
    question: str
    status: str
    progress: int
    current_phase: str
    research_mode: ResearchMode
    created_at: str
    updated_at: str
    completed_at: str | None = None
    error_message: str | None = None

    @classmethod
    def from_session(cls, session: ResearchSession) -> "SessionSummary":
        return cls(
            id=session.id,
            question=session.question,
            status=str(session.status),
            progress=session.progress,
            current_phase=session.current_phase,
            research_mode=session.research_mode,
            created_at=session.created_at.isoformat(),
            updated_at=session.updated_at.isoformat(),
            completed_at=session.completed_at.isoformat() if session.completed_at else None,
            error_message=session.error_message,
        )


class SessionListResponse(CamelModel):
    sessions: list[SessionSummary]
    total: int


class DeleteResponse(CamelModel):
    success: bool = True
    message: str


class ReportsResponse(CamelModel):
    reports: list[ReportMetadata]
    total: int


class ReportResponse(CamelModel):
    filename: str
    content: str
    metadata: ReportMetadata | None = None


class ModelsResponse(CamelModel):
    tasks: dict[str, str]
    fallbacks: list[str]
