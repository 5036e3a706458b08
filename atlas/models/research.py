"""Typed records for a research session and its phase outputs."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model that serializes with camelCase keys on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ResearchStatus(StrEnum):
    PENDING = "pending"
    PLANNING = "planning"
    SEARCHING = "searching"
    EVALUATING = "evaluating"
    SYNTHESIZING = "synthesizing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ResearchStatus.COMPLETED, ResearchStatus.FAILED)


STATUS_ORDER: tuple[ResearchStatus, ...] = (
    ResearchStatus.PENDING,
    ResearchStatus.PLANNING,
    ResearchStatus.SEARCHING,
    ResearchStatus.EVALUATING,
    ResearchStatus.SYNTHESIZING,
    ResearchStatus.COMPLETED,
)


def can_transition(current: ResearchStatus, target: ResearchStatus) -> bool:
    """Forward moves through STATUS_ORDER, or failure from any live status."""
    if current == target:
        return True
    if current.is_terminal:
        return False
    if target == ResearchStatus.FAILED:
        return True
    return STATUS_ORDER.index(target) > STATUS_ORDER.index(current)


class ResearchMode(StrEnum):
    NORMAL = "normal"
    MAX = "max"


# --- Phase outputs ---


class PlanningResult(CamelModel):
    subtopics: list[str]
    original_query: str
    estimated_complexity: Literal["low", "medium", "high"] = "medium"


class SearchResult(CamelModel):
    url: str
    title: str
    snippet: str
    source: str


class SearchResults(CamelModel):
    subtopic: str
    search_query: str
    results: list[SearchResult] = Field(default_factory=list)


class EvaluatedContent(CamelModel):
    url: str
    title: str
    summary: str
    key_points: list[str] = Field(default_factory=list)
    citations: list[str] = Field(default_factory=list)
    relevance_score: float
    credibility_score: float
    content_text: str | None = None
    evaluation_method: Literal["batch", "individual", "heuristic"] = "heuristic"


class EvaluationResult(CamelModel):
    subtopic: str
    evaluated_content: list[EvaluatedContent] = Field(default_factory=list)
    total_sources: int = 0
    average_relevance: float = 0.0
    average_credibility: float = 0.0

    @classmethod
    def from_content(cls, subtopic: str, content: list[EvaluatedContent]) -> "EvaluationResult":
        count = len(content)
        return cls(
            subtopic=subtopic,
            evaluated_content=content,
            total_sources=count,
            average_relevance=(sum(c.relevance_score for c in content) / count) if count else 0.0,
            average_credibility=(sum(c.credibility_score for c in content) / count) if count else 0.0,
        )


class SynthesisResult(CamelModel):
    full_report: str
    word_count: int
    sections_generated: list[str] = Field(default_factory=list)
    key_findings: list[str] = Field(default_factory=list)
    citations_used: int = 0
    model_used: str


# --- Session ---


class SessionMetadata(CamelModel):
    total_tokens: int = 0
    models_used: list[str] = Field(default_factory=list)
    subtopics_investigated: int = 0
    sources_evaluated: int = 0


RESULT_SLOTS: tuple[str, ...] = (
    "planning_result",
    "search_results",
    "evaluation_results",
    "synthesis_result",
)


class ResearchSession(CamelModel):
    id: str
    question: str
    status: ResearchStatus = ResearchStatus.PENDING
    progress: int = 0
    current_phase: str = "Initializing"
    details: str | None = None
    research_mode: ResearchMode = ResearchMode.NORMAL
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    error_message: str | None = None
    resumed_from: str | None = None
    report_filename: str | None = None

    planning_result: PlanningResult | None = None
    search_results: list[SearchResults] | None = None
    evaluation_results: list[EvaluationResult] | None = None
    synthesis_result: SynthesisResult | None = None

    metadata: SessionMetadata | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal
