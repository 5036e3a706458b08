from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Callable

from loguru import logger

from atlas.agents.base import PhaseContext
from atlas.agents.evaluator import EvaluatorAgent, filter_high_quality_content
from atlas.agents.planner import PlannerAgent
from atlas.agents.searcher import SearcherAgent
from atlas.agents.synthesizer import SynthesizerAgent
from atlas.llm_client import (
    AllModelsFailedError,
    CompletionError,
    CompletionGateway,
    InsufficientCreditError,
    RateLimitedError,
    UnauthorizedError,
)
from atlas.model_router import ModelRouter
from atlas.models.events import SSEEvent
from atlas.models.research import (
    EvaluationResult,
    PlanningResult,
    ResearchMode,
    ResearchSession,
    ResearchStatus,
    SearchResults,
    SessionMetadata,
    SynthesisResult,
)
from atlas.services import logger as log_service
from atlas.services import streaming
from atlas.services.progress import ProgressEmitter
from atlas.services.report_store import ReportStore, ReportStoreError, generate_filename, report_url
from atlas.services.session_store import InMemorySessionStore, SessionStore, SessionStoreError
from atlas.tools.search_provider import SearchExhaustedError, SearchProvider

PLANNING_HEARTBEATS = (
    "Analyzing the research question...",
    "Identifying key subtopics...",
    "Still planning the research strategy...",
)
SEARCH_HEARTBEATS = (
    "Querying search providers...",
    "Collecting candidate sources...",
    "Still searching for information...",
)
EVALUATION_HEARTBEATS = (
    "Reading source content...",
    "Scoring relevance and credibility...",
    "Still evaluating sources...",
)
SYNTHESIS_HEARTBEATS = (
    "Drafting the report...",
    "Weaving in citations...",
    "Still writing the research report...",
)


class SessionNotFoundError(Exception):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class SessionNotResumableError(Exception):
    def __init__(self, session_id: str, status: ResearchStatus):
        self.session_id = session_id
        self.status = status
        super().__init__(f"Session {session_id} is {status} and cannot be resumed")


class SessionBusyError(Exception):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} already has a running job")


@dataclass
class ResumeAvailable:
    """An unfinished session for the same question exists; the caller decides."""

    session_id: str
    existing_progress: int
    existing_phase: str

    def to_wire(self) -> dict[str, Any]:
        return {
            "resumeAvailable": True,
            "sessionId": self.session_id,
            "existingProgress": self.existing_progress,
            "existingPhase": self.existing_phase,
        }


@dataclass
class ResearchJob:
    session_id: str
    emitter: ProgressEmitter
    task: asyncio.Task

    def events(self, timeout: float | None = None) -> AsyncIterator[SSEEvent]:
        return self.emitter.events(timeout)


@dataclass
class ResearchPhases:
    plan: Callable[[str, PhaseContext], Awaitable[PlanningResult]]
    search: Callable[[PlanningResult, str, PhaseContext], Awaitable[list[SearchResults]]]
    evaluate: Callable[[list[SearchResults], PhaseContext], Awaitable[list[EvaluationResult]]]
    synthesize: Callable[
        [str, PlanningResult, list[EvaluationResult], PhaseContext], Awaitable[SynthesisResult]
    ]


def default_phases(
    gateway: CompletionGateway | None = None,
    router: ModelRouter | None = None,
    search_provider: SearchProvider | None = None,
) -> ResearchPhases:
    gateway = gateway or CompletionGateway()
    router = router or ModelRouter()
    return ResearchPhases(
        plan=PlannerAgent(gateway, router).plan_research,
        search=SearcherAgent(search_provider).search_all_subtopics,
        evaluate=EvaluatorAgent(gateway, router).evaluate_search_results,
        synthesize=SynthesizerAgent(gateway, router).synthesize_report,
    )


def classify_error(exc: BaseException) -> str:
    """Short user-facing message for a job failure."""
    if isinstance(exc, UnauthorizedError):
        return "Invalid OpenRouter API key"
    if isinstance(exc, RateLimitedError):
        return "Rate limit exceeded. Please try again later."
    if isinstance(exc, InsufficientCreditError):
        return "Insufficient API credits. Please check your OpenRouter account."
    if isinstance(exc, SearchExhaustedError):
        return "No search results could be retrieved for this question."
    if isinstance(exc, AllModelsFailedError):
        return "All language models failed to respond. Please try again later."
    if isinstance(exc, CompletionError):
        return str(exc)
    return "An unexpected error occurred"


class ResearchOrchestrator:
    """Drives Plan, Search, Evaluate and Synthesize against a stored session.

    Each phase whose result is already on the session is skipped, so a
    resumed job picks up where the last one stopped. Jobs run as background
    tasks; a reader going away does not stop them.
    """

    def __init__(
        self,
        store: SessionStore | None = None,
        report_store: ReportStore | None = None,
        phases: ResearchPhases | None = None,
        *,
        heartbeat_interval: float | None = None,
    ):
        self.store = store if store is not None else InMemorySessionStore(snapshot_path=None)
        self.report_store = report_store or ReportStore()
        self.phases = phases or default_phases()
        self.heartbeat_interval = heartbeat_interval
        self._jobs: dict[str, asyncio.Task] = {}
        self._reserved: set[str] = set()

    def is_running(self, session_id: str) -> bool:
        return session_id in self._reserved

    def _reserve(self, session_id: str) -> None:
        if session_id in self._reserved:
            raise SessionBusyError(session_id)
        self._reserved.add(session_id)

    async def submit(
        self,
        question: str,
        *,
        session_id: str | None = None,
        resume: bool = False,
        research_mode: ResearchMode = ResearchMode.NORMAL,
        check_resumable: bool = True,
    ) -> ResearchJob | ResumeAvailable:
        """Start or continue a job, or report that an unfinished one exists.

        Raises SessionNotFoundError, SessionNotResumableError or SessionBusyError.
        """
        question = question.strip()
        if not question:
            raise ValueError("Question must not be empty")

        if session_id is None and check_resumable:
            existing = await self.store.find_resumable(question)
            if existing is not None:
                if not resume:
                    return ResumeAvailable(existing.id, existing.progress, existing.current_phase)
                session_id = existing.id

        if session_id is None:
            session = await self.store.create(question, research_mode)
            self._reserve(session.id)
        else:
            self._reserve(session_id)
            try:
                session = await self._resolve(session_id, resume)
            except BaseException:
                self._reserved.discard(session_id)
                raise
            if session.id != session_id:
                self._reserved.discard(session_id)
                self._reserve(session.id)

        ctx = PhaseContext(session_id=session.id, research_mode=session.research_mode)
        emitter = ProgressEmitter(session.id, self.store, floor=session.progress)
        task = asyncio.create_task(self._run(session.id, emitter, ctx), name=f"research-{session.id}")
        self._jobs[session.id] = task
        task.add_done_callback(lambda _t, sid=session.id: self._release(sid))

        log_service.log_event(
            event_type="research_started",
            message="Research job started",
            session_id=session.id,
            resumed_from=session.resumed_from,
            mode=str(session.research_mode),
            query=question[:100],
        )
        return ResearchJob(session_id=session.id, emitter=emitter, task=task)

    async def _resolve(self, session_id: str, resume: bool) -> ResearchSession:
        session = await self.store.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)

        if resume:
            if session.status == ResearchStatus.COMPLETED:
                raise SessionNotResumableError(session_id, session.status)
            prepared = await self.store.prepare_resume(session_id)
            if prepared is None:
                raise SessionNotFoundError(session_id)
            return prepared

        if session.status == ResearchStatus.FAILED:
            raise SessionNotResumableError(session_id, session.status)
        return session

    def _release(self, session_id: str) -> None:
        self._jobs.pop(session_id, None)
        self._reserved.discard(session_id)

    async def research(
        self,
        question: str,
        research_mode: ResearchMode = ResearchMode.NORMAL,
    ) -> AsyncGenerator[SSEEvent, None]:
        """Run a fresh job and yield its events until the terminal one."""
        job = await self.submit(question, research_mode=research_mode, check_resumable=False)
        async for event in job.events():
            yield event
        await job.task

    async def shutdown(self) -> None:
        tasks = list(self._jobs.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # --- pipeline ---

    async def _run(self, session_id: str, emitter: ProgressEmitter, ctx: PhaseContext) -> None:
        try:
            session = await self.store.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
            if session.status == ResearchStatus.COMPLETED:
                await self._replay(session, emitter)
                return

            await emitter.emit("Initializing research pipeline", 0)
            planning = await self._plan(session, emitter, ctx)
            search_results = await self._search(session, planning, emitter, ctx)
            evaluations, high_quality = await self._evaluate(session, search_results, emitter, ctx)
            synthesis = await self._synthesize(session, planning, high_quality, emitter, ctx)
            await self._finalize(session, planning, evaluations, synthesis, emitter, ctx)
        except asyncio.CancelledError:
            await self._fail(session_id, emitter, "Research was interrupted before completion")
            raise
        except Exception as e:
            logger.exception(f"Research job {session_id} failed: {e}")
            await self._fail(session_id, emitter, classify_error(e))
        finally:
            emitter.close()

    async def _enter(self, session_id: str, status: ResearchStatus, emitter: ProgressEmitter,
                     phase: str, progress: int) -> None:
        await self.store.update(session_id, status=status)
        await emitter.emit(phase, progress)

    async def _plan(self, session: ResearchSession, emitter: ProgressEmitter, ctx: PhaseContext) -> PlanningResult:
        if session.planning_result is not None:
            planning = session.planning_result
            await emitter.emit(
                "Research strategy created",
                20,
                f"Resuming from planning phase ({len(planning.subtopics)} subtopics)",
            )
            return planning

        await self._enter(session.id, ResearchStatus.PLANNING, emitter, "Planning research strategy", 10)
        async with emitter.heartbeat("Planning research strategy", 10, PLANNING_HEARTBEATS, self.heartbeat_interval):
            planning = await self.phases.plan(session.question, ctx)
        await self.store.update(session.id, planning_result=planning)
        log_service.log_research_step(session.id, "planning", "completed", {"subtopics": planning.subtopics})
        await emitter.emit(
            "Research strategy created", 20, f"Found {len(planning.subtopics)} subtopics to investigate"
        )
        return planning

    async def _search(
        self,
        session: ResearchSession,
        planning: PlanningResult,
        emitter: ProgressEmitter,
        ctx: PhaseContext,
    ) -> list[SearchResults]:
        if session.search_results is not None:
            results = session.search_results
            total = sum(len(r.results) for r in results)
            await emitter.emit("Sources gathered", 40, f"Resuming from search phase ({total} sources)")
            return results

        await self._enter(session.id, ResearchStatus.SEARCHING, emitter, "Searching for information", 25)
        async with emitter.heartbeat("Searching for information", 25, SEARCH_HEARTBEATS, self.heartbeat_interval):
            results = await self.phases.search(planning, session.question, ctx)
        await self.store.update(session.id, search_results=results)
        total = sum(len(r.results) for r in results)
        await emitter.emit("Sources gathered", 40, f"Found {total} potential sources")
        return results

    async def _evaluate(
        self,
        session: ResearchSession,
        search_results: list[SearchResults],
        emitter: ProgressEmitter,
        ctx: PhaseContext,
    ) -> tuple[list[EvaluationResult], list[EvaluationResult]]:
        if session.evaluation_results is not None:
            evaluations = session.evaluation_results
            high_quality = filter_high_quality_content(evaluations)
            await emitter.emit(
                "Sources evaluated",
                70,
                f"Resuming from evaluation phase ({_source_count(high_quality)} high-quality sources)",
            )
            return evaluations, high_quality or evaluations

        await self._enter(session.id, ResearchStatus.EVALUATING, emitter, "Evaluating sources", 45)
        async with emitter.heartbeat("Evaluating sources", 45, EVALUATION_HEARTBEATS, self.heartbeat_interval):
            evaluations = await self.phases.evaluate(search_results, ctx)
        await self.store.update(session.id, evaluation_results=evaluations)

        high_quality = filter_high_quality_content(evaluations)
        await emitter.emit(
            "Sources evaluated", 70, f"{_source_count(high_quality)} high-quality sources identified"
        )
        if not high_quality:
            logger.warning(f"No sources passed the quality filter for {session.id}; synthesizing from all")
        return evaluations, high_quality or evaluations

    async def _synthesize(
        self,
        session: ResearchSession,
        planning: PlanningResult,
        evaluations: list[EvaluationResult],
        emitter: ProgressEmitter,
        ctx: PhaseContext,
    ) -> SynthesisResult:
        if session.synthesis_result is not None:
            await emitter.emit("Generating research report", 75, "Resuming from synthesis phase")
            return session.synthesis_result

        await self._enter(session.id, ResearchStatus.SYNTHESIZING, emitter, "Generating research report", 75)
        async with emitter.heartbeat(
            "Generating research report", 75, SYNTHESIS_HEARTBEATS, self.heartbeat_interval
        ):
            synthesis = await self.phases.synthesize(session.question, planning, evaluations, ctx)
        await self.store.update(session.id, synthesis_result=synthesis)
        return synthesis

    async def _finalize(
        self,
        session: ResearchSession,
        planning: PlanningResult,
        evaluations: list[EvaluationResult],
        synthesis: SynthesisResult,
        emitter: ProgressEmitter,
        ctx: PhaseContext,
    ) -> None:
        await emitter.emit("Finalizing report", 90)

        metadata = SessionMetadata(
            total_tokens=ctx.usage.total_tokens,
            models_used=ctx.usage.models_used or [synthesis.model_used],
            subtopics_investigated=len(planning.subtopics),
            sources_evaluated=_source_count(evaluations),
        )

        try:
            saved = await self.report_store.save(synthesis.full_report, session.question, metadata.models_used)
            filename = saved.filename
        except ReportStoreError as e:
            logger.error(f"Failed to store report for {session.id}, returning it inline: {e}")
            filename = generate_filename()

        await self.store.mark_completed(session.id, metadata, report_filename=filename)
        await emitter.emit("Complete", 100, "Research completed successfully")
        log_service.log_research_step(session.id, "research", "completed", metadata.model_dump())
        log_service.log_usage(session.id, ctx.usage.total_usage(), ctx.usage.usage_by_model())

        await emitter.finish(_complete_event(session.id, filename, synthesis, metadata))

    async def _replay(self, session: ResearchSession, emitter: ProgressEmitter) -> None:
        """Re-send the terminal event of a completed session; the stored record is left as is."""
        if session.synthesis_result is None:
            raise SessionNotResumableError(session.id, session.status)
        filename = session.report_filename or generate_filename()
        log_service.log_research_step(session.id, "research", "replayed", {"filename": filename})
        await emitter.finish(
            _complete_event(session.id, filename, session.synthesis_result, session.metadata or SessionMetadata())
        )

    async def _fail(self, session_id: str, emitter: ProgressEmitter, message: str) -> None:
        try:
            await self.store.mark_failed(session_id, message)
        except SessionStoreError as e:
            logger.error(f"Could not mark session {session_id} failed: {e}")
        log_service.log_research_step(session_id, "research", "failed", {"error": message})
        await emitter.finish(streaming.error(session_id, message))


def _source_count(evaluations: list[EvaluationResult]) -> int:
    return sum(len(e.evaluated_content) for e in evaluations)


def _complete_event(
    session_id: str, filename: str, synthesis: SynthesisResult, metadata: SessionMetadata
) -> SSEEvent:
    return streaming.research_complete(
        session_id,
        report_url=report_url(filename),
        filename=filename,
        report_content=synthesis.full_report,
        metadata=metadata.to_wire(),
    )
