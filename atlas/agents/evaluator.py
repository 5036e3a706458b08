from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable

from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator

from atlas.agents.base import BaseAgent, PhaseContext
from atlas.config import settings
from atlas.llm_client import CompletionError, CompletionGateway
from atlas.model_router import ModelRouter, TaskKind
from atlas.models.research import (
    EvaluatedContent,
    EvaluationResult,
    ResearchMode,
    SearchResult,
    SearchResults,
)
from atlas.services import logger as log_service
from atlas.tools import content_fetcher, web_utils

EVALUATOR_SYSTEM_PROMPT = (
    "You are a research analyst specializing in content evaluation and fact extraction. "
    "Provide objective, accurate assessments."
)

HIGH_CREDIBILITY_DOMAINS = (
    "nature.com", "science.org", "cell.com", "nejm.org",
    "ieee.org", "acm.org", "arxiv.org", "pubmed.ncbi.nlm.nih.gov",
    "who.int", "cdc.gov", "nih.gov", "gov.uk", "europa.eu",
    "reuters.com", "ap.org", "bbc.com", "npr.org",
)

MEDIUM_CREDIBILITY_DOMAINS = (
    "wikipedia.org", "britannica.com", "economist.com",
    "wsj.com", "ft.com", "bloomberg.com", "harvard.edu",
    "mit.edu", "stanford.edu", "ox.ac.uk", "cam.ac.uk",
)

PROMPT_CONTENT_CHARS = 2000
STORED_CONTENT_CHARS = 1000

PageFetcher = Callable[[str], Awaitable[str]]


class EvaluationParseError(ValueError):
    """The model's evaluation payload did not match the expected structure."""


def normalize_score(value: Any) -> float:
    """Clamp to [0, 10]; anything non-numeric scores the midpoint."""
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 5.0
    if score != score:  # NaN
        return 5.0
    return max(0.0, min(10.0, score))


class SourceEvaluation(BaseModel):
    summary: str = "No summary available"
    key_points: list[str] = Field(default_factory=list, alias="keyPoints")
    citations: list[str] = Field(default_factory=list)
    relevance_score: float = Field(default=5.0, alias="relevanceScore")
    credibility_score: float = Field(default=5.0, alias="credibilityScore")

    model_config = {"populate_by_name": True, "extra": "ignore"}

    @field_validator("relevance_score", "credibility_score", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        return normalize_score(value)

    @field_validator("key_points", "citations", mode="before")
    @classmethod
    def _as_strings(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [str(item) for item in value if item]

    @field_validator("summary", mode="before")
    @classmethod
    def _summary(cls, value: Any) -> str:
        return str(value) if value else "No summary available"


class BatchSourceEvaluation(SourceEvaluation):
    index: int


class BatchPayload(BaseModel):
    evaluations: list[BatchSourceEvaluation]


def assess_domain_credibility(url: str) -> float:
    domain = web_utils.extract_hostname(url)
    if not domain:
        return 4.0
    if any(d in domain for d in HIGH_CREDIBILITY_DOMAINS):
        return 9.0
    if any(d in domain for d in MEDIUM_CREDIBILITY_DOMAINS):
        return 7.0
    if ".edu" in domain or ".gov" in domain or ".org" in domain:
        return 6.0
    if ".com" in domain:
        return 5.0
    return 4.0


def assess_relevance_by_keywords(text: str, subtopic: str) -> float:
    text_lower = text.lower()
    words = subtopic.lower().split()
    if not words:
        return 5.0
    matches = sum(1 for w in words if len(w) > 2 and w in text_lower)
    return float(min(10, max(1, round(matches / len(words) * 10))))


def heuristic_evaluation(result: SearchResult, subtopic: str) -> EvaluatedContent:
    """Score a source from static signals only."""
    return EvaluatedContent(
        url=result.url,
        title=result.title,
        summary=result.snippet,
        key_points=[result.snippet],
        citations=[f'From {result.title}: "{result.snippet}"'],
        relevance_score=assess_relevance_by_keywords(result.snippet, subtopic) if subtopic else 5.0,
        credibility_score=assess_domain_credibility(result.url),
        content_text=result.snippet,
        evaluation_method="heuristic",
    )


def filter_high_quality_content(
    results: list[EvaluationResult],
    min_relevance: float | None = None,
    min_credibility: float | None = None,
) -> list[EvaluationResult]:
    """Drop weak sources and empty subtopics without touching the input records."""
    min_relevance = settings.min_relevance if min_relevance is None else min_relevance
    min_credibility = settings.min_credibility if min_credibility is None else min_credibility

    filtered: list[EvaluationResult] = []
    for result in results:
        kept = [
            c.model_copy(deep=True)
            for c in result.evaluated_content
            if c.relevance_score >= min_relevance and c.credibility_score >= min_credibility
        ]
        if kept:
            filtered.append(EvaluationResult.from_content(result.subtopic, kept))
    return filtered


async def _fetch_text(url: str) -> str:
    page = await content_fetcher.fetch_page(url)
    return page.text


def _individual_prompt(result: SearchResult, content_text: str, subtopic: str) -> str:
    return f"""Analyze this content for research on: "{subtopic}"

URL: {result.url}
Title: {result.title}
Content: {content_text[:PROMPT_CONTENT_CHARS]}

Provide a JSON response with:
{{
  "summary": "2-3 sentence summary of key information",
  "keyPoints": ["point 1", "point 2", "point 3"],
  "citations": ["specific facts or quotes with attribution"],
  "relevanceScore": 0-10 (how relevant to the subtopic),
  "credibilityScore": 0-10 (based on source quality and information accuracy),
  "reasoning": "brief explanation of scores"
}}

Focus on extracting actionable insights and verifiable facts."""


def _batch_prompt(batch: list[tuple[SearchResult, str]], subtopic: str) -> str:
    blocks = []
    for index, (result, content_text) in enumerate(batch):
        blocks.append(
            f"[Source {index}]\nURL: {result.url}\nTitle: {result.title}\n"
            f"Content: {content_text[:PROMPT_CONTENT_CHARS]}"
        )
    sources = "\n\n".join(blocks)
    return f"""Analyze each of the following {len(batch)} sources for research on: "{subtopic}"

{sources}

Respond with a single JSON object:
{{
  "evaluations": [
    {{
      "index": <source number>,
      "summary": "2-3 sentence summary of key information",
      "keyPoints": ["point 1", "point 2", "point 3"],
      "citations": ["specific facts or quotes with attribution"],
      "relevanceScore": 0-10,
      "credibilityScore": 0-10
    }}
  ]
}}

Include exactly one entry per source, using the source numbers shown above."""


class EvaluatorAgent(BaseAgent):
    name = "evaluator"
    task = TaskKind.REASONING
    system_prompt = EVALUATOR_SYSTEM_PROMPT

    def __init__(
        self,
        gateway: CompletionGateway,
        router: ModelRouter | None = None,
        *,
        fetcher: PageFetcher | None = None,
        batch_size: int | None = None,
        max_sources: int | None = None,
        delay_seconds: float | None = None,
    ):
        super().__init__(gateway, router)
        self.fetcher = fetcher or _fetch_text
        self.batch_size = batch_size or settings.evaluation_batch_size
        self.max_sources = max_sources if max_sources is not None else settings.evaluation_max_sources
        self.delay_seconds = (
            delay_seconds if delay_seconds is not None else settings.evaluation_delay_seconds
        )

    def source_cap(self, mode: ResearchMode) -> int | None:
        return None if mode == ResearchMode.MAX else self.max_sources

    async def evaluate_search_results(
        self,
        search_results: list[SearchResults],
        ctx: PhaseContext,
    ) -> list[EvaluationResult]:
        """Evaluate every subtopic. Never raises for a single subtopic's failure."""
        results: list[EvaluationResult] = []
        for search_result in search_results:
            try:
                results.append(await self.evaluate_subtopic(search_result, ctx))
            except Exception as e:
                logger.error(f"Failed to evaluate subtopic: {search_result.subtopic}: {e}")
                results.append(EvaluationResult.from_content(search_result.subtopic, []))

        log_service.log_research_step(
            ctx.session_id,
            "evaluation",
            "completed",
            {
                "subtopics": len(results),
                "sources": sum(len(r.evaluated_content) for r in results),
                "methods": _method_counts(results),
            },
        )
        return results

    async def evaluate_subtopic(self, search_result: SearchResults, ctx: PhaseContext) -> EvaluationResult:
        cap = self.source_cap(ctx.research_mode)
        sources = search_result.results if cap is None else search_result.results[:cap]
        evaluated: list[EvaluatedContent] = []

        for start in range(0, len(sources), self.batch_size):
            if start > 0 and self.delay_seconds > 0:
                await asyncio.sleep(self.delay_seconds)
            batch = sources[start : start + self.batch_size]
            evaluated.extend(await self.evaluate_batch(batch, search_result.subtopic, ctx))

        return EvaluationResult.from_content(search_result.subtopic, evaluated)

    async def fetch_batch(self, batch: list[SearchResult]) -> list[str]:
        """Fetch page text for a batch concurrently; snippets stand in for failures."""
        fetched = await asyncio.gather(*(self.fetcher(r.url) for r in batch), return_exceptions=True)
        texts: list[str] = []
        for result, text in zip(batch, fetched):
            if isinstance(text, BaseException) or not text:
                if isinstance(text, BaseException):
                    logger.warning(f"Failed to fetch content from {result.url}, using snippet only: {text}")
                texts.append(result.snippet)
            else:
                texts.append(text)
        return texts

    async def evaluate_batch(
        self,
        batch: list[SearchResult],
        subtopic: str,
        ctx: PhaseContext,
    ) -> list[EvaluatedContent]:
        if not batch:
            return []
        texts = await self.fetch_batch(batch)
        pairs = list(zip(batch, texts))

        try:
            response = await self.complete(
                _batch_prompt(pairs, subtopic), ctx, max_tokens=2000, temperature=0.3
            )
            return self.parse_batch_response(response.text, pairs)
        except (CompletionError, EvaluationParseError) as e:
            logger.warning(
                f"Batch evaluation failed for '{subtopic}' ({len(batch)} sources), "
                f"evaluating individually: {e}"
            )

        return [await self.evaluate_individual(result, text, subtopic, ctx) for result, text in pairs]

    def parse_batch_response(
        self,
        content: str,
        pairs: list[tuple[SearchResult, str]],
    ) -> list[EvaluatedContent]:
        try:
            payload = BatchPayload.model_validate(self.extract_json_object(content))
        except (json.JSONDecodeError, ValidationError) as e:
            raise EvaluationParseError(f"Unparseable batch evaluation: {e}") from e

        by_index = {item.index: item for item in payload.evaluations}
        if set(by_index) != set(range(len(pairs))):
            raise EvaluationParseError(
                f"Batch evaluation covered indices {sorted(by_index)} for {len(pairs)} sources"
            )

        return [
            self._to_content(result, text, by_index[index], "batch")
            for index, (result, text) in enumerate(pairs)
        ]

    async def evaluate_individual(
        self,
        result: SearchResult,
        content_text: str,
        subtopic: str,
        ctx: PhaseContext,
    ) -> EvaluatedContent:
        try:
            response = await self.complete(
                _individual_prompt(result, content_text, subtopic), ctx, max_tokens=1000, temperature=0.3
            )
            parsed = SourceEvaluation.model_validate(self.extract_json_object(response.text))
        except (CompletionError, json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Individual evaluation failed for {result.url}, using heuristics: {e}")
            return heuristic_evaluation(result, subtopic)
        return self._to_content(result, content_text, parsed, "individual")

    @staticmethod
    def _to_content(
        result: SearchResult,
        content_text: str,
        evaluation: SourceEvaluation,
        method: str,
    ) -> EvaluatedContent:
        return EvaluatedContent(
            url=result.url,
            title=result.title,
            summary=evaluation.summary,
            key_points=evaluation.key_points,
            citations=evaluation.citations,
            relevance_score=evaluation.relevance_score,
            credibility_score=evaluation.credibility_score,
            content_text=content_text[:STORED_CONTENT_CHARS],
            evaluation_method=method,
        )


def _method_counts(results: list[EvaluationResult]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for result in results:
        for content in result.evaluated_content:
            counts[content.evaluation_method] = counts.get(content.evaluation_method, 0) + 1
    return counts
