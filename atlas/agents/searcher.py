from __future__ import annotations

import asyncio
from datetime import date

from loguru import logger

from atlas.agents.base import PhaseContext
from atlas.config import settings
from atlas.models.research import PlanningResult, SearchResults
from atlas.services import logger as log_service
from atlas.tools.search_provider import SearchExhaustedError, SearchProvider

STOP_WORDS = {"the", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by", "about"}


def generate_search_query(subtopic: str, original_query: str | None = None, *, today: date | None = None) -> str:
    """Focus a subtopic into a web query biased toward recent results."""
    query = subtopic
    words = [w for w in subtopic.lower().split() if len(w) > 2 and w not in STOP_WORDS]
    if len(words) > 3:
        query = f'"{" ".join(words[:3])}" {" ".join(words[3:])}'

    year = (today or date.today()).year
    return f"{query} {year} OR {year - 1}"


def validate_search_results(results: list[SearchResults]) -> bool:
    """At least one result per subtopic on average. Diagnostic only."""
    total = sum(len(r.results) for r in results)
    return total >= len(results)


class SearcherAgent:
    name = "searcher"

    def __init__(
        self,
        provider: SearchProvider | None = None,
        *,
        max_results: int | None = None,
        delay_seconds: float | None = None,
    ):
        self.provider = provider or SearchProvider()
        self.max_results = max_results if max_results is not None else settings.search_max_results
        self.delay_seconds = delay_seconds if delay_seconds is not None else settings.search_delay_seconds

    async def search_subtopic(self, subtopic: str, original_query: str | None = None) -> SearchResults:
        """Search one subtopic. Raises SearchExhaustedError when no backend delivers."""
        search_query = generate_search_query(subtopic, original_query)
        response = await self.provider.search(search_query, max_results=self.max_results)
        if response.fallback_from:
            logger.info(
                f"Search for '{subtopic}' served by {response.provider} "
                f"after {response.fallback_from} ({response.fallback_reason})"
            )
        return SearchResults(
            subtopic=subtopic,
            search_query=search_query,
            results=response.results[: self.max_results],
        )

    async def search_all_subtopics(
        self,
        planning: PlanningResult,
        original_query: str,
        ctx: PhaseContext,
    ) -> list[SearchResults]:
        """Search subtopics one after another; a failed subtopic is recorded empty.

        Raises SearchExhaustedError only when no subtopic produced any result.
        """
        results: list[SearchResults] = []
        failures: list[SearchExhaustedError] = []

        for index, subtopic in enumerate(planning.subtopics):
            if index > 0 and self.delay_seconds > 0:
                await asyncio.sleep(self.delay_seconds)
            try:
                results.append(await self.search_subtopic(subtopic, original_query))
            except SearchExhaustedError as e:
                logger.error(f"Failed to search subtopic: {subtopic}: {e}")
                failures.append(e)
                results.append(
                    SearchResults(
                        subtopic=subtopic,
                        search_query=generate_search_query(subtopic, original_query),
                        results=[],
                    )
                )

        total = sum(len(r.results) for r in results)
        log_service.log_research_step(
            ctx.session_id,
            "search",
            "completed" if total else "failed",
            {
                "subtopics": len(results),
                "total_results": total,
                "failed_subtopics": len(failures),
                "valid": validate_search_results(results),
            },
        )
        if results and total == 0:
            raise failures[-1] if failures else SearchExhaustedError(original_query, [])
        return results
