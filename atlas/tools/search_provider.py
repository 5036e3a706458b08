from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable

from loguru import logger

from atlas.config import settings
from atlas.models.research import SearchResult
from atlas.tools import brave_search, tavily_search

SearchFn = Callable[..., Awaitable[list[SearchResult]]]


@dataclass
class ProviderAttempt:
    provider: str
    outcome: str  # skipped | empty | error
    error: str | None = None


@dataclass
class SearchResponse:
    results: list[SearchResult]
    provider: str
    fallback_from: str | None = None
    fallback_reason: str | None = None
    attempts: list[ProviderAttempt] = field(default_factory=list)


class SearchExhaustedError(Exception):
    """Every configured search backend failed or returned nothing."""

    def __init__(self, query: str, attempts: list[ProviderAttempt]):
        self.query = query
        self.attempts = attempts
        if self.tried:
            summary = ", ".join(
                f"{a.provider}={a.outcome}" + (f" ({a.error})" if a.error else "")
                for a in attempts
            )
            message = f"All search APIs failed for query: {query} [{summary}]"
        else:
            message = f"No search provider is configured (query: {query})"
        super().__init__(message)

    @property
    def tried(self) -> bool:
        return any(a.outcome != "skipped" for a in self.attempts)


@dataclass
class SearchBackend:
    name: str
    api_key: str
    fn: SearchFn

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def __call__(self, query: str, *, max_results: int, timeout: float) -> list[SearchResult]:
        return await self.fn(query, api_key=self.api_key, max_results=max_results, timeout=timeout)


def configured_backends(names: list[str] | None = None) -> list[SearchBackend]:
    """Build the backend chain named in settings, in priority order."""
    registry: dict[str, SearchBackend] = {
        "tavily": SearchBackend("tavily", settings.tavily_api_key, tavily_search.search),
        "tavily_backup": SearchBackend(
            "tavily_backup", settings.tavily_api_key_backup, tavily_search.search
        ),
        "brave": SearchBackend("brave", settings.brave_api_key, brave_search.search),
    }
    chain: list[SearchBackend] = []
    for name in names if names is not None else settings.search_provider_list:
        backend = registry.get(name)
        if backend is None:
            raise ValueError(f"Unsupported search provider: {name}")
        chain.append(backend)
    return chain


class SearchProvider:
    """Queries backends in order until one returns results."""

    def __init__(
        self,
        backends: list[SearchBackend] | None = None,
        *,
        timeout: float | None = None,
    ):
        self.backends = backends if backends is not None else configured_backends()
        self.timeout = timeout if timeout is not None else settings.search_timeout_seconds

    async def search(self, query: str, *, max_results: int = 5) -> SearchResponse:
        attempts: list[ProviderAttempt] = []

        for backend in self.backends:
            if not backend.configured:
                attempts.append(ProviderAttempt(backend.name, "skipped", "no credentials"))
                continue
            try:
                results = await backend(query, max_results=max_results, timeout=self.timeout)
            except Exception as e:
                logger.warning(f"Search backend {backend.name} failed for '{query}': {e}")
                attempts.append(ProviderAttempt(backend.name, "error", str(e)))
                continue
            if not results:
                logger.warning(f"Search backend {backend.name} returned no results for '{query}'")
                attempts.append(ProviderAttempt(backend.name, "empty"))
                continue

            previous = next((a for a in reversed(attempts) if a.outcome != "skipped"), None)
            return SearchResponse(
                results=results[:max_results],
                provider=backend.name,
                fallback_from=previous.provider if previous else None,
                fallback_reason=(previous.error or "returned zero results") if previous else None,
                attempts=attempts,
            )

        raise SearchExhaustedError(query, attempts)
