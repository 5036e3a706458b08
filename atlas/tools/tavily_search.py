from __future__ import annotations

from typing import Any

from tavily import AsyncTavilyClient

from atlas.models.research import SearchResult


async def search(
    query: str,
    *,
    api_key: str,
    max_results: int = 5,
    search_depth: str = "basic",
    timeout: float = 15.0,
) -> list[SearchResult]:
    """Execute a Tavily web search and normalize the results."""
    client = AsyncTavilyClient(api_key=api_key)

    kwargs: dict[str, Any] = {
        "query": query,
        "search_depth": search_depth,
        "max_results": max_results,
        "include_answer": False,
        "include_raw_content": False,
        "timeout": timeout,
    }
    response = await client.search(**kwargs)

    results: list[SearchResult] = []
    for r in response.get("results", []) or []:
        url = r.get("url") or ""
        if not url:
            continue
        results.append(
            SearchResult(
                url=url,
                title=r.get("title") or url,
                snippet=r.get("content") or r.get("snippet") or "No description available",
                source="tavily",
            )
        )
    return results
