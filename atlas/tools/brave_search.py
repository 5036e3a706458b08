from __future__ import annotations

from typing import Any

import httpx

from atlas.models.research import SearchResult

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"


async def search(
    query: str,
    *,
    api_key: str,
    max_results: int = 5,
    timeout: float = 15.0,
) -> list[SearchResult]:
    """Execute a Brave web search and normalize results."""
    params: dict[str, Any] = {
        "q": query,
        "count": max_results,
    }

    async with httpx.AsyncClient(timeout=timeout) as client:
        response = await client.get(
            BRAVE_SEARCH_URL,
            params=params,
            headers={
                "Accept": "application/json",
                "X-Subscription-Token": api_key,
            },
        )
        response.raise_for_status()
        payload = response.json()

    raw_results = payload.get("web", {}).get("results", []) or []
    mapped: list[SearchResult] = []
    for item in raw_results[:max_results]:
        url = item.get("url") or ""
        if not url:
            continue
        snippets = item.get("extra_snippets", []) or []
        description = item.get("description", "") or ""
        snippet = description.strip() or " ".join(snippets).strip() or "No description available"
        mapped.append(
            SearchResult(
                url=url,
                title=item.get("title") or url,
                snippet=snippet,
                source="brave",
            )
        )
    return mapped
