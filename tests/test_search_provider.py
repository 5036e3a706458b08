from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from atlas.models.research import SearchResult
from atlas.tools.search_provider import (
    SearchBackend,
    SearchExhaustedError,
    SearchProvider,
    configured_backends,
)


def _result(url: str = "https://a.com", source: str = "tavily") -> SearchResult:
    return SearchResult(url=url, title="t", snippet="s", source=source)


@pytest.mark.asyncio
async def test_search_uses_first_backend_with_results():
    primary = AsyncMock(return_value=[_result()])
    secondary = AsyncMock()
    provider = SearchProvider(
        [SearchBackend("tavily", "key", primary), SearchBackend("brave", "key", secondary)], timeout=5
    )

    response = await provider.search("query", max_results=3)

    assert response.provider == "tavily"
    assert response.fallback_from is None
    primary.assert_awaited_once_with("query", api_key="key", max_results=3, timeout=5)
    secondary.assert_not_awaited()


@pytest.mark.asyncio
async def test_search_falls_back_after_error():
    provider = SearchProvider(
        [
            SearchBackend("tavily", "key", AsyncMock(side_effect=RuntimeError("tavily down"))),
            SearchBackend("brave", "key", AsyncMock(return_value=[_result(source="brave")])),
        ]
    )

    response = await provider.search("query")

    assert response.provider == "brave"
    assert response.fallback_from == "tavily"
    assert "tavily down" in (response.fallback_reason or "")


@pytest.mark.asyncio
async def test_search_skips_unconfigured_and_moves_past_empty_results():
    unconfigured = AsyncMock()
    provider = SearchProvider(
        [
            SearchBackend("tavily", "", unconfigured),
            SearchBackend("tavily_backup", "key", AsyncMock(return_value=[])),
            SearchBackend("brave", "key", AsyncMock(return_value=[_result(source="brave")])),
        ]
    )

    response = await provider.search("query")

    unconfigured.assert_not_awaited()
    assert response.provider == "brave"
    assert response.fallback_from == "tavily_backup"
    assert response.fallback_reason == "returned zero results"
    assert [a.outcome for a in response.attempts] == ["skipped", "empty"]


@pytest.mark.asyncio
async def test_search_raises_when_every_backend_fails():
    provider = SearchProvider(
        [
            SearchBackend("tavily", "key", AsyncMock(return_value=[])),
            SearchBackend("brave", "key", AsyncMock(side_effect=RuntimeError("nope"))),
        ]
    )

    with pytest.raises(SearchExhaustedError) as exc_info:
        await provider.search("query")

    assert exc_info.value.tried is True
    assert "All search APIs failed" in str(exc_info.value)


@pytest.mark.asyncio
async def test_search_distinguishes_never_tried():
    provider = SearchProvider([SearchBackend("tavily", "", AsyncMock())])

    with pytest.raises(SearchExhaustedError) as exc_info:
        await provider.search("query")

    assert exc_info.value.tried is False
    assert "No search provider is configured" in str(exc_info.value)


def test_configured_backends_rejects_unknown_provider():
    with pytest.raises(ValueError):
        configured_backends(["tavily", "bing"])


def test_configured_backends_keeps_requested_order():
    backends = configured_backends(["brave", "tavily"])

    assert [b.name for b in backends] == ["brave", "tavily"]


@pytest.mark.asyncio
async def test_tavily_search_maps_response_shape():
    from atlas.tools import tavily_search

    client = MagicMock()
    client.search = AsyncMock(
        return_value={
            "results": [
                {"url": "https://example.com/1", "title": "Result 1", "content": "Body 1"},
                {"url": "", "title": "Dropped"},
                {"url": "https://example.com/2", "content": "Body 2"},
            ]
        }
    )
    with patch("atlas.tools.tavily_search.AsyncTavilyClient", return_value=client):
        results = await tavily_search.search("query", api_key="k", max_results=3)

    assert [r.url for r in results] == ["https://example.com/1", "https://example.com/2"]
    assert results[1].title == "https://example.com/2"
    assert all(r.source == "tavily" for r in results)
