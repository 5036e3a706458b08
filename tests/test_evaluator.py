from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from atlas.agents.base import PhaseContext
from atlas.agents.evaluator import (
    EvaluationParseError,
    EvaluatorAgent,
    assess_domain_credibility,
    assess_relevance_by_keywords,
    filter_high_quality_content,
    normalize_score,
)
from atlas.llm_client import ChatResponse, CompletionError
from atlas.model_router import ModelRouter, TaskKind
from atlas.models.research import (
    EvaluatedContent,
    EvaluationResult,
    ResearchMode,
    SearchResult,
    SearchResults,
)

SUBTOPIC = "Remote work productivity"


def _router() -> ModelRouter:
    return ModelRouter(strategy={kind: f"{kind}/model" for kind in TaskKind}, fallback_models=[])


def _sources(count: int) -> list[SearchResult]:
    return [
        SearchResult(
            url=f"https://news{i}.example.com/a",
            title=f"Source {i}",
            snippet=f"remote work productivity finding {i}",
            source="tavily",
        )
        for i in range(count)
    ]


def _evaluator(chat: AsyncMock, fetcher: AsyncMock | None = None, **kwargs) -> EvaluatorAgent:
    gateway = MagicMock()
    gateway.chat_with_fallback = chat
    return EvaluatorAgent(
        gateway,
        _router(),
        fetcher=fetcher or AsyncMock(return_value="Fetched page text"),
        batch_size=4,
        max_sources=kwargs.pop("max_sources", 10),
        delay_seconds=0,
    )


def _batch_reply(indices, relevance=8, credibility=7) -> ChatResponse:
    payload = {
        "evaluations": [
            {
                "index": i,
                "summary": f"Summary {i}",
                "keyPoints": [f"Point {i}"],
                "citations": [f"Fact {i}"],
                "relevanceScore": relevance,
                "credibilityScore": credibility,
            }
            for i in indices
        ]
    }
    return ChatResponse(text=json.dumps(payload), model="reasoning/model")


def _individual_reply(relevance=6, credibility=6) -> ChatResponse:
    payload = {
        "summary": "Individual summary",
        "keyPoints": ["k"],
        "citations": ["c"],
        "relevanceScore": relevance,
        "credibilityScore": credibility,
    }
    return ChatResponse(text=json.dumps(payload), model="reasoning/model")


def _search(count: int) -> SearchResults:
    return SearchResults(subtopic=SUBTOPIC, search_query=SUBTOPIC, results=_sources(count))


def test_normalize_score_clamps_and_defaults():
    assert normalize_score(14) == 10.0
    assert normalize_score(-3) == 0.0
    assert normalize_score("7.5") == 7.5
    assert normalize_score("high") == 5.0
    assert normalize_score(None) == 5.0


def test_assess_domain_credibility_tiers():
    assert assess_domain_credibility("https://www.nature.com/articles/x") == 9.0
    assert assess_domain_credibility("https://en.wikipedia.org/wiki/Remote_work") == 7.0
    assert assess_domain_credibility("https://www.some-college.edu/paper") == 6.0
    assert assess_domain_credibility("https://blog.example.com/post") == 5.0
    assert assess_domain_credibility("https://example.io/post") == 4.0
    assert assess_domain_credibility("not a url") == 4.0


def test_assess_relevance_by_keywords():
    assert assess_relevance_by_keywords("remote work boosts productivity", "remote work productivity") == 10.0
    assert assess_relevance_by_keywords("nothing in common", "remote work productivity") == 1.0


@pytest.mark.asyncio
async def test_batch_evaluation_scores_every_source_with_one_call():
    chat = AsyncMock(return_value=_batch_reply(range(3), relevance=14, credibility="unknown"))
    fetcher = AsyncMock(return_value="Fetched page text")
    evaluator = _evaluator(chat, fetcher)

    result = await evaluator.evaluate_subtopic(_search(3), PhaseContext(session_id="s1"))

    assert chat.await_count == 1
    assert fetcher.await_count == 3
    assert result.total_sources == 3
    assert all(c.evaluation_method == "batch" for c in result.evaluated_content)
    assert all(c.relevance_score == 10.0 for c in result.evaluated_content)
    assert all(c.credibility_score == 5.0 for c in result.evaluated_content)
    assert result.evaluated_content[1].summary == "Summary 1"
    assert result.evaluated_content[0].content_text == "Fetched page text"


@pytest.mark.asyncio
async def test_batch_failure_falls_back_to_individual_evaluation():
    chat = AsyncMock(
        side_effect=[
            CompletionError("OpenRouter API error: 500"),
            _individual_reply(6, 6),
            _individual_reply(12, 3),
            _individual_reply(4, 9),
        ]
    )
    evaluator = _evaluator(chat)

    result = await evaluator.evaluate_subtopic(_search(3), PhaseContext(session_id="s1"))

    assert chat.await_count == 4
    assert [c.evaluation_method for c in result.evaluated_content] == ["individual"] * 3
    for content in result.evaluated_content:
        assert 0 <= content.relevance_score <= 10
        assert 0 <= content.credibility_score <= 10


@pytest.mark.asyncio
async def test_incomplete_batch_payload_triggers_individual_evaluation():
    chat = AsyncMock(side_effect=[_batch_reply([0, 1]), _individual_reply(), _individual_reply(), _individual_reply()])
    evaluator = _evaluator(chat)

    result = await evaluator.evaluate_subtopic(_search(3), PhaseContext(session_id="s1"))

    assert chat.await_count == 4
    assert result.total_sources == 3
    assert {c.evaluation_method for c in result.evaluated_content} == {"individual"}


def test_parse_batch_response_rejects_mismatched_indices():
    evaluator = _evaluator(AsyncMock())
    pairs = [(s, s.snippet) for s in _sources(2)]

    with pytest.raises(EvaluationParseError):
        evaluator.parse_batch_response(_batch_reply([0, 5]).text, pairs)
    with pytest.raises(EvaluationParseError):
        evaluator.parse_batch_response("no json here", pairs)


@pytest.mark.asyncio
async def test_individual_failure_falls_back_to_heuristics():
    chat = AsyncMock(side_effect=CompletionError("down"))
    evaluator = _evaluator(chat)

    result = await evaluator.evaluate_subtopic(_search(2), PhaseContext(session_id="s1"))

    assert [c.evaluation_method for c in result.evaluated_content] == ["heuristic", "heuristic"]
    first = result.evaluated_content[0]
    assert first.summary == first.key_points[0]
    assert first.citations == [f'From Source 0: "{first.summary}"']
    assert first.credibility_score == 5.0
    assert first.relevance_score == 10.0


@pytest.mark.asyncio
async def test_fetch_failure_uses_snippet_as_content():
    fetcher = AsyncMock(side_effect=[RuntimeError("timeout"), "Page two"])
    chat = AsyncMock(return_value=_batch_reply(range(2)))
    evaluator = _evaluator(chat, fetcher)

    result = await evaluator.evaluate_subtopic(_search(2), PhaseContext(session_id="s1"))

    assert result.evaluated_content[0].content_text == "remote work productivity finding 0"
    assert result.evaluated_content[1].content_text == "Page two"


@pytest.mark.asyncio
async def test_source_cap_depends_on_research_mode():
    def reply(request, fallbacks, **kwargs):
        count = request.messages[1]["content"].count("[Source ")
        return _batch_reply(range(count))

    chat = AsyncMock(side_effect=reply)
    evaluator = _evaluator(chat, max_sources=10)

    normal = await evaluator.evaluate_subtopic(_search(12), PhaseContext(session_id="s1"))
    deep = await evaluator.evaluate_subtopic(
        _search(12), PhaseContext(session_id="s2", research_mode=ResearchMode.MAX)
    )

    assert normal.total_sources == 10
    assert deep.total_sources == 12


@pytest.mark.asyncio
async def test_evaluate_search_results_isolates_subtopic_failures():
    evaluator = _evaluator(AsyncMock(return_value=_batch_reply(range(2))))
    evaluator.evaluate_subtopic = AsyncMock(
        side_effect=[RuntimeError("unexpected"), EvaluationResult.from_content("b", [])]
    )

    results = await evaluator.evaluate_search_results(
        [_search(2), SearchResults(subtopic="b", search_query="b")], PhaseContext(session_id="s1")
    )

    assert [r.subtopic for r in results] == [SUBTOPIC, "b"]
    assert results[0].total_sources == 0


def test_filter_high_quality_content_returns_new_records():
    def content(url, relevance, credibility):
        return EvaluatedContent(
            url=url, title=url, summary="s", relevance_score=relevance, credibility_score=credibility
        )

    original = [
        EvaluationResult.from_content("keep", [content("a", 8, 7), content("b", 3, 9)]),
        EvaluationResult.from_content("drop", [content("c", 9, 2)]),
    ]

    filtered = filter_high_quality_content(original, min_relevance=5, min_credibility=4)

    assert [r.subtopic for r in filtered] == ["keep"]
    assert [c.url for c in filtered[0].evaluated_content] == ["a"]
    assert filtered[0].average_relevance == 8
    assert len(original[0].evaluated_content) == 2
    assert len(original[1].evaluated_content) == 1
