from __future__ import annotations

from atlas.model_router import ModelRouter, TaskKind, UsageTracker


def _router() -> ModelRouter:
    return ModelRouter(
        strategy={
            TaskKind.PLANNING: "plan/model",
            TaskKind.REASONING: "reason/model",
            TaskKind.SUMMARIZATION: "sum/model",
            TaskKind.SYNTHESIS: "synth/model",
        },
        fallback_models=["reason/model", "backup/a", "backup/b"],
    )


def test_route_maps_task_kinds_to_models():
    router = _router()

    assert router.route(TaskKind.PLANNING) == "plan/model"
    assert router.route(TaskKind.SYNTHESIS) == "synth/model"


def test_fallbacks_exclude_primary_and_keep_order():
    router = _router()

    assert router.fallbacks_for("reason/model") == ["backup/a", "backup/b"]
    assert router.fallbacks_for("plan/model") == ["reason/model", "backup/a", "backup/b"]


def test_catalogue_lists_tasks_and_fallbacks():
    catalogue = _router().catalogue()

    assert catalogue["tasks"]["planning"] == "plan/model"
    assert catalogue["fallbacks"][0] == "reason/model"


def test_usage_tracker_aggregates_by_model():
    tracker = UsageTracker()
    tracker.track_usage("a", 10, 5)
    tracker.track_usage("b", 3, 2)
    tracker.track_usage("a", 1, 1)

    assert tracker.total_tokens == 22
    assert tracker.models_used == ["a", "b"]
    assert tracker.usage_by_model() == {"a": {"tokens": 17, "calls": 2}, "b": {"tokens": 5, "calls": 1}}
    assert tracker.total_usage()["total_prompt_tokens"] == 14
