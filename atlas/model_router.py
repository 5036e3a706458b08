"""Task-kind to model routing and per-job token accounting."""
from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from atlas.config import settings


class TaskKind(StrEnum):
    PLANNING = "planning"
    REASONING = "reasoning"
    SUMMARIZATION = "summarization"
    SYNTHESIS = "synthesis"


@dataclass(frozen=True, slots=True)
class ModelUsage:
    model: str
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class UsageTracker:
    """Accumulates token usage for one research job."""

    def __init__(self) -> None:
        self.usage: list[ModelUsage] = []

    def track_usage(self, model: str, prompt_tokens: int, completion_tokens: int) -> None:
        self.usage.append(
            ModelUsage(
                model=model,
                prompt_tokens=max(int(prompt_tokens or 0), 0),
                completion_tokens=max(int(completion_tokens or 0), 0),
            )
        )

    @property
    def total_tokens(self) -> int:
        return sum(u.total_tokens for u in self.usage)

    @property
    def models_used(self) -> list[str]:
        return list(dict.fromkeys(u.model for u in self.usage))

    def total_usage(self) -> dict[str, Any]:
        return {
            "total_tokens": self.total_tokens,
            "total_prompt_tokens": sum(u.prompt_tokens for u in self.usage),
            "total_completion_tokens": sum(u.completion_tokens for u in self.usage),
            "models_used": self.models_used,
        }

    def usage_by_model(self) -> dict[str, dict[str, int]]:
        by_model: dict[str, dict[str, int]] = {}
        for u in self.usage:
            entry = by_model.setdefault(u.model, {"tokens": 0, "calls": 0})
            entry["tokens"] += u.total_tokens
            entry["calls"] += 1
        return by_model


class ModelRouter:
    def __init__(
        self,
        strategy: dict[TaskKind, str] | None = None,
        fallback_models: list[str] | None = None,
    ):
        self.strategy = strategy or {
            TaskKind.PLANNING: settings.planning_model,
            TaskKind.REASONING: settings.reasoning_model,
            TaskKind.SUMMARIZATION: settings.summarization_model,
            TaskKind.SYNTHESIS: settings.synthesis_model,
        }
        self.fallback_models = (
            list(fallback_models) if fallback_models is not None else settings.fallback_model_list
        )

    def route(self, task: TaskKind) -> str:
        return self.strategy[task]

    def fallbacks_for(self, primary_model: str | None = None) -> list[str]:
        return [m for m in self.fallback_models if m != primary_model]

    def catalogue(self) -> dict[str, Any]:
        return {
            "tasks": {task.value: model for task, model in self.strategy.items()},
            "fallbacks": list(self.fallback_models),
        }
