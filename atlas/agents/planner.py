from __future__ import annotations

import json

from loguru import logger
from pydantic import BaseModel, ValidationError, field_validator

from atlas.agents.base import BaseAgent, PhaseContext
from atlas.llm_client import CompletionError, InsufficientCreditError, UnauthorizedError
from atlas.model_router import TaskKind
from atlas.models.research import PlanningResult

MIN_SUBTOPICS = 3
MAX_SUBTOPICS = 7

PLANNER_SYSTEM_PROMPT = (
    "You are a research planning specialist. Your job is to break down complex research "
    "questions into specific, actionable subtopics that can be investigated independently."
)


class PlanPayload(BaseModel):
    subtopics: list[str]
    complexity: str | None = None

    @field_validator("subtopics")
    @classmethod
    def _clean_subtopics(cls, value: list[str]) -> list[str]:
        cleaned: list[str] = []
        seen: set[str] = set()
        for item in value:
            step = " ".join(str(item).split()).strip()
            if not step or step.lower() in seen:
                continue
            seen.add(step.lower())
            cleaned.append(step)
        return cleaned


def _planning_prompt(query: str) -> str:
    return f"""Break down this research question into 5-7 specific subtopics that should be investigated to provide a comprehensive answer.

Research Question: "{query}"

Requirements:
1. Each subtopic should be specific and focused
2. Subtopics should cover different aspects/angles of the main question
3. They should be researchable using web search
4. Avoid overlap between subtopics
5. Include both current state and future trends where relevant

Format your response as a JSON object with this structure:
{{
  "subtopics": ["subtopic 1", "subtopic 2", ...],
  "complexity": "low|medium|high",
  "reasoning": "brief explanation of your approach"
}}

Focus only on the subtopics that will lead to the most informative and comprehensive research."""


def fallback_plan(query: str) -> PlanningResult:
    """Keyword-based plan used when the model cannot produce one."""
    keywords = [word for word in query.lower().split() if len(word) > 3]
    subtopics = [
        f"Current state of {keywords[0] if keywords else 'the topic'}",
        "Historical background and context",
        "Key challenges and problems",
        "Recent developments and trends",
        "Future outlook and predictions",
        "Expert opinions and analysis",
    ]
    count = max(MIN_SUBTOPICS, min(6, len(keywords) + 2))
    return PlanningResult(
        subtopics=subtopics[:count],
        original_query=query,
        estimated_complexity="medium",
    )


def validate_plan(plan: PlanningResult) -> bool:
    """True when the plan has 3-7 subtopics that are not overly repetitive."""
    if not MIN_SUBTOPICS <= len(plan.subtopics) <= MAX_SUBTOPICS:
        return False

    unique_words: set[str] = set()
    total_words = 0
    for subtopic in plan.subtopics:
        words = subtopic.lower().split()
        unique_words.update(words)
        total_words += len(words)
    if total_words == 0:
        return False
    return len(unique_words) / total_words > 0.6


class PlannerAgent(BaseAgent):
    name = "planner"
    task = TaskKind.PLANNING
    system_prompt = PLANNER_SYSTEM_PROMPT

    async def plan_research(self, query: str, ctx: PhaseContext) -> PlanningResult:
        try:
            response = await self.complete(_planning_prompt(query), ctx, max_tokens=1000, temperature=0.3)
        except (UnauthorizedError, InsufficientCreditError):
            raise
        except CompletionError as e:
            logger.error(f"Planner completion failed, using keyword plan: {e}")
            return fallback_plan(query)

        return self.parse_response(response.text, query)

    def parse_response(self, content: str, original_query: str) -> PlanningResult:
        try:
            payload = PlanPayload.model_validate(self.extract_json_object(content))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Failed to parse planner response: {e}")
            return fallback_plan(original_query)

        if len(payload.subtopics) < MIN_SUBTOPICS:
            logger.warning(f"Planner returned {len(payload.subtopics)} subtopics, using keyword plan")
            return fallback_plan(original_query)

        complexity = payload.complexity if payload.complexity in ("low", "medium", "high") else "medium"
        plan = PlanningResult(
            subtopics=payload.subtopics[:MAX_SUBTOPICS],
            original_query=original_query,
            estimated_complexity=complexity,
        )
        if not validate_plan(plan):
            logger.info("Planner produced a repetitive plan; continuing with it")
        return plan
