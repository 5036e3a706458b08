from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from atlas.llm_client import ChatRequest, ChatResponse, CompletionGateway
from atlas.model_router import ModelRouter, TaskKind, UsageTracker
from atlas.models.research import ResearchMode


@dataclass
class PhaseContext:
    """Per-job state handed to every phase executor."""

    session_id: str
    research_mode: ResearchMode = ResearchMode.NORMAL
    usage: UsageTracker = field(default_factory=UsageTracker)


class BaseAgent:
    """Shared plumbing for phase executors that talk to the completion gateway.

    Agents hold collaborators only; all per-job state travels in PhaseContext.
    """

    name: str = "base"
    task: TaskKind = TaskKind.REASONING
    system_prompt: str = ""

    def __init__(self, gateway: CompletionGateway, router: ModelRouter | None = None):
        self.gateway = gateway
        self.router = router or ModelRouter()

    @property
    def model(self) -> str:
        return self.router.route(self.task)

    async def complete(
        self,
        prompt: str,
        ctx: PhaseContext,
        *,
        max_tokens: int = 1000,
        temperature: float = 0.3,
        system_prompt: str | None = None,
    ) -> ChatResponse:
        model = self.model
        request = ChatRequest(
            model=model,
            messages=[
                {"role": "system", "content": system_prompt or self.system_prompt},
                {"role": "user", "content": prompt},
            ],
            max_tokens=max_tokens,
            temperature=temperature,
        )
        return await self.gateway.chat_with_fallback(
            request,
            self.router.fallbacks_for(model),
            usage=ctx.usage,
            caller=self.name,
        )

    @staticmethod
    def extract_json_object(raw_text: str) -> dict[str, Any]:
        text = raw_text.strip()
        if text.startswith("```"):
            parts = text.split("```")
            if len(parts) >= 2:
                text = parts[1]
            if text.startswith("json"):
                text = text[4:]
            text = text.strip()
        start = text.find("{")
        end = text.rfind("}")
        if start < 0 or end <= start:
            raise json.JSONDecodeError("object not found", text, 0)
        parsed = json.loads(text[start : end + 1])
        if not isinstance(parsed, dict):
            raise json.JSONDecodeError("not an object", text, 0)
        return parsed
