"""OpenRouter completion gateway with classified errors and model fallback."""
from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from loguru import logger

from atlas.config import settings
from atlas.services import logger as log_service

if TYPE_CHECKING:
    from atlas.model_router import UsageTracker


class CompletionError(Exception):
    """Base class for completion-service failures."""


class RateLimitedError(CompletionError):
    pass


class UnauthorizedError(CompletionError):
    pass


class InsufficientCreditError(CompletionError):
    pass


class MalformedResponseError(CompletionError):
    pass


class AllModelsFailedError(CompletionError):
    pass


@dataclass
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass
class ChatRequest:
    model: str
    messages: list[dict[str, str]]
    max_tokens: int | None = None
    temperature: float | None = None


@dataclass
class ChatResponse:
    text: str
    model: str
    usage: Usage = field(default_factory=Usage)


def _error_message(exc: Exception) -> str:
    body = getattr(exc, "body", None)
    if isinstance(body, dict):
        nested = body.get("error")
        if isinstance(nested, dict) and isinstance(nested.get("message"), str):
            return nested["message"]
        if isinstance(body.get("message"), str):
            return body["message"]
    return str(exc)


def classify_api_error(exc: Exception) -> CompletionError:
    """Map an SDK/transport exception onto the gateway's error classes."""
    import openai

    if isinstance(exc, CompletionError):
        return exc

    status = getattr(exc, "status_code", None)
    message = _error_message(exc)
    if isinstance(exc, openai.RateLimitError) or status == 429:
        return RateLimitedError(f"Rate limit exceeded: {message}")
    if isinstance(exc, openai.AuthenticationError) or status == 401:
        return UnauthorizedError("Invalid API key")
    if status == 402:
        return InsufficientCreditError("Insufficient credits")
    return CompletionError(f"OpenRouter API error: {message}")


def get_client() -> Any:
    """Get an OpenRouter client via the OpenAI-compatible SDK."""
    from openai import AsyncOpenAI

    base_url = settings.openrouter_base_url.strip() or "https://openrouter.ai/api/v1"
    return AsyncOpenAI(
        api_key=settings.openrouter_api_key,
        base_url=base_url,
        timeout=settings.completion_timeout_seconds,
        max_retries=0,
        default_headers={
            "HTTP-Referer": settings.openrouter_referer,
            "X-Title": settings.openrouter_title,
        },
    )


class CompletionGateway:
    """Sends chat requests to OpenRouter and walks a fallback chain on rate limits."""

    def __init__(self, client: Any | None = None):
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = get_client()
        return self._client

    @staticmethod
    def _temperature_for_model(model: str, requested: float | None) -> float:
        # Some GPT-5-compatible gateways reject anything but the default.
        if "gpt-5" in (model or "").lower():
            return 1
        if requested is None:
            return settings.completion_temperature
        return requested

    async def chat(self, request: ChatRequest, *, caller: str = "gateway") -> ChatResponse:
        """Single attempt against ``request.model``."""
        t0 = time.monotonic()
        try:
            response = await self.client.chat.completions.create(
                model=request.model,
                messages=request.messages,
                max_tokens=request.max_tokens or settings.completion_max_tokens,
                temperature=self._temperature_for_model(request.model, request.temperature),
            )
        except Exception as e:
            classified = classify_api_error(e)
            log_service.log_llm_call(
                model=request.model,
                caller=caller,
                duration_ms=int((time.monotonic() - t0) * 1000),
                error=str(classified),
            )
            raise classified from e

        choices = getattr(response, "choices", None) or []
        message = getattr(choices[0], "message", None) if choices else None
        text = getattr(message, "content", None) if message is not None else None
        if not isinstance(text, str) or not text.strip():
            raise MalformedResponseError(f"Empty completion from {request.model}")

        raw_usage = getattr(response, "usage", None)
        usage = Usage(
            prompt_tokens=getattr(raw_usage, "prompt_tokens", 0) or 0,
            completion_tokens=getattr(raw_usage, "completion_tokens", 0) or 0,
        )
        log_service.log_llm_call(
            model=request.model,
            caller=caller,
            input_tokens=usage.prompt_tokens,
            output_tokens=usage.completion_tokens,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
        return ChatResponse(text=text, model=request.model, usage=usage)

    async def chat_with_fallback(
        self,
        request: ChatRequest,
        fallback_models: list[str] | None = None,
        *,
        usage: UsageTracker | None = None,
        caller: str = "gateway",
    ) -> ChatResponse:
        """Try the primary model, then each fallback, moving on only after a rate limit.

        Any other failure aborts immediately. Usage is recorded for the model
        that actually answered.
        """
        models = [request.model, *(fallback_models or [])]

        for index, model in enumerate(models):
            try:
                response = await self.chat(replace(request, model=model), caller=caller)
            except RateLimitedError as e:
                if index < len(models) - 1:
                    logger.warning(f"Model {model} rate limited, trying fallback: {models[index + 1]}")
                    continue
                raise AllModelsFailedError(f"All models failed ({len(models)} tried)") from e
            if usage is not None:
                usage.track_usage(
                    response.model,
                    response.usage.prompt_tokens,
                    response.usage.completion_tokens,
                )
            return response

        raise AllModelsFailedError("All models failed")
