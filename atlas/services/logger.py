"""Centralized logging service using loguru."""

import logging
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from atlas.config import settings

LOG_DIR = Path(settings.log_dir)
LOG_DIR.mkdir(parents=True, exist_ok=True)

logger.remove()

logger.add(
    sys.stderr,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
    level=settings.app_log_level.upper(),
    colorize=True,
)

logger.add(
    LOG_DIR / "atlas_{time:YYYY-MM-DD}.log",
    format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
    level="DEBUG",
    rotation="00:00",
    retention="7 days",
    compression="zip",
)

for logger_name in (
    "uvicorn",
    "uvicorn.error",
    "uvicorn.access",
    "fastapi",
    "sse_starlette.sse",
    "httpx",
    "httpcore",
    "hpack",
    "openai._base_client",
    "asyncio",
):
    logging.getLogger(logger_name).setLevel(settings.noisy_log_level.upper())



def log_llm_call(
    model: str,
    caller: str,
    input_tokens: int = 0,
    output_tokens: int = 0,
    duration_ms: int = 0,
    error: Optional[str] = None,
) -> None:
    """Log one completion attempt against a single model."""
    call = f"model={model} caller={caller} tokens={input_tokens}+{output_tokens} duration_ms={duration_ms}"
    if error:
        logger.error(f"LLM_CALL_FAILED: {call} error={error}")
    else:
        logger.info(f"LLM_CALL: {call}")


def log_research_step(
    session_id: str,
    phase: str,
    status: str,
    data: Optional[dict] = None,
) -> None:
    """Log a pipeline phase outcome for one job."""
    logger.info(f"RESEARCH_STEP: session={session_id} phase={phase} status={status} data={data or {}}")


def log_session_operation(
    operation: str,
    session_id: str | None,
    status: str,
    details: Optional[str] = None,
    error: Optional[str] = None,
) -> None:
    """Log a session store operation. Failures go out at ERROR, the rest at DEBUG."""
    op = f"operation={operation} session={session_id or '-'} status={status}"
    if details:
        op += f" details={details}"
    if error:
        logger.error(f"SESSION_OPERATION_FAILED: {op} error={error}")
    else:
        logger.debug(f"SESSION_OPERATION: {op}")


def log_usage(session_id: str, total: dict[str, Any], by_model: dict[str, dict[str, int]]) -> None:
    """Log token spend for a finished job, per model."""
    logger.info(
        f"USAGE: session={session_id} total_tokens={total['total_tokens']} "
        f"prompt_tokens={total['total_prompt_tokens']} completion_tokens={total['total_completion_tokens']}"
    )
    for model, usage in by_model.items():
        logger.info(f"USAGE: session={session_id} model={model} tokens={usage['tokens']} calls={usage['calls']}")


def log_event(
    event_type: str,
    message: str,
    level: str = "INFO",
    **fields: Any,
) -> None:
    """Log a lifecycle event with arbitrary key/value fields."""
    extra = " ".join(f"{k}={v}" for k, v in fields.items() if v is not None)
    logger.log(level.upper(), f"EVENT: {event_type} - {message}" + (f" ({extra})" if extra else ""))
