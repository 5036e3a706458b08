from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from atlas.models.events import EventType, SSEEvent


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def progress(
    session_id: str,
    phase: str,
    percent: int,
    details: str | None = None,
) -> SSEEvent:
    data: dict[str, Any] = {
        "phase": phase,
        "progress": percent,
        "sessionId": session_id,
        "timestamp": _timestamp(),
    }
    if details is not None:
        data["details"] = details
    return SSEEvent(event=EventType.PROGRESS, data=data)


def research_complete(
    session_id: str,
    *,
    report_url: str,
    filename: str,
    report_content: str,
    metadata: dict[str, Any],
) -> SSEEvent:
    return SSEEvent(
        event=EventType.RESEARCH_COMPLETE,
        data={
            "success": True,
            "reportUrl": report_url,
            "filename": filename,
            "reportContent": report_content,
            "sessionId": session_id,
            "metadata": metadata,
        },
    )


def error(session_id: str, message: str) -> SSEEvent:
    return SSEEvent(
        event=EventType.ERROR,
        data={
            "success": False,
            "error": message,
            "sessionId": session_id,
            "timestamp": _timestamp(),
        },
    )
