"""Session storage for research jobs.

`SessionStore` is the interface the orchestrator depends on.
`InMemorySessionStore` keeps sessions in a dict guarded by per-session locks and
optionally snapshots them to a JSON file: interior updates are flushed by a
periodic autosave task, terminal writes and deletions are flushed immediately.
"""
from __future__ import annotations

import asyncio
import json
import random
import string
import time
from abc import ABC, abstractmethod
from datetime import timedelta
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from atlas.config import settings
from atlas.models.research import (
    RESULT_SLOTS,
    ResearchMode,
    ResearchSession,
    ResearchStatus,
    SessionMetadata,
    can_transition,
    utcnow,
)
from atlas.services import logger as log_service

UPDATABLE_FIELDS = frozenset(
    {"status", "progress", "current_phase", "details", "error_message", "metadata", "report_filename", *RESULT_SLOTS}
)


class SessionStoreError(Exception):
    pass


class SessionTransitionError(SessionStoreError):
    def __init__(self, session_id: str, current: ResearchStatus, target: ResearchStatus):
        self.session_id = session_id
        self.current = current
        self.target = target
        super().__init__(f"Session {session_id}: illegal status change {current} -> {target}")


class SessionSlotError(SessionStoreError):
    def __init__(self, session_id: str, slot: str):
        self.session_id = session_id
        self.slot = slot
        super().__init__(f"Session {session_id}: result slot '{slot}' is already populated")


def generate_session_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"session_{int(time.time() * 1000)}_{suffix}"


class SessionStore(ABC):
    """Keyed, concurrency-safe record of research sessions."""

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    @abstractmethod
    async def create(
        self,
        question: str,
        research_mode: ResearchMode = ResearchMode.NORMAL,
        *,
        seed: ResearchSession | None = None,
    ) -> ResearchSession: ...

    @abstractmethod
    async def get(self, session_id: str) -> ResearchSession | None: ...

    @abstractmethod
    async def update(self, session_id: str, **changes: Any) -> ResearchSession | None: ...

    @abstractmethod
    async def mark_completed(
        self, session_id: str, metadata: SessionMetadata, report_filename: str | None = None
    ) -> ResearchSession | None: ...

    @abstractmethod
    async def mark_failed(self, session_id: str, error_message: str) -> ResearchSession | None: ...

    @abstractmethod
    async def delete(self, session_id: str) -> bool: ...

    @abstractmethod
    async def find_resumable(self, question: str, window_hours: float | None = None) -> ResearchSession | None: ...

    @abstractmethod
    async def prepare_resume(self, session_id: str) -> ResearchSession | None: ...

    @abstractmethod
    async def list_active(self) -> list[ResearchSession]: ...

    @abstractmethod
    async def list_completed(self) -> list[ResearchSession]: ...

    @abstractmethod
    async def cleanup_expired(self) -> int: ...


class InMemorySessionStore(SessionStore):
    def __init__(
        self,
        snapshot_path: str | Path | None = None,
        *,
        autosave_seconds: float | None = None,
        cleanup_interval_seconds: float | None = None,
        retention_hours: float | None = None,
    ) -> None:
        self.snapshot_path = Path(snapshot_path) if snapshot_path else None
        self.autosave_seconds = (
            autosave_seconds if autosave_seconds is not None else settings.session_autosave_seconds
        )
        self.cleanup_interval_seconds = (
            cleanup_interval_seconds
            if cleanup_interval_seconds is not None
            else settings.session_cleanup_interval_seconds
        )
        self.retention_hours = retention_hours if retention_hours is not None else settings.session_retention_hours

        self._sessions: dict[str, ResearchSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._dirty = False
        self._tasks: list[asyncio.Task] = []
        self._flush_lock = asyncio.Lock()

    # --- lifecycle ---

    async def start(self) -> None:
        if self.snapshot_path:
            await self.load()
            if self.autosave_seconds > 0:
                self._tasks.append(asyncio.create_task(self._autosave_loop(), name="session-autosave"))
        if self.cleanup_interval_seconds > 0:
            self._tasks.append(asyncio.create_task(self._cleanup_loop(), name="session-cleanup"))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        await self.flush(force=True)

    async def load(self) -> int:
        if not self.snapshot_path or not self.snapshot_path.exists():
            return 0
        try:
            raw = await asyncio.to_thread(self.snapshot_path.read_text, encoding="utf-8")
            records = json.loads(raw)
        except (OSError, json.JSONDecodeError) as e:
            log_service.log_session_operation("load", None, "failed", error=str(e))
            return 0

        loaded = 0
        for record in records:
            try:
                session = ResearchSession.model_validate(record)
            except ValidationError as e:
                logger.warning(f"Skipping unreadable session record: {e}")
                continue
            self._sessions[session.id] = session
            loaded += 1
        logger.info(f"Loaded {loaded} research sessions from {self.snapshot_path}")
        return loaded

    async def flush(self, *, force: bool = False) -> bool:
        """Write the snapshot file if anything changed. Failures are logged, not raised."""
        if not self.snapshot_path or not (self._dirty or force):
            return False

        async with self._flush_lock:
            records = [s.to_wire() for s in self._sessions.values()]
            self._dirty = False
            try:
                await asyncio.to_thread(self._write_snapshot, records)
            except OSError as e:
                self._dirty = True
                log_service.log_session_operation("flush", None, "failed", error=str(e))
                return False
        log_service.log_session_operation("flush", None, "success", details=f"{len(records)} sessions")
        return True

    def _write_snapshot(self, records: list[dict]) -> None:
        self.snapshot_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.snapshot_path.with_suffix(self.snapshot_path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(records, indent=2), encoding="utf-8")
        tmp_path.replace(self.snapshot_path)

    async def _autosave_loop(self) -> None:
        while True:
            await asyncio.sleep(self.autosave_seconds)
            await self.flush()

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval_seconds)
            try:
                await self.cleanup_expired()
            except Exception as e:
                logger.error(f"Session cleanup failed: {e}")

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    # --- records ---

    async def create(
        self,
        question: str,
        research_mode: ResearchMode = ResearchMode.NORMAL,
        *,
        seed: ResearchSession | None = None,
    ) -> ResearchSession:
        session_id = generate_session_id()
        while session_id in self._sessions:
            session_id = generate_session_id()

        session = ResearchSession(id=session_id, question=question, research_mode=research_mode)
        if seed is not None:
            session.resumed_from = seed.id
            session.current_phase = "Resuming research"
            for slot in RESULT_SLOTS:
                value = getattr(seed, slot)
                if value is not None:
                    setattr(session, slot, _copy(value))

        self._sessions[session_id] = session
        self._dirty = True
        log_service.log_session_operation("create", session_id, "success", details=question[:80])
        await self.flush()
        return session.model_copy(deep=True)

    async def get(self, session_id: str) -> ResearchSession | None:
        async with self._lock_for(session_id):
            session = self._sessions.get(session_id)
            return session.model_copy(deep=True) if session else None

    async def update(self, session_id: str, **changes: Any) -> ResearchSession | None:
        """Apply a partial update atomically.

        Status moves must be legal forward moves, result slots are write-once,
        progress never decreases and reaches 100 only with status completed.
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unsupported session fields: {sorted(unknown)}")

        async with self._lock_for(session_id):
            session = self._sessions.get(session_id)
            if session is None:
                return None

            status = changes.get("status")
            if status is not None:
                status = ResearchStatus(status)
                if not can_transition(session.status, status):
                    raise SessionTransitionError(session_id, session.status, status)

            for slot in RESULT_SLOTS:
                if changes.get(slot) is not None and getattr(session, slot) is not None:
                    raise SessionSlotError(session_id, slot)

            target_status = status or session.status
            for field, value in changes.items():
                if field == "progress":
                    value = int(value)
                    if value < session.progress:
                        continue
                    if value >= 100 and target_status != ResearchStatus.COMPLETED:
                        continue
                elif field == "status":
                    value = status
                elif field in RESULT_SLOTS and value is None:
                    continue
                setattr(session, field, value)

            session.updated_at = utcnow()
            if session.status == ResearchStatus.COMPLETED and session.completed_at is None:
                session.completed_at = session.updated_at
            self._dirty = True
            snapshot = session.model_copy(deep=True)

        if status is not None and status.is_terminal:
            await self.flush()
        return snapshot

    async def mark_completed(
        self, session_id: str, metadata: SessionMetadata, report_filename: str | None = None
    ) -> ResearchSession | None:
        session = await self.update(
            session_id,
            status=ResearchStatus.COMPLETED,
            progress=100,
            current_phase="Complete",
            metadata=metadata,
            report_filename=report_filename,
            error_message=None,
        )
        log_service.log_session_operation("complete", session_id, "success" if session else "not_found")
        return session

    async def mark_failed(self, session_id: str, error_message: str) -> ResearchSession | None:
        session = await self.update(
            session_id,
            status=ResearchStatus.FAILED,
            current_phase="Error",
            error_message=error_message,
        )
        log_service.log_session_operation("fail", session_id, "success" if session else "not_found", error_message)
        return session

    async def delete(self, session_id: str) -> bool:
        async with self._lock_for(session_id):
            deleted = self._sessions.pop(session_id, None) is not None
        self._locks.pop(session_id, None)
        if deleted:
            self._dirty = True
            await self.flush()
        log_service.log_session_operation("delete", session_id, "success" if deleted else "not_found")
        return deleted

    async def find_resumable(self, question: str, window_hours: float | None = None) -> ResearchSession | None:
        """Most recent non-terminal session for the exact same question within the window."""
        window = timedelta(hours=window_hours if window_hours is not None else settings.resume_window_hours)
        cutoff = utcnow() - window
        candidates = [
            s
            for s in self._sessions.values()
            if s.question == question and not s.is_terminal and s.created_at > cutoff
        ]
        if not candidates:
            return None
        latest = max(candidates, key=lambda s: s.created_at)
        return latest.model_copy(deep=True)

    async def prepare_resume(self, session_id: str) -> ResearchSession | None:
        """Ready a session for another run.

        Live sessions keep their slots and progress. A failed session is forked
        into a new session seeded with its results. Completed or unknown
        sessions return None.
        """
        async with self._lock_for(session_id):
            session = self._sessions.get(session_id)
            if session is None or session.status == ResearchStatus.COMPLETED:
                return None
            if session.status != ResearchStatus.FAILED:
                session.error_message = None
                session.current_phase = "Resuming research"
                session.updated_at = utcnow()
                self._dirty = True
                log_service.log_session_operation("resume", session_id, "success")
                return session.model_copy(deep=True)
            failed = session.model_copy(deep=True)

        forked = await self.create(failed.question, failed.research_mode, seed=failed)
        log_service.log_session_operation("resume", session_id, "success", details=f"forked to {forked.id}")
        return forked

    async def list_active(self) -> list[ResearchSession]:
        return [s.model_copy(deep=True) for s in self._sessions.values() if not s.is_terminal]

    async def list_completed(self) -> list[ResearchSession]:
        return [
            s.model_copy(deep=True) for s in self._sessions.values() if s.status == ResearchStatus.COMPLETED
        ]

    async def cleanup_expired(self) -> int:
        cutoff = utcnow() - timedelta(hours=self.retention_hours)
        expired = [
            session_id
            for session_id, session in self._sessions.items()
            if session.is_terminal and session.updated_at < cutoff
        ]
        for session_id in expired:
            self._sessions.pop(session_id, None)
            self._locks.pop(session_id, None)
        if expired:
            logger.info(f"Cleaned up {len(expired)} old research sessions")
            self._dirty = True
            await self.flush()
        return len(expired)


def _copy(value: Any) -> Any:
    if isinstance(value, list):
        return [item.model_copy(deep=True) for item in value]
    return value.model_copy(deep=True)
