from __future__ import annotations

import asyncio
import itertools
from contextlib import asynccontextmanager
from typing import AsyncIterator, Sequence

from loguru import logger

from atlas.config import settings
from atlas.models.events import SSEEvent
from atlas.services import streaming
from atlas.services.session_store import SessionStore

_CLOSED = None


class ProgressEmitter:
    """Ordered event channel for one research job.

    Progress never goes backwards: each emitted percentage is raised to the
    last one sent. Events are queued, so the job keeps running whether or not
    anyone is reading. Each progress event is also written to the session
    store on a best-effort basis.
    """

    def __init__(self, session_id: str, store: SessionStore | None = None, *, floor: int = 0):
        self.session_id = session_id
        self.store = store
        self.last_progress = max(0, min(int(floor), 100))
        self.closed = False
        self._queue: asyncio.Queue[SSEEvent | None] = asyncio.Queue()

    async def emit(self, phase: str, progress: int, details: str | None = None) -> SSEEvent | None:
        if self.closed:
            return None
        percent = max(self.last_progress, min(int(progress), 100))
        self.last_progress = percent
        event = streaming.progress(self.session_id, phase, percent, details)
        self._publish(event)
        await self._persist(phase, percent, details)
        return event

    async def finish(self, event: SSEEvent) -> None:
        """Send the terminal event and close the channel."""
        if self.closed:
            return
        self._publish(event)
        self.close()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._queue.put_nowait(_CLOSED)

    def _publish(self, event: SSEEvent) -> None:
        self._queue.put_nowait(event)

    async def _persist(self, phase: str, percent: int, details: str | None) -> None:
        if self.store is None:
            return
        try:
            await self.store.update(self.session_id, progress=percent, current_phase=phase, details=details)
        except Exception as e:
            logger.warning(f"Failed to persist progress for {self.session_id}: {e}")

    @asynccontextmanager
    async def heartbeat(
        self,
        phase: str,
        progress: int,
        details: Sequence[str],
        interval: float | None = None,
    ):
        """Emit a rotating liveness message at a fixed interval while the block runs."""
        interval = interval if interval is not None else settings.heartbeat_interval_seconds
        task = None
        if interval > 0 and details:
            task = asyncio.create_task(self._beat(phase, progress, details, interval))
        try:
            yield
        finally:
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    async def _beat(self, phase: str, progress: int, details: Sequence[str], interval: float) -> None:
        for detail in itertools.cycle(details):
            await asyncio.sleep(interval)
            await self.emit(phase, progress, detail)

    async def events(self, timeout: float | None = None) -> AsyncIterator[SSEEvent]:
        """Yield events until the channel closes.

        Raises TimeoutError when `timeout` seconds pass before the terminal event.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        while True:
            if deadline is None:
                event = await self._queue.get()
            else:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise TimeoutError(f"No terminal event for {self.session_id} within {timeout}s")
                try:
                    event = await asyncio.wait_for(self._queue.get(), remaining)
                except asyncio.TimeoutError as e:
                    raise TimeoutError(
                        f"No terminal event for {self.session_id} within {timeout}s"
                    ) from e
            if event is _CLOSED:
                return
            yield event
