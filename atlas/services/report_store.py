"""Filesystem storage for finished reports with a JSON index, most recent first."""
from __future__ import annotations

import asyncio
import json
import re
from datetime import datetime
from pathlib import Path

from loguru import logger

from atlas.config import settings
from atlas.models.research import CamelModel, utcnow

INDEX_FILENAME = "index.json"
_FILENAME_RE = re.compile(r"^[\w\-]+\.md$")


class ReportStoreError(Exception):
    pass


class ReportNotFoundError(ReportStoreError):
    def __init__(self, filename: str):
        self.filename = filename
        super().__init__(f"Report not found: {filename}")


class ReportMetadata(CamelModel):
    filename: str
    timestamp: datetime
    query: str
    word_count: int
    models_used: list[str] = []


class StoredReport(CamelModel):
    content: str
    metadata: ReportMetadata | None = None


def generate_filename(now: datetime | None = None) -> str:
    return f"{(now or datetime.now()).strftime('%Y-%m-%d_%H-%M-%S')}.md"


def report_url(filename: str) -> str:
    return f"/reports/{filename.removesuffix('.md')}"


def validate_filename(filename: str) -> str:
    if not _FILENAME_RE.match(filename):
        raise ReportStoreError(f"Invalid report filename: {filename}")
    return filename


class ReportStore:
    def __init__(self, reports_dir: str | Path | None = None, *, index_limit: int | None = None):
        self.reports_dir = Path(reports_dir or settings.reports_dir)
        self.index_limit = index_limit or settings.reports_index_limit
        self._lock = asyncio.Lock()

    @property
    def index_path(self) -> Path:
        return self.reports_dir / INDEX_FILENAME

    async def save(self, content: str, query: str, models_used: list[str]) -> ReportMetadata:
        """Write the report and prepend it to the index. Raises ReportStoreError on IO failure."""
        async with self._lock:
            try:
                return await asyncio.to_thread(self._save, content, query, models_used)
            except OSError as e:
                raise ReportStoreError(f"Failed to save report: {e}") from e

    def _save(self, content: str, query: str, models_used: list[str]) -> ReportMetadata:
        self.reports_dir.mkdir(parents=True, exist_ok=True)
        filename = generate_filename()
        suffix = 1
        while (self.reports_dir / filename).exists():
            filename = f"{generate_filename().removesuffix('.md')}_{suffix}.md"
            suffix += 1

        (self.reports_dir / filename).write_text(content, encoding="utf-8")
        metadata = ReportMetadata(
            filename=filename,
            timestamp=utcnow(),
            query=query,
            word_count=len(content.split()),
            models_used=list(models_used),
        )
        index = self._read_index()
        index.insert(0, metadata)
        self._write_index(index[: self.index_limit])
        logger.info(f"Saved report {filename} ({metadata.word_count} words)")
        return metadata

    async def get(self, filename: str) -> StoredReport:
        validate_filename(filename)
        path = self.reports_dir / filename
        try:
            content = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError as e:
            raise ReportNotFoundError(filename) from e
        except OSError as e:
            raise ReportStoreError(f"Failed to read report {filename}: {e}") from e

        index = await asyncio.to_thread(self._read_index)
        metadata = next((m for m in index if m.filename == filename), None)
        return StoredReport(content=content, metadata=metadata)

    async def list(self, limit: int = 10) -> list[ReportMetadata]:
        index = await asyncio.to_thread(self._read_index)
        return index[:limit]

    async def count(self) -> int:
        return len(await asyncio.to_thread(self._read_index))

    async def delete(self, filename: str) -> None:
        validate_filename(filename)
        async with self._lock:
            try:
                await asyncio.to_thread(self._delete, filename)
            except OSError as e:
                raise ReportStoreError(f"Failed to delete report {filename}: {e}") from e

    def _delete(self, filename: str) -> None:
        path = self.reports_dir / filename
        if not path.exists():
            raise ReportNotFoundError(filename)
        path.unlink()
        self._write_index([m for m in self._read_index() if m.filename != filename])

    def _read_index(self) -> list[ReportMetadata]:
        if not self.index_path.exists():
            return []
        try:
            data = json.loads(self.index_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Unreadable report index {self.index_path}: {e}")
            return []
        return [ReportMetadata.model_validate(item) for item in data.get("reports", [])]

    def _write_index(self, reports: list[ReportMetadata]) -> None:
        self.reports_dir.mkdir(parents=True, exist_ok=True)
        payload = {"reports": [r.to_wire() for r in reports]}
        self.index_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
