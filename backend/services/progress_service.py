"""Progress records shared between a running sync and its pollers.

Records live in the ``sync_progress`` table, so the background worker and
the request handlers that poll it need not share process memory. The
"current" sync is computed from the stored records, never kept as a
separate pointer.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict
from sqlalchemy import delete, select

from backend.models.sync import SyncProgress

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

STATUS_STARTING = "starting"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"
STATUS_TIMEOUT = "timeout"

TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_ERROR, STATUS_TIMEOUT})

_UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "message",
        "progress",
        "files_total",
        "files_completed",
        "files_errors",
        "current_file",
        "tables_total",
        "tables_completed",
        "tables_errors",
        "current_table",
        "error",
    }
)


class ProgressRecord(BaseModel):
    """Snapshot of a sync run as seen by pollers."""

    model_config = ConfigDict(from_attributes=True)

    sync_id: str
    mode: str
    source_url: str
    status: str
    message: str
    progress: int
    files_total: int = 0
    files_completed: int = 0
    files_errors: int = 0
    current_file: str = ""
    tables_total: int = 0
    tables_completed: int = 0
    tables_errors: int = 0
    current_table: str = ""
    error: str | None = None
    started_at: float
    updated_at: float
    completed_at: float | None = None
    expires_at: float

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def clamp_progress(value: float) -> int:
    """Clamp a progress percentage to [0, 100]."""
    return max(0, min(100, int(value)))


def scale_progress(start: int, end: int, completed: int, total: int) -> int:
    """Map ``completed`` of ``total`` items into the range [start, end].

    Non-decreasing in ``completed``; an empty phase maps to ``end``.
    """
    if total <= 0:
        return clamp_progress(end)
    done = max(0, min(completed, total))
    return clamp_progress(start + (end - start) * done // total)


class ProgressReporter:
    """Creates, updates and reads progress records."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        retention_seconds: float = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._session_factory = session_factory
        self.retention_seconds = retention_seconds
        self._clock = clock

    async def create(self, sync_id: str, mode: str, source_url: str) -> ProgressRecord:
        """Store a new record in the ``starting`` state."""
        now = self._clock()
        row = SyncProgress(
            sync_id=sync_id,
            mode=mode,
            source_url=source_url,
            status=STATUS_STARTING,
            message="Sync starting",
            progress=0,
            files_total=0,
            files_completed=0,
            files_errors=0,
            current_file="",
            tables_total=0,
            tables_completed=0,
            tables_errors=0,
            current_table="",
            error=None,
            started_at=now,
            updated_at=now,
            completed_at=None,
            expires_at=now + self.retention_seconds,
        )
        async with self._session_factory() as session:
            session.add(row)
            await session.commit()
        logger.info("Created progress record %s (mode=%s)", sync_id, mode)
        return ProgressRecord.model_validate(row)

    async def update(self, sync_id: str, **fields: Any) -> ProgressRecord | None:
        """Merge ``fields`` into the record; last write wins per field.

        ``progress`` is clamped to [0, 100]. Returns None when the record does
        not exist. Raises ValueError for unknown fields.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown progress fields: {sorted(unknown)}")
        if "progress" in fields:
            fields["progress"] = clamp_progress(fields["progress"])

        now = self._clock()
        async with self._session_factory() as session:
            row = await session.get(SyncProgress, sync_id)
            if row is None:
                logger.warning("Progress update for unknown sync %s", sync_id)
                return None
            for name, value in fields.items():
                setattr(row, name, value)
            row.updated_at = now
            row.expires_at = now + self.retention_seconds
            if row.status in TERMINAL_STATUSES and row.completed_at is None:
                row.completed_at = now
            await session.commit()
            return ProgressRecord.model_validate(row)

    async def read(self, sync_id: str) -> ProgressRecord | None:
        """Return the record, or None when it is missing or expired."""
        async with self._session_factory() as session:
            row = await session.get(SyncProgress, sync_id)
        if row is None or row.expires_at < self._clock():
            return None
        return ProgressRecord.model_validate(row)

    async def current(self) -> ProgressRecord | None:
        """Return the most recently started, unexpired, non-terminal record."""
        stmt = (
            select(SyncProgress)
            .where(SyncProgress.status.not_in(TERMINAL_STATUSES))
            .where(SyncProgress.expires_at >= self._clock())
            .order_by(SyncProgress.started_at.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            row = (await session.scalars(stmt)).first()
        return ProgressRecord.model_validate(row) if row is not None else None

    async def latest(self) -> ProgressRecord | None:
        """Return the most recently started unexpired record, terminal or not."""
        stmt = (
            select(SyncProgress)
            .where(SyncProgress.expires_at >= self._clock())
            .order_by(SyncProgress.started_at.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            row = (await session.scalars(stmt)).first()
        return ProgressRecord.model_validate(row) if row is not None else None

    async def cleanup_expired(self) -> int:
        """Delete expired records. Returns the number removed."""
        async with self._session_factory() as session:
            result = await session.execute(
                delete(SyncProgress).where(SyncProgress.expires_at < self._clock())
            )
            await session.commit()
        removed = int(result.rowcount or 0)  # type: ignore[attr-defined]
        if removed:
            logger.debug("Removed %d expired progress records", removed)
        return removed
