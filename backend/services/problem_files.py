"""Registry of files whose transfer keeps failing.

A path is skipped once it has failed ``max_attempts`` times, or while its last
failure is younger than ``cooldown_seconds``. Entries persist across runs in
the ``sync_problem_files`` table and are pruned by ``cleanup``.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from sqlalchemy import delete, func, select

from backend.models.sync import ProblemFile

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

PERSISTENT_ATTEMPTS = 3
RECENT_WINDOW_SECONDS = 3600


@dataclass
class ProblemFileStats:
    """Summary counts of the registry."""

    total: int
    recent: int
    persistent: int


class ProblemFileRegistry:
    """Tracks failing transfer paths in the instance database."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_attempts: int = 5,
        cooldown_seconds: float = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._session_factory = session_factory
        self.max_attempts = max_attempts
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock

    async def mark_as_problem(self, file_path: str, reason: str) -> ProblemFile:
        """Record one failed attempt for ``file_path``."""
        now = self._clock()
        async with self._session_factory() as session:
            entry = await session.get(ProblemFile, file_path)
            if entry is None:
                entry = ProblemFile(
                    file_path=file_path,
                    reason=reason,
                    first_seen_at=now,
                    last_attempt_at=now,
                    attempt_count=1,
                )
                session.add(entry)
            else:
                entry.reason = reason
                entry.last_attempt_at = now
                entry.attempt_count += 1
            await session.commit()
        logger.warning(
            "Marked %s as problem file (attempt %d): %s", file_path, entry.attempt_count, reason
        )
        return entry

    async def should_skip(self, file_path: str) -> bool:
        """Return True when ``file_path`` should not be attempted now."""
        async with self._session_factory() as session:
            entry = await session.get(ProblemFile, file_path)
        if entry is None:
            return False
        if entry.attempt_count >= self.max_attempts:
            return True
        return self._clock() - entry.last_attempt_at < self.cooldown_seconds

    async def clear(self, file_path: str) -> None:
        """Forget ``file_path`` after a successful transfer."""
        async with self._session_factory() as session:
            await session.execute(delete(ProblemFile).where(ProblemFile.file_path == file_path))
            await session.commit()

    async def cleanup(self, days: int = 7) -> int:
        """Delete entries whose last attempt is older than ``days``. Returns the count."""
        cutoff = self._clock() - days * 86400
        async with self._session_factory() as session:
            result = await session.execute(
                delete(ProblemFile).where(ProblemFile.last_attempt_at < cutoff)
            )
            await session.commit()
        removed = int(result.rowcount or 0)  # type: ignore[attr-defined]
        if removed:
            logger.info("Removed %d problem file entries older than %d days", removed, days)
        return removed

    async def stats(self) -> ProblemFileStats:
        """Return total, recent (last hour) and persistent entry counts."""
        hour_ago = self._clock() - RECENT_WINDOW_SECONDS
        async with self._session_factory() as session:
            total = await session.scalar(select(func.count()).select_from(ProblemFile))
            recent = await session.scalar(
                select(func.count())
                .select_from(ProblemFile)
                .where(ProblemFile.last_attempt_at > hour_ago)
            )
            persistent = await session.scalar(
                select(func.count())
                .select_from(ProblemFile)
                .where(ProblemFile.attempt_count >= PERSISTENT_ATTEMPTS)
            )
        return ProblemFileStats(
            total=int(total or 0), recent=int(recent or 0), persistent=int(persistent or 0)
        )

    async def list_entries(self, limit: int = 100) -> list[ProblemFile]:
        """Return entries, most recently attempted first."""
        async with self._session_factory() as session:
            result = await session.scalars(
                select(ProblemFile).order_by(ProblemFile.last_attempt_at.desc()).limit(limit)
            )
            return list(result.all())
