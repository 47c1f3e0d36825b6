"""Rolling log of sync operations, kept in the instance database."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, select

from backend.models.sync import SyncLog
from backend.services.datetime_service import format_iso, now_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

MAX_LOG_ENTRIES = 100
LOG_KINDS = frozenset({"db", "file", "error", "info"})


async def log_sync_operation(
    session: AsyncSession,
    kind: str,
    message: str,
    data: dict[str, Any] | None = None,
) -> SyncLog:
    """Append an entry and drop everything beyond the newest ``MAX_LOG_ENTRIES``."""
    if kind not in LOG_KINDS:
        raise ValueError(f"Unknown sync log kind: {kind}")
    entry = SyncLog(
        created_at=format_iso(now_utc()),
        kind=kind,
        message=message,
        data=json.dumps(data or {}, default=str),
    )
    session.add(entry)
    await session.flush()

    keep = select(SyncLog.id).order_by(SyncLog.id.desc()).limit(MAX_LOG_ENTRIES)
    await session.execute(
        delete(SyncLog)
        .where(SyncLog.id.not_in(keep))
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return entry


async def get_sync_logs(session: AsyncSession, limit: int = 50) -> list[dict[str, Any]]:
    """Return the newest entries first."""
    result = await session.scalars(select(SyncLog).order_by(SyncLog.id.desc()).limit(limit))
    entries: list[dict[str, Any]] = []
    for entry in result.all():
        try:
            data = json.loads(entry.data)
        except json.JSONDecodeError:
            logger.warning("Sync log entry %d has invalid data", entry.id)
            data = {}
        entries.append(
            {
                "id": entry.id,
                "created_at": entry.created_at,
                "kind": entry.kind,
                "message": entry.message,
                "data": data,
            }
        )
    return entries
