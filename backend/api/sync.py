"""Local control API: start a sync, poll its progress, inspect bookkeeping."""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.deps import (
    get_orchestrator,
    get_problem_files,
    get_reporter,
    get_session,
    get_settings,
    require_admin_token,
)
from backend.config import Settings
from backend.exceptions import SyncAlreadyRunningError
from backend.services.orchestrator import SyncMode, SyncOrchestrator, validate_source_url
from backend.services.problem_files import ProblemFileRegistry
from backend.services.progress_service import ProgressReporter
from backend.services.sync_log_service import get_sync_logs

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/sync",
    tags=["sync"],
    dependencies=[Depends(require_admin_token)],
)


# ── Schemas ──────────────────────────────────────────


class StartSyncRequest(BaseModel):
    """Request to start a background sync."""

    source_url: str = Field(min_length=1)
    mode: str = SyncMode.FULL.value
    include_options: bool = False


class StartSyncResponse(BaseModel):
    """Handle of a scheduled sync."""

    sync_id: str
    status: str = "started"


class SyncStatusResponse(BaseModel):
    """Whether a sync is currently active."""

    has_active_sync: bool
    sync_id: str | None = None
    status: str | None = None


class ProblemFileInfo(BaseModel):
    """One problem-file entry."""

    file_path: str
    reason: str
    attempt_count: int
    first_seen_at: float
    last_attempt_at: float


class ProblemFilesResponse(BaseModel):
    """Problem-file statistics and the most recent entries."""

    total: int
    recent: int
    persistent: int
    entries: list[ProblemFileInfo]


class CleanupResponse(BaseModel):
    """Result of pruning problem-file entries."""

    removed: int


# ── Endpoints ────────────────────────────────────────


@router.post("/start", response_model=StartSyncResponse)
async def start_sync(
    body: StartSyncRequest,
    background_tasks: BackgroundTasks,
    orchestrator: Annotated[SyncOrchestrator, Depends(get_orchestrator)],
) -> StartSyncResponse:
    """Schedule a sync and return its id immediately."""
    try:
        sync_id = await orchestrator.start(
            body.source_url, body.mode, body.include_options
        )
    except SyncAlreadyRunningError as exc:
        raise HTTPException(
            status_code=409, detail=f"A sync is already running ({exc.sync_id})"
        ) from exc

    background_tasks.add_task(
        orchestrator.run,
        sync_id,
        body.mode,
        validate_source_url(body.source_url),
        body.include_options,
    )
    return StartSyncResponse(sync_id=sync_id)


@router.get("/progress")
async def sync_progress(
    reporter: Annotated[ProgressReporter, Depends(get_reporter)],
    sync_id: Annotated[str | None, Query()] = None,
) -> dict[str, Any]:
    """Return a sync's progress record, or the current sync's when no id is given."""
    if sync_id:
        record = await reporter.read(sync_id)
        if record is None:
            return {"status": "not_found", "sync_id": sync_id}
        return record.model_dump()

    record = await reporter.current() or await reporter.latest()
    if record is None:
        return {"status": "no_sync"}
    return record.model_dump()


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status(
    reporter: Annotated[ProgressReporter, Depends(get_reporter)],
) -> SyncStatusResponse:
    """Report whether a sync is active."""
    record = await reporter.current()
    if record is None:
        return SyncStatusResponse(has_active_sync=False)
    return SyncStatusResponse(has_active_sync=True, sync_id=record.sync_id, status=record.status)


@router.get("/logs")
async def sync_logs(
    session: Annotated[AsyncSession, Depends(get_session)],
    limit: Annotated[int, Query(ge=1, le=100)] = 50,
) -> list[dict[str, Any]]:
    """Return recent sync log entries, newest first."""
    return await get_sync_logs(session, limit)


@router.get("/problem-files", response_model=ProblemFilesResponse)
async def problem_files(
    registry: Annotated[ProblemFileRegistry, Depends(get_problem_files)],
) -> ProblemFilesResponse:
    """Return problem-file statistics."""
    stats = await registry.stats()
    entries = await registry.list_entries()
    return ProblemFilesResponse(
        total=stats.total,
        recent=stats.recent,
        persistent=stats.persistent,
        entries=[
            ProblemFileInfo(
                file_path=e.file_path,
                reason=e.reason,
                attempt_count=e.attempt_count,
                first_seen_at=e.first_seen_at,
                last_attempt_at=e.last_attempt_at,
            )
            for e in entries
        ],
    )


@router.post("/problem-files/cleanup", response_model=CleanupResponse)
async def cleanup_problem_files(
    registry: Annotated[ProblemFileRegistry, Depends(get_problem_files)],
    settings: Annotated[Settings, Depends(get_settings)],
    days: Annotated[int | None, Query(ge=0)] = None,
) -> CleanupResponse:
    """Remove problem-file entries older than ``days`` (default from settings)."""
    retention = settings.problem_file_retention_days if days is None else days
    removed = await registry.cleanup(retention)
    logger.info("Problem file cleanup removed %d entries", removed)
    return CleanupResponse(removed=removed)
