"""Health check endpoint, also used by peers as a reachability probe."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend import __version__
from backend.api.deps import get_reporter, get_session
from backend.services.progress_service import ProgressReporter

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    active_sync: bool


@router.get("/api/health", response_model=HealthResponse)
async def health_check(
    session: Annotated[AsyncSession, Depends(get_session)],
    reporter: Annotated[ProgressReporter, Depends(get_reporter)],
) -> HealthResponse:
    """Health check endpoint for monitoring and peer instances."""
    db_status = "ok"
    active_sync = False
    try:
        await session.execute(text("SELECT 1"))
        active_sync = await reporter.current() is not None
    except SQLAlchemyError:
        logger.warning("Health check database query failed", exc_info=True)
        db_status = "error"

    return HealthResponse(
        status="ok" if db_status == "ok" else "degraded",
        version=__version__,
        database=db_status,
        active_sync=active_sync,
    )
