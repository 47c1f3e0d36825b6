"""Shared API dependencies: settings, DB session, services, token checks."""

from __future__ import annotations

import secrets
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, HTTPException, Query, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from backend.config import Settings
from backend.services.orchestrator import SyncOrchestrator
from backend.services.problem_files import ProblemFileRegistry
from backend.services.progress_service import ProgressReporter
from backend.services.transport import TOKEN_HEADER

security = HTTPBearer(auto_error=False)


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


def get_engine(request: Request) -> AsyncEngine:
    """Get the database engine from app state."""
    engine: AsyncEngine = request.app.state.engine
    return engine


async def get_session(request: Request) -> AsyncGenerator[AsyncSession]:
    """Get a database session."""
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        yield session


def get_reporter(request: Request) -> ProgressReporter:
    """Get the progress reporter from app state."""
    reporter: ProgressReporter = request.app.state.progress_reporter
    return reporter


def get_problem_files(request: Request) -> ProblemFileRegistry:
    """Get the problem-file registry from app state."""
    registry: ProblemFileRegistry = request.app.state.problem_files
    return registry


def get_orchestrator(request: Request) -> SyncOrchestrator:
    """Get the sync orchestrator from app state."""
    orchestrator: SyncOrchestrator = request.app.state.orchestrator
    return orchestrator


def _token_matches(provided: str | None, expected: str) -> bool:
    if not expected or not provided:
        return False
    return secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


async def require_sync_token(
    request: Request,
    settings: Annotated[Settings, Depends(get_settings)],
    token: Annotated[str | None, Query()] = None,
) -> None:
    """Require the shared sync secret, from the header or the ``token`` query param.

    An empty configured secret rejects every request.
    """
    provided = request.headers.get(TOKEN_HEADER) or token
    if not _token_matches(provided, settings.sync_secret):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )


async def require_admin_token(
    settings: Annotated[Settings, Depends(get_settings)],
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)] = None,
) -> None:
    """Require the admin bearer token for the local control surface."""
    provided = credentials.credentials if credentials is not None else None
    if not _token_matches(provided, settings.admin_token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
