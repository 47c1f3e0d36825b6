"""Tests for database engine and session management."""

from pathlib import Path

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from backend.database import ensure_database_dir
from backend.models.sync import INTERNAL_TABLES
from backend.services.table_store import list_table_names


class TestDatabase:
    @pytest.mark.asyncio
    async def test_engine_connects(self, db_engine) -> None:  # type: ignore[no-untyped-def]
        async with db_engine.connect() as conn:
            result = await conn.execute(text("SELECT 1"))
            assert result.scalar() == 1

    @pytest.mark.asyncio
    async def test_session_works(self, db_session: AsyncSession) -> None:
        result = await db_session.execute(text("SELECT 42"))
        assert result.scalar() == 42

    @pytest.mark.asyncio
    async def test_init_models_creates_bookkeeping_tables(self, db_engine) -> None:  # type: ignore[no-untyped-def]
        names = set(await list_table_names(db_engine))
        assert INTERNAL_TABLES <= names


class TestEnsureDatabaseDir:
    def test_creates_parent_directory(self, tmp_path: Path) -> None:
        db_path = tmp_path / "nested" / "db" / "app.db"
        ensure_database_dir(f"sqlite+aiosqlite:///{db_path}")
        assert db_path.parent.is_dir()

    def test_ignores_memory_and_server_urls(self, tmp_path: Path) -> None:
        ensure_database_dir("sqlite+aiosqlite:///:memory:")
        ensure_database_dir("postgresql+asyncpg://user@host/db")
        assert list(tmp_path.iterdir()) == []
