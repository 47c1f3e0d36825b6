"""Sync bookkeeping models: progress records, problem files, and the sync log."""

from __future__ import annotations

from sqlalchemy import Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from backend.models.base import Base


class SyncProgress(Base):
    """Progress record of one sync run, polled by observers outside the worker."""

    __tablename__ = "sync_progress"

    sync_id: Mapped[str] = mapped_column(String, primary_key=True)
    mode: Mapped[str] = mapped_column(String, nullable=False, default="")
    source_url: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String, nullable=False, index=True)
    message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    files_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    files_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    files_errors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_file: Mapped[str] = mapped_column(Text, nullable=False, default="")
    tables_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tables_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tables_errors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_table: Mapped[str] = mapped_column(Text, nullable=False, default="")
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[float] = mapped_column(Float, nullable=False)
    updated_at: Mapped[float] = mapped_column(Float, nullable=False)
    completed_at: Mapped[float | None] = mapped_column(Float, nullable=True)
    expires_at: Mapped[float] = mapped_column(Float, nullable=False, index=True)


class ProblemFile(Base):
    """A file path whose transfer has failed; consulted before retrying it."""

    __tablename__ = "sync_problem_files"

    file_path: Mapped[str] = mapped_column(Text, primary_key=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    first_seen_at: Mapped[float] = mapped_column(Float, nullable=False)
    last_attempt_at: Mapped[float] = mapped_column(Float, nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


class SyncLog(Base):
    """One entry in the rolling sync operation log."""

    __tablename__ = "sync_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)
    kind: Mapped[str] = mapped_column(String, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[str] = mapped_column(Text, nullable=False, default="{}")


INTERNAL_TABLES = frozenset(
    {
        SyncProgress.__tablename__,
        ProblemFile.__tablename__,
        SyncLog.__tablename__,
    }
)
