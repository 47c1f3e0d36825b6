"""SQLAlchemy ORM models for SiteSync."""

from backend.models.base import Base
from backend.models.sync import INTERNAL_TABLES, ProblemFile, SyncLog, SyncProgress

__all__ = [
    "INTERNAL_TABLES",
    "Base",
    "ProblemFile",
    "SyncLog",
    "SyncProgress",
]
