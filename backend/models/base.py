"""Declarative base for the application's own ORM models."""

from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for SiteSync bookkeeping tables."""
