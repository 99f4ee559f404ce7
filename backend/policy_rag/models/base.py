"""
Declarative base shared by every ORM model.

Column types are kept portable (Uuid, JSON) so the same mapping runs on
PostgreSQL/asyncpg in production and on SQLite/aiosqlite in the test suite.
Timestamps get a Python-side default as well as a server default so rows
written by the application always carry timezone-aware UTC values.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
