"""Database utilities for the flight-log service."""

from __future__ import annotations

import os

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase


DEFAULT_DB_PATH = "blackbox.db"


def _build_default_dsn() -> str:
    path = os.getenv("BLACKBOX_DB_PATH", DEFAULT_DB_PATH)
    return f"sqlite+aiosqlite:///{path}"


def get_database_dsn() -> str:
    """Return the database DSN configured via environment or defaults."""

    return os.getenv("DB_DSN", _build_default_dsn())


engine = create_async_engine(get_database_dsn())
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""

    pass


async def init_db() -> None:
    """Create the flight log and key-value tables if they are missing."""

    from . import models  # noqa: F401  ensure metadata is imported

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
