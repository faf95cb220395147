"""
Async database engine and session factory for the note store.

SQLite (aiosqlite) by default; any SQLAlchemy async URL works.
"""
from __future__ import annotations

import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from services.api.logging_config import get_logger
from services.crypto_core.field_encryption import FieldEncryption
from services.database.models import Base

logger = get_logger("database")

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None
_encryptor: Optional[FieldEncryption] = None


def _ensure_sqlite_dir(url: str) -> None:
    for prefix in ("sqlite+aiosqlite:///", "sqlite:///"):
        if url.startswith(prefix) and ":memory:" not in url:
            Path(url[len(prefix):]).parent.mkdir(parents=True, exist_ok=True)


async def init_database(database_url: str, encryption_key: Optional[str] = None, echo: bool = False) -> AsyncEngine:
    """Create the engine, the tables and the field encryptor."""
    global _engine, _session_factory, _encryptor

    _ensure_sqlite_dir(database_url)
    _engine = create_async_engine(database_url, echo=echo, future=True)
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    if encryption_key:
        _encryptor = FieldEncryption.from_encoded_key(encryption_key)
    else:
        passphrase = os.getenv("NOTE_ENCRYPTION_PASSPHRASE")
        if not passphrase:
            raise RuntimeError("NOTE_ENCRYPTION_KEY or NOTE_ENCRYPTION_PASSPHRASE must be set")
        _encryptor = FieldEncryption.from_passphrase(passphrase)

    logger.info(f"Database initialized: {database_url.split('///')[0]}")
    return _engine


async def close_database() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("database not initialized; call init_database() first")
    return _session_factory


@asynccontextmanager
async def get_async_session() -> AsyncIterator[AsyncSession]:
    """Session that rolls back on error."""
    async with get_session_factory()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


def get_encryptor() -> FieldEncryption:
    if _encryptor is None:
        raise RuntimeError("database not initialized; call init_database() first")
    return _encryptor


async def test_connection_async() -> None:
    async with get_async_session() as session:
        await session.execute(text("SELECT 1"))
