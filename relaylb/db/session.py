from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Awaitable, TypeVar

import anyio
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from relaylb.core.config.settings import get_settings

_settings = get_settings()

logger = logging.getLogger(__name__)

_SQLITE_BUSY_TIMEOUT_MS = 5_000
_SQLITE_BUSY_TIMEOUT_SECONDS = _SQLITE_BUSY_TIMEOUT_MS / 1000


def _is_sqlite_url(url: str) -> bool:
    return url.startswith("sqlite+aiosqlite:///") or url.startswith("sqlite:///")


def _is_sqlite_memory_url(url: str) -> bool:
    return _is_sqlite_url(url) and ":memory:" in url


def _configure_sqlite_engine(engine: Engine, *, enable_wal: bool) -> None:
    @event.listens_for(engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection: sqlite3.Connection, _: object) -> None:
        cursor: sqlite3.Cursor = dbapi_connection.cursor()
        try:
            # WAL lets several instances read the shared record while one writes.
            if enable_wal:
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute(f"PRAGMA busy_timeout={_SQLITE_BUSY_TIMEOUT_MS}")
        finally:
            cursor.close()


_DATABASE_URL = _settings.database_url


def _build_engine(url: str) -> AsyncEngine:
    if _is_sqlite_url(url):
        is_sqlite_memory = _is_sqlite_memory_url(url)
        if is_sqlite_memory:
            engine = create_async_engine(
                url,
                echo=False,
                connect_args={"timeout": _SQLITE_BUSY_TIMEOUT_SECONDS},
            )
        else:
            engine = create_async_engine(
                url,
                echo=False,
                pool_size=_settings.database_pool_size,
                max_overflow=_settings.database_max_overflow,
                pool_timeout=_settings.database_pool_timeout_seconds,
                connect_args={"timeout": _SQLITE_BUSY_TIMEOUT_SECONDS},
            )
        _configure_sqlite_engine(engine.sync_engine, enable_wal=not is_sqlite_memory)
        return engine

    return create_async_engine(
        url,
        echo=False,
        pool_size=_settings.database_pool_size,
        max_overflow=_settings.database_max_overflow,
        pool_timeout=_settings.database_pool_timeout_seconds,
    )


engine = _build_engine(_DATABASE_URL)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

_T = TypeVar("_T")


def _ensure_sqlite_dir(url: str) -> None:
    if not (url.startswith("sqlite+aiosqlite:") or url.startswith("sqlite:")):
        return

    marker = ":///"
    marker_index = url.find(marker)
    if marker_index < 0:
        return

    path = url[marker_index + len(marker) :]
    path = path.partition("?")[0]
    path = path.partition("#")[0]

    if not path or path == ":memory:":
        return

    Path(path).expanduser().parent.mkdir(parents=True, exist_ok=True)


async def _shielded(awaitable: Awaitable[_T]) -> _T:
    with anyio.CancelScope(shield=True):
        return await awaitable


async def _safe_rollback(session: AsyncSession) -> None:
    if not session.in_transaction():
        return
    try:
        await _shielded(session.rollback())
    except BaseException:
        return


async def _safe_close(session: AsyncSession) -> None:
    try:
        await _shielded(session.close())
    except BaseException:
        return


async def init_db() -> None:
    from relaylb.db.models import Base

    _ensure_sqlite_dir(_DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database ready url=%s", engine.url.render_as_string(hide_password=True))


async def close_db() -> None:
    await engine.dispose()
