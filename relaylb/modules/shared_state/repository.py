from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Insert, func

from relaylb.db.models import SharedState
from relaylb.db.session import SessionLocal, _safe_close, _safe_rollback


class SharedStateRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_value(self, key: str) -> dict[str, Any] | None:
        result = await self._session.execute(select(SharedState.value).where(SharedState.key == key))
        value = result.scalar_one_or_none()
        return value if isinstance(value, dict) else None

    async def upsert(self, key: str, value: dict[str, Any]) -> None:
        await self._session.execute(self._build_upsert_statement(key, value))
        await self._session.commit()

    async def delete(self, key: str) -> bool:
        result = await self._session.execute(
            delete(SharedState).where(SharedState.key == key).returning(SharedState.key)
        )
        await self._session.commit()
        return result.scalar_one_or_none() is not None

    def _build_upsert_statement(self, key: str, value: dict[str, Any]) -> Insert:
        dialect = self._session.get_bind().dialect.name
        if dialect == "postgresql":
            insert_fn = pg_insert
        elif dialect == "sqlite":
            insert_fn = sqlite_insert
        else:
            raise RuntimeError(f"SharedState upsert unsupported for dialect={dialect!r}")
        statement = insert_fn(SharedState).values(key=key, value=value)
        return statement.on_conflict_do_update(
            index_elements=[SharedState.key],
            set_={
                "value": value,
                "updated_at": func.now(),
            },
        )


class SqlSharedStateStore:
    """SharedStateStore over the database; every call uses its own short-lived session."""

    def __init__(self, session_factory: Callable[[], AsyncSession] = SessionLocal) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _repository(self) -> AsyncIterator[SharedStateRepository]:
        session = self._session_factory()
        try:
            yield SharedStateRepository(session)
        except BaseException:
            await _safe_rollback(session)
            raise
        finally:
            if session.in_transaction():
                await _safe_rollback(session)
            await _safe_close(session)

    async def get(self, key: str) -> dict[str, Any] | None:
        async with self._repository() as repo:
            return await repo.get_value(key)

    async def set(self, key: str, value: dict[str, Any]) -> None:
        async with self._repository() as repo:
            await repo.upsert(key, value)

    async def delete(self, key: str) -> None:
        async with self._repository() as repo:
            await repo.delete(key)
