from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import func

from relaylb.db.models import ModelAssignment, ProviderRouting


class RoutingRepository:
    """Per-provider routing preferences: load-balance toggle, active account, sticky model assignments."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_routing(self, provider: str) -> ProviderRouting | None:
        return await self._session.get(ProviderRouting, provider)

    async def set_load_balance(self, provider: str, enabled: bool | None) -> None:
        await self._upsert_routing(provider, {"load_balance_enabled": enabled})

    async def set_active_account(self, provider: str, account_id: str | None) -> None:
        await self._upsert_routing(provider, {"active_account_id": account_id})

    async def get_assignment(self, provider: str, model_id: str) -> str | None:
        result = await self._session.execute(
            select(ModelAssignment.account_id).where(
                ModelAssignment.provider == provider,
                ModelAssignment.model_id == model_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_assignments(self, provider: str) -> dict[str, str]:
        result = await self._session.execute(
            select(ModelAssignment.model_id, ModelAssignment.account_id).where(ModelAssignment.provider == provider)
        )
        return {model_id: account_id for model_id, account_id in result.all()}

    async def set_assignment(self, provider: str, model_id: str, account_id: str) -> None:
        insert_fn = self._insert_fn()
        statement = insert_fn(ModelAssignment).values(provider=provider, model_id=model_id, account_id=account_id)
        statement = statement.on_conflict_do_update(
            index_elements=[ModelAssignment.provider, ModelAssignment.model_id],
            set_={"account_id": account_id, "updated_at": func.now()},
        )
        await self._session.execute(statement)
        await self._session.commit()

    async def clear_assignments_for_account(self, account_id: str) -> int:
        result = await self._session.execute(
            delete(ModelAssignment).where(ModelAssignment.account_id == account_id).returning(ModelAssignment.model_id)
        )
        await self._session.commit()
        return len(result.all())

    async def _upsert_routing(self, provider: str, values: dict[str, object]) -> None:
        insert_fn = self._insert_fn()
        statement = insert_fn(ProviderRouting).values(provider=provider, **values)
        statement = statement.on_conflict_do_update(
            index_elements=[ProviderRouting.provider],
            set_={**values, "updated_at": func.now()},
        )
        await self._session.execute(statement)
        await self._session.commit()

    def _insert_fn(self):
        dialect = self._session.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert
        if dialect == "sqlite":
            return sqlite_insert
        raise RuntimeError(f"Routing upsert unsupported for dialect={dialect!r}")
