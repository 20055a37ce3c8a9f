from __future__ import annotations

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from relaylb.db.models import Account, AccountStatus


class AccountsRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_account(self, account_id: str) -> Account | None:
        return await self._session.get(Account, account_id)

    async def list_accounts(self, provider: str | None = None) -> list[Account]:
        statement = select(Account).order_by(Account.created_at, Account.id)
        if provider is not None:
            statement = statement.where(Account.provider == provider)
        result = await self._session.execute(statement)
        return list(result.scalars().all())

    async def upsert(self, account: Account) -> Account:
        existing = await self._session.get(Account, account.id)
        if existing:
            existing.provider = account.provider
            existing.display_name = account.display_name
            existing.status = account.status
            existing.is_default = account.is_default
            await self._session.commit()
            await self._session.refresh(existing)
            return existing

        self._session.add(account)
        await self._session.commit()
        await self._session.refresh(account)
        return account

    async def update_status(self, account_id: str, status: AccountStatus) -> bool:
        result = await self._session.execute(
            update(Account).where(Account.id == account_id).values(status=status).returning(Account.id)
        )
        await self._session.commit()
        return result.scalar_one_or_none() is not None

    async def set_default(self, provider: str, account_id: str) -> bool:
        await self._session.execute(
            update(Account).where(Account.provider == provider).values(is_default=False)
        )
        result = await self._session.execute(
            update(Account)
            .where(Account.provider == provider, Account.id == account_id)
            .values(is_default=True)
            .returning(Account.id)
        )
        await self._session.commit()
        return result.scalar_one_or_none() is not None

    async def delete(self, account_id: str) -> bool:
        result = await self._session.execute(delete(Account).where(Account.id == account_id).returning(Account.id))
        await self._session.commit()
        return result.scalar_one_or_none() is not None
