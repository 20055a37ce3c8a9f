from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from relaylb.core.crypto import TokenEncryptor
from relaylb.core.utils.time import to_utc_naive, utcnow
from relaylb.db.models import AccountCredential


def default_credential_id(provider: str) -> str:
    return f"default:{provider}"


@dataclass(slots=True)
class Credential:
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None

    def expires_within(self, seconds: float, *, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return True
        remaining = (to_utc_naive(self.expires_at) - (now or utcnow())).total_seconds()
        return remaining <= seconds


class CredentialsRepository:
    """Credential store with tokens encrypted at rest."""

    def __init__(self, session: AsyncSession, encryptor: TokenEncryptor | None = None) -> None:
        self._session = session
        self._encryptor = encryptor or TokenEncryptor()

    async def get(self, account_id: str) -> Credential | None:
        row = await self._session.get(AccountCredential, account_id)
        if row is None:
            return None
        return Credential(
            access_token=self._encryptor.decrypt(row.access_token_encrypted),
            refresh_token=self._encryptor.decrypt_optional(row.refresh_token_encrypted),
            expires_at=row.expires_at,
        )

    async def update(self, account_id: str, credential: Credential) -> None:
        row = await self._session.get(AccountCredential, account_id)
        access = self._encryptor.encrypt(credential.access_token)
        refresh = self._encryptor.encrypt_optional(credential.refresh_token)
        expires_at = to_utc_naive(credential.expires_at) if credential.expires_at else None
        if row is None:
            self._session.add(
                AccountCredential(
                    account_id=account_id,
                    access_token_encrypted=access,
                    refresh_token_encrypted=refresh,
                    expires_at=expires_at,
                )
            )
        else:
            row.access_token_encrypted = access
            row.refresh_token_encrypted = refresh
            row.expires_at = expires_at
        await self._session.commit()

    async def delete(self, account_id: str) -> bool:
        result = await self._session.execute(
            delete(AccountCredential).where(AccountCredential.account_id == account_id).returning(
                AccountCredential.account_id
            )
        )
        await self._session.commit()
        return result.scalar_one_or_none() is not None

    async def list_expiring(self, within_seconds: float, *, now: datetime | None = None) -> list[str]:
        current = now or utcnow()
        result = await self._session.execute(
            select(AccountCredential.account_id, AccountCredential.expires_at).where(
                AccountCredential.refresh_token_encrypted.is_not(None)
            )
        )
        expiring: list[str] = []
        for account_id, expires_at in result.all():
            if expires_at is None or (expires_at - current).total_seconds() <= within_seconds:
                expiring.append(account_id)
        return expiring
