from __future__ import annotations

import logging
from typing import Protocol

from relaylb.core.clients.oauth import RefreshError, refresh_access_token
from relaylb.core.config.settings import ProviderSettings
from relaylb.core.metrics import get_metrics
from relaylb.db.models import AccountStatus
from relaylb.modules.accounts.credentials import Credential


class CredentialsRepositoryPort(Protocol):
    async def get(self, account_id: str) -> Credential | None: ...

    async def update(self, account_id: str, credential: Credential) -> None: ...


class AccountStatusPort(Protocol):
    async def update_status(self, account_id: str, status: AccountStatus) -> bool: ...


logger = logging.getLogger(__name__)


class AuthManager:
    def __init__(
        self,
        credentials: CredentialsRepositoryPort,
        accounts: AccountStatusPort | None = None,
        *,
        refresh_margin_seconds: float,
    ) -> None:
        self._credentials = credentials
        self._accounts = accounts
        self._refresh_margin_seconds = refresh_margin_seconds

    async def resolve_access_token(
        self,
        credential_id: str,
        provider: ProviderSettings,
        *,
        force: bool = False,
    ) -> str | None:
        """Return a usable access token, refreshing it first when it is close to expiry.

        ``None`` means nothing is stored for this credential id.
        """
        credential = await self._credentials.get(credential_id)
        if credential is None:
            return None
        if not credential.refresh_token:
            return credential.access_token
        if force or credential.expires_within(self._refresh_margin_seconds):
            credential = await self.refresh(credential_id, credential, provider)
        return credential.access_token

    async def refresh(self, credential_id: str, credential: Credential, provider: ProviderSettings) -> Credential:
        if not credential.refresh_token:
            raise RefreshError("refresh_unsupported", "Credential has no refresh token", True)
        metrics = get_metrics()
        try:
            result = await refresh_access_token(credential.refresh_token, provider)
        except RefreshError as exc:
            metrics.observe_token_refresh(outcome="permanent_error" if exc.is_permanent else "error")
            logger.warning(
                "token_refresh_failed credential_id=%s code=%s permanent=%s",
                credential_id,
                exc.code,
                exc.is_permanent,
            )
            if exc.is_permanent and self._accounts is not None:
                await self._accounts.update_status(credential_id, AccountStatus.DISABLED)
            raise

        refreshed = Credential(
            access_token=result.access_token,
            refresh_token=result.refresh_token or credential.refresh_token,
            expires_at=result.expires_at,
        )
        await self._credentials.update(credential_id, refreshed)
        metrics.observe_token_refresh(outcome="success")
        logger.info("token_refreshed credential_id=%s", credential_id)
        return refreshed
