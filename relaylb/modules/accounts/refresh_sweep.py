from __future__ import annotations

import logging

from relaylb.core.clients.oauth import RefreshError
from relaylb.core.config.settings import Settings
from relaylb.db.models import AccountStatus
from relaylb.modules.accounts.auth_manager import AuthManager
from relaylb.modules.proxy.repo_bundle import RouterRepoFactory, RouterRepositories

logger = logging.getLogger(__name__)

_DEFAULT_PREFIX = "default:"


class CredentialRefreshSweep:
    """Leader-only task that refreshes tokens about to expire before a request needs them."""

    name = "credential_refresh"

    def __init__(self, repo_factory: RouterRepoFactory, settings: Settings) -> None:
        self._repo_factory = repo_factory
        self._settings = settings

    async def __call__(self) -> int:
        margin = self._settings.token_refresh_margin_seconds
        async with self._repo_factory() as repos:
            expiring = await repos.credentials.list_expiring(margin)
        refreshed = 0
        for credential_id in expiring:
            async with self._repo_factory() as repos:
                provider_name = await self._provider_for(repos, credential_id)
                if provider_name is None:
                    continue
                try:
                    provider = self._settings.provider(provider_name)
                except KeyError:
                    logger.warning("credential_refresh_skipped credential_id=%s reason=unknown_provider", credential_id)
                    continue
                auth = AuthManager(
                    repos.credentials,
                    None if credential_id.startswith(_DEFAULT_PREFIX) else repos.accounts,
                    refresh_margin_seconds=margin,
                )
                try:
                    await auth.resolve_access_token(credential_id, provider, force=True)
                except RefreshError:
                    continue
                refreshed += 1
        if expiring:
            logger.info("credential_refresh_sweep expiring=%s refreshed=%s", len(expiring), refreshed)
        return refreshed

    @staticmethod
    async def _provider_for(repos: RouterRepositories, credential_id: str) -> str | None:
        if credential_id.startswith(_DEFAULT_PREFIX):
            return credential_id[len(_DEFAULT_PREFIX) :]
        account = await repos.accounts.get_account(credential_id)
        if account is None or account.status is AccountStatus.DISABLED:
            return None
        return account.provider
