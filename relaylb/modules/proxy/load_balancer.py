from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from relaylb.core.balancer import AccountState, QuotaStateManager, build_candidates, filter_cooldowns, quota_key
from relaylb.db.models import Account, AccountStatus


def account_state(account: Account) -> AccountState:
    status = account.status.value if isinstance(account.status, AccountStatus) else str(account.status)
    return AccountState(
        id=account.id,
        status=status,
        created_at=account.created_at.timestamp(),
        is_default=bool(account.is_default),
    )


@dataclass(frozen=True, slots=True)
class RoutingPreferences:
    load_balancing: bool
    assigned_account_id: str | None = None
    active_account_id: str | None = None


class AccountSelector:
    """Orders the accounts to try for a model and remembers which one served it last."""

    def __init__(self, quota: QuotaStateManager) -> None:
        self._quota = quota
        self._last_used: dict[tuple[str, str], str] = {}

    def select(
        self,
        provider: str,
        model_id: str,
        accounts: Sequence[AccountState],
        preferences: RoutingPreferences,
    ) -> list[AccountState]:
        candidates = build_candidates(
            accounts,
            load_balancing=preferences.load_balancing,
            assigned_account_id=preferences.assigned_account_id,
            active_account_id=preferences.active_account_id,
            last_used_account_id=self._last_used.get((provider, model_id)),
        )
        if not preferences.load_balancing:
            # Single candidate; its cooldown only shapes the wait-or-fail decision upstream.
            return candidates
        return filter_cooldowns(
            candidates,
            lambda account: self._quota.is_in_cooldown(quota_key(account.id, model_id)),
        )

    def mark_used(self, provider: str, model_id: str, account_id: str) -> None:
        self._last_used[(provider, model_id)] = account_id

    def last_used(self, provider: str, model_id: str) -> str | None:
        return self._last_used.get((provider, model_id))
