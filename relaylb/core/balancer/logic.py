from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence

from relaylb.core.balancer.types import AccountState

ACTIVE_STATUS = "active"


def usable_accounts(accounts: Sequence[AccountState]) -> list[AccountState]:
    active = [account for account in accounts if account.status == ACTIVE_STATUS]
    # A status field alone never blocks routing entirely.
    return active if active else list(accounts)


def designated_default(
    accounts: Sequence[AccountState],
    active_account_id: str | None,
) -> AccountState | None:
    for account in accounts:
        if account.is_default:
            return account
    if active_account_id:
        for account in accounts:
            if account.id == active_account_id:
                return account
    return None


def _find(accounts: Iterable[AccountState], account_id: str | None) -> AccountState | None:
    if not account_id:
        return None
    for account in accounts:
        if account.id == account_id:
            return account
    return None


def rotate_after(ordered: Sequence[AccountState], last_used_id: str | None) -> list[AccountState]:
    if not last_used_id:
        return list(ordered)
    for index, account in enumerate(ordered):
        if account.id == last_used_id:
            return [*ordered[index + 1 :], *ordered[: index + 1]]
    return list(ordered)


def _with_head(head: AccountState | None, rest: Sequence[AccountState]) -> list[AccountState]:
    if head is None:
        return list(rest)
    return [head, *(account for account in rest if account.id != head.id)]


def build_candidates(
    accounts: Sequence[AccountState],
    *,
    load_balancing: bool,
    assigned_account_id: str | None = None,
    active_account_id: str | None = None,
    last_used_account_id: str | None = None,
) -> list[AccountState]:
    """Order the accounts to attempt for one request, before any cooldown filtering."""
    pool = usable_accounts(accounts)
    if not pool:
        return []
    assigned = _find(pool, assigned_account_id)
    default = designated_default(pool, active_account_id)
    if not load_balancing:
        chosen = assigned or default or pool[0]
        return [chosen]
    ordered = sorted(pool, key=lambda account: (account.created_at, account.id))
    rotated = rotate_after(ordered, last_used_account_id)
    return _with_head(assigned or default, rotated)


def filter_cooldowns(
    candidates: Sequence[AccountState],
    in_cooldown: Callable[[AccountState], bool],
) -> list[AccountState]:
    available = [account for account in candidates if not in_cooldown(account)]
    # Always leave something to attempt so the caller surfaces an explicit error.
    return available if available else list(candidates)
