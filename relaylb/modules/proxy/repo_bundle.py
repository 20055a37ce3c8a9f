from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import AsyncContextManager

from relaylb.modules.accounts.credentials import CredentialsRepository
from relaylb.modules.accounts.repository import AccountsRepository
from relaylb.modules.accounts.routing_repository import RoutingRepository


@dataclass(slots=True)
class RouterRepositories:
    accounts: AccountsRepository
    routing: RoutingRepository
    credentials: CredentialsRepository


RouterRepoFactory = Callable[[], AsyncContextManager[RouterRepositories]]
