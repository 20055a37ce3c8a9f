from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import Request

from relaylb.core.balancer import QuotaStateManager
from relaylb.core.coordination.activity import ActivityTracker
from relaylb.core.coordination.leader import LeaderElector
from relaylb.db.session import SessionLocal, _safe_close, _safe_rollback
from relaylb.modules.accounts.credentials import CredentialsRepository
from relaylb.modules.accounts.repository import AccountsRepository
from relaylb.modules.accounts.routing_repository import RoutingRepository
from relaylb.modules.proxy.repo_bundle import RouterRepoFactory, RouterRepositories
from relaylb.modules.proxy.service import RequestRouter


@dataclass(slots=True)
class RouterContext:
    router: RequestRouter


@dataclass(slots=True)
class CoordinationContext:
    elector: LeaderElector
    activity: ActivityTracker


@dataclass(slots=True)
class CooldownContext:
    quota: QuotaStateManager
    repo_factory: RouterRepoFactory


@asynccontextmanager
async def router_repo_context() -> AsyncIterator[RouterRepositories]:
    session = SessionLocal()
    try:
        yield RouterRepositories(
            accounts=AccountsRepository(session),
            routing=RoutingRepository(session),
            credentials=CredentialsRepository(session),
        )
    except BaseException:
        await _safe_rollback(session)
        raise
    finally:
        if session.in_transaction():
            await _safe_rollback(session)
        await _safe_close(session)


def get_router_context(request: Request) -> RouterContext:
    router = getattr(request.app.state, "request_router", None)
    if router is None:
        router = RequestRouter(router_repo_context, get_cooldown_context(request).quota)
        request.app.state.request_router = router
    return RouterContext(router=router)


def get_cooldown_context(request: Request) -> CooldownContext:
    quota = getattr(request.app.state, "quota_state", None)
    if quota is None:
        quota = QuotaStateManager()
        request.app.state.quota_state = quota
    return CooldownContext(quota=quota, repo_factory=router_repo_context)


def get_coordination_context(request: Request) -> CoordinationContext:
    return CoordinationContext(
        elector=request.app.state.leader_elector,
        activity=request.app.state.activity_tracker,
    )
