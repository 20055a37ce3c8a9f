from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI

from relaylb.core.balancer import QuotaStateManager
from relaylb.core.clients.http import close_http_client, init_http_client
from relaylb.core.config.settings import Settings, get_settings
from relaylb.core.coordination.activity import ActivityTracker
from relaylb.core.coordination.leader import LeaderElector
from relaylb.core.handlers.exceptions import add_exception_handlers
from relaylb.db.session import close_db, init_db
from relaylb.dependencies import router_repo_context
from relaylb.modules.accounts.refresh_sweep import CredentialRefreshSweep
from relaylb.modules.coordination import api as coordination_api
from relaylb.modules.health import api as health_api
from relaylb.modules.metrics import api as metrics_api
from relaylb.modules.proxy import api as proxy_api
from relaylb.modules.proxy.service import RequestRouter
from relaylb.modules.shared_state.repository import SqlSharedStateStore

logger = logging.getLogger(__name__)


def build_coordination(settings: Settings, store: SqlSharedStateStore) -> tuple[LeaderElector, ActivityTracker]:
    instance_id = str(uuid.uuid4())
    activity = ActivityTracker(
        store,
        instance_id,
        domain=settings.election_domain,
        timeout_seconds=settings.activity_timeout_seconds,
        count_window_seconds=settings.activity_count_window_seconds,
        count_cap=settings.activity_count_cap,
        cache_seconds=settings.activity_cache_seconds,
        large_edit_chars=settings.activity_large_edit_chars,
    )
    elector = LeaderElector(
        store,
        activity,
        instance_id=instance_id,
        domain=settings.election_domain,
        heartbeat_interval_seconds=settings.leader_heartbeat_interval_seconds,
        leader_timeout_seconds=settings.leader_timeout_seconds,
        settle_seconds=settings.leader_election_settle_seconds,
        start_jitter_seconds=settings.leader_start_jitter_seconds,
        task_interval_seconds=settings.periodic_task_interval_seconds,
    )
    sweep = CredentialRefreshSweep(router_repo_context, settings)
    elector.register_periodic_task(sweep, name=sweep.name)
    return elector, activity


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    await init_db()
    await init_http_client()

    store = SqlSharedStateStore()
    elector, activity = build_coordination(settings, store)
    quota = QuotaStateManager(
        base_seconds=settings.quota_backoff_base_seconds,
        cap_seconds=settings.quota_backoff_cap_seconds,
    )
    app.state.leader_elector = elector
    app.state.activity_tracker = activity
    app.state.quota_state = quota
    app.state.request_router = RequestRouter(router_repo_context, quota, settings=settings)

    logger.info(
        "relay_lb_started instance_id=%s election_enabled=%s providers=%s",
        elector.instance_id,
        settings.election_enabled,
        ",".join(sorted(settings.providers)),
    )
    if settings.election_enabled:
        await elector.start()
    try:
        yield
    finally:
        try:
            await elector.stop()
        finally:
            try:
                await close_http_client()
            finally:
                await close_db()


def create_app() -> FastAPI:
    app = FastAPI(title="relay-lb", version="0.1.0", lifespan=lifespan)
    add_exception_handlers(app)

    app.include_router(proxy_api.router)
    app.include_router(proxy_api.cooldowns_router)
    app.include_router(coordination_api.router)
    app.include_router(health_api.router)
    app.include_router(metrics_api.router)
    return app


app = create_app()
