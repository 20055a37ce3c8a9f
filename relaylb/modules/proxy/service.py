from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable

from relaylb.core.balancer import (
    ErrorCategory,
    FailureClassification,
    QuotaStateManager,
    RetryOutcome,
    RetryPolicy,
    RoutingAction,
    allows_endpoint_fallback,
    classify_failure,
    decide_action,
    quota_key,
)
from relaylb.core.clients.oauth import RefreshError
from relaylb.core.clients.upstream import (
    AiohttpTransport,
    JsonObject,
    StreamSink,
    Transport,
    TransportResult,
    endpoint_url,
)
from relaylb.core.config.settings import ProviderSettings, Settings, get_settings
from relaylb.core.errors import (
    AuthenticationError,
    NoAccountsConfiguredError,
    NoAvailableAccountsError,
    NotFoundError,
    PermissionDeniedError,
    QuotaExceededError,
    RequestCancelledError,
    RouterError,
    TransientUpstreamError,
    UpstreamError,
    UserRequestError,
    format_wait,
    quota_wait_too_long,
    rate_limited,
)
from relaylb.core.metrics import get_metrics
from relaylb.core.utils.cancellation import (
    CancellationToken,
    OperationCancelled,
    run_with_cancellation,
    sleep_with_cancellation,
)
from relaylb.modules.accounts.auth_manager import AuthManager
from relaylb.modules.accounts.credentials import default_credential_id
from relaylb.modules.proxy.load_balancer import AccountSelector, RoutingPreferences, account_state
from relaylb.modules.proxy.repo_bundle import RouterRepoFactory

logger = logging.getLogger(__name__)

Sleeper = Callable[[float, CancellationToken | None], Awaitable[bool]]

_STREAM_BUFFER = 64
_DONE = object()


@dataclass(frozen=True, slots=True)
class _Target:
    credential_id: str
    quota_key: str
    # None for the implicit default credential, which skips account bookkeeping.
    account_id: str | None


@dataclass(slots=True)
class _Request:
    provider: str
    model_id: str
    config: ProviderSettings
    payload: JsonObject
    sink: StreamSink
    cancellation: CancellationToken | None
    load_balancing: bool
    retry_policy: RetryPolicy


@dataclass(frozen=True, slots=True)
class _Failure:
    action: RoutingAction
    reason: str
    error: RouterError


class RequestRouter:
    def __init__(
        self,
        repo_factory: RouterRepoFactory,
        quota: QuotaStateManager,
        transport: Transport | None = None,
        *,
        settings: Settings | None = None,
        sleep: Sleeper = sleep_with_cancellation,
    ) -> None:
        self._repo_factory = repo_factory
        self._quota = quota
        self._transport = transport or AiohttpTransport()
        self._settings = settings or get_settings()
        self._sleep = sleep
        self._selector = AccountSelector(quota)

    @property
    def quota(self) -> QuotaStateManager:
        return self._quota

    @property
    def selector(self) -> AccountSelector:
        return self._selector

    def stream(
        self,
        provider: str,
        model_id: str,
        payload: JsonObject,
        cancellation: CancellationToken | None = None,
    ) -> AsyncIterator[str]:
        """Route the request and yield upstream lines; a failure before output raises on the first ``__anext__``."""
        return self._stream(provider, model_id, payload, cancellation or CancellationToken())

    async def handle(
        self,
        provider: str,
        model_id: str,
        payload: JsonObject,
        sink: StreamSink,
        cancellation: CancellationToken | None = None,
    ) -> None:
        metrics = get_metrics()
        try:
            await self._handle(provider, model_id, payload, sink, cancellation)
        except RouterError as exc:
            metrics.observe_router_request(provider=provider, outcome=exc.code)
            logger.info(
                "router_request_failed provider=%s model=%s code=%s status=%s",
                provider,
                model_id,
                exc.code,
                exc.status_code,
            )
            raise
        metrics.observe_router_request(provider=provider, outcome="success")

    async def _stream(
        self,
        provider: str,
        model_id: str,
        payload: JsonObject,
        cancellation: CancellationToken,
    ) -> AsyncIterator[str]:
        queue: asyncio.Queue[object] = asyncio.Queue(maxsize=_STREAM_BUFFER)

        async def sink(line: str) -> None:
            await queue.put(line)

        async def run() -> None:
            try:
                await self.handle(provider, model_id, payload, sink, cancellation)
            finally:
                await queue.put(_DONE)

        task = asyncio.create_task(run())
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    break
                yield item  # type: ignore[misc]
            await task
        finally:
            if not task.done():
                cancellation.cancel()
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError, RouterError):
                    await task

    async def _handle(
        self,
        provider: str,
        model_id: str,
        payload: JsonObject,
        sink: StreamSink,
        cancellation: CancellationToken | None,
    ) -> None:
        try:
            config = self._settings.provider(provider)
        except KeyError as exc:
            raise NotFoundError(f"Unknown provider: {provider}") from exc
        if not config.base_urls:
            raise UpstreamError(f"Provider {provider} has no endpoints configured")

        # Rows expire once the unit of work closes.
        load_balancing = config.load_balance_default
        active_account_id: str | None = None
        async with self._repo_factory() as repos:
            accounts = [account_state(a) for a in await repos.accounts.list_accounts(provider)]
            routing = await repos.routing.get_routing(provider)
            if routing is not None:
                if routing.load_balance_enabled is not None:
                    load_balancing = routing.load_balance_enabled
                active_account_id = routing.active_account_id
            assigned = await repos.routing.get_assignment(provider, model_id)

        preferences = RoutingPreferences(
            load_balancing=load_balancing,
            assigned_account_id=assigned,
            active_account_id=active_account_id,
        )
        candidates = self._selector.select(provider, model_id, accounts, preferences)
        if candidates:
            targets = [_Target(a.id, quota_key(a.id, model_id), a.id) for a in candidates]
        else:
            targets = [_Target(default_credential_id(provider), f"default-{provider}:{model_id}", None)]

        request = _Request(
            provider=provider,
            model_id=model_id,
            config=config,
            payload=payload,
            sink=sink,
            cancellation=cancellation,
            load_balancing=load_balancing,
            retry_policy=RetryPolicy(
                max_retries=self._settings.rate_limit_max_retries,
                base_delay_seconds=self._settings.rate_limit_base_delay_seconds,
                max_delay_seconds=self._settings.rate_limit_max_delay_seconds,
                hint_buffer_seconds=self._settings.rate_limit_hint_buffer_seconds,
            ),
        )
        preferred = targets[0]
        targets = await self._wait_for_head(request, targets)
        await self._run_candidates(request, targets, preferred)

    async def _wait_for_head(self, request: _Request, targets: list[_Target]) -> list[_Target]:
        """Sleep through a short cooldown on the first candidate, or skip candidates whose wait is too long."""
        ceiling = self._settings.max_cooldown_wait_seconds
        shortest: float | None = None
        while targets:
            head = targets[0]
            if not self._quota.is_in_cooldown(head.quota_key):
                return targets
            remaining = self._quota.remaining_cooldown(head.quota_key)
            if remaining <= ceiling:
                logger.info(
                    "router_cooldown_wait provider=%s key=%s wait_s=%.1f",
                    request.provider,
                    head.quota_key,
                    remaining,
                )
                if not await self._sleep(remaining, request.cancellation):
                    raise RequestCancelledError("Request cancelled while waiting for quota cooldown")
                return targets
            shortest = remaining if shortest is None else min(shortest, remaining)
            if len(targets) == 1:
                raise quota_wait_too_long(shortest)
            logger.info(
                "router_failover provider=%s key=%s reason=cooldown_too_long wait=%s",
                request.provider,
                head.quota_key,
                format_wait(remaining),
            )
            get_metrics().observe_failover(provider=request.provider, reason="cooldown_too_long")
            targets = targets[1:]
        return targets

    async def _run_candidates(self, request: _Request, targets: list[_Target], preferred: _Target) -> None:
        metrics = get_metrics()
        last_error: RouterError | None = None
        used_credential = False
        for target in targets:
            self._raise_if_cancelled(request)
            try:
                token = await self._resolve_token(request, target)
            except RefreshError as exc:
                logger.warning(
                    "router_token_unavailable provider=%s credential_id=%s code=%s",
                    request.provider,
                    target.credential_id,
                    exc.code,
                )
                last_error = AuthenticationError(f"Token refresh failed: {exc.message}. Sign in again.")
                continue
            if token is None:
                if target.account_id is None:
                    raise NoAccountsConfiguredError(
                        f"No accounts configured for {request.provider}. Add an account to continue."
                    )
                logger.warning("router_credential_missing account_id=%s", target.account_id)
                continue

            used_credential = True
            failure = await self._run_account(request, target, token)
            if failure is None:
                await self._record_success(request, target, failed_over=target != preferred)
                return
            last_error = failure.error
            if failure.action is RoutingAction.FATAL:
                raise failure.error
            logger.info(
                "router_failover provider=%s model=%s from=%s reason=%s",
                request.provider,
                request.model_id,
                target.credential_id,
                failure.reason,
            )
            metrics.observe_failover(provider=request.provider, reason=failure.reason)

        if not used_credential:
            raise NoAvailableAccountsError(
                f"No available accounts for {request.provider}: none has a usable credential. Sign in again."
            )
        if isinstance(last_error, QuotaExceededError) and last_error.retry_after_seconds is not None:
            # Report the earliest recovery across every account that was tried.
            waits = [self._quota.remaining_cooldown(target.quota_key) for target in targets]
            soonest = min((wait for wait in waits if wait > 0), default=last_error.retry_after_seconds)
            if soonest < last_error.retry_after_seconds:
                raise rate_limited(soonest)
        if last_error is not None:
            raise last_error
        raise NoAvailableAccountsError(f"No available accounts for {request.provider}")

    async def _run_account(self, request: _Request, target: _Target, token: str) -> _Failure | None:
        metrics = get_metrics()
        refreshed = False
        while True:
            result, classification = await self._send(request, token)
            if result.success:
                metrics.observe_attempt(provider=request.provider, outcome="success")
                return None
            assert classification is not None
            metrics.observe_attempt(provider=request.provider, outcome=classification.category.value)
            if result.streamed:
                # Output already reached the caller; replaying elsewhere would duplicate it.
                raise _error_for(classification, result.body, None)

            if classification.category is ErrorCategory.AUTH and not refreshed:
                refreshed = True
                renewed = await self._refresh_after_unauthorized(request, target, token)
                if renewed is not None:
                    token = renewed
                    continue

            cooldown: float | None = None
            if classification.category is ErrorCategory.QUOTA:
                cooldown = self._quota.mark_exceeded(target.quota_key, classification.retry_after_seconds)
                metrics.observe_quota_mark(provider=request.provider)

            decision = decide_action(classification, load_balancing=request.load_balancing)
            if decision.action is not RoutingAction.RETRY:
                return _Failure(decision.action, decision.reason, _error_for(classification, result.body, cooldown))

            if cooldown is not None and cooldown > self._settings.max_cooldown_wait_seconds:
                raise quota_wait_too_long(cooldown)
            outcome = await request.retry_policy.wait(result.body, request.cancellation)
            if outcome is RetryOutcome.CANCELLED:
                raise RequestCancelledError("Request cancelled while waiting to retry")
            if outcome is RetryOutcome.MAX_EXCEEDED:
                return _Failure(
                    RoutingAction.FATAL,
                    "retries_exhausted",
                    rate_limited(self._quota.remaining_cooldown(target.quota_key)),
                )
            logger.info(
                "router_retry provider=%s key=%s attempt=%s",
                request.provider,
                target.quota_key,
                request.retry_policy.retry_count,
            )
            metrics.observe_retry(provider=request.provider, reason=decision.reason)

    async def _send(self, request: _Request, token: str) -> tuple[TransportResult, FailureClassification | None]:
        base_urls = request.config.base_urls
        for position, base_url in enumerate(base_urls):
            endpoint = endpoint_url(base_url, request.config.stream_path)
            try:
                result = await run_with_cancellation(
                    self._transport.send(endpoint, request.payload, token, request.sink),
                    request.cancellation,
                )
            except OperationCancelled as exc:
                raise RequestCancelledError("Request cancelled") from exc
            if result.success:
                return result, None
            classification = classify_failure(
                result.status,
                result.body,
                long_term_threshold_seconds=self._settings.long_term_quota_threshold_seconds,
            )
            if result.streamed or position == len(base_urls) - 1 or not allows_endpoint_fallback(classification):
                return result, classification
            logger.info(
                "endpoint_fallback provider=%s endpoint=%s status=%s",
                request.provider,
                endpoint,
                result.status,
            )
        raise UpstreamError(f"Provider {request.provider} has no endpoints configured")

    async def _resolve_token(self, request: _Request, target: _Target, *, force: bool = False) -> str | None:
        async with self._repo_factory() as repos:
            auth = AuthManager(
                repos.credentials,
                repos.accounts if target.account_id is not None else None,
                refresh_margin_seconds=self._settings.token_refresh_margin_seconds,
            )
            return await auth.resolve_access_token(target.credential_id, request.config, force=force)

    async def _refresh_after_unauthorized(self, request: _Request, target: _Target, token: str) -> str | None:
        try:
            renewed = await self._resolve_token(request, target, force=True)
        except RefreshError as exc:
            logger.warning(
                "router_refresh_after_401_failed credential_id=%s code=%s",
                target.credential_id,
                exc.code,
            )
            return None
        if renewed is None or renewed == token:
            return None
        return renewed

    async def _record_success(self, request: _Request, target: _Target, *, failed_over: bool) -> None:
        self._quota.clear_exceeded(target.quota_key)
        if target.account_id is None:
            return
        self._selector.mark_used(request.provider, request.model_id, target.account_id)
        if not failed_over:
            return
        try:
            async with self._repo_factory() as repos:
                await repos.routing.set_assignment(request.provider, request.model_id, target.account_id)
        except Exception:
            logger.warning(
                "sticky_assignment_failed provider=%s model=%s account_id=%s",
                request.provider,
                request.model_id,
                target.account_id,
                exc_info=True,
            )
            return
        get_metrics().observe_sticky_assignment(provider=request.provider)
        logger.info(
            "sticky_assignment provider=%s model=%s account_id=%s",
            request.provider,
            request.model_id,
            target.account_id,
        )

    @staticmethod
    def _raise_if_cancelled(request: _Request) -> None:
        if request.cancellation is not None and request.cancellation.is_cancelled:
            raise RequestCancelledError("Request cancelled")


def _error_for(
    classification: FailureClassification,
    body: str | None,
    cooldown: float | None,
) -> RouterError:
    status = classification.status
    detail = _upstream_message(body)
    match classification.category:
        case ErrorCategory.PERMISSION:
            return PermissionDeniedError(
                f"Permission denied by upstream: {detail or 'check the account configuration'}",
                status=status,
                body=body,
            )
        case ErrorCategory.QUOTA if classification.long_term_quota:
            wait = classification.retry_after_seconds or 0.0
            return QuotaExceededError(
                f"Quota exhausted; resets in {format_wait(wait)}.",
                retry_after_seconds=wait,
                status=status,
                body=body,
            )
        case ErrorCategory.QUOTA:
            error = rate_limited(cooldown)
            error.upstream_status = status
            error.body = body
            return error
        case ErrorCategory.AUTH:
            return AuthenticationError(
                "Authentication with the upstream failed. Sign in again.",
                status=status,
                body=body,
            )
        case ErrorCategory.USER:
            return UserRequestError(detail or "Upstream rejected the request", status=status, body=body)
        case ErrorCategory.NOT_FOUND:
            return NotFoundError(detail or "Upstream resource not found", status=status, body=body)
        case ErrorCategory.TRANSIENT:
            label = f"status {status}" if status is not None else "network error"
            return TransientUpstreamError(f"Upstream temporarily unavailable ({label})", status=status, body=body)
        case _:
            message = f"Upstream error (status {status})"
            if body:
                message = f"{message}: {body}"
            return UpstreamError(message, status=status, body=body)


def _upstream_message(body: str | None) -> str | None:
    if not body:
        return None
    try:
        parsed = json.loads(body)
    except ValueError:
        return body.strip()[:500] or None
    if isinstance(parsed, dict):
        error = parsed.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
    return None
