from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

import pytest

from relaylb.core.balancer import QuotaStateManager
from relaylb.core.clients.oauth import RefreshError, TokenRefreshResult
from relaylb.core.clients.upstream import TransportResult
from relaylb.core.config.settings import ProviderSettings, Settings
from relaylb.core.errors import (
    AuthenticationError,
    NoAccountsConfiguredError,
    NotFoundError,
    PermissionDeniedError,
    QuotaExceededError,
    QuotaWaitTooLongError,
    RequestCancelledError,
    TransientUpstreamError,
    UserRequestError,
)
from relaylb.core.utils.cancellation import CancellationToken
from relaylb.core.utils.retry import RETRY_INFO_TYPE
from relaylb.core.utils.time import utcnow
from relaylb.db.models import Account, AccountStatus, ProviderRouting
from relaylb.modules.accounts.credentials import Credential
from relaylb.modules.proxy.repo_bundle import RouterRepositories
from relaylb.modules.proxy.service import RequestRouter

pytestmark = pytest.mark.unit

PRIMARY = "https://primary.test/stream"
BACKUP = "https://backup.test/stream"
SOLO = "https://solo.test/stream"
NOW = 1000.0


def _settings() -> Settings:
    return Settings(
        providers={
            "test": ProviderSettings(
                base_urls=["https://primary.test", "https://backup.test"],
                stream_path="/stream",
                token_url="https://oauth.test/token",
            ),
            "solo": ProviderSettings(
                base_urls=["https://solo.test"],
                stream_path="/stream",
                token_url="https://oauth.test/token",
            ),
            "empty": ProviderSettings(base_urls=[]),
        },
        rate_limit_max_retries=2,
        rate_limit_base_delay_seconds=0.001,
        rate_limit_max_delay_seconds=0.005,
        rate_limit_hint_buffer_seconds=0.0,
        max_cooldown_wait_seconds=120.0,
    )


def _account(account_id: str, provider: str, minute: int, *, status=AccountStatus.ACTIVE) -> Account:
    return Account(
        id=account_id,
        provider=provider,
        display_name=account_id.upper(),
        status=status,
        is_default=False,
        created_at=datetime(2024, 1, 1, 0, minute),
    )


def _quota_body(delay: str) -> str:
    return json.dumps({"error": {"code": 429, "details": [{"@type": RETRY_INFO_TYPE, "retryDelay": delay}]}})


def _ok() -> TransportResult:
    return TransportResult(success=True, status=200)


def _fail(status: int | None, body: str = "", *, streamed: bool = False) -> TransportResult:
    return TransportResult(success=False, status=status, body=body, streamed=streamed)


class _FakeAccounts:
    def __init__(self, accounts: list[Account]) -> None:
        self.accounts = accounts
        self.status_updates: list[tuple[str, AccountStatus]] = []

    async def list_accounts(self, provider: str | None = None) -> list[Account]:
        return [a for a in self.accounts if provider is None or a.provider == provider]

    async def update_status(self, account_id: str, status: AccountStatus) -> bool:
        self.status_updates.append((account_id, status))
        for account in self.accounts:
            if account.id == account_id:
                account.status = status
                return True
        return False


class _FakeRouting:
    def __init__(self, routing: dict[str, ProviderRouting] | None = None) -> None:
        self.routing = routing or {}
        self.assignments: dict[tuple[str, str], str] = {}

    async def get_routing(self, provider: str) -> ProviderRouting | None:
        return self.routing.get(provider)

    async def get_assignment(self, provider: str, model_id: str) -> str | None:
        return self.assignments.get((provider, model_id))

    async def set_assignment(self, provider: str, model_id: str, account_id: str) -> None:
        self.assignments[(provider, model_id)] = account_id


class _FakeCredentials:
    def __init__(self, credentials: dict[str, Credential]) -> None:
        self.credentials = credentials

    async def get(self, account_id: str) -> Credential | None:
        return self.credentials.get(account_id)

    async def update(self, account_id: str, credential: Credential) -> None:
        self.credentials[account_id] = credential


class _FakeTransport:
    """Replays scripted results per token; the last result repeats once the script runs out."""

    def __init__(self, script: dict[str, list[TransportResult]]) -> None:
        self.script = {token: list(results) for token, results in script.items()}
        self.calls: list[tuple[str, str]] = []

    async def send(self, endpoint, payload, token, sink):
        self.calls.append((endpoint, token))
        results = self.script[token]
        result = results.pop(0) if len(results) > 1 else results[0]
        if result.success or result.streamed:
            await sink(f"data: {token}\n")
        return result

    @property
    def tokens(self) -> list[str]:
        return [token for _, token in self.calls]


class _FakeSleep:
    def __init__(self, completes: bool = True) -> None:
        self.completes = completes
        self.calls: list[float] = []

    async def __call__(self, seconds, token=None) -> bool:
        self.calls.append(seconds)
        return self.completes


class _Harness:
    def __init__(
        self,
        accounts: list[Account],
        credentials: dict[str, Credential],
        script: dict[str, list[TransportResult]],
        *,
        routing: dict[str, ProviderRouting] | None = None,
    ) -> None:
        self.accounts = _FakeAccounts(accounts)
        self.routing = _FakeRouting(routing)
        self.credentials = _FakeCredentials(credentials)
        self.transport = _FakeTransport(script)
        self.sleep = _FakeSleep()
        self.quota = QuotaStateManager(clock=lambda: NOW)
        self.lines: list[str] = []
        self.router = RequestRouter(
            self._repo_factory,
            self.quota,
            self.transport,
            settings=_settings(),
            sleep=self.sleep,
        )

    @asynccontextmanager
    async def _repo_factory(self):
        yield RouterRepositories(self.accounts, self.routing, self.credentials)

    async def sink(self, line: str) -> None:
        self.lines.append(line)

    async def handle(self, provider: str = "test", model_id: str = "m1", cancellation=None) -> None:
        await self.router.handle(provider, model_id, {"prompt": "hi"}, self.sink, cancellation)


def _three_accounts(provider: str = "test") -> list[Account]:
    return [_account("a", provider, 1), _account("b", provider, 2), _account("c", provider, 3)]


def _tokens(*ids: str) -> dict[str, Credential]:
    return {account_id: Credential(access_token=f"tok-{account_id}") for account_id in ids}


def _lb_off(provider: str) -> dict[str, ProviderRouting]:
    return {provider: ProviderRouting(provider=provider, load_balance_enabled=False, active_account_id=None)}


@pytest.mark.asyncio
async def test_quota_failover_moves_to_next_account_and_sticks():
    harness = _Harness(
        _three_accounts(),
        _tokens("a", "b", "c"),
        {"tok-a": [_fail(429)], "tok-b": [_ok()], "tok-c": [_ok()]},
    )

    await harness.handle()

    # Same account tries the backup endpoint before failing over.
    assert harness.transport.calls == [(PRIMARY, "tok-a"), (BACKUP, "tok-a"), (PRIMARY, "tok-b")]
    assert harness.lines == ["data: tok-b\n"]
    assert harness.quota.is_in_cooldown("a:m1")
    assert harness.routing.assignments == {("test", "m1"): "b"}
    assert harness.router.selector.last_used("test", "m1") == "b"


@pytest.mark.asyncio
async def test_next_request_starts_from_sticky_assignment():
    harness = _Harness(
        _three_accounts(),
        _tokens("a", "b", "c"),
        {"tok-a": [_ok()], "tok-b": [_ok()], "tok-c": [_ok()]},
    )
    harness.routing.assignments[("test", "m1")] = "c"

    await harness.handle()

    assert harness.transport.tokens == ["tok-c"]
    # Serving from the preferred account does not rewrite the assignment.
    assert harness.routing.assignments == {("test", "m1"): "c"}


@pytest.mark.asyncio
async def test_permission_denied_is_not_failed_over():
    body = json.dumps({"error": {"code": 403, "status": "PERMISSION_DENIED", "message": "project disabled"}})
    harness = _Harness(
        _three_accounts(),
        _tokens("a", "b", "c"),
        {"tok-a": [_fail(403, body)], "tok-b": [_ok()], "tok-c": [_ok()]},
    )

    with pytest.raises(PermissionDeniedError) as exc_info:
        await harness.handle()

    assert harness.transport.tokens == ["tok-a"]
    assert "project disabled" in exc_info.value.message
    assert exc_info.value.status_code == 403


@pytest.mark.asyncio
async def test_long_cooldown_fails_fast_without_waiting():
    harness = _Harness(
        [_account("a", "test", 1)],
        _tokens("a"),
        {"tok-a": [_ok()]},
        routing=_lb_off("test"),
    )
    harness.quota.mark_exceeded("a:m1", 20 * 60)

    with pytest.raises(QuotaWaitTooLongError) as exc_info:
        await harness.handle()

    assert harness.sleep.calls == []
    assert harness.transport.calls == []
    assert "20m" in exc_info.value.message
    assert exc_info.value.retry_after_seconds == pytest.approx(20 * 60)


@pytest.mark.asyncio
async def test_short_cooldown_is_waited_out_then_sent():
    harness = _Harness(
        [_account("a", "test", 1)],
        _tokens("a"),
        {"tok-a": [_ok()]},
        routing=_lb_off("test"),
    )
    harness.quota.mark_exceeded("a:m1", 30)

    await harness.handle()

    assert harness.sleep.calls == [pytest.approx(30)]
    assert harness.transport.tokens == ["tok-a"]
    assert not harness.quota.is_in_cooldown("a:m1")


@pytest.mark.asyncio
async def test_cancel_during_cooldown_wait():
    harness = _Harness(
        [_account("a", "test", 1)],
        _tokens("a"),
        {"tok-a": [_ok()]},
        routing=_lb_off("test"),
    )
    harness.quota.mark_exceeded("a:m1", 30)
    harness.sleep.completes = False

    with pytest.raises(RequestCancelledError):
        await harness.handle()
    assert harness.transport.calls == []


@pytest.mark.asyncio
async def test_load_balancing_off_retries_in_place():
    harness = _Harness(
        [_account("a", "solo", 1), _account("b", "solo", 2)],
        _tokens("a", "b"),
        {"tok-a": [_fail(429), _ok()], "tok-b": [_ok()]},
        routing=_lb_off("solo"),
    )

    await harness.handle("solo")

    assert harness.transport.calls == [(SOLO, "tok-a"), (SOLO, "tok-a")]
    assert not harness.quota.is_in_cooldown("a:m1")
    assert harness.routing.assignments == {}


@pytest.mark.asyncio
async def test_in_place_retries_are_bounded():
    harness = _Harness(
        [_account("a", "solo", 1)],
        _tokens("a"),
        {"tok-a": [_fail(429)]},
        routing=_lb_off("solo"),
    )

    with pytest.raises(QuotaExceededError) as exc_info:
        await harness.handle("solo")

    # One attempt plus two retries.
    assert len(harness.transport.calls) == 3
    assert exc_info.value.retry_after_seconds == pytest.approx(4.0)


@pytest.mark.asyncio
async def test_long_term_quota_is_fatal_without_load_balancing():
    harness = _Harness(
        [_account("a", "solo", 1)],
        _tokens("a"),
        {"tok-a": [_fail(429, _quota_body("3600s"))]},
        routing=_lb_off("solo"),
    )

    with pytest.raises(QuotaExceededError) as exc_info:
        await harness.handle("solo")

    assert len(harness.transport.calls) == 1
    assert "60m" in exc_info.value.message
    assert harness.quota.remaining_cooldown("a:m1") == pytest.approx(3600)


@pytest.mark.asyncio
async def test_all_accounts_limited_reports_soonest_recovery():
    harness = _Harness(
        [_account("a", "solo", 1), _account("b", "solo", 2)],
        _tokens("a", "b"),
        {"tok-a": [_fail(429, _quota_body("30s"))], "tok-b": [_fail(429, _quota_body("90s"))]},
    )

    with pytest.raises(QuotaExceededError) as exc_info:
        await harness.handle("solo")

    assert harness.transport.tokens == ["tok-a", "tok-b"]
    assert exc_info.value.retry_after_seconds == pytest.approx(30)


@pytest.mark.asyncio
async def test_cooldown_head_is_skipped_when_wait_is_too_long():
    harness = _Harness(
        [_account("a", "solo", 1), _account("b", "solo", 2)],
        _tokens("a", "b"),
        {"tok-a": [_ok()], "tok-b": [_ok()]},
    )
    harness.routing.assignments[("solo", "m1")] = "a"
    harness.quota.mark_exceeded("a:m1", 10 * 60)
    harness.quota.mark_exceeded("b:m1", 60)

    await harness.handle("solo")

    assert harness.sleep.calls == [pytest.approx(60)]
    assert harness.transport.tokens == ["tok-b"]
    assert harness.routing.assignments == {("solo", "m1"): "b"}


@pytest.mark.asyncio
async def test_every_head_too_long_fails_fast_with_shortest_wait():
    harness = _Harness(
        [_account("a", "solo", 1), _account("b", "solo", 2)],
        _tokens("a", "b"),
        {"tok-a": [_ok()], "tok-b": [_ok()]},
    )
    harness.quota.mark_exceeded("a:m1", 15 * 60)
    harness.quota.mark_exceeded("b:m1", 10 * 60)

    with pytest.raises(QuotaWaitTooLongError) as exc_info:
        await harness.handle("solo")

    assert harness.transport.calls == []
    assert exc_info.value.retry_after_seconds == pytest.approx(10 * 60)


@pytest.mark.asyncio
async def test_unauthorized_refreshes_once_and_retries(monkeypatch):
    refreshed: list[str] = []

    async def _refresh(refresh_token, provider, **_):
        refreshed.append(refresh_token)
        return TokenRefreshResult(access_token="tok-a2", expires_at=utcnow() + timedelta(hours=1))

    monkeypatch.setattr("relaylb.modules.accounts.auth_manager.refresh_access_token", _refresh)
    credentials = {
        "a": Credential(access_token="tok-a", refresh_token="rt-a", expires_at=utcnow() + timedelta(hours=1))
    }
    harness = _Harness(
        [_account("a", "solo", 1)],
        credentials,
        {"tok-a": [_fail(401)], "tok-a2": [_ok()]},
    )

    await harness.handle("solo")

    assert refreshed == ["rt-a"]
    assert harness.transport.tokens == ["tok-a", "tok-a2"]
    assert harness.credentials.credentials["a"].access_token == "tok-a2"
    assert harness.credentials.credentials["a"].refresh_token == "rt-a"


@pytest.mark.asyncio
async def test_repeated_unauthorized_is_fatal(monkeypatch):
    calls: list[str] = []

    async def _refresh(refresh_token, provider, **_):
        calls.append(refresh_token)
        return TokenRefreshResult(access_token="tok-a2", expires_at=utcnow() + timedelta(hours=1))

    monkeypatch.setattr("relaylb.modules.accounts.auth_manager.refresh_access_token", _refresh)
    credentials = {
        "a": Credential(access_token="tok-a", refresh_token="rt-a", expires_at=utcnow() + timedelta(hours=1))
    }
    harness = _Harness(
        [_account("a", "solo", 1), _account("b", "solo", 2)],
        credentials | _tokens("b"),
        {"tok-a": [_fail(401)], "tok-a2": [_fail(401)], "tok-b": [_ok()]},
    )

    with pytest.raises(AuthenticationError):
        await harness.handle("solo")

    assert calls == ["rt-a"]
    assert harness.transport.tokens == ["tok-a", "tok-a2"]


@pytest.mark.asyncio
async def test_permanent_refresh_failure_disables_account_and_moves_on(monkeypatch):
    async def _refresh(refresh_token, provider, **_):
        raise RefreshError("invalid_grant", "Token has been revoked", True)

    monkeypatch.setattr("relaylb.modules.accounts.auth_manager.refresh_access_token", _refresh)
    credentials = {
        "a": Credential(access_token="tok-a", refresh_token="rt-a", expires_at=utcnow() - timedelta(minutes=1))
    } | _tokens("b")
    harness = _Harness(
        [_account("a", "solo", 1), _account("b", "solo", 2)],
        credentials,
        {"tok-a": [_ok()], "tok-b": [_ok()]},
    )

    await harness.handle("solo")

    assert harness.accounts.status_updates == [("a", AccountStatus.DISABLED)]
    assert harness.transport.tokens == ["tok-b"]
    assert harness.routing.assignments == {("solo", "m1"): "b"}


@pytest.mark.asyncio
async def test_default_credential_serves_when_no_accounts():
    harness = _Harness(
        [],
        {"default:solo": Credential(access_token="tok-default")},
        {"tok-default": [_ok()]},
    )

    await harness.handle("solo")

    assert harness.transport.tokens == ["tok-default"]
    assert harness.routing.assignments == {}
    assert harness.router.selector.last_used("solo", "m1") is None


@pytest.mark.asyncio
async def test_default_credential_quota_uses_its_own_key():
    harness = _Harness(
        [],
        {"default:solo": Credential(access_token="tok-default")},
        {"tok-default": [_fail(429)]},
        routing=_lb_off("solo"),
    )

    with pytest.raises(QuotaExceededError):
        await harness.handle("solo")
    assert harness.quota.is_in_cooldown("default-solo:m1")


@pytest.mark.asyncio
async def test_missing_default_credential_is_reported():
    harness = _Harness([], {}, {})

    with pytest.raises(NoAccountsConfiguredError):
        await harness.handle("solo")


@pytest.mark.asyncio
async def test_endpoint_fallback_on_server_error():
    harness = _Harness(
        [_account("a", "test", 1), _account("b", "test", 2)],
        _tokens("a", "b"),
        {"tok-a": [_fail(503), _ok()], "tok-b": [_ok()]},
    )

    await harness.handle()

    assert harness.transport.calls == [(PRIMARY, "tok-a"), (BACKUP, "tok-a")]
    assert harness.routing.assignments == {}


@pytest.mark.asyncio
async def test_user_error_is_returned_as_is():
    body = json.dumps({"error": {"code": 400, "message": "bad field"}})
    harness = _Harness(
        [_account("a", "test", 1), _account("b", "test", 2)],
        _tokens("a", "b"),
        {"tok-a": [_fail(400, body)], "tok-b": [_ok()]},
    )

    with pytest.raises(UserRequestError) as exc_info:
        await harness.handle()

    assert exc_info.value.status_code == 400
    assert exc_info.value.message == "bad field"
    assert harness.transport.tokens == ["tok-a"]


@pytest.mark.asyncio
async def test_failure_after_output_is_not_replayed():
    harness = _Harness(
        [_account("a", "test", 1), _account("b", "test", 2)],
        _tokens("a", "b"),
        {"tok-a": [_fail(None, "connection reset", streamed=True)], "tok-b": [_ok()]},
    )

    with pytest.raises(TransientUpstreamError):
        await harness.handle()

    assert harness.transport.calls == [(PRIMARY, "tok-a")]
    assert harness.lines == ["data: tok-a\n"]


@pytest.mark.asyncio
async def test_cancelled_request_sends_nothing():
    harness = _Harness(_three_accounts(), _tokens("a", "b", "c"), {"tok-a": [_ok()]})
    token = CancellationToken()
    token.cancel()

    with pytest.raises(RequestCancelledError):
        await harness.handle(cancellation=token)
    assert harness.transport.calls == []


@pytest.mark.asyncio
async def test_unknown_provider_is_not_found():
    harness = _Harness([], {}, {})

    with pytest.raises(NotFoundError):
        await harness.handle("missing")


@pytest.mark.asyncio
async def test_stream_yields_upstream_lines():
    harness = _Harness(_three_accounts(), _tokens("a", "b", "c"), {"tok-a": [_ok()]})

    lines = [line async for line in harness.router.stream("test", "m1", {"prompt": "hi"})]

    assert lines == ["data: tok-a\n"]


@pytest.mark.asyncio
async def test_stream_raises_before_first_line():
    body = json.dumps({"error": {"code": 403, "status": "PERMISSION_DENIED"}})
    harness = _Harness(_three_accounts(), _tokens("a", "b", "c"), {"tok-a": [_fail(403, body)]})

    stream = harness.router.stream("test", "m1", {"prompt": "hi"})
    with pytest.raises(PermissionDeniedError):
        await stream.__anext__()
