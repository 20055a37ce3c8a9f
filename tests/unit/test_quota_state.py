from __future__ import annotations

import pytest

from relaylb.core.balancer import QuotaStateManager, quota_key

pytestmark = pytest.mark.unit


class _Clock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_quota_key_joins_account_and_model():
    assert quota_key("acc_1", "gemini-pro") == "acc_1:gemini-pro"


def test_consecutive_marks_double_until_cap():
    clock = _Clock()
    quota = QuotaStateManager(base_seconds=1.0, cap_seconds=10.0, clock=clock)
    durations = [quota.mark_exceeded("k") for _ in range(6)]
    assert durations == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]
    assert durations == sorted(durations)


def test_clear_resets_backoff_to_base():
    quota = QuotaStateManager(clock=_Clock())
    quota.mark_exceeded("k")
    quota.mark_exceeded("k")
    quota.clear_exceeded("k")

    assert not quota.is_in_cooldown("k")
    assert quota.backoff_level("k") == 0
    assert quota.mark_exceeded("k") == 1.0


def test_server_hint_wins_when_larger():
    quota = QuotaStateManager(clock=_Clock())
    assert quota.mark_exceeded("k", retry_after_seconds=42.0) == 42.0
    # Smaller hints never shorten the computed backoff.
    assert quota.mark_exceeded("k", retry_after_seconds=0.5) == 2.0


def test_cooldown_expires_without_cleanup():
    clock = _Clock()
    quota = QuotaStateManager(clock=clock)
    quota.mark_exceeded("k", retry_after_seconds=5.0)

    assert quota.is_in_cooldown("k")
    assert quota.remaining_cooldown("k") == pytest.approx(5.0)

    clock.advance(4.9)
    assert quota.is_in_cooldown("k")
    clock.advance(0.1)
    assert not quota.is_in_cooldown("k")
    assert quota.remaining_cooldown("k") == 0.0


def test_unknown_key_is_not_in_cooldown():
    quota = QuotaStateManager(clock=_Clock())
    assert not quota.is_in_cooldown("missing")
    assert quota.remaining_cooldown("missing") == 0.0
    quota.clear_exceeded("missing")


def test_keys_are_independent():
    quota = QuotaStateManager(clock=_Clock())
    quota.mark_exceeded("a:m")
    quota.mark_exceeded("a:m")
    assert quota.mark_exceeded("b:m") == 1.0
    assert quota.backoff_level("a:m") == 2


def test_exhaust_then_recover_restarts_from_base():
    clock = _Clock()
    quota = QuotaStateManager(base_seconds=1.0, cap_seconds=30 * 60.0, clock=clock)
    key = quota_key("A", "model")

    cooldowns = [quota.mark_exceeded(key) for _ in range(3)]
    assert cooldowns == [1.0, 2.0, 4.0]
    assert quota.backoff_level(key) == 3

    clock.advance(cooldowns[-1])
    # The request after the window succeeds.
    assert not quota.is_in_cooldown(key)
    quota.clear_exceeded(key)

    assert not quota.is_in_cooldown(key)
    assert quota.mark_exceeded(key) == 1.0


def test_last_error_and_snapshot():
    clock = _Clock()
    quota = QuotaStateManager(clock=clock)
    quota.mark_exceeded("acc:m", retry_after_seconds=30.0)
    quota.mark_exceeded("other:m", retry_after_seconds=1.0)
    clock.advance(2.0)

    snapshot = quota.snapshot(prefix="acc:")
    assert len(snapshot) == 1
    entry = snapshot[0]
    assert entry.key == "acc:m"
    assert entry.remaining_seconds == pytest.approx(28.0)
    assert entry.backoff_level == 1
    assert entry.last_error == "Quota exceeded, retry after 30s"
    # Expired entries drop out of the snapshot.
    assert [item.key for item in quota.snapshot()] == ["acc:m"]
