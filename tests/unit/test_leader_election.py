from __future__ import annotations

import asyncio

import pytest

from relaylb.core.coordination.activity import ActivityKind, ActivityTracker
from relaylb.core.coordination.election import LeaderRecord, claim, elect_winner
from relaylb.core.coordination.leader import LeaderElector, LeaderState
from relaylb.core.coordination.store import MemoryStateStore, leader_key

pytestmark = pytest.mark.unit

HEARTBEAT = 5.0
TIMEOUT = 15.0


class _Clock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _elector(store, clock, instance_id: str, activity=None) -> LeaderElector:
    return LeaderElector(
        store,
        activity,
        instance_id=instance_id,
        heartbeat_interval_seconds=HEARTBEAT,
        leader_timeout_seconds=TIMEOUT,
        settle_seconds=0.0,
        start_jitter_seconds=0.0,
        clock=clock,
    )


class _FlakyStore(MemoryStateStore):
    def __init__(self) -> None:
        super().__init__()
        self.fail_writes = False

    async def set(self, key, value):
        if self.fail_writes:
            raise ConnectionError("store unavailable")
        await super().set(key, value)


class _YieldingStore(MemoryStateStore):
    """Suspends on every call so concurrent electors interleave like separate processes."""

    async def get(self, key):
        await asyncio.sleep(0)
        return await super().get(key)

    async def set(self, key, value):
        await asyncio.sleep(0)
        await super().set(key, value)


def test_elect_winner_prefers_stored_record():
    mine = claim("b", 10.0)
    assert elect_winner(LeaderRecord("a", 11.0, 11.0), mine) == "a"
    assert elect_winner(mine, mine) == "b"
    assert elect_winner(None, mine) is None


def test_elect_winner_tie_breaks_on_smaller_id():
    for first, second in (("alpha", "beta"), ("beta", "alpha")):
        stored = claim(first, 10.0)
        mine = claim(second, 10.0)
        assert elect_winner(stored, mine) == "alpha"


def test_leader_record_round_trip_uses_camel_case():
    record = LeaderRecord("inst", 5.0, 1.0)
    data = record.to_dict()
    assert data == {"instanceId": "inst", "lastHeartbeat": 5.0, "electedAt": 1.0}
    assert LeaderRecord.from_dict(data) == record
    assert LeaderRecord.from_dict({"instanceId": ""}) is None
    assert LeaderRecord.from_dict({"instanceId": "x", "lastHeartbeat": "bad"}) is None


@pytest.mark.asyncio
async def test_single_instance_becomes_leader():
    store = MemoryStateStore()
    clock = _Clock()
    elector = _elector(store, clock, "one")

    assert await elector.run_heartbeat_cycle() is LeaderState.LEADER
    assert elector.is_leader()
    assert await elector.get_leader_id() == "one"


@pytest.mark.asyncio
async def test_converges_to_exactly_one_leader():
    store = MemoryStateStore()
    clock = _Clock()
    electors = [_elector(store, clock, name) for name in ("c", "a", "b")]

    for _ in range(3):
        for elector in electors:
            await elector.run_heartbeat_cycle()
        clock.advance(HEARTBEAT)

    leaders = [elector.get_instance_id() for elector in electors if elector.is_leader()]
    assert leaders == ["c"]


@pytest.mark.asyncio
async def test_simultaneous_claims_resolve_to_smaller_id():
    store = _YieldingStore()
    clock = _Clock()
    first = LeaderElector(store, instance_id="b", settle_seconds=0.01, start_jitter_seconds=0.0, clock=clock)
    second = LeaderElector(store, instance_id="a", settle_seconds=0.01, start_jitter_seconds=0.0, clock=clock)

    await asyncio.gather(first.run_heartbeat_cycle(), second.run_heartbeat_cycle())
    clock.advance(HEARTBEAT)
    await first.run_heartbeat_cycle()
    await second.run_heartbeat_cycle()

    assert second.is_leader()
    assert not first.is_leader()
    assert await second.get_leader_id() == "a"


@pytest.mark.asyncio
async def test_follower_takes_over_after_leader_stops_heartbeating():
    store = MemoryStateStore()
    clock = _Clock()
    leader = _elector(store, clock, "leader")
    follower = _elector(store, clock, "follower")
    await leader.run_heartbeat_cycle()
    await follower.run_heartbeat_cycle()
    assert leader.is_leader() and not follower.is_leader()

    # Leader crashes: no more heartbeats. Follower keeps its own schedule.
    elapsed = 0.0
    while not follower.is_leader():
        clock.advance(HEARTBEAT)
        elapsed += HEARTBEAT
        await follower.run_heartbeat_cycle()
        assert elapsed <= TIMEOUT + HEARTBEAT

    assert await follower.get_leader_id() == "follower"


@pytest.mark.asyncio
async def test_overwritten_leader_steps_down():
    store = MemoryStateStore()
    clock = _Clock()
    elector = _elector(store, clock, "a")
    await elector.run_heartbeat_cycle()

    await store.set(leader_key("default"), claim("z", clock()).to_dict())
    assert await elector.run_heartbeat_cycle() is LeaderState.FOLLOWER


@pytest.mark.asyncio
async def test_stop_resigns_and_clears_record():
    store = MemoryStateStore()
    clock = _Clock()
    elector = _elector(store, clock, "a")
    await elector.run_heartbeat_cycle()

    await elector.stop()

    assert not elector.is_leader()
    assert await store.get(leader_key("default")) is None


@pytest.mark.asyncio
async def test_resign_keeps_record_owned_by_someone_else():
    store = MemoryStateStore()
    clock = _Clock()
    elector = _elector(store, clock, "a")
    await elector.run_heartbeat_cycle()
    await store.set(leader_key("default"), claim("other", clock()).to_dict())

    await elector.resign()

    assert (await store.get(leader_key("default")))["instanceId"] == "other"


@pytest.mark.asyncio
async def test_transient_heartbeat_write_failure_keeps_leadership():
    store = _FlakyStore()
    clock = _Clock()
    elector = _elector(store, clock, "a")
    await elector.run_heartbeat_cycle()

    store.fail_writes = True
    clock.advance(HEARTBEAT)
    assert await elector.run_heartbeat_cycle() is LeaderState.LEADER


@pytest.mark.asyncio
async def test_domains_do_not_interfere():
    store = MemoryStateStore()
    clock = _Clock()
    first = LeaderElector(store, instance_id="a", domain="one", settle_seconds=0.0, clock=clock)
    second = LeaderElector(store, instance_id="b", domain="two", settle_seconds=0.0, clock=clock)
    await first.run_heartbeat_cycle()
    await second.run_heartbeat_cycle()
    assert first.is_leader() and second.is_leader()


@pytest.mark.asyncio
async def test_periodic_tasks_run_only_on_active_leader():
    store = MemoryStateStore()
    clock = _Clock()
    activity = ActivityTracker(store, "a", clock=clock)
    elector = _elector(store, clock, "a", activity=activity)
    calls: list[str] = []

    async def _task() -> None:
        calls.append("ran")

    elector.register_periodic_task(_task, name="probe")
    assert elector.task_names == ["liveness", "probe"]

    # Follower: nothing runs.
    assert await elector.run_periodic_tasks() is False

    await elector.run_heartbeat_cycle()
    # Leader without any recorded activity: skipped.
    assert await elector.run_periodic_tasks() is False

    await activity.record_activity(ActivityKind.TEXT_EDIT)
    assert await elector.run_periodic_tasks() is True
    assert calls == ["ran"]

    clock.advance(31 * 60)
    activity.invalidate_cache()
    await elector.run_heartbeat_cycle()
    assert await elector.run_periodic_tasks() is False
    assert calls == ["ran"]


@pytest.mark.asyncio
async def test_failing_task_does_not_abort_batch():
    store = MemoryStateStore()
    clock = _Clock()
    elector = _elector(store, clock, "a")
    order: list[str] = []

    async def _broken() -> None:
        order.append("broken")
        raise RuntimeError("boom")

    async def _healthy() -> None:
        order.append("healthy")

    elector.register_periodic_task(_broken, name="broken")
    elector.register_periodic_task(_healthy, name="healthy")
    await elector.run_heartbeat_cycle()

    assert await elector.run_periodic_tasks() is True
    assert order == ["broken", "healthy"]


@pytest.mark.asyncio
async def test_start_and_stop_background_loops():
    store = MemoryStateStore()
    elector = LeaderElector(
        store,
        instance_id="loop",
        heartbeat_interval_seconds=0.01,
        settle_seconds=0.0,
        start_jitter_seconds=0.0,
        task_interval_seconds=10.0,
    )
    await elector.start()
    for _ in range(100):
        if elector.is_leader():
            break
        await asyncio.sleep(0.01)
    assert elector.is_leader()

    await elector.stop()
    assert not elector.is_leader()
    assert await store.get(leader_key("default")) is None
