from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import random
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from relaylb.core.coordination.activity import ActivityTracker
from relaylb.core.coordination.election import LeaderRecord, claim, elect_winner
from relaylb.core.coordination.store import SharedStateStore, leader_key
from relaylb.core.metrics import get_metrics
from relaylb.core.utils.time import Clock, wall_clock

logger = logging.getLogger(__name__)

PeriodicTask = Callable[[], Awaitable[None]]


class LeaderState(str, Enum):
    FOLLOWER = "follower"
    LEADER = "leader"


@dataclass(frozen=True, slots=True)
class RegisteredTask:
    name: str
    run: PeriodicTask


class LeaderElector:
    """Heartbeat-based leader election over a store without compare-and-swap.

    Brief multi-leader windows are tolerated; instances converge on one leader
    within the leader timeout once churn stops.
    """

    def __init__(
        self,
        store: SharedStateStore,
        activity: ActivityTracker | None = None,
        *,
        instance_id: str | None = None,
        domain: str = "default",
        heartbeat_interval_seconds: float = 5.0,
        leader_timeout_seconds: float = 15.0,
        settle_seconds: float = 0.1,
        start_jitter_seconds: float = 1.0,
        task_interval_seconds: float = 60.0,
        clock: Clock = wall_clock,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self._store = store
        self._activity = activity
        self._instance_id = instance_id or str(uuid.uuid4())
        self._key = leader_key(domain)
        self._heartbeat_interval_seconds = heartbeat_interval_seconds
        self._leader_timeout_seconds = leader_timeout_seconds
        self._settle_seconds = settle_seconds
        self._start_jitter_seconds = start_jitter_seconds
        self._task_interval_seconds = task_interval_seconds
        self._clock = clock
        self._rng = rng
        self._state = LeaderState.FOLLOWER
        self._tasks: list[RegisteredTask] = []
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._periodic_task: asyncio.Task[None] | None = None
        self._stop = asyncio.Event()
        self._cycle_lock = asyncio.Lock()
        self.register_periodic_task(self._log_liveness, name="liveness")

    @property
    def instance_id(self) -> str:
        return self._instance_id

    @property
    def state(self) -> LeaderState:
        return self._state

    def get_instance_id(self) -> str:
        return self._instance_id

    def is_leader(self) -> bool:
        return self._state is LeaderState.LEADER

    def register_periodic_task(self, task: PeriodicTask, *, name: str | None = None) -> None:
        task_name = name or getattr(task, "__name__", None) or f"task-{len(self._tasks)}"
        self._tasks.append(RegisteredTask(name=task_name, run=task))

    @property
    def task_names(self) -> list[str]:
        return [task.name for task in self._tasks]

    async def get_leader_id(self) -> str | None:
        record = LeaderRecord.from_dict(await self._store.get(self._key))
        return record.instance_id if record is not None else None

    async def start(self) -> None:
        if self._heartbeat_task and not self._heartbeat_task.done():
            return
        self._stop.clear()
        logger.info("leader_elector_start instance_id=%s", self._instance_id)
        self._heartbeat_task = asyncio.create_task(self._run_heartbeat_loop())
        self._periodic_task = asyncio.create_task(self._run_periodic_loop())

    async def stop(self) -> None:
        self._stop.set()
        for task in (self._heartbeat_task, self._periodic_task):
            if task is None:
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._heartbeat_task = None
        self._periodic_task = None
        await self.resign()

    async def resign(self) -> None:
        if not self.is_leader():
            return
        try:
            current = LeaderRecord.from_dict(await self._store.get(self._key))
            if current is not None and current.instance_id == self._instance_id:
                await self._store.delete(self._key)
                logger.info("leader_resign event=record_cleared instance_id=%s", self._instance_id)
        except Exception:
            logger.warning("leader_resign_failed instance_id=%s", self._instance_id, exc_info=True)
        finally:
            self._set_state(LeaderState.FOLLOWER, reason="resigned")

    async def run_heartbeat_cycle(self) -> LeaderState:
        """One sequential check of the shared record; never overlaps with another cycle."""
        async with self._cycle_lock:
            await self._check_leader()
            return self._state

    async def run_periodic_tasks(self) -> bool:
        """Run every registered task once, sequentially. Returns whether the batch ran."""
        if not self.is_leader():
            return False
        if self._activity is not None:
            try:
                active = await self._activity.is_user_active()
            except Exception:
                logger.warning("periodic_tasks_skipped reason=activity_unavailable", exc_info=True)
                get_metrics().inc_periodic_batch_skipped(reason="activity_unavailable")
                return False
            if not active:
                inactive = await self._activity.get_inactive_time()
                minutes = "inf" if math.isinf(inactive) else str(int(inactive // 60))
                logger.debug("periodic_tasks_skipped reason=user_inactive inactive_minutes=%s", minutes)
                get_metrics().inc_periodic_batch_skipped(reason="user_inactive")
                return False
        for task in list(self._tasks):
            try:
                await task.run()
            except Exception:
                logger.exception("periodic_task_failed name=%s instance_id=%s", task.name, self._instance_id)
                get_metrics().observe_periodic_task(name=task.name, outcome="error")
            else:
                get_metrics().observe_periodic_task(name=task.name, outcome="success")
        return True

    async def _run_heartbeat_loop(self) -> None:
        jitter = self._rng() * self._start_jitter_seconds
        if jitter > 0:
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=jitter)
                return
            except asyncio.TimeoutError:
                pass
        while not self._stop.is_set():
            try:
                await self.run_heartbeat_cycle()
            except Exception:
                logger.exception("leader_heartbeat_cycle_failed instance_id=%s", self._instance_id)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._heartbeat_interval_seconds)
            except asyncio.TimeoutError:
                continue

    async def _run_periodic_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self._task_interval_seconds)
                return
            except asyncio.TimeoutError:
                pass
            if self.is_leader():
                await self.run_periodic_tasks()

    async def _check_leader(self) -> None:
        now = self._clock()
        try:
            current = LeaderRecord.from_dict(await self._store.get(self._key))
        except Exception:
            logger.warning("leader_check_failed reason=store_read instance_id=%s", self._instance_id, exc_info=True)
            return

        if current is None:
            await self._attempt_election()
            return

        if current.instance_id == self._instance_id:
            try:
                await self._store.set(self._key, current.heartbeat(now).to_dict())
            except Exception:
                # Transient; the next cycle's read-back decides whether we are still leader.
                logger.warning("leader_heartbeat_failed instance_id=%s", self._instance_id, exc_info=True)
            self._set_state(LeaderState.LEADER, reason="heartbeat")
            return

        if self.is_leader():
            self._set_state(LeaderState.FOLLOWER, reason=f"overwritten_by={current.instance_id}")
        if not current.is_alive(now, self._leader_timeout_seconds):
            logger.info(
                "leader_takeover stale_leader=%s heartbeat_age_s=%.1f",
                current.instance_id,
                now - current.last_heartbeat,
            )
            await self._attempt_election()

    async def _attempt_election(self) -> None:
        proposal = claim(self._instance_id, self._clock())
        try:
            await self._store.set(self._key, proposal.to_dict())
        except Exception:
            logger.warning("leader_election_failed reason=store_write instance_id=%s", self._instance_id, exc_info=True)
            return

        if self._settle_seconds > 0:
            await asyncio.sleep(self._settle_seconds)

        try:
            current = LeaderRecord.from_dict(await self._store.get(self._key))
        except Exception:
            logger.warning("leader_election_failed reason=store_read instance_id=%s", self._instance_id, exc_info=True)
            return

        winner = elect_winner(current, proposal)
        if winner is None:
            logger.warning("leader_election_failed reason=record_missing instance_id=%s", self._instance_id)
            return
        if winner != self._instance_id:
            self._set_state(LeaderState.FOLLOWER, reason=f"lost_to={winner}")
            return
        if current is not None and current.instance_id != self._instance_id:
            # Won the tie on instance id; make the stored record name us.
            try:
                await self._store.set(self._key, proposal.to_dict())
            except Exception:
                logger.warning("leader_tiebreak_write_failed instance_id=%s", self._instance_id, exc_info=True)
                return
        self._set_state(LeaderState.LEADER, reason="elected")

    def _set_state(self, state: LeaderState, *, reason: str) -> None:
        if state is self._state:
            return
        previous = self._state
        self._state = state
        logger.info(
            "leader_transition from=%s to=%s reason=%s instance_id=%s",
            previous.value,
            state.value,
            reason,
            self._instance_id,
        )
        metrics = get_metrics()
        metrics.set_leader(state is LeaderState.LEADER)
        metrics.observe_leader_transition(state=state.value)

    async def _log_liveness(self) -> None:
        logger.debug("leader_liveness instance_id=%s", self._instance_id)
