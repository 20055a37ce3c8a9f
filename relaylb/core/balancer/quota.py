from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from relaylb.core.utils.retry import backoff_seconds
from relaylb.core.utils.time import Clock

logger = logging.getLogger(__name__)

DEFAULT_BACKOFF_BASE_SECONDS = 1.0
DEFAULT_BACKOFF_CAP_SECONDS = 30 * 60.0


def quota_key(account_id: str, model_id: str) -> str:
    return f"{account_id}:{model_id}"


@dataclass(slots=True)
class QuotaCooldown:
    is_exhausted: bool = False
    next_recover_at: float = 0.0
    backoff_level: int = 0
    last_error: str | None = None


@dataclass(frozen=True, slots=True)
class CooldownSnapshot:
    key: str
    remaining_seconds: float
    backoff_level: int
    last_error: str | None


class QuotaStateManager:
    """In-memory cooldown tracker keyed by ``account_id:model_id``.

    Private to the process; cooldowns converge independently on every instance.
    """

    def __init__(
        self,
        *,
        base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS,
        cap_seconds: float = DEFAULT_BACKOFF_CAP_SECONDS,
        clock: Clock = time.monotonic,
    ) -> None:
        self._base_seconds = base_seconds
        self._cap_seconds = cap_seconds
        self._clock = clock
        self._states: dict[str, QuotaCooldown] = {}

    def mark_exceeded(self, key: str, retry_after_seconds: float | None = None) -> float:
        state = self._states.get(key) or QuotaCooldown()
        cooldown = backoff_seconds(state.backoff_level, base=self._base_seconds, cap=self._cap_seconds)
        if retry_after_seconds is not None and retry_after_seconds > cooldown:
            cooldown = retry_after_seconds
        state.is_exhausted = True
        state.next_recover_at = self._clock() + cooldown
        state.backoff_level += 1
        state.last_error = f"Quota exceeded, retry after {round(cooldown)}s"
        self._states[key] = state
        logger.info(
            "quota_mark event=exceeded key=%s cooldown_s=%.1f backoff_level=%s",
            key,
            cooldown,
            state.backoff_level,
        )
        return cooldown

    def clear_exceeded(self, key: str) -> None:
        state = self._states.get(key)
        if state is None:
            return
        state.is_exhausted = False
        state.backoff_level = 0
        state.last_error = None

    def is_in_cooldown(self, key: str) -> bool:
        state = self._states.get(key)
        if state is None or not state.is_exhausted:
            return False
        if self._clock() >= state.next_recover_at:
            self.clear_exceeded(key)
            return False
        return True

    def remaining_cooldown(self, key: str) -> float:
        state = self._states.get(key)
        if state is None or not state.is_exhausted:
            return 0.0
        return max(0.0, state.next_recover_at - self._clock())

    def backoff_level(self, key: str) -> int:
        state = self._states.get(key)
        return state.backoff_level if state is not None else 0

    def snapshot(self, prefix: str | None = None) -> list[CooldownSnapshot]:
        entries: list[CooldownSnapshot] = []
        for key in list(self._states):
            if prefix is not None and not key.startswith(prefix):
                continue
            if not self.is_in_cooldown(key):
                continue
            state = self._states[key]
            entries.append(
                CooldownSnapshot(
                    key=key,
                    remaining_seconds=self.remaining_cooldown(key),
                    backoff_level=state.backoff_level,
                    last_error=state.last_error,
                )
            )
        return entries
