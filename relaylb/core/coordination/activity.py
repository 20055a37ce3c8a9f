from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any

from relaylb.core.coordination.store import SharedStateStore, activity_key
from relaylb.core.utils.time import Clock, wall_clock

logger = logging.getLogger(__name__)


class ActivityKind(str, Enum):
    WINDOW_FOCUS = "windowFocus"
    EDITOR_CHANGE = "editorChange"
    TEXT_EDIT = "textEdit"
    TEXT_SELECTION = "textSelection"
    TERMINAL_CHANGE = "terminalChange"


THROTTLE_SECONDS: dict[ActivityKind, float] = {
    ActivityKind.WINDOW_FOCUS: 5.0,
    ActivityKind.EDITOR_CHANGE: 3.0,
    ActivityKind.TEXT_EDIT: 5.0,
    ActivityKind.TEXT_SELECTION: 2.0,
    ActivityKind.TERMINAL_CHANGE: 3.0,
}

_DOCUMENT_KINDS = frozenset({ActivityKind.EDITOR_CHANGE, ActivityKind.TEXT_EDIT, ActivityKind.TEXT_SELECTION})
_USER_DOCUMENT_SCHEMES = frozenset({"file", "untitled"})
_USER_SELECTION_SOURCES = frozenset({"keyboard", "mouse"})


@dataclass(frozen=True, slots=True)
class ActivitySignal:
    """A raw interaction event as reported by a front end."""

    kind: ActivityKind
    window_focused: bool = True
    uri_scheme: str | None = None
    change_size: int | None = None
    selection_source: str | None = None


def is_genuine_interaction(signal: ActivitySignal, *, large_edit_chars: int = 1000) -> bool:
    if not signal.window_focused:
        return False
    if signal.kind in _DOCUMENT_KINDS and signal.uri_scheme not in _USER_DOCUMENT_SCHEMES:
        return False
    if signal.kind is ActivityKind.TEXT_EDIT:
        # Empty or bulk edits come from tooling (formatters, refactors), not typing.
        if not signal.change_size or signal.change_size > large_edit_chars:
            return False
    if signal.kind is ActivityKind.TEXT_SELECTION:
        return (signal.selection_source or "").lower() in _USER_SELECTION_SOURCES
    return True


@dataclass(frozen=True, slots=True)
class ActivityRecord:
    last_active_time: float
    owner_instance_id: str
    recent_activity_count: int
    last_activity_kind: ActivityKind | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "lastActiveTime": self.last_active_time,
            "instanceId": self.owner_instance_id,
            "recentActivityCount": self.recent_activity_count,
            "lastActivityType": self.last_activity_kind.value if self.last_activity_kind else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None, *, now: float) -> ActivityRecord | None:
        if not data:
            return None
        last_active = data.get("lastActiveTime")
        if not isinstance(last_active, (int, float)) or isinstance(last_active, bool):
            last_active = now
        count = data.get("recentActivityCount")
        if not isinstance(count, (int, float)) or isinstance(count, bool) or math.isnan(count) or count < 0:
            count = 0
        kind_value = data.get("lastActivityType")
        try:
            kind = ActivityKind(kind_value) if kind_value else None
        except ValueError:
            kind = None
        owner = data.get("instanceId")
        return cls(
            last_active_time=float(last_active),
            owner_instance_id=owner if isinstance(owner, str) else "",
            recent_activity_count=int(count),
            last_activity_kind=kind,
        )


class ActivityTracker:
    def __init__(
        self,
        store: SharedStateStore,
        instance_id: str,
        *,
        domain: str = "default",
        timeout_seconds: float = 30 * 60,
        count_window_seconds: float = 5 * 60,
        count_cap: int = 100,
        cache_seconds: float = 5.0,
        large_edit_chars: int = 1000,
        throttle_seconds: dict[ActivityKind, float] | None = None,
        clock: Clock = wall_clock,
    ) -> None:
        self._store = store
        self._instance_id = instance_id
        self._key = activity_key(domain)
        self._timeout_seconds = timeout_seconds
        self._count_window_seconds = count_window_seconds
        self._count_cap = count_cap
        self._cache_seconds = cache_seconds
        self._large_edit_chars = large_edit_chars
        self._throttle_seconds = {**THROTTLE_SECONDS, **(throttle_seconds or {})}
        self._clock = clock
        self._last_recorded: dict[ActivityKind, float] = {}
        self._cached: ActivityRecord | None = None
        self._cached_at: float | None = None

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    async def handle_signal(self, signal: ActivitySignal) -> bool:
        if not is_genuine_interaction(signal, large_edit_chars=self._large_edit_chars):
            return False
        return await self.record_activity(signal.kind)

    async def record_activity(self, kind: ActivityKind) -> bool:
        """Refresh the shared activity record unless ``kind`` is still inside its throttle window."""
        now = self._clock()
        last = self._last_recorded.get(kind)
        if last is not None and now - last < self._throttle_seconds[kind]:
            return False
        self._last_recorded[kind] = now

        current = await self._read()
        count = 1
        if current is not None and now - current.last_active_time < self._count_window_seconds:
            count = min(current.recent_activity_count + 1, self._count_cap)
        record = ActivityRecord(
            last_active_time=now,
            owner_instance_id=self._instance_id,
            recent_activity_count=count,
            last_activity_kind=kind,
        )
        self._cached = record
        self._cached_at = now
        await self._store.set(self._key, record.to_dict())
        logger.debug("activity_record kind=%s count=%s instance_id=%s", kind.value, count, self._instance_id)
        return True

    async def current_record(self) -> ActivityRecord | None:
        return await self._read()

    async def is_user_active(self) -> bool:
        record = await self._read()
        if record is None:
            return False
        return self._clock() - record.last_active_time <= self._timeout_seconds

    async def get_inactive_time(self) -> float:
        record = await self._read()
        if record is None:
            return math.inf
        return max(0.0, self._clock() - record.last_active_time)

    def invalidate_cache(self) -> None:
        self._cached = None
        self._cached_at = None

    async def _read(self) -> ActivityRecord | None:
        now = self._clock()
        if self._cached is not None and self._cached_at is not None and now - self._cached_at < self._cache_seconds:
            return self._cached
        record = ActivityRecord.from_dict(await self._store.get(self._key), now=now)
        if record is not None:
            self._cached = record
            self._cached_at = now
        return record
