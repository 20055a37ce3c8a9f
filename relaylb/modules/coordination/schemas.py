from __future__ import annotations

from pydantic import Field

from relaylb.core.coordination.activity import ActivityKind, ActivitySignal
from relaylb.modules.shared.schemas import ApiModel


class LeaderStatusResponse(ApiModel):
    instance_id: str
    is_leader: bool
    state: str
    leader_id: str | None = None
    periodic_tasks: list[str] = Field(default_factory=list)


class ActivitySignalRequest(ApiModel):
    kind: ActivityKind
    window_focused: bool = True
    uri_scheme: str | None = None
    change_size: int | None = Field(default=None, ge=0)
    selection_source: str | None = None

    def to_signal(self) -> ActivitySignal:
        return ActivitySignal(
            kind=self.kind,
            window_focused=self.window_focused,
            uri_scheme=self.uri_scheme,
            change_size=self.change_size,
            selection_source=self.selection_source,
        )


class ActivityRecordedResponse(ApiModel):
    recorded: bool


class ActivityStatusResponse(ApiModel):
    active: bool
    # None when no activity was ever recorded.
    inactive_seconds: float | None = None
    recent_activity_count: int = 0
    last_activity_kind: ActivityKind | None = None
