from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any


@dataclass(frozen=True, slots=True)
class LeaderRecord:
    instance_id: str
    last_heartbeat: float
    elected_at: float

    def is_alive(self, now: float, timeout_seconds: float) -> bool:
        return now - self.last_heartbeat <= timeout_seconds

    def heartbeat(self, now: float) -> LeaderRecord:
        return replace(self, last_heartbeat=now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "instanceId": self.instance_id,
            "lastHeartbeat": self.last_heartbeat,
            "electedAt": self.elected_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> LeaderRecord | None:
        if not data:
            return None
        instance_id = data.get("instanceId")
        if not isinstance(instance_id, str) or not instance_id:
            return None
        try:
            last_heartbeat = float(data.get("lastHeartbeat", 0.0))
            elected_at = float(data.get("electedAt", last_heartbeat))
        except (TypeError, ValueError):
            return None
        return cls(instance_id=instance_id, last_heartbeat=last_heartbeat, elected_at=elected_at)


def claim(instance_id: str, now: float) -> LeaderRecord:
    return LeaderRecord(instance_id=instance_id, last_heartbeat=now, elected_at=now)


def elect_winner(current: LeaderRecord | None, self_write: LeaderRecord) -> str | None:
    """Decide the election from the record read back after the settle delay.

    The stored write wins. When another instance's write carries the same
    ``elected_at`` as ours, the lexicographically smaller instance id wins.
    Returns ``None`` when nothing could be read back.
    """
    if current is None:
        return None
    if current.instance_id == self_write.instance_id:
        return self_write.instance_id
    if current.elected_at == self_write.elected_at:
        return min(current.instance_id, self_write.instance_id)
    return current.instance_id
