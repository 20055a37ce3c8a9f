from __future__ import annotations

from pydantic import Field

from relaylb.modules.shared.schemas import ApiModel


class CooldownEntry(ApiModel):
    key: str
    remaining_seconds: float
    backoff_level: int
    last_error: str | None = None


class CooldownsResponse(ApiModel):
    provider: str
    cooldowns: list[CooldownEntry] = Field(default_factory=list)
