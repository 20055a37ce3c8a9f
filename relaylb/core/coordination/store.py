from __future__ import annotations

import copy
from typing import Any, Protocol

JsonDict = dict[str, Any]


class SharedStateStore(Protocol):
    """Key/value storage visible to every cooperating instance.

    Writes may propagate with delay and there is no compare-and-swap.
    """

    async def get(self, key: str) -> JsonDict | None: ...

    async def set(self, key: str, value: JsonDict) -> None: ...

    async def delete(self, key: str) -> None: ...


class MemoryStateStore:
    """Process-local store; instances sharing one object behave like separate processes on one machine."""

    def __init__(self) -> None:
        self._values: dict[str, JsonDict] = {}

    async def get(self, key: str) -> JsonDict | None:
        value = self._values.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def set(self, key: str, value: JsonDict) -> None:
        self._values[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        self._values.pop(key, None)


def leader_key(domain: str) -> str:
    return f"relaylb.leader.{domain}"


def activity_key(domain: str) -> str:
    return f"relaylb.activity.{domain}"
