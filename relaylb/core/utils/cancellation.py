from __future__ import annotations

import asyncio
import contextlib
from typing import Awaitable, TypeVar

_T = TypeVar("_T")


class OperationCancelled(Exception):
    pass


class CancellationToken:
    """Caller-owned cancellation signal shared by sleeps and in-flight calls."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


async def sleep_with_cancellation(seconds: float, token: CancellationToken | None = None) -> bool:
    """Sleep for ``seconds``; return ``False`` if the token fired first."""
    if token is not None and token.is_cancelled:
        return False
    if seconds <= 0:
        return True
    if token is None:
        await asyncio.sleep(seconds)
        return True
    try:
        await asyncio.wait_for(token.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return True
    return False


async def _cancel_and_wait(task: asyncio.Future[object]) -> None:
    if task.done():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


async def run_with_cancellation(awaitable: Awaitable[_T], token: CancellationToken | None) -> _T:
    """Await ``awaitable`` unless the token fires first, then raise ``OperationCancelled``."""
    if token is None:
        return await awaitable
    work = asyncio.ensure_future(awaitable)
    if token.is_cancelled:
        await _cancel_and_wait(work)
        raise OperationCancelled()
    watcher = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
    except BaseException:
        await _cancel_and_wait(work)
        raise
    finally:
        await _cancel_and_wait(watcher)
    if work.done():
        return work.result()
    await _cancel_and_wait(work)
    raise OperationCancelled()
