from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from fastapi import APIRouter, Body, Depends, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from relaylb.core.errors import RouterError
from relaylb.core.utils.cancellation import CancellationToken
from relaylb.dependencies import CooldownContext, RouterContext, get_cooldown_context, get_router_context
from relaylb.modules.proxy.schemas import CooldownEntry, CooldownsResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["proxy"])
cooldowns_router = APIRouter(prefix="/api/providers", tags=["proxy"])

_STREAM_HEADERS = {"Cache-Control": "no-cache"}
_DISCONNECT_POLL_SECONDS = 0.1


@router.post(
    "/providers/{provider}/models/{model_id}/stream",
    responses={
        200: {
            "content": {
                "text/event-stream": {
                    "schema": {"type": "string"},
                }
            }
        }
    },
)
async def stream_model(
    provider: str,
    model_id: str,
    request: Request,
    payload: dict[str, Any] = Body(...),
    context: RouterContext = Depends(get_router_context),
) -> Response:
    cancellation = CancellationToken()
    stream = context.router.stream(provider, model_id, payload, cancellation)
    try:
        first = await _first_line(stream, request, cancellation)
    except RouterError as exc:
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())
    return StreamingResponse(
        _with_error_event(_prepend_first(first, stream)),
        media_type="text/event-stream",
        headers=_STREAM_HEADERS,
    )


@cooldowns_router.get("/{provider}/cooldowns", response_model=CooldownsResponse)
async def list_cooldowns(
    provider: str,
    context: CooldownContext = Depends(get_cooldown_context),
) -> CooldownsResponse:
    async with context.repo_factory() as repos:
        account_ids = [account.id for account in await repos.accounts.list_accounts(provider)]
    prefixes = (f"default-{provider}:", *(f"{account_id}:" for account_id in account_ids))
    entries = [
        CooldownEntry(
            key=snapshot.key,
            remaining_seconds=snapshot.remaining_seconds,
            backoff_level=snapshot.backoff_level,
            last_error=snapshot.last_error,
        )
        for snapshot in context.quota.snapshot()
        if snapshot.key.startswith(prefixes)
    ]
    return CooldownsResponse(provider=provider, cooldowns=entries)


async def _prepend_first(first: str | None, stream: AsyncIterator[str]) -> AsyncIterator[str]:
    if first is not None:
        yield first
    async for line in stream:
        yield line


async def _with_error_event(stream: AsyncIterator[str]) -> AsyncIterator[str]:
    try:
        async for line in stream:
            yield line
    except RouterError as exc:
        logger.warning("stream_failed_after_output code=%s", exc.code)
        yield f"event: error\ndata: {json.dumps(exc.to_payload(), separators=(',', ':'))}\n\n"


async def _first_line(stream: AsyncIterator[str], request: Request, cancellation: CancellationToken) -> str | None:
    """Wait for the first upstream line, cancelling the routed request if the client goes away first."""
    first = asyncio.ensure_future(_next_or_none(stream))
    watcher = asyncio.ensure_future(_wait_for_disconnect(request))
    try:
        await asyncio.wait({first, watcher}, return_when=asyncio.FIRST_COMPLETED)
        if not first.done():
            logger.info("client_disconnected_before_output path=%s", request.url.path)
            cancellation.cancel()
        return await first
    finally:
        if not first.done():
            cancellation.cancel()
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher


async def _next_or_none(stream: AsyncIterator[str]) -> str | None:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return None


async def _wait_for_disconnect(request: Request) -> None:
    while not await request.is_disconnected():
        await asyncio.sleep(_DISCONNECT_POLL_SECONDS)
