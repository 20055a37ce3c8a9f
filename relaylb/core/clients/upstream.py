from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol

import aiohttp

from relaylb.core.clients.http import get_http_client
from relaylb.core.config.settings import get_settings

logger = logging.getLogger(__name__)

JsonObject = dict[str, Any]
StreamSink = Callable[[str], Awaitable[None]]

_MAX_ERROR_BODY_CHARS = 64 * 1024


@dataclass(frozen=True, slots=True)
class TransportResult:
    success: bool
    status: int | None = None
    body: str | None = None
    # True once any output reached the sink; such a request cannot be replayed elsewhere.
    streamed: bool = False


class Transport(Protocol):
    async def send(self, endpoint: str, payload: JsonObject, token: str, sink: StreamSink) -> TransportResult: ...


def endpoint_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


def _build_headers(token: str) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {token}",
        "Accept": "text/event-stream",
        "Content-Type": "application/json",
    }


class AiohttpTransport:
    """Streams upstream SSE lines to the sink; failures come back as values, never raised."""

    def __init__(self, session: aiohttp.ClientSession | None = None) -> None:
        self._session = session

    async def send(self, endpoint: str, payload: JsonObject, token: str, sink: StreamSink) -> TransportResult:
        settings = get_settings()
        session = self._session or get_http_client().session
        timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=settings.upstream_connect_timeout_seconds,
            sock_read=None,
        )
        streamed = False
        try:
            async with session.post(endpoint, json=payload, headers=_build_headers(token), timeout=timeout) as resp:
                if resp.status >= 400:
                    body = await resp.text(errors="replace")
                    return TransportResult(success=False, status=resp.status, body=body[:_MAX_ERROR_BODY_CHARS])
                async for raw_line in resp.content:
                    line = raw_line.decode("utf-8", errors="replace")
                    await sink(line)
                    streamed = True
                return TransportResult(success=True, status=resp.status, streamed=streamed)
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("upstream_transport_error endpoint=%s streamed=%s error=%s", endpoint, streamed, exc)
            return TransportResult(success=False, status=None, body=str(exc) or type(exc).__name__, streamed=streamed)
