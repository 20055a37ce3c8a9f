from __future__ import annotations

from dataclasses import dataclass

import aiohttp
from aiohttp_retry import ExponentialRetry, RetryClient

from relaylb.core.config.settings import get_settings

# Only the token endpoint goes through the retry client; streaming calls never auto-retry,
# the router owns that decision.
_TOKEN_RETRY_STATUSES = {500, 502, 503, 504}


@dataclass(slots=True)
class HttpClient:
    session: aiohttp.ClientSession
    retry_client: RetryClient


_http_client: HttpClient | None = None


async def init_http_client() -> HttpClient:
    global _http_client
    if _http_client is not None:
        return _http_client

    settings = get_settings()
    connector = aiohttp.TCPConnector(
        limit=settings.http_client_connector_limit,
        keepalive_timeout=settings.http_client_keepalive_timeout_seconds,
    )
    # trust_env picks up HTTP(S)_PROXY / NO_PROXY from the environment.
    session = aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=None),
        connector=connector,
        trust_env=True,
    )
    retry_client = RetryClient(
        client_session=session,
        raise_for_status=False,
        retry_options=ExponentialRetry(attempts=3, start_timeout=0.5, statuses=_TOKEN_RETRY_STATUSES),
        trust_env=True,
    )
    _http_client = HttpClient(session=session, retry_client=retry_client)
    return _http_client


async def close_http_client() -> None:
    global _http_client
    if _http_client is None:
        return
    await _http_client.retry_client.close()
    _http_client = None


def get_http_client() -> HttpClient:
    if _http_client is None:
        raise RuntimeError("HTTP client not initialized")
    return _http_client
