from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime

import aiohttp

from relaylb.core.clients.http import get_http_client
from relaylb.core.config.settings import ProviderSettings, get_settings
from relaylb.core.utils.time import utc_after

logger = logging.getLogger(__name__)

# Token endpoint errors that will not go away by retrying with the same refresh token.
PERMANENT_REFRESH_ERRORS = frozenset({"invalid_grant", "invalid_client", "unauthorized_client"})


class RefreshError(Exception):
    def __init__(self, code: str, message: str, is_permanent: bool) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.is_permanent = is_permanent


@dataclass(frozen=True, slots=True)
class TokenRefreshResult:
    access_token: str
    expires_at: datetime | None
    refresh_token: str | None = None


async def refresh_access_token(
    refresh_token: str,
    provider: ProviderSettings,
    *,
    session: aiohttp.ClientSession | None = None,
) -> TokenRefreshResult:
    if not provider.token_url:
        raise RefreshError("refresh_unsupported", "Provider has no token endpoint configured", True)

    settings = get_settings()
    form = {"grant_type": "refresh_token", "refresh_token": refresh_token}
    if provider.client_id:
        form["client_id"] = provider.client_id
    if provider.client_secret:
        form["client_secret"] = provider.client_secret
    timeout = aiohttp.ClientTimeout(total=settings.token_refresh_timeout_seconds)
    client = session or get_http_client().retry_client

    try:
        async with client.post(
            provider.token_url,
            data=form,
            headers={"Accept": "application/json"},
            timeout=timeout,
        ) as resp:
            body = await resp.text()
            status = resp.status
    except aiohttp.ClientError as exc:
        raise RefreshError("refresh_unavailable", str(exc), False) from exc

    payload = _parse_json(body)
    if status >= 400:
        code = _error_code(payload) or f"http_{status}"
        message = _error_message(payload) or f"Token refresh failed ({status})"
        raise RefreshError(code, message, code in PERMANENT_REFRESH_ERRORS)

    access_token = payload.get("access_token") if payload else None
    if not isinstance(access_token, str) or not access_token:
        raise RefreshError("invalid_response", "Token endpoint returned no access token", False)
    expires_in = payload.get("expires_in")
    expires_at = utc_after(float(expires_in)) if isinstance(expires_in, (int, float)) else None
    rotated = payload.get("refresh_token")
    return TokenRefreshResult(
        access_token=access_token,
        expires_at=expires_at,
        refresh_token=rotated if isinstance(rotated, str) and rotated else None,
    )


def _parse_json(body: str) -> dict | None:
    try:
        data = json.loads(body)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _error_code(payload: dict | None) -> str | None:
    if not payload:
        return None
    error = payload.get("error")
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        status = error.get("status")
        return status if isinstance(status, str) else None
    return None


def _error_message(payload: dict | None) -> str | None:
    if not payload:
        return None
    description = payload.get("error_description")
    if isinstance(description, str):
        return description
    error = payload.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        return message if isinstance(message, str) else None
    return None
