from __future__ import annotations

import math
from typing import TypedDict

from relaylb.core.balancer.types import ErrorCategory


class OpenAIErrorDetail(TypedDict, total=False):
    message: str
    type: str
    code: str
    param: str
    resets_in_seconds: int | float


class OpenAIErrorEnvelope(TypedDict):
    error: OpenAIErrorDetail


class DashboardErrorDetail(TypedDict):
    code: str
    message: str


class DashboardErrorEnvelope(TypedDict):
    error: DashboardErrorDetail


def openai_error(code: str, message: str, error_type: str = "server_error") -> OpenAIErrorEnvelope:
    return {"error": {"message": message, "type": error_type, "code": code}}


def dashboard_error(code: str, message: str) -> DashboardErrorEnvelope:
    return {"error": {"code": code, "message": message}}


def format_wait(seconds: float) -> str:
    total = max(0, int(math.ceil(seconds)))
    if total >= 60:
        minutes, rest = divmod(total, 60)
        return f"{minutes}m {rest}s" if rest else f"{minutes}m"
    return f"{total}s"


class RouterError(Exception):
    """Final, user-facing outcome of a routed request that did not succeed."""

    code = "upstream_error"
    error_type = "server_error"
    status_code = 502
    category = ErrorCategory.UNKNOWN

    def __init__(self, message: str, *, status: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.upstream_status = status
        self.body = body

    def to_payload(self) -> OpenAIErrorEnvelope:
        return openai_error(self.code, self.message, self.error_type)


class UserRequestError(RouterError):
    code = "invalid_request"
    error_type = "invalid_request_error"
    status_code = 400
    category = ErrorCategory.USER


class AuthenticationError(RouterError):
    code = "authentication_failed"
    error_type = "authentication_error"
    status_code = 401
    category = ErrorCategory.AUTH


class PermissionDeniedError(RouterError):
    code = "permission_denied"
    error_type = "permission_error"
    status_code = 403
    category = ErrorCategory.PERMISSION


class NotFoundError(RouterError):
    code = "not_found"
    error_type = "invalid_request_error"
    status_code = 404
    category = ErrorCategory.NOT_FOUND


class QuotaExceededError(RouterError):
    code = "rate_limit_exceeded"
    error_type = "rate_limit_error"
    status_code = 429
    category = ErrorCategory.QUOTA

    def __init__(
        self,
        message: str,
        *,
        retry_after_seconds: float | None = None,
        status: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message, status=status, body=body)
        self.retry_after_seconds = retry_after_seconds

    def to_payload(self) -> OpenAIErrorEnvelope:
        payload = super().to_payload()
        if self.retry_after_seconds is not None:
            payload["error"]["resets_in_seconds"] = int(math.ceil(self.retry_after_seconds))
        return payload


class QuotaWaitTooLongError(QuotaExceededError):
    code = "quota_wait_too_long"


class TransientUpstreamError(RouterError):
    code = "upstream_unavailable"
    status_code = 503
    category = ErrorCategory.TRANSIENT


class UpstreamError(RouterError):
    code = "upstream_error"
    status_code = 502
    category = ErrorCategory.UNKNOWN


class NoAccountsConfiguredError(RouterError):
    code = "no_accounts"
    status_code = 503


class NoAvailableAccountsError(RouterError):
    code = "no_available_accounts"
    status_code = 503


class RequestCancelledError(RouterError):
    code = "request_cancelled"
    status_code = 499


def quota_wait_too_long(seconds: float) -> QuotaWaitTooLongError:
    wait = format_wait(seconds)
    return QuotaWaitTooLongError(
        f"All accounts are rate limited. Retry in {wait}, or add another account to keep working.",
        retry_after_seconds=seconds,
    )


def rate_limited(seconds: float | None) -> QuotaExceededError:
    if seconds is None or seconds <= 0:
        return QuotaExceededError("All accounts are rate limited. Retry shortly.")
    return QuotaExceededError(
        f"All accounts are rate limited. Retry in {format_wait(seconds)}.",
        retry_after_seconds=seconds,
    )
