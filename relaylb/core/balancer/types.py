from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    USER = "user_error"
    AUTH = "auth_error"
    QUOTA = "quota_error"
    PERMISSION = "permission_error"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"


class RoutingAction(str, Enum):
    RETRY = "retry"
    FAILOVER = "failover"
    FATAL = "fatal"


@dataclass(frozen=True, slots=True)
class FailureClassification:
    category: ErrorCategory
    status: int | None
    retry_after_seconds: float | None = None
    permission_denied: bool = False
    long_term_quota: bool = False


@dataclass(frozen=True, slots=True)
class RoutingDecision:
    action: RoutingAction
    classification: FailureClassification
    reason: str


@dataclass(frozen=True, slots=True)
class AccountState:
    """Read-only view of an account as the selector needs it."""

    id: str
    status: str
    created_at: float
    is_default: bool = False
