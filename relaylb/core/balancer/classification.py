from __future__ import annotations

import json

from relaylb.core.balancer.types import ErrorCategory, FailureClassification, RoutingAction, RoutingDecision
from relaylb.core.utils.retry import ERROR_INFO_TYPE, parse_quota_retry_delay

_FAILOVER_CATEGORIES = frozenset({ErrorCategory.QUOTA, ErrorCategory.TRANSIENT, ErrorCategory.AUTH})
_ENDPOINT_FALLBACK_CATEGORIES = frozenset({ErrorCategory.QUOTA, ErrorCategory.TRANSIENT, ErrorCategory.NOT_FOUND})


def categorize_http_status(status: int | None) -> ErrorCategory:
    match status:
        case 400:
            return ErrorCategory.USER
        case 401:
            return ErrorCategory.AUTH
        case 402 | 403 | 429:
            return ErrorCategory.QUOTA
        case 404:
            return ErrorCategory.NOT_FOUND
        case 500 | 502 | 503 | 504:
            return ErrorCategory.TRANSIENT
        case _:
            return ErrorCategory.UNKNOWN


def should_failover(category: ErrorCategory) -> bool:
    return category in _FAILOVER_CATEGORIES


def allows_endpoint_fallback(classification: FailureClassification) -> bool:
    if classification.permission_denied or classification.long_term_quota:
        return False
    return classification.category in _ENDPOINT_FALLBACK_CATEGORIES


def is_permission_denied(status: int | None, body: str | None) -> bool:
    # Some providers answer 403 for both quota and permission problems; only the body disambiguates.
    if status != 403 or not body:
        return False
    if "permission denied" in body.lower():
        return True
    try:
        parsed = json.loads(body)
    except ValueError:
        return False
    if not isinstance(parsed, dict):
        return False
    error = parsed.get("error")
    if not isinstance(error, dict):
        return False
    if error.get("status") == "PERMISSION_DENIED":
        return True
    details = error.get("details")
    if isinstance(details, list):
        for detail in details:
            if (
                isinstance(detail, dict)
                and detail.get("@type") == ERROR_INFO_TYPE
                and detail.get("reason") == "CONSUMER_INVALID"
            ):
                return True
    return False


def classify_failure(
    status: int | None,
    body: str | None,
    *,
    long_term_threshold_seconds: float,
) -> FailureClassification:
    permission_denied = is_permission_denied(status, body)
    if permission_denied:
        category = ErrorCategory.PERMISSION
    elif status is None:
        # No HTTP response at all (connection reset, DNS, timeout).
        category = ErrorCategory.TRANSIENT
    else:
        category = categorize_http_status(status)
    retry_after = parse_quota_retry_delay(body) if category is ErrorCategory.QUOTA else None
    long_term = retry_after is not None and retry_after > long_term_threshold_seconds
    return FailureClassification(
        category=category,
        status=status,
        retry_after_seconds=retry_after,
        permission_denied=permission_denied,
        long_term_quota=long_term,
    )


def decide_action(
    classification: FailureClassification,
    *,
    load_balancing: bool,
) -> RoutingDecision:
    """Map a classified failure to ``RETRY`` (same account), ``FAILOVER`` or ``FATAL``.

    Auth failures arrive here only after the refresh-and-retry-once path already ran.
    ``FAILOVER`` past the last candidate ends the attempt loop with the last error.
    """
    category = classification.category
    if category is ErrorCategory.PERMISSION:
        return RoutingDecision(RoutingAction.FATAL, classification, "permission_denied")
    if category is ErrorCategory.QUOTA:
        if classification.long_term_quota:
            action = RoutingAction.FAILOVER if load_balancing else RoutingAction.FATAL
            return RoutingDecision(action, classification, "long_term_quota")
        action = RoutingAction.FAILOVER if load_balancing else RoutingAction.RETRY
        return RoutingDecision(action, classification, "quota")
    if category is ErrorCategory.TRANSIENT and load_balancing:
        return RoutingDecision(RoutingAction.FAILOVER, classification, "transient")
    return RoutingDecision(RoutingAction.FATAL, classification, category.value)
