from relaylb.core.balancer.classification import (
    allows_endpoint_fallback,
    categorize_http_status,
    classify_failure,
    decide_action,
    is_permission_denied,
    should_failover,
)
from relaylb.core.balancer.logic import build_candidates, filter_cooldowns, usable_accounts
from relaylb.core.balancer.quota import QuotaStateManager, quota_key
from relaylb.core.balancer.retry_policy import RetryOutcome, RetryPolicy
from relaylb.core.balancer.types import (
    AccountState,
    ErrorCategory,
    FailureClassification,
    RoutingAction,
    RoutingDecision,
)

__all__ = [
    "AccountState",
    "ErrorCategory",
    "FailureClassification",
    "QuotaStateManager",
    "RetryOutcome",
    "RetryPolicy",
    "RoutingAction",
    "RoutingDecision",
    "allows_endpoint_fallback",
    "build_candidates",
    "categorize_http_status",
    "classify_failure",
    "decide_action",
    "filter_cooldowns",
    "is_permission_denied",
    "quota_key",
    "should_failover",
    "usable_accounts",
]
