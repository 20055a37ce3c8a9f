from __future__ import annotations

from typing import Final

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

_PROM_CONTENT_TYPE: Final[str] = "text/plain; version=0.0.4; charset=utf-8"


class Metrics:
    def __init__(self, *, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry(auto_describe=True)

        self._router_requests_total = Counter(
            "relay_lb_router_requests_total",
            "Total routed requests by final outcome.",
            labelnames=("provider", "outcome"),
            registry=self._registry,
        )
        self._router_attempts_total = Counter(
            "relay_lb_router_attempts_total",
            "Total upstream attempts by outcome (success or error category).",
            labelnames=("provider", "outcome"),
            registry=self._registry,
        )
        self._router_failovers_total = Counter(
            "relay_lb_router_failovers_total",
            "Total account failovers by reason.",
            labelnames=("provider", "reason"),
            registry=self._registry,
        )
        self._router_retries_total = Counter(
            "relay_lb_router_retries_total",
            "Total in-place retries on the same account.",
            labelnames=("provider", "reason"),
            registry=self._registry,
        )
        self._quota_marks_total = Counter(
            "relay_lb_quota_marks_total",
            "Total cooldowns applied to account/model keys.",
            labelnames=("provider",),
            registry=self._registry,
        )
        self._sticky_assignments_total = Counter(
            "relay_lb_sticky_assignments_total",
            "Total sticky account assignments persisted after a failover.",
            labelnames=("provider",),
            registry=self._registry,
        )
        self._token_refresh_total = Counter(
            "relay_lb_token_refresh_total",
            "Total OAuth token refresh attempts by outcome.",
            labelnames=("outcome",),
            registry=self._registry,
        )
        self._leader = Gauge(
            "relay_lb_leader",
            "Whether this instance currently holds leadership (1) or not (0).",
            registry=self._registry,
        )
        self._leader_transitions_total = Counter(
            "relay_lb_leader_transitions_total",
            "Total leadership state transitions by new state.",
            labelnames=("state",),
            registry=self._registry,
        )
        self._periodic_task_runs_total = Counter(
            "relay_lb_periodic_task_runs_total",
            "Total leader-only periodic task runs by outcome.",
            labelnames=("name", "outcome"),
            registry=self._registry,
        )
        self._periodic_batches_skipped_total = Counter(
            "relay_lb_periodic_batches_skipped_total",
            "Total periodic task batches skipped by reason.",
            labelnames=("reason",),
            registry=self._registry,
        )

    @property
    def content_type(self) -> str:
        return _PROM_CONTENT_TYPE

    def render(self) -> bytes:
        return generate_latest(self._registry)

    def observe_router_request(self, *, provider: str, outcome: str) -> None:
        self._router_requests_total.labels(provider=provider or "unknown", outcome=outcome or "unknown").inc()

    def observe_attempt(self, *, provider: str, outcome: str) -> None:
        self._router_attempts_total.labels(provider=provider or "unknown", outcome=outcome or "unknown").inc()

    def observe_failover(self, *, provider: str, reason: str) -> None:
        self._router_failovers_total.labels(provider=provider or "unknown", reason=reason or "unknown").inc()

    def observe_retry(self, *, provider: str, reason: str) -> None:
        self._router_retries_total.labels(provider=provider or "unknown", reason=reason or "unknown").inc()

    def observe_quota_mark(self, *, provider: str) -> None:
        self._quota_marks_total.labels(provider=provider or "unknown").inc()

    def observe_sticky_assignment(self, *, provider: str) -> None:
        self._sticky_assignments_total.labels(provider=provider or "unknown").inc()

    def observe_token_refresh(self, *, outcome: str) -> None:
        self._token_refresh_total.labels(outcome=outcome or "unknown").inc()

    def set_leader(self, is_leader: bool) -> None:
        self._leader.set(1.0 if is_leader else 0.0)

    def observe_leader_transition(self, *, state: str) -> None:
        self._leader_transitions_total.labels(state=state or "unknown").inc()

    def observe_periodic_task(self, *, name: str, outcome: str) -> None:
        self._periodic_task_runs_total.labels(name=name or "unknown", outcome=outcome or "unknown").inc()

    def inc_periodic_batch_skipped(self, *, reason: str) -> None:
        self._periodic_batches_skipped_total.labels(reason=reason or "unknown").inc()
