from __future__ import annotations

import json
import re

RETRY_INFO_TYPE = "type.googleapis.com/google.rpc.RetryInfo"
ERROR_INFO_TYPE = "type.googleapis.com/google.rpc.ErrorInfo"

_SECONDS_RE = re.compile(r"^(\d+(?:\.\d+)?)s$")
_HOURS_RE = re.compile(r"(\d+)h")
_MINUTES_RE = re.compile(r"(\d+)m(?!s)")
_COMPOSITE_SECONDS_RE = re.compile(r"(\d+(?:\.\d+)?)s")


def backoff_seconds(attempt: int, *, base: float = 1.0, cap: float | None = None) -> float:
    delay = base * (2 ** max(0, attempt))
    if cap is not None:
        return min(delay, cap)
    return delay


def parse_seconds_duration(value: str) -> float | None:
    match = _SECONDS_RE.match(value.strip())
    if not match:
        return None
    return float(match.group(1))


def parse_duration(value: str) -> float | None:
    """Parse ``"12s"`` or composite ``"1h2m3.5s"`` durations into seconds."""
    text = value.strip()
    simple = parse_seconds_duration(text)
    if simple is not None:
        return simple
    total = 0.0
    hours = _HOURS_RE.search(text)
    minutes = _MINUTES_RE.search(text)
    seconds = _COMPOSITE_SECONDS_RE.search(text)
    if hours:
        total += int(hours.group(1)) * 3600
    if minutes:
        total += int(minutes.group(1)) * 60
    if seconds:
        total += float(seconds.group(1))
    return total if total > 0 else None


def _error_details(parsed: object) -> list[object] | None:
    if isinstance(parsed, list):
        if not parsed:
            return None
        parsed = parsed[0]
    if not isinstance(parsed, dict):
        return None
    error = parsed.get("error")
    if not isinstance(error, dict):
        return None
    details = error.get("details")
    return details if isinstance(details, list) else None


def parse_quota_retry_delay(body: str | None) -> float | None:
    """Extract a server retry directive, in seconds, from a provider error envelope."""
    if not body:
        return None
    try:
        parsed = json.loads(body)
    except ValueError:
        return None
    details = _error_details(parsed)
    if not details:
        return None
    for detail in details:
        if not isinstance(detail, dict):
            continue
        detail_type = detail.get("@type")
        if detail_type == RETRY_INFO_TYPE:
            retry_delay = detail.get("retryDelay")
            if isinstance(retry_delay, str):
                delay = parse_seconds_duration(retry_delay)
                if delay is not None and delay > 0:
                    return delay
        if detail_type == ERROR_INFO_TYPE:
            metadata = detail.get("metadata")
            reset_delay = metadata.get("quotaResetDelay") if isinstance(metadata, dict) else None
            if isinstance(reset_delay, str):
                delay = parse_duration(reset_delay)
                if delay is not None and delay > 0:
                    return delay
    return None
