from __future__ import annotations

import math
import re

from slidesift.core.errors import FailureKind

_RETRY_IN_RE = re.compile(r"retry in\s+(?:about\s+)?([\d.]+)\s*s", re.IGNORECASE)

POLICY_NEEDLES = (
    "upstream_location_unsupported",
    "user location is not supported for the api use",
    "location is not supported for the api use",
    "provider location policy",
)
RATE_LIMIT_NEEDLES = (
    "429",
    "quota",
    "rate limit",
    "resource exhausted",
    "resource_exhausted",
    "too many requests",
)
PAYLOAD_NEEDLES = (
    "413",
    "payload too large",
    "payload is too large",
    "request body is too large",
)
TRANSIENT_NEEDLES = (
    "502",
    "503",
    "504",
    "timeout",
    "timed out",
    "deadline exceeded",
    "temporarily unavailable",
    "overload",
    "upstream connect error",
    "connection reset",
)

RATE_LIMIT_STATUSES = {429}
PAYLOAD_STATUSES = {413}
TRANSIENT_STATUSES = {502, 503, 504}


def classify_failure(message: str, status: int | None = None) -> FailureKind:
    """Classify an upstream failure once, where it is observed.

    Policy blocks win over everything else because they must stop the whole
    document; rate limits win over generic transient wording because they get
    longer cooldowns and are never answered by splitting.
    """
    normalized = (message or "").lower()
    if any(needle in normalized for needle in POLICY_NEEDLES):
        return FailureKind.POLICY_BLOCKED
    if status in RATE_LIMIT_STATUSES or any(needle in normalized for needle in RATE_LIMIT_NEEDLES):
        return FailureKind.RATE_LIMITED
    if status in PAYLOAD_STATUSES or any(needle in normalized for needle in PAYLOAD_NEEDLES):
        return FailureKind.PAYLOAD_TOO_LARGE
    if status in TRANSIENT_STATUSES or any(needle in normalized for needle in TRANSIENT_NEEDLES):
        return FailureKind.TRANSIENT
    return FailureKind.OTHER


def extract_retry_after_seconds(message: str) -> float | None:
    match = _RETRY_IN_RE.search(message or "")
    if not match:
        return None
    try:
        parsed = float(match.group(1))
    except ValueError:
        return None
    if not math.isfinite(parsed) or parsed <= 0:
        return None
    return parsed


def parse_retry_after_header(value: str | None) -> float | None:
    if not value:
        return None
    try:
        parsed = float(value.strip())
    except ValueError:
        return None
    if not math.isfinite(parsed) or parsed <= 0:
        return None
    return float(math.ceil(parsed))
