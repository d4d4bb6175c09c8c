from __future__ import annotations

import enum
import re
from typing import FrozenSet, Optional


class FailureKind(str, enum.Enum):
    RATE_LIMITED = "rate_limited"
    UPSTREAM_SERVER_ERROR = "upstream_server_error"
    CONTEXT_TOO_LONG = "context_too_long"
    SEARCH_ACCESS_DENIED = "search_access_denied"
    TERMINAL = "terminal"


# Provider wording, matched case-insensitively. Keep these here so the
# orchestrators never grow their own string checks.
RATE_LIMIT_RE = re.compile(r"rate|limit", re.IGNORECASE)
CONTEXT_RE = re.compile(
    r"reduce the length|context|too long|maximum context|token limit",
    re.IGNORECASE,
)
SEARCH_ACCESS_RE = re.compile(
    r"forbidden|permission|access|not found|decommission|unavailable",
    re.IGNORECASE,
)

_SEARCH_ACCESS_STATUSES = {401, 403, 404}

_PRIORITY = (
    FailureKind.RATE_LIMITED,
    FailureKind.UPSTREAM_SERVER_ERROR,
    FailureKind.CONTEXT_TOO_LONG,
    FailureKind.SEARCH_ACCESS_DENIED,
)


def classify_failure(status: int, message: Optional[str], search: bool = False) -> FrozenSet[FailureKind]:
    """Every retryable kind that applies; an empty set means terminal."""
    msg = message or ""
    kinds = set()
    if status == 429 or RATE_LIMIT_RE.search(msg):
        kinds.add(FailureKind.RATE_LIMITED)
    if status >= 500:
        kinds.add(FailureKind.UPSTREAM_SERVER_ERROR)
    if status == 413 or CONTEXT_RE.search(msg):
        kinds.add(FailureKind.CONTEXT_TOO_LONG)
    if search and (status in _SEARCH_ACCESS_STATUSES or SEARCH_ACCESS_RE.search(msg)):
        kinds.add(FailureKind.SEARCH_ACCESS_DENIED)
    return frozenset(kinds)


def primary_failure(status: int, message: Optional[str], search: bool = False) -> FailureKind:
    kinds = classify_failure(status, message, search)
    for kind in _PRIORITY:
        if kind in kinds:
            return kind
    return FailureKind.TERMINAL


def should_try_next(status: int, message: Optional[str], search: bool = False) -> bool:
    return bool(classify_failure(status, message, search))
