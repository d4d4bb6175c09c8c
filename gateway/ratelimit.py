from __future__ import annotations

import logging
import math
import random
import time
from typing import Callable, Dict, NamedTuple, Optional, Tuple

from fastapi import Request

log = logging.getLogger(__name__)

UNKNOWN_CLIENT = "unknown"
DEFAULT_PRUNE_PROBABILITY = 0.01

_Key = Tuple[str, str, int]


class RateLimitResult(NamedTuple):
    allowed: bool
    retry_after_seconds: int = 0


def _now_ms() -> int:
    return int(time.time() * 1000)


class FixedWindowRateLimiter:
    """
    Fixed-window counter keyed by (scope, client_id, window_index).

    One instance lives for the whole process and is owned by the app. The
    store is plain in-process memory: counters reset on restart and are not
    shared between instances. A client can burst up to twice the limit
    across a window boundary.

    Reads and writes happen without an ``await`` in between, so on a single
    event loop no lock is needed.
    """

    def __init__(
        self,
        prune_probability: float = DEFAULT_PRUNE_PROBABILITY,
        clock: Optional[Callable[[], int]] = None,
        rng: Optional[Callable[[], float]] = None,
    ) -> None:
        self.prune_probability = prune_probability
        self._clock = clock or _now_ms
        self._rng = rng or random.random
        self._store: Dict[_Key, int] = {}

    def check(
        self,
        client_id: Optional[str],
        scope: str,
        max_requests: int,
        window_ms: int,
        now_ms: Optional[int] = None,
    ) -> RateLimitResult:
        client = client_id or UNKNOWN_CLIENT
        now = self._clock() if now_ms is None else int(now_ms)
        window_index = now // window_ms

        if self._rng() < self.prune_probability:
            self._prune(scope, client, window_index)

        key = (scope, client, window_index)
        count = self._store.get(key, 0)
        if count >= max_requests:
            window_end = (window_index + 1) * window_ms
            retry_after = max(1, math.ceil((window_end - now) / 1000))
            return RateLimitResult(False, retry_after)

        self._store[key] = count + 1
        return RateLimitResult(True, 0)

    def _prune(self, scope: str, client: str, window_index: int) -> int:
        stale = [
            key
            for key in self._store
            if key[0] == scope and key[1] == client and key[2] != window_index
        ]
        for key in stale:
            del self._store[key]
        if stale:
            log.debug("ratelimit: pruned %d stale windows scope=%s client=%s", len(stale), scope, client)
        return len(stale)

    def count(self, client_id: Optional[str], scope: str, window_ms: int, now_ms: Optional[int] = None) -> int:
        now = self._clock() if now_ms is None else int(now_ms)
        return self._store.get((scope, client_id or UNKNOWN_CLIENT, now // window_ms), 0)

    def size(self) -> int:
        return len(self._store)

    def reset(self) -> None:
        """Used by tests to clear state."""
        self._store.clear()


def client_id_from_request(request: Request) -> str:
    """Best available network identifier for the caller."""
    headers = request.headers
    cf_ip = (headers.get("cf-connecting-ip") or "").strip()
    if cf_ip:
        return cf_ip
    forwarded = (headers.get("x-forwarded-for") or "").split(",")[0].strip()
    if forwarded:
        return forwarded
    real_ip = (headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return UNKNOWN_CLIENT


def rate_limit_headers(result: RateLimitResult) -> Dict[str, str]:
    if result.allowed:
        return {}
    return {"Retry-After": str(result.retry_after_seconds)}
