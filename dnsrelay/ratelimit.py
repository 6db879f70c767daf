"""Per-client request rate limiting."""

from __future__ import annotations

import bisect
import collections
import logging
import threading
import time
from typing import Callable, Iterable, Tuple

import cachetools

from dnsrelay.helpers import get_ip_string

log = logging.getLogger(__name__)

BUCKET_TTL = 60 * 60
_MAX_BUCKETS = 1 << 31


class RateLimiter:
    """Sliding-window limiter: at most ``limit`` events per ``interval`` seconds."""

    def __init__(
        self, limit: int, interval: float = 1.0, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.limit = limit
        self.interval = interval
        self._clock = clock
        self._times: collections.deque = collections.deque()
        self._lock = threading.Lock()

    def try_acquire(self) -> Tuple[bool, float]:
        """Record an event if allowed; return (allowed, seconds to wait otherwise)."""
        with self._lock:
            now = self._clock()
            if len(self._times) < self.limit:
                self._times.append(now)
                return True, 0.0
            elapsed = now - self._times[0]
            if elapsed < self.interval:
                return False, self.interval - elapsed
            self._times.popleft()
            self._times.append(now)
            return True, 0.0


class ClientRateLimiter:
    """Limits requests per second for each client IP, with a whitelist.

    The whitelist is searched by bisection and so is expected to be sorted.
    """

    def __init__(
        self,
        ratelimit: int,
        whitelist: Iterable[str] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ratelimit = ratelimit
        self.whitelist = list(whitelist)
        self._clock = clock
        self._buckets = cachetools.TTLCache(maxsize=_MAX_BUCKETS, ttl=BUCKET_TTL)
        self._lock = threading.Lock()

    def _limiter_for(self, ip: str) -> RateLimiter:
        with self._lock:
            limiter = self._buckets.get(ip)
            if limiter is None:
                limiter = RateLimiter(self.ratelimit, 1.0, self._clock)
                self._buckets[ip] = limiter
            return limiter

    def _is_whitelisted(self, ip: str) -> bool:
        i = bisect.bisect_left(self.whitelist, ip)
        return i < len(self.whitelist) and self.whitelist[i] == ip

    def is_ratelimited(self, addr) -> bool:
        """Return True if a request from ``addr`` must be dropped."""
        if self.ratelimit <= 0:
            return False

        ip = get_ip_string(addr)
        if not ip:
            log.info("failed to split %r into host/port", addr)
            return False

        if self.whitelist and self._is_whitelisted(ip):
            return False

        allowed, _ = self._limiter_for(ip).try_acquire()
        return not allowed