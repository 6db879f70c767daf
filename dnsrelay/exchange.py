"""Sending requests to upstream servers in the configured mode."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import dns.message
import dns.rdatatype

from dnsrelay.config import UpstreamMode
from dnsrelay.fastip import FastestAddr, Upstream

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 10 * 1000

Reply = Tuple[Optional[dns.message.Message], Optional[Upstream]]


class UpstreamError(Exception):
    """All upstreams failed; ``errors`` holds the failure of each one."""

    def __init__(self, message: str, errors: Iterable[BaseException] = ()) -> None:
        self.errors: List[BaseException] = list(errors)
        details = "; ".join(str(err) for err in self.errors)
        super().__init__(f"{message}: {details}" if details else message)


def exchange_with_upstream(
    upstream: Upstream, request: dns.message.Message
) -> Tuple[dns.message.Message, int]:
    """Send the request to one upstream; return the reply and elapsed milliseconds."""
    start = time.monotonic()
    question = request.question[0] if request.question else None
    try:
        reply = upstream.exchange(request)
    except Exception as exc:
        elapsed = int((time.monotonic() - start) * 1000)
        log.debug("upstream %s failed to exchange %s in %d milliseconds. Cause: %s",
                  upstream.address(), question, elapsed, exc)
        raise
    elapsed = int((time.monotonic() - start) * 1000)
    log.debug("upstream %s successfully finished exchange of %s. Elapsed %d ms.",
              upstream.address(), question, elapsed)
    return reply, elapsed


def exchange_parallel(
    upstreams: Sequence[Upstream], request: dns.message.Message
) -> Tuple[dns.message.Message, Upstream]:
    """Query all upstreams at once and return the first successful reply."""
    if not upstreams:
        raise UpstreamError("no upstreams specified")

    pool = ThreadPoolExecutor(max_workers=len(upstreams))
    futures = {pool.submit(upstream.exchange, request): upstream for upstream in upstreams}
    errors: List[BaseException] = []
    try:
        for future in as_completed(futures):
            try:
                reply = future.result()
            except Exception as exc:  # one failing upstream must not stop the others
                errors.append(exc)
                continue
            if reply is not None:
                return reply, futures[future]
    finally:
        pool.shutdown(wait=False)
    raise UpstreamError("all upstreams failed to exchange request", errors)


class UpstreamExchanger:
    """Chooses upstreams according to the mode and tracks their round-trip times."""

    def __init__(
        self,
        mode: UpstreamMode = UpstreamMode.LOAD_BALANCE,
        fastest_addr: Optional[FastestAddr] = None,
    ) -> None:
        self.mode = mode
        if fastest_addr is None and mode == UpstreamMode.FASTEST_ADDR:
            fastest_addr = FastestAddr()
        self.fastest_addr = fastest_addr
        self.rtt_stats: Dict[str, int] = {}
        self._rtt_lock = threading.Lock()

    def exchange(self, request: dns.message.Message, upstreams: Sequence[Upstream]) -> Reply:
        """Send the request and return the reply with the upstream that produced it.

        Raises the upstream's error, or UpstreamError when every upstream failed.
        """
        qtype = request.question[0].rdtype
        if (
            self.mode == UpstreamMode.FASTEST_ADDR
            and self.fastest_addr is not None
            and qtype in (dns.rdatatype.A, dns.rdatatype.AAAA)
        ):
            return self.fastest_addr.exchange_fastest(request, upstreams)

        if self.mode == UpstreamMode.PARALLEL:
            return exchange_parallel(upstreams, request)

        if len(upstreams) == 1:
            upstream = upstreams[0]
            reply, _ = exchange_with_upstream(upstream, request)
            return reply, upstream

        errors: List[BaseException] = []
        for upstream in self.sorted_upstreams(upstreams):
            try:
                reply, elapsed = exchange_with_upstream(upstream, request)
            except Exception as exc:  # fall through to the next upstream
                errors.append(exc)
                self.update_rtt(upstream.address(), DEFAULT_TIMEOUT_MS)
                continue
            self.update_rtt(upstream.address(), elapsed)
            return reply, upstream

        if errors:
            raise UpstreamError("all upstreams failed to exchange request", errors)
        return None, None

    def sorted_upstreams(self, upstreams: Sequence[Upstream]) -> List[Upstream]:
        """Return a copy of the upstreams ordered from fastest to slowest."""
        with self._rtt_lock:
            stats = dict(self.rtt_stats)
        return sorted(upstreams, key=lambda upstream: stats.get(upstream.address(), 0))

    def update_rtt(self, address: str, rtt: int) -> None:
        """Average the new round-trip time into the stored one."""
        with self._rtt_lock:
            self.rtt_stats[address] = (self.rtt_stats.get(address, 0) + rtt) // 2