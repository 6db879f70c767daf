"""Pick the fastest IP address among the answers of several upstreams.

Every upstream is queried, each returned address is probed with TCP
connections, and the reply is trimmed down to the address that connected
first. Probe results are cached for a while, so the next lookup of the same
addresses can be answered without probing again.
"""

from __future__ import annotations

import abc
import logging
import queue
import socket
import struct
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple

import dns.message
import dns.rdatatype
import dns.rrset

from dnsrelay.cache import ByteCache
from dnsrelay.helpers import IPAddress, contains_ip, ip_from_record, normalize_ip

log = logging.getLogger(__name__)

FASTEST_ADDR_CACHE_TTL = 10 * 60
CACHE_MAX_SIZE = 64 * 1024
DEFAULT_TCP_PORTS = (80, 443)

# How long to wait for the next probe result before giving up on the rest.
PING_WAIT_TIMEOUT = 1.0
# Connection timeout; longer than the wait so slow results still reach the cache.
PING_TCP_TIMEOUT = 10.0

STATUS_OK = 0
STATUS_FAILED = 1

_MAX_UINT32 = 0xFFFFFFFF
_ENTRY = struct.Struct(">IBH")
_ADDRESS_TYPES = (dns.rdatatype.A, dns.rdatatype.AAAA)


class Upstream(abc.ABC):
    """A DNS server that requests can be sent to."""

    @abc.abstractmethod
    def exchange(self, request: dns.message.Message) -> dns.message.Message:
        """Send ``request`` and return the server's response."""

    @abc.abstractmethod
    def address(self) -> str:
        """Return the address of the server."""


@dataclass
class CacheEntry:
    """Cached outcome of probing one address."""

    status: int = STATUS_OK
    latency_msec: int = 0


@dataclass
class PingResult:
    """Outcome of one TCP probe."""

    ip: IPAddress
    tcp_port: int = 0
    latency: int = 0
    success: bool = False


@dataclass
class _ExchangeResult:
    response: dns.message.Message
    upstream: Upstream


def pack_cache_entry(entry: CacheEntry, ttl: int) -> bytes:
    """Layout: expire(4) status(1) latency_msec(2), big-endian."""
    expire = (int(time.time()) + ttl) & _MAX_UINT32
    return _ENTRY.pack(expire, entry.status & 0xFF, entry.latency_msec & 0xFFFF)


def unpack_cache_entry(data: bytes) -> Optional[CacheEntry]:
    """Decode a packed entry; None if it has expired."""
    expire, status, latency = _ENTRY.unpack_from(data)
    if expire <= int(time.time()):
        return None
    return CacheEntry(status=status, latency_msec=latency)


def _cache_key(ip) -> bytes:
    return normalize_ip(ip).packed


def _answer_records(msg: dns.message.Message) -> Iterator:
    for rrset in msg.answer:
        yield from rrset


def _exchange_all(upstreams: Sequence[Upstream], request: dns.message.Message) -> List[_ExchangeResult]:
    """Query all upstreams at once; keep the successful replies in upstream order."""
    if not upstreams:
        return []
    with ThreadPoolExecutor(max_workers=len(upstreams)) as pool:
        futures = [pool.submit(upstream.exchange, request) for upstream in upstreams]

    results: List[_ExchangeResult] = []
    errors: List[BaseException] = []
    for upstream, future in zip(upstreams, futures):
        try:
            response = future.result()
        except Exception as exc:  # any upstream failure just drops that reply
            errors.append(exc)
            continue
        if response is not None:
            results.append(_ExchangeResult(response, upstream))

    if not results and errors:
        raise RuntimeError("all upstreams failed to exchange request") from errors[0]
    return results


class FastestAddr:
    """Chooses the fastest address from upstream answers and caches probe results."""

    def __init__(self) -> None:
        self._cache = ByteCache(CACHE_MAX_SIZE)
        self._cache_lock = threading.Lock()
        self.allow_tcp = True
        self.tcp_ports: List[int] = list(DEFAULT_TCP_PORTS)

    def exchange_fastest(
        self, request: dns.message.Message, upstreams: Sequence[Upstream]
    ) -> Tuple[Optional[dns.message.Message], Optional[Upstream]]:
        """Query all upstreams and return the reply trimmed to the fastest address.

        Returns ``(None, None)`` when no upstream answered; raises when all failed.
        """
        replies = _exchange_all(upstreams, request)
        if not replies:
            return None, None

        host = request.question[0].name.to_text().lower()
        ips = self._ip_addresses(replies)
        found, result = self.ping_all(host, ips)
        if not found:
            log.debug("%s: no fastest IP found, using the first response", host)
            return replies[0].response, replies[0].upstream

        return self._prepare_reply(result, replies)

    @staticmethod
    def _ip_addresses(replies: Iterable[_ExchangeResult]) -> List[IPAddress]:
        ips: List[IPAddress] = []
        for reply in replies:
            for rdata in _answer_records(reply.response):
                ip = ip_from_record(rdata)
                if ip is not None and not contains_ip(ips, ip):
                    ips.append(ip)
        return ips

    @staticmethod
    def _prepare_reply(
        result: PingResult, replies: Sequence[_ExchangeResult]
    ) -> Tuple[dns.message.Message, Upstream]:
        fastest = normalize_ip(result.ip)
        chosen: Optional[_ExchangeResult] = None
        for reply in replies:
            if any(ip_from_record(rdata) == fastest for rdata in _answer_records(reply.response)):
                chosen = reply

        if chosen is None:
            log.error("found no replies with IP %s, most likely this is a bug", fastest)
            return replies[0].response, replies[0].upstream

        msg = chosen.response
        answer = []
        for rrset in msg.answer:
            if rrset.rdtype in _ADDRESS_TYPES:
                kept = [rdata for rdata in rrset if ip_from_record(rdata) == fastest]
                if kept:
                    answer.append(dns.rrset.from_rdata_list(rrset.name, rrset.ttl, kept))
            else:
                answer.append(rrset)
        msg.answer = answer
        return msg, chosen.upstream

    def ping_all(self, host: str, ips: Iterable) -> Tuple[bool, Optional[PingResult]]:
        """Probe the addresses in parallel; return as soon as the fastest is known."""
        addresses = [normalize_ip(ip) for ip in ips]
        if not addresses:
            return False, None

        results: "queue.Queue[PingResult]" = queue.Queue()
        fastest_cached: Optional[PingResult] = None
        scheduled = 0

        for ip in addresses:
            cached = self.cache_find(ip)
            if cached is None:
                for port in self.tcp_ports:
                    threading.Thread(
                        target=self._ping_tcp, args=(host, ip, port, results), daemon=True
                    ).start()
                    scheduled += 1
                continue
            if cached.status == STATUS_OK and (
                fastest_cached is None or fastest_cached.latency > cached.latency_msec
            ):
                fastest_cached = PingResult(ip=ip, latency=cached.latency_msec, success=True)

        if fastest_cached is not None and scheduled == 0:
            log.debug("ping_all: %s: return cached response: %s", host, fastest_cached.ip)
            return True, fastest_cached

        for _ in range(scheduled):
            try:
                result = results.get(timeout=PING_WAIT_TIMEOUT)
            except queue.Empty:
                log.debug("ping_all: %s: ping checks timed out", host)
                return fastest_cached is not None, fastest_cached

            log.debug("ping_all: %s: got result for %s status %s", host, result.ip, result.success)
            if result.success:
                if fastest_cached is not None and fastest_cached.latency < result.latency:
                    return True, fastest_cached
                return True, result

        log.debug("ping_all: %s: no successful ping check", host)
        return fastest_cached is not None, fastest_cached

    def _ping_tcp(self, host: str, ip: IPAddress, port: int, results: "queue.Queue[PingResult]") -> None:
        result = PingResult(ip=ip, tcp_port=port, success=True)
        log.debug("ping_tcp: %s: connecting to %s:%d", host, ip, port)

        start = time.monotonic()
        try:
            conn = socket.create_connection((str(ip), port), timeout=PING_TCP_TIMEOUT)
        except OSError as exc:
            result.latency = int((time.monotonic() - start) * 1000)
            log.debug("ping_tcp: %s: failed to connect to %s:%d, elapsed %d ms: %s",
                      host, ip, port, result.latency, exc)
            result.success = False
            self.cache_add_failure(ip)
            results.put(result)
            return

        result.latency = int((time.monotonic() - start) * 1000)
        log.debug("ping_tcp: %s: elapsed %d ms on %s:%d", host, result.latency, ip, port)
        conn.close()
        self.cache_add_successful(ip, result.latency)
        results.put(result)

    def cache_find(self, ip) -> Optional[CacheEntry]:
        """Return the live cache entry for the address, or None."""
        data = self._cache.get(_cache_key(ip))
        if data is None:
            return None
        return unpack_cache_entry(data)

    def cache_add(self, entry: CacheEntry, ip, ttl: int) -> None:
        """Store an entry for the address with the given TTL in seconds."""
        self._cache.set(_cache_key(ip), pack_cache_entry(entry, ttl))

    def cache_add_failure(self, ip) -> None:
        """Record a failed probe unless the address already has an entry."""
        with self._cache_lock:
            if self.cache_find(ip) is None:
                self.cache_add(CacheEntry(status=STATUS_FAILED), ip, FASTEST_ADDR_CACHE_TTL)

    def cache_add_successful(self, ip, latency: int) -> None:
        """Record a successful probe, replacing failures and slower results."""
        entry = CacheEntry(status=STATUS_OK, latency_msec=latency)
        with self._cache_lock:
            cached = self.cache_find(ip)
            if cached is None or cached.status != STATUS_OK or cached.latency_msec > latency:
                self.cache_add(entry, ip, FASTEST_ADDR_CACHE_TTL)