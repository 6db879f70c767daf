"""The DNS proxy: request resolution through caches, upstreams and fallbacks."""

from __future__ import annotations

import ipaddress
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

import dns.flags
import dns.message
import dns.rcode
import dns.rdataclass
import dns.rdatatype

from dnsrelay.cache import ResponseCache, SubnetCache, respect_ttl_overrides
from dnsrelay.config import PROTO_UDP, Config, ConfigError, DNSContext, UpstreamMode
from dnsrelay.dns64 import Nat64
from dnsrelay.exchange import UpstreamExchanger, exchange_parallel
from dnsrelay.fastip import FastestAddr
from dnsrelay.helpers import (
    IPAddress,
    contains_ip,
    gen_empty_no_error,
    get_ip_string,
    ip_from_record,
    is_public_ip,
    make_reply,
    normalize_ip,
    parse_ecs,
    set_ecs,
)
from dnsrelay.ratelimit import ClientRateLimiter
from dnsrelay.sema import NoopSemaphore, new_semaphore

log = logging.getLogger(__name__)

_ADDRESS_TYPES = (dns.rdatatype.A, dns.rdatatype.AAAA)


def check_disabled_aaaa_request(ctx: DNSContext, ipv6_disabled: bool) -> bool:
    """Answer an AAAA request with an empty NOERROR reply if IPv6 is disabled."""
    if ipv6_disabled and ctx.req.question[0].rdtype == dns.rdatatype.AAAA:
        log.debug("IPv6 is disabled. Reply with NoError to %s AAAA request",
                  ctx.req.question[0].name)
        ctx.res = gen_empty_no_error(ctx.req)
        return True
    return False


def _reply_with_rcode(request: dns.message.Message, rcode) -> dns.message.Message:
    reply = make_reply(request)
    reply.flags |= dns.flags.RA
    reply.set_rcode(rcode)
    return reply


class Proxy:
    """Resolves DNS requests according to its configuration."""

    def __init__(self, config: Optional[Config] = None) -> None:
        self.config = config if config is not None else Config()
        self._lock = threading.RLock()
        self._started = False
        self.cache: Optional[ResponseCache] = None
        self.cache_subnet: Optional[SubnetCache] = None
        self.fastest_addr: Optional[FastestAddr] = None
        self.request_semaphore = NoopSemaphore()
        self.nat64 = Nat64()
        self._exchanger = UpstreamExchanger(self.config.upstream_mode)
        self._ratelimiter: Optional[ClientRateLimiter] = None
        self._ratelimit_lock = threading.Lock()

    @property
    def started(self) -> bool:
        return self._started

    def init(self) -> None:
        """Create caches, the request semaphore and the upstream machinery."""
        cfg = self.config
        if cfg.cache_enabled:
            log.info("DNS cache is enabled")
            self.cache = ResponseCache(cfg.cache_size_bytes)
            if cfg.enable_edns_client_subnet:
                self.cache_subnet = SubnetCache(cfg.cache_size_bytes)

        if cfg.max_concurrent_requests > 0:
            log.info("Maximum concurrent requests is set to %d", cfg.max_concurrent_requests)
            try:
                self.request_semaphore = new_semaphore(cfg.max_concurrent_requests)
            except ValueError as exc:
                raise ConfigError(f"can't init semaphore: {exc}") from exc
        else:
            self.request_semaphore = NoopSemaphore()

        self.fastest_addr = None
        if cfg.upstream_mode == UpstreamMode.FASTEST_ADDR:
            log.info("Fastest IP is enabled")
            self.fastest_addr = FastestAddr()
        self._exchanger = UpstreamExchanger(cfg.upstream_mode, self.fastest_addr)

        with self._ratelimit_lock:
            self._ratelimiter = ClientRateLimiter(cfg.ratelimit, cfg.ratelimit_whitelist)

    def start(self) -> None:
        """Validate the configuration, initialise the proxy and mark it running."""
        with self._lock:
            log.info("Starting the DNS proxy server")
            if self._started:
                raise ConfigError("server has been already started")
            self.config.validate()
            self.init()
            self._started = True

    def stop(self) -> None:
        """Mark the proxy stopped; does nothing if it is not running."""
        log.info("Stopping the DNS proxy server")
        with self._lock:
            if not self._started:
                log.info("The DNS proxy server is not started")
                return
            self._started = False
        log.info("Stopped the DNS proxy server")

    def set_nat64_prefix(self, prefix: bytes) -> None:
        """Set the NAT64 prefix once the proxy is running."""
        self.nat64.set_prefix(prefix, self._started)

    def is_ratelimited(self, addr) -> bool:
        """Return True if a request from the client address must be dropped."""
        with self._ratelimit_lock:
            if self._ratelimiter is None:
                self._ratelimiter = ClientRateLimiter(
                    self.config.ratelimit, self.config.ratelimit_whitelist
                )
            limiter = self._ratelimiter
        return limiter.is_ratelimited(addr)

    def is_bogus_nxdomain(self, reply: Optional[dns.message.Message]) -> bool:
        """Return True if the reply holds at least one address from the bogus list."""
        bogus = self.config.bogus_nxdomain
        if (
            reply is None
            or not bogus
            or not reply.answer
            or reply.question[0].rdtype not in _ADDRESS_TYPES
        ):
            return False
        return any(
            contains_ip(bogus, ip_from_record(rdata))
            for rrset in reply.answer
            for rdata in rrset
        )

    def _upstreams_for(self, ctx: DNSContext, host: str) -> list:
        upstreams = None
        if ctx.custom_upstream_config is not None:
            upstreams = ctx.custom_upstream_config.upstreams_for_domain(host)
        if not upstreams:
            if self.config.upstream_config is None:
                raise ConfigError("no default upstreams specified")
            upstreams = self.config.upstream_config.upstreams_for_domain(host)
        return upstreams

    def resolve(self, ctx: DNSContext) -> None:
        """Resolve ``ctx.req`` into ``ctx.res``; raise the error if resolution failed.

        Even when an error is raised, ``ctx.res`` holds a SERVFAIL reply.
        """
        if self.config.enable_edns_client_subnet:
            self._process_ecs(ctx)

        if self._reply_from_cache(ctx):
            return

        host = ctx.req.question[0].name.to_text()
        upstreams = self._upstreams_for(ctx, host)

        err: Optional[BaseException] = None
        reply = upstream = None
        try:
            reply, upstream = self._exchanger.exchange(ctx.req, upstreams)
        except Exception as exc:  # errors are reported after fallbacks were tried
            err = exc

        if self.nat64.is_empty_aaaa_response(reply, ctx.req):
            log.debug("Received empty AAAA response, checking DNS64")
            try:
                reply, upstream = self.nat64.check_dns64(
                    ctx.req, reply, self._exchanger.exchange, upstreams
                )
                err = None
            except Exception as exc:
                reply = None
                err = exc
        elif self.is_bogus_nxdomain(reply):
            log.debug("Received IP from the bogus-nxdomain list, replacing response")
            reply = _reply_with_rcode(reply, dns.rcode.NXDOMAIN)

        if err is not None and self.config.fallbacks:
            log.debug("Using the fallback upstream due to %s", err)
            try:
                reply, upstream = exchange_parallel(self.config.fallbacks, ctx.req)
                err = None
            except Exception as exc:
                reply = None
                err = exc

        if reply is not None:
            ctx.upstream = upstream
            self._set_min_max_ttl(reply)
            self._set_in_cache(ctx, reply)
            ctx.res = reply
        else:
            ctx.res = _reply_with_rcode(ctx.req, dns.rcode.SERVFAIL)

        ctx.scrub()

        if self.config.response_handler is not None:
            self.config.response_handler(ctx, err)

        if err is not None:
            raise err

    def _set_min_max_ttl(self, reply: dns.message.Message) -> None:
        for rrset in reply.answer:
            rrset.ttl = respect_ttl_overrides(
                rrset.ttl, self.config.cache_min_ttl, self.config.cache_max_ttl
            )

    def _process_ecs(self, ctx: DNSContext) -> None:
        ctx.ecs_req_ip = None
        ctx.ecs_req_mask = 0

        ip, mask, _ = parse_ecs(ctx.req)
        if mask == 0:
            client_ip = self.config.edns_addr
            if client_ip is None:
                client_ip = get_ip_string(ctx.addr) or None
            if client_ip is not None and is_public_ip(client_ip):
                ip, mask = set_ecs(ctx.req, client_ip, 0)
                log.debug("Set ECS data: %s/%d", ip, mask)
        else:
            log.debug("Passing through ECS data: %s/%d", ip, mask)

        ctx.ecs_req_ip = ip
        ctx.ecs_req_mask = mask

    def _reply_from_cache(self, ctx: DNSContext) -> bool:
        if self.cache is None or ctx.custom_upstream_config is not None:
            return False

        if not self.config.enable_edns_client_subnet:
            cached = self.cache.get(ctx.req)
            source = "cache"
        elif ctx.ecs_req_mask != 0 and self.cache_subnet is not None:
            cached = self.cache_subnet.get_with_subnet(ctx.req, ctx.ecs_req_ip, ctx.ecs_req_mask)
            source = "subnet cache"
        elif ctx.ecs_req_mask == 0:
            cached = self.cache.get(ctx.req)
            source = "general cache"
        else:
            cached = None
            source = ""

        if cached is None:
            return False
        ctx.res = cached
        log.debug("Serving response from %s", source)
        return True

    def _set_in_cache(self, ctx: DNSContext, resp: dns.message.Message) -> None:
        if self.cache is None or ctx.custom_upstream_config is not None:
            return

        if not self.config.enable_edns_client_subnet:
            self.cache.set(resp)
            return

        ip, mask, scope = parse_ecs(resp)
        req_ip = normalize_ip(ctx.ecs_req_ip) if ctx.ecs_req_ip is not None else None
        if ip is not None:
            if ip == req_ip and mask == ctx.ecs_req_mask:
                log.debug("ECS option in response: %s/%d", ip, scope)
                self.cache_subnet.set_with_subnet(resp, ip, scope)
            else:
                log.debug("Invalid response from server: ECS data mismatch: %s/%d -- %s/%d",
                          ctx.ecs_req_ip, ctx.ecs_req_mask, ip, mask)
        elif ctx.ecs_req_ip is not None:
            # The server does not support ECS: the response is valid for all subnets.
            self.cache_subnet.set_with_subnet(resp, None, scope)
        else:
            self.cache.set(resp)

    def _lookup(self, host: str, rdtype) -> DNSContext:
        request = dns.message.make_query(host, rdtype, dns.rdataclass.IN)
        request.flags |= dns.flags.RD
        ctx = DNSContext(proto=PROTO_UDP, req=request)
        self.resolve(ctx)
        return ctx

    def lookup_ip_addr(self, host: str) -> List[IPAddress]:
        """Resolve A and AAAA records of ``host`` in parallel; IPv4 addresses come first."""
        if not host.endswith("."):
            host += "."

        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = [pool.submit(self._lookup, host, rdtype) for rdtype in _ADDRESS_TYPES]

        addresses: List[IPAddress] = []
        errors: List[BaseException] = []
        for future in futures:
            try:
                ctx = future.result()
            except Exception as exc:
                errors.append(exc)
                continue
            for rrset in ctx.res.answer:
                for rdata in rrset:
                    ip = ip_from_record(rdata)
                    if ip is not None:
                        addresses.append(ip)

        if not addresses and errors:
            raise errors[0]
        return sorted(addresses, key=lambda ip: isinstance(ip, ipaddress.IPv6Address))