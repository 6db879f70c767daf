"""Proxy configuration, upstream selection and per-request context."""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import dns.exception
import dns.flags
import dns.message

log = logging.getLogger(__name__)

PROTO_UDP = "udp"
PROTO_TCP = "tcp"
PROTO_TLS = "tls"
PROTO_HTTPS = "https"
PROTO_QUIC = "quic"
PROTO_DNSCRYPT = "dnscrypt"

_MIN_UDP_SIZE = 512
_MAX_DNS_SIZE = 65535

ListenAddrs = Optional[List[Tuple[str, int]]]


class ConfigError(ValueError):
    """The proxy configuration is not usable."""


class UpstreamMode(enum.IntEnum):
    """How the upstream servers are queried."""

    LOAD_BALANCE = 0
    PARALLEL = 1
    FASTEST_ADDR = 2


def _normalize_domain(name: str) -> str:
    name = name.strip().lower()
    return name if name.endswith(".") else name + "."


@dataclass
class UpstreamConfig:
    """Default upstreams plus upstreams reserved for particular domains."""

    upstreams: List[Any] = field(default_factory=list)
    domain_reserved_upstreams: Dict[str, List[Any]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.domain_reserved_upstreams = {
            _normalize_domain(domain): upstreams
            for domain, upstreams in self.domain_reserved_upstreams.items()
        }

    def upstreams_for_domain(self, host: str) -> List[Any]:
        """Return the upstreams of the closest reserved parent domain, or the defaults."""
        if self.domain_reserved_upstreams:
            labels = _normalize_domain(host).rstrip(".").split(".")
            for start in range(len(labels)):
                candidate = ".".join(labels[start:]) + "."
                reserved = self.domain_reserved_upstreams.get(candidate)
                if reserved is not None:
                    return reserved
        return self.upstreams


BeforeRequestHandler = Callable[[Any, "DNSContext"], bool]
RequestHandler = Callable[[Any, "DNSContext"], None]
ResponseHandler = Callable[["DNSContext", Optional[BaseException]], None]


@dataclass
class Config:
    """Everything needed to configure the proxy.

    A listener list left as None means that kind of listener is not started.
    """

    udp_listen_addr: ListenAddrs = None
    tcp_listen_addr: ListenAddrs = None
    https_listen_addr: ListenAddrs = None
    tls_listen_addr: ListenAddrs = None
    quic_listen_addr: ListenAddrs = None
    dnscrypt_udp_listen_addr: ListenAddrs = None
    dnscrypt_tcp_listen_addr: ListenAddrs = None

    tls_config: Any = None
    dnscrypt_provider_name: str = ""
    dnscrypt_resolver_cert: Any = None

    ratelimit: int = 0
    ratelimit_whitelist: List[str] = field(default_factory=list)
    refuse_any: bool = False

    upstream_config: Optional[UpstreamConfig] = None
    fallbacks: Optional[List[Any]] = None
    upstream_mode: UpstreamMode = UpstreamMode.LOAD_BALANCE

    bogus_nxdomain: List[Any] = field(default_factory=list)

    enable_edns_client_subnet: bool = False
    edns_addr: Any = None

    cache_enabled: bool = False
    cache_size_bytes: int = 0
    cache_min_ttl: int = 0
    cache_max_ttl: int = 0

    before_request_handler: Optional[BeforeRequestHandler] = None
    request_handler: Optional[RequestHandler] = None
    response_handler: Optional[ResponseHandler] = None

    max_concurrent_requests: int = 0
    udp_buffer_size: int = 0

    def validate(self) -> None:
        """Raise ConfigError if the configuration cannot be used."""
        self.validate_listen_addrs()

        if self.upstream_config is None:
            raise ConfigError("no default upstreams specified")
        if not self.upstream_config.upstreams:
            if not self.upstream_config.domain_reserved_upstreams:
                raise ConfigError("no upstreams specified")
            raise ConfigError("no default upstreams specified")

        if self.cache_min_ttl > 0 or self.cache_max_ttl > 0:
            log.info("Cache TTL override is enabled. Min=%d, Max=%d",
                     self.cache_min_ttl, self.cache_max_ttl)
        if self.ratelimit > 0:
            log.info("Ratelimit is enabled and set to %d rps", self.ratelimit)
        if self.refuse_any:
            log.info("The server is configured to refuse ANY requests")
        if self.bogus_nxdomain:
            log.info("%d bogus-nxdomain IP specified", len(self.bogus_nxdomain))

    def validate_listen_addrs(self) -> None:
        """Raise ConfigError if listeners are missing or lack their encryption settings."""
        if not self.has_listen_addrs():
            raise ConfigError("no listen address specified")
        if self.tls_listen_addr is not None and self.tls_config is None:
            raise ConfigError("cannot create a TLS listener without TLS config")
        if self.https_listen_addr is not None and self.tls_config is None:
            raise ConfigError("cannot create an HTTPS listener without TLS config")
        if self.quic_listen_addr is not None and self.tls_config is None:
            raise ConfigError("cannot create a QUIC listener without TLS config")
        wants_dnscrypt = (
            self.dnscrypt_tcp_listen_addr is not None or self.dnscrypt_udp_listen_addr is not None
        )
        if wants_dnscrypt and (
            self.dnscrypt_resolver_cert is None or not self.dnscrypt_provider_name
        ):
            raise ConfigError("cannot create a DNSCrypt listener without DNSCrypt config")

    def has_listen_addrs(self) -> bool:
        """Return True if at least one kind of listener is configured."""
        return any(
            addrs is not None
            for addrs in (
                self.udp_listen_addr,
                self.tcp_listen_addr,
                self.tls_listen_addr,
                self.https_listen_addr,
                self.quic_listen_addr,
                self.dnscrypt_udp_listen_addr,
                self.dnscrypt_tcp_listen_addr,
            )
        )


def _max_response_size(proto: str, request: dns.message.Message) -> int:
    if proto != PROTO_UDP:
        return _MAX_DNS_SIZE
    if request.edns >= 0:
        return max(_MIN_UDP_SIZE, min(request.payload, _MAX_DNS_SIZE))
    return _MIN_UDP_SIZE


def _wire_size(msg: dns.message.Message) -> int:
    try:
        return len(msg.to_wire())
    except dns.exception.TooBig:
        return _MAX_DNS_SIZE + 1


def _truncate(msg: dns.message.Message, size: int) -> None:
    """Drop records from the end of the message until it fits into ``size`` bytes."""
    if _wire_size(msg) <= size:
        return
    dropped_records = False
    for section, marks_truncation in (
        (msg.additional, False),
        (msg.authority, True),
        (msg.answer, True),
    ):
        while section and _wire_size(msg) > size:
            rrset = section[-1]
            rrset.discard(list(rrset)[-1])
            if len(rrset) == 0:
                section.pop()
            dropped_records = dropped_records or marks_truncation
    if dropped_records:
        msg.flags |= dns.flags.TC


@dataclass
class DNSContext:
    """A DNS request, its response and the connection details it arrived with."""

    proto: str = PROTO_UDP
    req: Optional[dns.message.Message] = None
    res: Optional[dns.message.Message] = None
    addr: Any = None
    start_time: float = field(default_factory=time.time)
    upstream: Any = None
    custom_upstream_config: Optional[UpstreamConfig] = None
    conn: Any = None
    local_ip: Any = None
    http_request: Any = None
    http_response_writer: Any = None
    dnscrypt_response_writer: Any = None
    quic_stream: Any = None
    ecs_req_ip: Any = None
    ecs_req_mask: int = 0

    def scrub(self) -> None:
        """Truncate the response so it fits the transport the request came over."""
        if self.res is None or self.req is None:
            return
        _truncate(self.res, _max_response_size(self.proto, self.req))


def reserved_domains(config: UpstreamConfig) -> Sequence[str]:
    """Return the normalized domains that have reserved upstreams."""
    return list(config.domain_reserved_upstreams)