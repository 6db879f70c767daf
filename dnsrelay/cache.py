"""In-memory cache of DNS responses, plain and keyed by client subnet."""

from __future__ import annotations

import logging
import struct
import threading
import time
from typing import Optional

import cachetools
import dns.exception
import dns.flags
import dns.message
import dns.rcode
import dns.rdatatype

from dnsrelay.helpers import make_reply, normalize_ip

log = logging.getLogger(__name__)

DEFAULT_CACHE_SIZE = 64 * 1024
_MAX_UINT32 = 0xFFFFFFFF
_EXPIRE = struct.Struct(">I")
_ADDRESS_TYPES = (dns.rdatatype.A, dns.rdatatype.AAAA)


class ByteCache:
    """Thread-safe LRU map from bytes to bytes, bounded by total value size."""

    def __init__(self, max_size: int = DEFAULT_CACHE_SIZE) -> None:
        self._items = cachetools.LRUCache(maxsize=max_size, getsizeof=len)
        self._lock = threading.Lock()

    def get(self, key: bytes) -> Optional[bytes]:
        with self._lock:
            return self._items.get(key)

    def set(self, key: bytes, value: bytes) -> bool:
        """Store a value; return False if it cannot fit at all."""
        with self._lock:
            try:
                self._items[key] = value
            except ValueError:
                return False
            return True

    def delete(self, key: bytes) -> None:
        with self._lock:
            self._items.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


def _do_bit(msg: dns.message.Message) -> int:
    """Return 1 if the message carries an OPT record with the DO flag set."""
    if msg.edns < 0:
        return 0
    if msg.ednsflags & dns.flags.DO:
        return 1
    return 0


def _rrsets(msg: dns.message.Message):
    for section in (msg.answer, msg.authority, msg.additional):
        yield from section


def find_lowest_ttl(msg: dns.message.Message) -> int:
    """Return the lowest TTL among the message records, or 0 if there are none."""
    lowest = min(
        (rrset.ttl for rrset in _rrsets(msg) if rrset.rdtype != dns.rdatatype.OPT),
        default=_MAX_UINT32,
    )
    return 0 if lowest >= _MAX_UINT32 else lowest


def is_cacheable(msg: dns.message.Message) -> bool:
    """Return True if the response may be stored in the cache."""
    if msg.flags & dns.flags.TC:
        log.debug("refusing to cache truncated message")
        return False
    if len(msg.question) != 1:
        log.debug("refusing to cache message with wrong number of questions")
        return False

    question = msg.question[0]
    if find_lowest_ttl(msg) == 0:
        return False

    rcode = msg.rcode()
    if rcode not in (dns.rcode.NOERROR, dns.rcode.NXDOMAIN):
        log.debug("%s: refusing to cache message with rcode %s", question.name, dns.rcode.to_text(rcode))
        return False

    if rcode == dns.rcode.NOERROR and question.rdtype in _ADDRESS_TYPES:
        if not msg.answer:
            log.debug("%s: refusing to cache a NOERROR response with no answers", question.name)
            return False
        if not any(rrset.rdtype in _ADDRESS_TYPES for rrset in msg.answer):
            log.debug("%s: refusing to cache a response with no A and AAAA answers", question.name)
            return False
    return True


def respect_ttl_overrides(ttl: int, min_ttl: int, max_ttl: int) -> int:
    """Clamp ``ttl`` into [min_ttl, max_ttl]; a zero maximum means no upper bound."""
    if ttl < min_ttl:
        return min_ttl
    if max_ttl != 0 and ttl > max_ttl:
        return max_ttl
    return ttl


def _key_prefix(msg: dns.message.Message) -> bytes:
    question = msg.question[0]
    return struct.pack(">BHH", _do_bit(msg), question.rdtype, question.rdclass)


def _key_name(msg: dns.message.Message) -> bytes:
    return msg.question[0].name.to_text().lower().encode()


def cache_key(msg: dns.message.Message) -> bytes:
    """Key layout: do(1) qtype(2) qclass(2) lowercased name."""
    return _key_prefix(msg) + _key_name(msg)


def subnet_cache_key(msg: dns.message.Message, ip, mask: int) -> bytes:
    """Key layout: do(1) qtype(2) qclass(2) mask(1) [client ip if mask] lowercased name."""
    key = _key_prefix(msg) + bytes([mask])
    if mask:
        key += normalize_ip(ip).packed
    return key + _key_name(msg)


def pack_response(msg: dns.message.Message) -> bytes:
    """Serialize a response prefixed with its expiry time (4 bytes, big-endian)."""
    expire = (int(time.time()) + find_lowest_ttl(msg)) & _MAX_UINT32
    return _EXPIRE.pack(expire) + msg.to_wire()


def unpack_response(data: bytes, request: dns.message.Message) -> Optional[dns.message.Message]:
    """Build a reply to ``request`` from cached data; None if expired or unreadable."""
    now = int(time.time())
    (expire,) = _EXPIRE.unpack_from(data)
    if expire <= now:
        return None
    ttl = expire - now

    try:
        cached = dns.message.from_wire(data[_EXPIRE.size:])
    except (dns.exception.DNSException, ValueError):
        return None

    request_do = bool(_do_bit(request))

    reply = make_reply(request)
    reply.flags |= cached.flags & (dns.flags.AD | dns.flags.RA)
    for rrset in _rrsets(cached):
        rrset.ttl = ttl
    reply.answer = list(cached.answer)
    reply.authority = list(cached.authority)
    reply.additional = list(cached.additional)

    # OPT is hop-by-hop: only carried over when the client asked for DNSSEC.
    if request_do and cached.edns >= 0:
        reply.use_edns(0, cached.ednsflags & dns.flags.DO, cached.payload)
    reply.set_rcode(cached.rcode())
    return reply


class ResponseCache:
    """Response cache keyed by question and DO bit; storage is created on first write."""

    def __init__(self, cache_size: int = 0) -> None:
        self.cache_size = cache_size
        self._items: Optional[ByteCache] = None
        self._lock = threading.Lock()

    def _storage(self, create: bool) -> Optional[ByteCache]:
        with self._lock:
            if self._items is None and create:
                size = self.cache_size if self.cache_size > 0 else DEFAULT_CACHE_SIZE
                self._items = ByteCache(size)
            return self._items

    @staticmethod
    def _load(items: ByteCache, key: bytes, data: bytes, request) -> Optional[dns.message.Message]:
        reply = unpack_response(data, request)
        if reply is None:
            items.delete(key)
        return reply

    def get(self, request: Optional[dns.message.Message]) -> Optional[dns.message.Message]:
        """Return a cached reply for the request, or None."""
        if request is None or len(request.question) != 1:
            return None
        items = self._storage(create=False)
        if items is None:
            return None
        key = cache_key(request)
        data = items.get(key)
        if data is None:
            return None
        return self._load(items, key, data, request)

    def set(self, msg: Optional[dns.message.Message]) -> None:
        """Store a response if it is cacheable."""
        if msg is None or not is_cacheable(msg):
            return
        items = self._storage(create=True)
        items.set(cache_key(msg), pack_response(msg))


class SubnetCache(ResponseCache):
    """Response cache that also keys entries by client subnet."""

    def get_with_subnet(self, request, ip, mask: int) -> Optional[dns.message.Message]:
        """Longest-prefix lookup: try ``mask``, then each shorter mask down to 0."""
        if request is None or len(request.question) != 1:
            return None
        items = self._storage(create=False)
        if items is None:
            return None

        for current in range(mask, -1, -1):
            key = subnet_cache_key(request, ip, current)
            data = items.get(key)
            if data is not None:
                return self._load(items, key, data, request)
        return None

    def set_with_subnet(self, msg, ip, mask: int) -> None:
        """Store a response valid for the subnet ``ip``/``mask``."""
        if msg is None or not is_cacheable(msg):
            return
        items = self._storage(create=True)
        items.set(subnet_cache_key(msg, ip, mask), pack_response(msg))