"""DNS message helpers: synthetic replies, EDNS Client Subnet and address checks."""

from __future__ import annotations

import ipaddress
import logging
from typing import Iterable, Optional, Tuple, Union

import dns.edns
import dns.flags
import dns.message
import dns.name
import dns.opcode
import dns.rcode
import dns.rdata
import dns.rdataclass
import dns.rdatatype
import dns.rrset

log = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

RETRY_NO_ERROR = 60
EDNS_CS_DEFAULT_NETMASK_V4 = 24
EDNS_CS_DEFAULT_NETMASK_V6 = 112
NEGATIVE_CACHING_NS = "fake-for-negative-caching.adguard.com."

_SOA_SERIAL = 100500
_SOA_REFRESH = 1800
_SOA_EXPIRE = 604800
_SOA_MINIMUM = 86400
_SOA_TTL = 10


def normalize_ip(value) -> IPAddress:
    """Turn text, raw bytes or an address object into an address; IPv4-mapped becomes IPv4."""
    if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        ip = value
    elif isinstance(value, (bytes, bytearray)):
        ip = ipaddress.ip_address(bytes(value))
    else:
        ip = ipaddress.ip_address(str(value))
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def make_reply(request: dns.message.Message) -> dns.message.Message:
    """Create an empty reply to ``request`` with its id, opcode and question."""
    reply = dns.message.Message(id=request.id)
    opcode = request.opcode()
    reply.flags = dns.flags.QR
    reply.set_opcode(opcode)
    if opcode == dns.opcode.QUERY:
        reply.flags |= request.flags & (dns.flags.RD | dns.flags.CD)
    reply.question = list(request.question)
    return reply


def gen_empty_message(request: dns.message.Message, rcode, retry: int) -> dns.message.Message:
    """Return an answerless reply with the given rcode and a negative-caching SOA."""
    resp = make_reply(request)
    resp.flags |= dns.flags.RA
    resp.authority = gen_soa(request, retry)
    resp.set_rcode(rcode)
    return resp


def gen_empty_no_error(request: dns.message.Message) -> dns.message.Message:
    """Return an empty NOERROR reply."""
    return gen_empty_message(request, dns.rcode.NOERROR, RETRY_NO_ERROR)


def gen_soa(request: dns.message.Message, retry: int) -> list:
    """Return the authority section holding a synthetic SOA for the request's zone."""
    zone = request.question[0].name.to_text() if request.question else ""
    rname = "hostmaster."
    if zone and not zone.startswith("."):
        rname += zone
    owner = dns.name.from_text(zone) if zone else dns.name.root
    rdata = dns.rdata.from_text(
        dns.rdataclass.IN,
        dns.rdatatype.SOA,
        f"{NEGATIVE_CACHING_NS} {rname} {_SOA_SERIAL} {_SOA_REFRESH} "
        f"{retry} {_SOA_EXPIRE} {_SOA_MINIMUM}",
    )
    return [dns.rrset.from_rdata(owner, _SOA_TTL, rdata)]


def get_ip_string(addr) -> str:
    """Return the IP part of a socket address tuple, or an empty string."""
    if isinstance(addr, (tuple, list)) and len(addr) >= 2 and isinstance(addr[0], str):
        try:
            return str(normalize_ip(addr[0]))
        except ValueError:
            return ""
    return ""


def parse_ecs(msg: dns.message.Message) -> Tuple[Optional[IPAddress], int, int]:
    """Return the Client Subnet address, source mask and scope of ``msg``."""
    for option in msg.options:
        if isinstance(option, dns.edns.ECSOption) and option.family in (0, 1, 2):
            return normalize_ip(option.address), option.srclen, option.scopelen
    return None, 0, 0


def set_ecs(msg: dns.message.Message, ip, scope: int) -> Tuple[IPAddress, int]:
    """Add a Client Subnet option for ``ip`` to ``msg``; return the masked address and mask."""
    ip = normalize_ip(ip)
    if isinstance(ip, ipaddress.IPv4Address):
        mask = EDNS_CS_DEFAULT_NETMASK_V4
    else:
        mask = EDNS_CS_DEFAULT_NETMASK_V6
    address = ipaddress.ip_network((ip, mask), strict=False).network_address
    option = dns.edns.ECSOption(str(address), mask, scope)

    if msg.edns >= 0:
        msg.use_edns(msg.edns, msg.ednsflags, msg.payload, options=[*msg.options, option])
    else:
        msg.use_edns(0, 0, 4096, options=[option])
    return address, mask


def is_public_ip(ip) -> bool:
    """Return True if the address lies within the public Internet range."""
    ip = normalize_ip(ip)
    if isinstance(ip, ipaddress.IPv4Address):
        a, b, c, d = ip.packed
        if a in (0, 10, 127):
            return False
        if a == 169 and b == 254:
            return False
        if a == 172 and 16 <= b <= 31:
            return False
        if a == 192 and (
            (b == 0 and c == 0) or (b == 0 and c == 2) or (b == 88 and c == 99) or b == 168
        ):
            return False
        if a == 198 and (b == 18 or c == 19 or b == 51 or c == 100):
            return False
        if a == 203 and b == 0 and c == 113:
            return False
        if a == 224 and b == 0 and c == 0:
            return False
        if a == 255 and b == 255 and c == 255 and d == 255:
            return False
        return True

    packed = ip.packed
    link_local_multicast = packed[0] == 0xFF and packed[1] & 0x0F == 0x02
    if ip.is_loopback or link_local_multicast or ip.is_link_local:
        return False
    return True


def split_next(text: str, sep: str) -> Tuple[str, str]:
    """Split off the chunk before the first ``sep``; return it stripped and the remainder."""
    head, found, rest = text.partition(sep)
    if not found:
        return text.strip(), ""
    return head.strip(), rest


def ip_from_record(rr) -> Optional[IPAddress]:
    """Return the address of an A or AAAA record, or None for other records."""
    if getattr(rr, "rdtype", None) in (dns.rdatatype.A, dns.rdatatype.AAAA):
        return normalize_ip(rr.address)
    return None


def contains_ip(ips: Iterable, ip) -> bool:
    """Return True if ``ip`` equals one of ``ips``."""
    if ip is None:
        return False
    target = normalize_ip(ip)
    return any(normalize_ip(candidate) == target for candidate in ips)