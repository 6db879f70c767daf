"""DNS64: synthesize AAAA answers from A answers using a NAT64 prefix."""

from __future__ import annotations

import ipaddress
import logging
import threading
from typing import Callable, Optional, Sequence, Tuple

import dns.flags
import dns.message
import dns.rdata
import dns.rdataclass
import dns.rdatatype

log = logging.getLogger(__name__)

NAT64_PREFIX_LEN = 12

Exchange = Callable[[dns.message.Message, Sequence], Tuple[Optional[dns.message.Message], object]]


class Dns64Error(Exception):
    """A DNS64 response could not be built."""


def create_modified_a_request(msg: dns.message.Message) -> dns.message.Message:
    """Return a fresh A query for the name of an AAAA question."""
    question = msg.question[0]
    if question.rdtype != dns.rdatatype.AAAA:
        raise Dns64Error("question is not AAAA, do nothing")
    request = dns.message.make_query(question.name, dns.rdatatype.A, dns.rdataclass.IN)
    request.flags |= dns.flags.RD
    return request


class Nat64:
    """Holds the NAT64 prefix and maps IPv4 answers into it."""

    def __init__(self, prefix: bytes = b"") -> None:
        self._prefix = bytes(prefix)
        self._lock = threading.Lock()

    @property
    def prefix(self) -> bytes:
        with self._lock:
            return self._prefix

    def is_prefix_available(self) -> bool:
        """Return True once a valid 12-byte prefix is known."""
        with self._lock:
            return len(self._prefix) == NAT64_PREFIX_LEN

    def set_prefix(self, prefix: bytes, started: bool) -> None:
        """Set the prefix once, only for a running proxy and only if it is 12 bytes long."""
        if len(prefix) != NAT64_PREFIX_LEN:
            return
        with self._lock:
            if not self._prefix and started:
                self._prefix = bytes(prefix)
                log.info("NAT64 prefix: %s", list(self._prefix))

    def is_empty_aaaa_response(
        self, resp: Optional[dns.message.Message], req: dns.message.Message
    ) -> bool:
        """Return True if DNS64 applies: prefix known, AAAA asked, no answers."""
        return (
            self.is_prefix_available()
            and (resp is None or not resp.answer)
            and req.question[0].rdtype == dns.rdatatype.AAAA
        )

    def create_mapped_response(
        self, a_resp: Optional[dns.message.Message], aaaa_resp: dns.message.Message
    ) -> dns.message.Message:
        """Replace the answers of ``aaaa_resp`` with the A answers mapped into the prefix."""
        if not self.is_prefix_available():
            raise Dns64Error(
                "can not create DNS64 mapped response: NAT64 prefix was not calculated"
            )
        if a_resp is None or not a_resp.answer:
            raise Dns64Error("no ipv4 answer")

        prefix = self.prefix
        name = a_resp.question[0].name
        aaaa_resp.answer = []
        for rrset in a_resp.answer:
            if rrset.rdtype != dns.rdatatype.A:
                continue
            for rdata in rrset:
                mapped = ipaddress.IPv6Address(
                    prefix + ipaddress.IPv4Address(rdata.address).packed
                )
                aaaa = dns.rdata.from_text(dns.rdataclass.IN, dns.rdatatype.AAAA, str(mapped))
                target = aaaa_resp.find_rrset(
                    aaaa_resp.answer, name, dns.rdataclass.IN, dns.rdatatype.AAAA, create=True
                )
                target.add(aaaa, rrset.ttl)
        return aaaa_resp

    def check_dns64(
        self,
        req: dns.message.Message,
        resp: Optional[dns.message.Message],
        exchange: Exchange,
        upstreams: Sequence,
    ) -> Tuple[dns.message.Message, object]:
        """Resolve A for the AAAA question and return the mapped response and upstream."""
        a_request = create_modified_a_request(req)
        a_resp, upstream = exchange(a_request, upstreams)

        if resp is None:
            resp = dns.message.Message(id=req.id)
            resp.flags = req.flags & dns.flags.RD
            resp.question = [req.question[0]]

        return self.create_mapped_response(a_resp, resp), upstream