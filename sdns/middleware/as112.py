"""Authoritative empty answers for private and reserved reverse zones."""

from __future__ import annotations

import contextlib
import logging
from typing import Any, Iterable, Iterator

import dns.flags
import dns.message
import dns.opcode
import dns.rcode
import dns.rdata
import dns.rdataclass
import dns.rdatatype
import dns.rrset

from sdns.middleware.chain import AlreadyWrittenError, Chain, Handler

__all__ = ["AS112", "DEFAULT_ZONES", "ROOT_ZONE"]

log = logging.getLogger(__name__)

ROOT_ZONE = "."

DEFAULT_ZONES = frozenset(
    {
        "10.in-addr.arpa.",
        *(f"{n}.172.in-addr.arpa." for n in range(16, 32)),
        "168.192.in-addr.arpa.",
        *(f"{n}.100.in-addr.arpa." for n in range(64, 128)),
        "0.in-addr.arpa.",
        "127.in-addr.arpa.",
        "254.169.in-addr.arpa.",
        "2.0.192.in-addr.arpa.",
        "100.51.198.in-addr.arpa.",
        "113.0.203.in-addr.arpa.",
        "255.255.255.255.in-addr.arpa.",
        "0." * 32 + "ip6.arpa.",
        "1." + "0." * 31 + "ip6.arpa.",
        "d.f.ip6.arpa.",
        "8.e.f.ip6.arpa.",
        "9.e.f.ip6.arpa.",
        "a.e.f.ip6.arpa.",
        "b.e.f.ip6.arpa.",
        "8.b.d.0.1.0.0.2.ip6.arpa.",
        "empty.as112.arpa.",
        "home.arpa.",
    }
)


def _fqdn(name: str) -> str:
    return name if name.endswith(".") else name + "."


def _labels(name: str) -> list[str]:
    return [label for label in name.split(".") if label]


def _suffixes(name: str) -> Iterator[str]:
    labels = _labels(name)
    if not labels:
        yield name
        return
    for start in range(len(labels)):
        yield ".".join(labels[start:]) + "."


def _reply(req: dns.message.Message) -> dns.message.Message:
    msg = dns.message.Message(id=req.id)
    msg.flags = dns.flags.QR
    msg.set_opcode(req.opcode())
    if req.opcode() == dns.opcode.QUERY:
        msg.flags |= req.flags & (dns.flags.RD | dns.flags.CD)
    if req.question:
        msg.question = [req.question[0]]
    return msg


class AS112(Handler):
    """Answers queries under empty zones with NXDOMAIN or an SOA."""

    name = "as112"

    def __init__(self, empty_zones: Iterable[str] | None = None) -> None:
        self.zones: frozenset[str] = DEFAULT_ZONES
        zones = set()
        for zone in empty_zones or ():
            if self.match(zone, dns.rdatatype.SOA) == ROOT_ZONE:
                log.error("Empty zone doesn't match in default empty zones, check your config! zone=%s", zone)
                continue
            zones.add(_fqdn(zone))
        if zones:
            self.zones = frozenset(zones)
        log.info("Empty zones loaded zones=%d", len(self.zones))

    def serve_dns(self, ctx: Any, chain: Chain) -> None:
        req = chain.request
        q = req.question[0]
        qname = q.name.to_text()

        if not qname.endswith("arpa."):
            chain.next(ctx)
            return

        zone = self.match(qname, q.rdtype)
        if zone == ROOT_ZONE:
            chain.next(ctx)
            return

        lowered = qname.lower()
        at_apex = zone == lowered

        msg = _reply(req)
        msg.flags |= dns.flags.AA | dns.flags.RA

        soa = dns.rrset.from_rdata(
            q.name,
            86400,
            dns.rdata.from_text(
                dns.rdataclass.IN,
                dns.rdatatype.SOA,
                f"{zone} {ROOT_ZONE} 0 28800 7200 604800 86400",
            ),
        )

        if q.rdtype == dns.rdatatype.NS and at_apex:
            msg.answer.append(
                dns.rrset.from_rdata(
                    q.name,
                    0,
                    dns.rdata.from_text(dns.rdataclass.IN, dns.rdatatype.NS, zone),
                )
            )
        elif q.rdtype == dns.rdatatype.SOA and at_apex:
            msg.answer.append(soa)
        else:
            msg.authority.append(soa)

        if not at_apex:
            msg.set_rcode(dns.rcode.NXDOMAIN)

        with contextlib.suppress(AlreadyWrittenError):
            chain.writer.write_msg(msg)
        chain.cancel()

    def match(self, name: str, qtype: int) -> str:
        """Return the empty zone that holds name, or "." if there is none."""
        name = _fqdn(name.lower())

        if qtype == dns.rdatatype.DS:
            labels = _labels(name)
            if len(labels) <= 1:
                return ROOT_ZONE
            name = ".".join(labels[1:]) + "."

        for suffix in _suffixes(name):
            if suffix in self.zones:
                return suffix
        return ROOT_ZONE