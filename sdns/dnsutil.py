"""Helpers for building, trimming and inspecting DNS messages."""

from __future__ import annotations

import base64
import binascii
import enum
import hashlib
import ipaddress
from dataclasses import dataclass
from datetime import timedelta

import dns.flags
import dns.message
import dns.opcode
import dns.rcode
import dns.rdatatype

__all__ = [
    "ResponseType",
    "EdnsInfo",
    "extract_address_from_reverse",
    "is_reverse",
    "set_rcode",
    "set_edns0",
    "generate_server_cookie",
    "clear_opt",
    "clear_dnssec",
    "parse_purge_question",
    "not_supported",
    "minimal_ttl",
    "IP4_ARPA",
    "IP6_ARPA",
    "DEFAULT_MSG_SIZE",
    "MIN_MSG_SIZE",
    "MINIMAL_DEFAULT_TTL",
    "MAXIMUM_DEFAULT_TTL",
]

IP4_ARPA = ".in-addr.arpa."
IP6_ARPA = ".ip6.arpa."
DEFAULT_MSG_SIZE = 1232
MIN_MSG_SIZE = 512

MINIMAL_DEFAULT_TTL = timedelta(seconds=5)
MAXIMUM_DEFAULT_TTL = timedelta(hours=24)

_OPTION_NSID = 3
_OPTION_COOKIE = 10
_COOKIE_SIZE = 16
_DNSSEC_TYPES = frozenset({dns.rdatatype.RRSIG, dns.rdatatype.NSEC, dns.rdatatype.NSEC3})

_IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


class ResponseType(enum.IntEnum):
    """Classification of a DNS response."""

    NO_ERROR = 0
    NAME_ERROR = 1
    SERVER_ERROR = 2
    NO_DATA = 3
    DELEGATION = 4
    META = 5
    UPDATE = 6
    OTHER_ERROR = 7

    def __str__(self) -> str:
        return {
            ResponseType.NO_ERROR: "NOERROR",
            ResponseType.NAME_ERROR: "NXDOMAIN",
            ResponseType.SERVER_ERROR: "SERVFAIL",
            ResponseType.NO_DATA: "NODATA",
            ResponseType.DELEGATION: "DELEGATION",
            ResponseType.META: "META",
            ResponseType.UPDATE: "UPDATE",
            ResponseType.OTHER_ERROR: "OTHERERROR",
        }[self]


@dataclass(frozen=True)
class EdnsInfo:
    """What a request's EDNS record said before it was normalised."""

    version: int
    size: int
    cookie: str
    nsid: bool
    do: bool


def _parse_ip(text: str) -> _IPAddress | None:
    if "%" in text:
        return None
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def _reverse4(labels: list[str]) -> str:
    ip = _parse_ip(".".join(reversed(labels)))
    if ip is None:
        return ""
    if isinstance(ip, ipaddress.IPv6Address):
        return str(ip.ipv4_mapped) if ip.ipv4_mapped is not None else ""
    return str(ip)


def _reverse6(labels: list[str]) -> str:
    nibbles = list(reversed(labels))
    usable = len(nibbles) // 4 * 4
    groups = ["".join(nibbles[i : i + 4]) for i in range(0, usable, 4)]
    ip = _parse_ip(":".join(groups))
    if ip is None:
        return ""
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return str(ip.ipv4_mapped)
    return ip.compressed


def extract_address_from_reverse(reverse_name: str) -> str:
    """Turn a PTR owner name into the address it names, or "" on failure."""
    if reverse_name.endswith(IP4_ARPA):
        return _reverse4(reverse_name[: -len(IP4_ARPA)].split("."))
    if reverse_name.endswith(IP6_ARPA):
        return _reverse6(reverse_name[: -len(IP6_ARPA)].split("."))
    return ""


def is_reverse(name: str) -> int:
    """Return 1 for an IPv4 reverse name, 2 for IPv6 and 0 otherwise."""
    if name.endswith(IP4_ARPA):
        return 1
    if name.endswith(IP6_ARPA):
        return 2
    return 0


def _reply(req: dns.message.Message) -> dns.message.Message:
    msg = dns.message.Message(id=req.id)
    msg.flags = dns.flags.QR
    msg.set_opcode(req.opcode())
    if req.opcode() == dns.opcode.QUERY:
        msg.flags |= req.flags & (dns.flags.RD | dns.flags.CD)
    if req.question:
        msg.question = [req.question[0]]
    return msg


def _set_do(msg: dns.message.Message, do: bool) -> None:
    if msg.edns < 0:
        return
    if do:
        msg.ednsflags |= int(dns.flags.DO)
    else:
        msg.ednsflags &= ~int(dns.flags.DO)


def set_rcode(req: dns.message.Message, rcode: int, do: bool) -> dns.message.Message:
    """Build a reply to req carrying rcode, with recursion flags set."""
    msg = _reply(req)
    msg.additional = list(req.additional)
    if req.edns >= 0:
        msg.use_edns(req.edns, req.ednsflags, req.payload, options=list(req.options))
    msg.set_rcode(rcode)
    msg.flags |= dns.flags.RA | dns.flags.RD
    _set_do(msg, do)
    return msg


def set_edns0(req: dns.message.Message) -> EdnsInfo:
    """Normalise the request's EDNS record in place and report what it held.

    A request without EDNS gets a record advertising the default size with
    the DO bit; an existing record has its options stripped and its size
    raised to the default. The reported size is the client's, clamped.
    """
    if req.edns < 0:
        req.use_edns(0, int(dns.flags.DO), DEFAULT_MSG_SIZE, options=[])
        return EdnsInfo(version=0, size=DEFAULT_MSG_SIZE, cookie="", nsid=False, do=False)

    size = min(max(req.payload, MIN_MSG_SIZE), DEFAULT_MSG_SIZE)
    cookie = ""
    nsid = False
    for option in req.options:
        code = int(option.otype)
        if code == _OPTION_COOKIE:
            hexed = bytes(option.to_wire()).hex()
            if len(hexed) >= _COOKIE_SIZE:
                cookie = hexed[:_COOKIE_SIZE]
        elif code == _OPTION_NSID:
            nsid = True

    version = req.edns
    if version != 0:
        req.use_edns(version, req.ednsflags, DEFAULT_MSG_SIZE, options=[])
        return EdnsInfo(version=version, size=size, cookie=cookie, nsid=nsid, do=False)

    do = bool(req.ednsflags & dns.flags.DO)
    req.use_edns(0, int(dns.flags.DO), DEFAULT_MSG_SIZE, options=[])
    return EdnsInfo(version=0, size=size, cookie=cookie, nsid=nsid, do=do)


def generate_server_cookie(secret: str, remote_ip: str, cookie: str) -> str:
    """Return the client cookie followed by a keyed server cookie."""
    digest = hashlib.sha256()
    digest.update(remote_ip.encode())
    digest.update(cookie.encode())
    digest.update(secret.encode())
    return cookie + digest.hexdigest()


def clear_opt(msg: dns.message.Message) -> dns.message.Message:
    """Remove any OPT record from msg and return it."""
    msg.use_edns(-1)
    msg.additional = [rr for rr in msg.additional if rr.rdtype != dns.rdatatype.OPT]
    return msg


def clear_dnssec(msg: dns.message.Message) -> dns.message.Message:
    """Strip RRSIG, NSEC and NSEC3 records unless RRSIGs were asked for."""
    if msg.question and msg.question[0].rdtype == dns.rdatatype.RRSIG:
        return msg
    msg.answer = [rr for rr in msg.answer if rr.rdtype not in _DNSSEC_TYPES]
    msg.authority = [rr for rr in msg.authority if rr.rdtype not in _DNSSEC_TYPES]
    return msg


def _type_from_text(text: str) -> int | None:
    try:
        rdtype = dns.rdatatype.from_text(text)
    except (dns.rdatatype.UnknownRdatatype, ValueError):
        return None
    if dns.rdatatype.to_text(rdtype) != text:
        return None
    return int(rdtype)


def parse_purge_question(req: dns.message.Message) -> tuple[str, int] | None:
    """Decode a purge request; return (qname, qtype) or None if it is not one.

    The question name is the base64 encoding of "TYPE:name".
    """
    if not req.question:
        return None
    encoded = req.question[0].name.to_text()
    if encoded.endswith("."):
        encoded = encoded[:-1]
    try:
        decoded = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        return None
    parts = decoded.decode("utf-8", errors="replace").split(":")
    if len(parts) != 2:
        return None
    qtype = _type_from_text(parts[0])
    if qtype is None:
        return None
    return parts[1], qtype


def not_supported(req: dns.message.Message) -> dns.message.Message:
    """Build an empty NOTIMP reply to req."""
    msg = dns.message.Message(id=req.id)
    msg.set_opcode(req.opcode())
    msg.flags |= dns.flags.QR | dns.flags.RD | dns.flags.AD
    msg.set_rcode(dns.rcode.NOTIMP)
    return msg


def minimal_ttl(msg: dns.message.Message | None, mtype: ResponseType) -> timedelta:
    """Return the lowest TTL in msg, bounded by the default limits."""
    if mtype not in (ResponseType.NO_ERROR, ResponseType.NAME_ERROR, ResponseType.NO_DATA):
        return MINIMAL_DEFAULT_TTL
    if msg is None:
        return MINIMAL_DEFAULT_TTL

    records = [
        *msg.answer,
        *msg.authority,
        *(rr for rr in msg.additional if rr.rdtype != dns.rdatatype.OPT),
    ]
    if not records:
        return MINIMAL_DEFAULT_TTL

    lowest = min(timedelta(seconds=rr.ttl) for rr in records)
    return min(lowest, MAXIMUM_DEFAULT_TTL)