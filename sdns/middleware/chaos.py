"""Answers CHAOS-class TXT queries for the server version and host name."""

from __future__ import annotations

import contextlib
import socket
from typing import Any

import dns.flags
import dns.message
import dns.opcode
import dns.rdataclass
import dns.rdatatype
import dns.rdtypes.ANY.TXT
import dns.rrset

from sdns.middleware.chain import AlreadyWrittenError, Chain, Handler

__all__ = ["Chaos"]

_VERSION_NAMES = frozenset({"version.bind.", "version.server."})
_HOSTNAME_NAMES = frozenset({"hostname.bind.", "id.server."})
_MAX_TXT = 255


def _limit_txt_length(text: str) -> str:
    if len(text) <= _MAX_TXT:
        return text
    return text[:_MAX_TXT]


def _hostname() -> str:
    try:
        return socket.gethostname()
    except OSError:
        return "unknown"


def _reply(req: dns.message.Message) -> dns.message.Message:
    msg = dns.message.Message(id=req.id)
    msg.flags = dns.flags.QR
    msg.set_opcode(req.opcode())
    if req.opcode() == dns.opcode.QUERY:
        msg.flags |= req.flags & (dns.flags.RD | dns.flags.CD)
    if req.question:
        msg.question = [req.question[0]]
    return msg


class Chaos(Handler):
    """Replies to version.bind, version.server, hostname.bind and id.server."""

    name = "chaos"

    def __init__(self, version: str, enabled: bool) -> None:
        self.version = f"SDNS v{version}"
        self.enabled = enabled

    def serve_dns(self, ctx: Any, chain: Chain) -> None:
        req = chain.request
        q = req.question[0]

        if q.rdclass != dns.rdataclass.CH or q.rdtype != dns.rdatatype.TXT or not self.enabled:
            chain.next(ctx)
            return

        qname = q.name.to_text()
        if qname in _VERSION_NAMES:
            text = self.version
        elif qname in _HOSTNAME_NAMES:
            text = _limit_txt_length(_hostname())
        else:
            chain.next(ctx)
            return

        txt = dns.rdtypes.ANY.TXT.TXT(q.rdclass, dns.rdatatype.TXT, [text.encode("utf-8")[:_MAX_TXT]])
        resp = _reply(req)
        resp.answer = [dns.rrset.from_rdata(q.name, 0, txt)]

        with contextlib.suppress(AlreadyWrittenError):
            chain.writer.write_msg(resp)
        chain.cancel()