"""Forwards queries to configured upstream resolvers."""

from __future__ import annotations

import contextlib
import ipaddress
import logging
from typing import Any, Callable, Iterable

import dns.exception
import dns.flags
import dns.message
import dns.query
import dns.rcode
import dns.rdataclass
import dns.rdatatype

from sdns.dnsutil import DEFAULT_MSG_SIZE
from sdns.middleware.chain import AlreadyWrittenError, Chain, Handler

__all__ = ["Forwarder", "EXCHANGE_TIMEOUT"]

log = logging.getLogger(__name__)

EXCHANGE_TIMEOUT = 2.0

Exchange = Callable[[dns.message.Message, str], dns.message.Message]


def _split_host_port(server: str) -> tuple[str, str] | None:
    if server.startswith("["):
        host, sep, rest = server[1:].partition("]")
        if not sep or not rest.startswith(":"):
            return None
        return host, rest[1:]
    host, sep, port = server.rpartition(":")
    if not sep or ":" in host:
        return None
    return host, port


def _valid_server(server: str) -> bool:
    parts = _split_host_port(server)
    if parts is None:
        return False
    try:
        ipaddress.ip_address(parts[0])
    except ValueError:
        return False
    return True


def _udp_exchange(req: dns.message.Message, server: str) -> dns.message.Message:
    parts = _split_host_port(server)
    if parts is None:
        raise ValueError(f"invalid server address: {server}")
    host, port = parts
    return dns.query.udp(req, host, port=int(port), timeout=EXCHANGE_TIMEOUT)


def _format_question(msg: dns.message.Message) -> str:
    q = msg.question[0]
    return (
        f"{q.name.to_text().lower()} "
        f"{dns.rdataclass.to_text(q.rdclass)} {dns.rdatatype.to_text(q.rdtype)}"
    )


class Forwarder(Handler):
    """Answers every query from the first upstream server that replies."""

    name = "forwarder"

    def __init__(
        self,
        servers: Iterable[str] = (),
        exchange: Exchange | None = None,
    ) -> None:
        self.servers: list[str] = []
        for server in servers:
            if _valid_server(server):
                self.servers.append(server)
            else:
                log.error("Forwarder server is not correct. Check your config. server=%s", server)
        self.exchange: Exchange = exchange or _udp_exchange

    def serve_dns(self, ctx: Any, chain: Chain) -> None:
        req = chain.request

        if not req.question or not self.servers:
            chain.cancel_with_rcode(dns.rcode.SERVFAIL, True)
            return

        q = req.question[0]
        forwarded = dns.message.make_query(
            q.name,
            q.rdtype,
            use_edns=0,
            want_dnssec=True,
            payload=DEFAULT_MSG_SIZE,
        )
        forwarded.flags |= dns.flags.RD
        if req.flags & dns.flags.CD:
            forwarded.flags |= dns.flags.CD

        for server in self.servers:
            try:
                resp = self.exchange(forwarded, server)
            except (dns.exception.DNSException, OSError, ValueError) as exc:
                log.warning(
                    "forwarder query failed query=%s error=%s", _format_question(req), exc
                )
                continue
            resp.id = req.id
            with contextlib.suppress(AlreadyWrittenError):
                chain.writer.write_msg(resp)
            return

        chain.cancel_with_rcode(dns.rcode.SERVFAIL, True)