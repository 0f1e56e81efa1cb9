"""Retries SERVFAIL answers against fallback servers."""

from __future__ import annotations

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
from sdns.middleware.chain import Chain, Handler

__all__ = ["Failover", "EXCHANGE_TIMEOUT"]

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


class _FailoverWriter:
    """Intercepts SERVFAIL responses and asks the fallback servers instead."""

    def __init__(self, inner: Any, failover: Failover) -> None:
        self._inner = inner
        self._failover = failover

    def __getattr__(self, name: str) -> Any:
        return getattr(self._inner, name)

    def write_msg(self, msg: dns.message.Message) -> None:
        servers = self._failover.servers
        if not msg.question or not servers:
            self._inner.write_msg(msg)
            return
        if msg.rcode() != dns.rcode.SERVFAIL or not msg.flags & dns.flags.RD:
            self._inner.write_msg(msg)
            return

        q = msg.question[0]
        req = dns.message.make_query(
            q.name,
            q.rdtype,
            use_edns=0,
            want_dnssec=True,
            payload=DEFAULT_MSG_SIZE,
        )
        req.flags |= dns.flags.RD
        if msg.flags & dns.flags.CD:
            req.flags |= dns.flags.CD

        for server in servers:
            try:
                resp = self._failover.exchange(req, server)
            except (dns.exception.DNSException, OSError, ValueError) as exc:
                log.warning(
                    "Failover query failed query=%s error=%s", _format_question(req), exc
                )
                continue
            resp.id = msg.id
            self._inner.write_msg(resp)
            return

        self._inner.write_msg(msg)

    def write(self, data: bytes) -> int:
        return self._inner.write(data)


class Failover(Handler):
    """Sends queries that failed with SERVFAIL to fallback servers."""

    name = "failover"

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
                log.error("Fallback server is not correct. Check your config. server=%s", server)
        self.exchange: Exchange = exchange or _udp_exchange

    def serve_dns(self, ctx: Any, chain: Chain) -> None:
        writer = chain.writer
        chain.writer = _FailoverWriter(writer, self)
        try:
            chain.next(ctx)
        finally:
            chain.writer = writer