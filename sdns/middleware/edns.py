"""Normalises EDNS on requests and shapes responses to the client's limits."""

from __future__ import annotations

import contextlib
from typing import Any

import dns.edns
import dns.flags
import dns.message
import dns.opcode
import dns.rcode

from sdns.dnsutil import (
    DEFAULT_MSG_SIZE,
    EdnsInfo,
    clear_dnssec,
    clear_opt,
    generate_server_cookie,
    not_supported,
    set_edns0,
)
from sdns.middleware.chain import AlreadyWrittenError, Chain, Handler

__all__ = ["EDNS", "MAX_MSG_SIZE"]

MAX_MSG_SIZE = 65535


class _EdnsWriter:
    """Wraps the chain's writer and rewrites each response's EDNS record."""

    def __init__(
        self,
        inner: Any,
        edns: EDNS,
        info: EdnsInfo,
        size: int,
        noedns: bool,
        noad: bool,
    ) -> None:
        self._inner = inner
        self._edns = edns
        self._info = info
        self._size = size
        self._noedns = noedns
        self._noad = noad

    def __getattr__(self, name: str) -> Any:
        return getattr(self._inner, name)

    def _options(self) -> list[dns.edns.Option]:
        options: list[dns.edns.Option] = []
        if self._info.cookie:
            remote = self._inner.remote_ip
            server = generate_server_cookie(
                self._edns.cookie_secret,
                str(remote) if remote is not None else "",
                self._info.cookie,
            )
            options.append(dns.edns.GenericOption(dns.edns.OptionType.COOKIE, bytes.fromhex(server)))
        if self._edns.nsid and self._info.nsid:
            options.append(
                dns.edns.GenericOption(dns.edns.OptionType.NSID, self._edns.nsid.encode("utf-8"))
            )
        return options

    def write_msg(self, msg: dns.message.Message) -> None:
        if not self._info.do:
            clear_dnssec(msg)
        rcode = msg.rcode()
        clear_opt(msg)

        if not self._noedns:
            flags = int(dns.flags.DO) if self._info.do else 0
            msg.use_edns(0, flags, DEFAULT_MSG_SIZE, options=self._options())
        msg.set_rcode(rcode)

        if self._noad:
            msg.flags = int(msg.flags) & ~int(dns.flags.AD)

        if self._inner.proto == "udp" and len(msg.to_wire()) > self._size:
            msg.flags = (int(msg.flags) | int(dns.flags.TC)) & ~int(dns.flags.AD)
            msg.answer = []
            msg.authority = []

        self._inner.write_msg(msg)

    def write(self, data: bytes) -> int:
        return self._inner.write(data)


class EDNS(Handler):
    """Rejects unsupported opcodes and EDNS versions, and adds cookies and NSID."""

    name = "edns"

    def __init__(self, cookie_secret: str, nsid: str) -> None:
        self.cookie_secret = cookie_secret
        self.nsid = nsid

    def serve_dns(self, ctx: Any, chain: Chain) -> None:
        writer, req = chain.writer, chain.request

        if req.opcode() != dns.opcode.QUERY:
            with contextlib.suppress(AlreadyWrittenError):
                writer.write_msg(not_supported(req))
            chain.cancel()
            return

        noedns = req.edns < 0
        info = set_edns0(req)
        if info.version != 0:
            req.use_edns(0, req.ednsflags, req.payload, options=list(req.options))
            chain.cancel_with_rcode(dns.rcode.BADVERS, info.do)
            return

        size = MAX_MSG_SIZE if writer.proto == "tcp" else info.size

        chain.writer = _EdnsWriter(
            writer,
            self,
            info,
            size,
            noedns=noedns,
            noad=not req.flags & dns.flags.AD,
        )
        try:
            chain.next(ctx)
        finally:
            chain.writer = writer