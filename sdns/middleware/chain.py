"""Handler chain and response writers for the DNS middleware pipeline."""

from __future__ import annotations

import abc
import contextlib
import ipaddress
from typing import Any, Sequence

import dns.exception
import dns.message
import dns.rcode

from sdns.dnsutil import set_rcode

__all__ = [
    "AlreadyWrittenError",
    "Handler",
    "MemoryWriter",
    "ResponseWriter",
    "Chain",
    "INTERNAL_ADDRESS",
]

INTERNAL_ADDRESS = ipaddress.ip_address("127.0.0.255")


class AlreadyWrittenError(RuntimeError):
    """Raised when a response is written twice to the same writer."""

    def __init__(self, message: str = "dns msg already written") -> None:
        super().__init__(message)


class Handler(abc.ABC):
    """A middleware step; it either answers or passes on with chain.next()."""

    name: str = ""

    @abc.abstractmethod
    def serve_dns(self, ctx: Any, chain: Chain) -> None:
        """Handle the chain's current request."""


def _parse_address(addr: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    if not addr:
        return None
    host, sep, _port = addr.rpartition(":")
    if not sep:
        host = addr
    host = host.strip("[]")
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        return None


def _unpack(data: bytes) -> dns.message.Message:
    if not data:
        raise ValueError("empty DNS message")
    try:
        return dns.message.from_wire(bytes(data))
    except dns.exception.DNSException as exc:
        raise ValueError(f"malformed DNS message: {exc}") from exc


class MemoryWriter:
    """A writer that keeps the last message written to it in memory.

    The writer counts as internal when its remote address is 127.0.0.255.
    """

    def __init__(self, proto: str, addr: str) -> None:
        self.proto = proto
        self.remote_ip = _parse_address(addr)
        self.internal = self.remote_ip == INTERNAL_ADDRESS
        self.msg: dns.message.Message | None = None
        self.written = False
        self.rcode = dns.rcode.SERVFAIL

    def write_msg(self, msg: dns.message.Message) -> None:
        """Record msg as the response."""
        self.msg = msg
        self.rcode = msg.rcode()
        self.written = True

    def write(self, data: bytes) -> int:
        """Record a wire-format response and return its length."""
        self.write_msg(_unpack(data))
        return len(data)


class ResponseWriter:
    """The chain's own writer: forwards one response to the client's writer."""

    def __init__(self, inner: Any = None) -> None:
        self.reset(inner)

    def reset(self, inner: Any) -> None:
        """Point at a new client writer and forget any earlier response."""
        self._inner = inner
        self._msg: dns.message.Message | None = None
        self._written = False
        self._rcode = dns.rcode.SERVFAIL

    @property
    def written(self) -> bool:
        return self._written

    @property
    def msg(self) -> dns.message.Message | None:
        return self._msg

    @property
    def rcode(self) -> int:
        return self._rcode

    @property
    def proto(self) -> str:
        return self._inner.proto

    @property
    def remote_ip(self) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
        return self._inner.remote_ip

    @property
    def internal(self) -> bool:
        return self._inner.internal

    def write_msg(self, msg: dns.message.Message) -> None:
        """Send msg; raises AlreadyWrittenError on a second response."""
        if self._written:
            raise AlreadyWrittenError()
        self._written = True
        self._msg = msg
        self._rcode = msg.rcode()
        self._inner.write_msg(msg)

    def write(self, data: bytes) -> int:
        """Send a wire-format response and return the number of bytes sent."""
        if self._written:
            raise AlreadyWrittenError()
        msg = _unpack(data)
        self._written = True
        self._msg = msg
        self._rcode = msg.rcode()
        return self._inner.write(data)


class Chain:
    """Runs handlers in order for one request at a time."""

    def __init__(self, handlers: Sequence[Handler]) -> None:
        self.handlers = list(handlers)
        self._base = ResponseWriter()
        self.writer: Any = self._base
        self.request: dns.message.Message | None = None
        self._head = 0
        self.count = len(self.handlers)

    def next(self, ctx: Any = None) -> None:
        """Hand the request to the next handler, if any remain."""
        if self.count == 0:
            return
        handler = self.handlers[self._head]
        self._head = (self._head + 1) % len(self.handlers)
        self.count -= 1
        handler.serve_dns(ctx, self)

    def cancel(self) -> None:
        """Stop the chain without answering."""
        self.count = 0

    def cancel_with_rcode(self, rcode: int, do: bool) -> None:
        """Answer with rcode and stop the chain."""
        with contextlib.suppress(AlreadyWrittenError):
            self.writer.write_msg(set_rcode(self.request, rcode, do))
        self.count = 0

    def reset(self, writer: Any, request: dns.message.Message) -> None:
        """Prepare the chain for a new request answered through writer."""
        self._base.reset(writer)
        self.writer = self._base
        self.request = request
        self.count = len(self.handlers)
        self._head = 0