"""Answers A, AAAA and PTR queries from a hosts file."""

from __future__ import annotations

import contextlib
import ipaddress
import logging
import os
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Iterable

import dns.flags
import dns.message
import dns.opcode
import dns.rdatatype
import dns.rrset

from sdns.dnsutil import extract_address_from_reverse
from sdns.middleware.chain import AlreadyWrittenError, Chain, Handler

__all__ = ["HostsMap", "parse_hosts", "Hostsfile"]

log = logging.getLogger(__name__)

_TTL = 3600
_RELOAD_INTERVAL = 5.0

_IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


def _parse_literal_ip(addr: str) -> _IPAddress | None:
    addr = addr.partition("%")[0]
    try:
        return ipaddress.ip_address(addr)
    except ValueError:
        return None


def _addr_text(ip: _IPAddress) -> str:
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return str(ip.ipv4_mapped)
    return str(ip)


def _abs_domain_name(name: str) -> str:
    name = name if name.endswith(".") else name + "."
    return name.lower()


def _ip_version(text: str) -> int:
    for char in text:
        if char == ".":
            return 4
        if char == ":":
            return 6
    return 0


@dataclass
class HostsMap:
    """Forward and reverse tables built from a hosts file."""

    by_name_v4: dict[str, list[_IPAddress]] = field(default_factory=dict)
    by_name_v6: dict[str, list[_IPAddress]] = field(default_factory=dict)
    by_addr: dict[str, list[str]] = field(default_factory=dict)

    def __len__(self) -> int:
        """Total number of forward and reverse entries."""
        return (
            sum(map(len, self.by_name_v4.values()))
            + sum(map(len, self.by_name_v6.values()))
            + sum(map(len, self.by_addr.values()))
        )


def parse_hosts(text: str, override: HostsMap | None = None) -> HostsMap:
    """Parse hosts-file text; entries from override are appended after it."""
    hmap = HostsMap()
    for line in text.splitlines():
        fields = line.partition("#")[0].split()
        if len(fields) < 2:
            continue
        addr = _parse_literal_ip(fields[0])
        if addr is None:
            continue
        version = _ip_version(fields[0])
        if version == 4:
            table = hmap.by_name_v4
        elif version == 6:
            table = hmap.by_name_v6
        else:
            continue
        key = _addr_text(addr)
        for host in fields[1:]:
            name = _abs_domain_name(host)
            table.setdefault(name, []).append(addr)
            hmap.by_addr.setdefault(key, []).append(name)

    if override is not None:
        for source, target in (
            (override.by_name_v4, hmap.by_name_v4),
            (override.by_name_v6, hmap.by_name_v6),
            (override.by_addr, hmap.by_addr),
        ):
            for key, values in source.items():
                target.setdefault(key, []).extend(values)
    return hmap


def _reply(req: dns.message.Message) -> dns.message.Message:
    msg = dns.message.Message(id=req.id)
    msg.flags = dns.flags.QR
    msg.set_opcode(req.opcode())
    if req.opcode() == dns.opcode.QUERY:
        msg.flags |= req.flags & (dns.flags.RD | dns.flags.CD)
    if req.question:
        msg.question = [req.question[0]]
    return msg


class Hostsfile(Handler):
    """Serves static entries from a hosts file, re-reading it when it changes."""

    name = "hostsfile"

    def __init__(self, path: str) -> None:
        self.path = path
        self.hmap = HostsMap()
        self._inline: HostsMap | None = None
        self._lock = threading.RLock()
        self._mtime: int | None = None
        self._size: int | None = None
        self._stop = threading.Event()

        self.reload()

        if path:
            threading.Thread(
                target=self._watch, name="hostsfile-watch", daemon=True
            ).start()

    def _watch(self) -> None:
        while not self._stop.wait(_RELOAD_INTERVAL):
            self.reload()

    def reload(self) -> None:
        """Re-read the file if its size or modification time changed."""
        try:
            with open(self.path, encoding="utf-8", errors="replace") as handle:
                stat = os.fstat(handle.fileno())
                if stat.st_mtime_ns == self._mtime and stat.st_size == self._size:
                    return
                text = handle.read()
        except OSError:
            return

        new_map = parse_hosts(text, self._inline)
        log.debug("Parsed hosts file into entries=%d", len(new_map))

        with self._lock:
            self.hmap = new_map
            self._mtime = stat.st_mtime_ns
            self._size = stat.st_size

    def init_inline(self, lines: Iterable[str]) -> None:
        """Set entries that are merged into every later parse."""
        lines = list(lines)
        if not lines:
            return
        self._inline = parse_hosts("\n".join(lines), HostsMap())
        with self._lock:
            self.hmap = replace(self._inline)

    def parse_text(self, text: str) -> None:
        """Replace the tables with those parsed from text."""
        new_map = parse_hosts(text, self._inline)
        with self._lock:
            self.hmap = new_map

    def lookup_v4(self, host: str) -> list[_IPAddress]:
        """Return the IPv4 addresses listed for host."""
        with self._lock:
            return list(self.hmap.by_name_v4.get(_abs_domain_name(host), ()))

    def lookup_v6(self, host: str) -> list[_IPAddress]:
        """Return the IPv6 addresses listed for host."""
        with self._lock:
            return list(self.hmap.by_name_v6.get(_abs_domain_name(host), ()))

    def lookup_addr(self, addr: str) -> list[str]:
        """Return the host names listed for an address."""
        ip = _parse_literal_ip(addr)
        if ip is None:
            return []
        with self._lock:
            return list(self.hmap.by_addr.get(_addr_text(ip), ()))

    def _other_records_exist(self, qtype: int, qname: str) -> bool:
        if qtype == dns.rdatatype.A:
            return bool(self.lookup_v6(qname))
        if qtype == dns.rdatatype.AAAA:
            return bool(self.lookup_v4(qname))
        return bool(self.lookup_v4(qname)) or bool(self.lookup_v6(qname))

    def serve_dns(self, ctx: Any, chain: Chain) -> None:
        req = chain.request
        q = req.question[0]
        qname = q.name.to_text()

        answers: list[dns.rrset.RRset] = []
        if q.rdtype == dns.rdatatype.PTR:
            names = self.lookup_addr(extract_address_from_reverse(qname))
            if not names:
                chain.next(ctx)
                return
            answers.append(dns.rrset.from_text_list(q.name, _TTL, "IN", "PTR", names))
        elif q.rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA):
            if q.rdtype == dns.rdatatype.A:
                ips, rdtype = self.lookup_v4(qname), "A"
            else:
                ips, rdtype = self.lookup_v6(qname), "AAAA"
            if ips:
                answers.append(
                    dns.rrset.from_text_list(q.name, _TTL, "IN", rdtype, [str(ip) for ip in ips])
                )

        if not answers and not self._other_records_exist(q.rdtype, qname):
            chain.next(ctx)
            return

        msg = _reply(req)
        msg.flags |= dns.flags.AA | dns.flags.RA
        msg.answer = answers

        with contextlib.suppress(AlreadyWrittenError):
            chain.writer.write_msg(msg)
        chain.cancel()