"""Block list that answers blocked names with null-route addresses."""

from __future__ import annotations

import collections
import contextlib
import ipaddress
import logging
import os
import shutil
import threading
import urllib.error
import urllib.request
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Iterable, Iterator
from urllib.parse import urlparse

import dns.flags
import dns.message
import dns.opcode
import dns.rdatatype
import dns.rrset

from sdns.middleware.chain import AlreadyWrittenError, Chain, Handler

__all__ = ["BlockList"]

log = logging.getLogger(__name__)

_TTL = 3600
_DOWNLOAD_TIMEOUT = 30.0

_IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


def _fqdn(name: str) -> str:
    return name if name.endswith(".") else name + "."


def _parse_ip(text: str) -> _IPAddress | None:
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


def _as_v4(ip: _IPAddress | None) -> ipaddress.IPv4Address | None:
    if isinstance(ip, ipaddress.IPv4Address):
        return ip
    if isinstance(ip, ipaddress.IPv6Address):
        return ip.ipv4_mapped
    return None


def _as_v6(ip: _IPAddress | None) -> ipaddress.IPv6Address | None:
    if isinstance(ip, ipaddress.IPv6Address):
        return ip
    if isinstance(ip, ipaddress.IPv4Address):
        return ipaddress.IPv6Address(f"::ffff:{ip}")
    return None


def _reply(req: dns.message.Message) -> dns.message.Message:
    msg = dns.message.Message(id=req.id)
    msg.flags = dns.flags.QR
    msg.set_opcode(req.opcode())
    if req.opcode() == dns.opcode.QUERY:
        msg.flags |= req.flags & (dns.flags.RD | dns.flags.CD)
    if req.question:
        msg.question = [req.question[0]]
    return msg


def _files(root: Path) -> Iterator[Path]:
    if root.is_file():
        yield root
        return
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for filename in sorted(filenames):
            yield Path(dirpath) / filename


class BlockList(Handler):
    """Holds blocked domain names; blocked queries get null-route answers."""

    name = "blocklist"

    def __init__(self, nullroute: str = "0.0.0.0", nullroute_v6: str = "::0") -> None:
        self.nullroute = _as_v4(_parse_ip(nullroute))
        self.nullroute_v6 = _as_v6(_parse_ip(nullroute_v6))
        self._lock = threading.RLock()
        self._blocked: dict[str, bool] = {}
        self._whitelist: set[str] = set()
        self._times_seen: collections.Counter[str] = collections.Counter()

    def serve_dns(self, ctx: Any, chain: Chain) -> None:
        req = chain.request
        q = req.question[0]

        if not self.exists(q.name.to_text()):
            chain.next(ctx)
            return

        msg = _reply(req)
        msg.flags |= dns.flags.AA | dns.flags.RA

        if q.rdtype == dns.rdatatype.A and self.nullroute is not None:
            msg.answer.append(
                dns.rrset.from_text_list(q.name, _TTL, "IN", "A", [str(self.nullroute)])
            )
        elif q.rdtype == dns.rdatatype.AAAA and self.nullroute_v6 is not None:
            msg.answer.append(
                dns.rrset.from_text_list(q.name, _TTL, "IN", "AAAA", [str(self.nullroute_v6)])
            )

        with contextlib.suppress(AlreadyWrittenError):
            chain.writer.write_msg(msg)
        chain.cancel()

    def get(self, key: str) -> bool:
        """Return the entry for key; raises LookupError if it is not blocked."""
        with self._lock:
            try:
                return self._blocked[key.lower()]
            except KeyError:
                raise LookupError("block not found") from None

    def remove(self, key: str) -> None:
        """Unblock key."""
        with self._lock:
            self._blocked.pop(key.lower(), None)

    def set(self, key: str) -> None:
        """Block key."""
        with self._lock:
            self._blocked[key.lower()] = True

    def exists(self, key: str) -> bool:
        """Return True if key is blocked; names compare case-insensitively."""
        with self._lock:
            return key.lower() in self._blocked

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.exists(key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._blocked)

    def update(
        self,
        directory: str | os.PathLike[str],
        sources: Iterable[str] = (),
        whitelist: Iterable[str] = (),
        blocked: Iterable[str] = (),
    ) -> None:
        """Record the whitelist, block the listed names and download sources.

        Each source is saved into directory as ``<host>.<n>.tmp``. The
        directory is created if missing; failure to create it raises
        OSError. Download failures are logged and do not stop the others.
        """
        root = Path(directory or ".")
        if not root.exists():
            try:
                root.mkdir(mode=0o750)
            except OSError as exc:
                raise OSError(f"error creating sources directory: {exc}") from exc

        for entry in whitelist:
            self._whitelist.add(_fqdn(entry))
        for entry in blocked:
            self.set(_fqdn(entry))

        jobs = []
        for uri in sources:
            host = urlparse(uri).netloc.rpartition("@")[2]
            self._times_seen[host] += 1
            jobs.append((uri, f"{host}.{self._times_seen[host]}.tmp"))

        if not jobs:
            return

        with ThreadPoolExecutor(max_workers=len(jobs)) as pool:
            list(pool.map(lambda job: self._fetch(root, *job), jobs))

    def _fetch(self, root: Path, uri: str, filename: str) -> None:
        log.info("Fetching blacklist uri=%s", uri)
        try:
            self._download(root / filename, uri)
        except (OSError, ValueError) as exc:
            log.error("Fetching blacklist uri=%s error=%s", uri, exc)

    @staticmethod
    def _download(target: Path, uri: str) -> None:
        with target.open("wb") as output:
            with urllib.request.urlopen(uri, timeout=_DOWNLOAD_TIMEOUT) as response:
                shutil.copyfileobj(response, output)

    def read_directory(self, directory: str | os.PathLike[str]) -> None:
        """Load every hosts file under directory, deleting downloaded ``.tmp`` files."""
        root = Path(directory or ".")
        log.info("Loading blocked domains path=%s", root)

        if not root.exists():
            log.warning("Path not found, skipping... path=%s", root)
            return

        for path in _files(root):
            with path.open(encoding="utf-8", errors="replace") as handle:
                self.parse_hosts(handle)
            if path.suffix == ".tmp":
                path.unlink(missing_ok=True)

        log.info("Blocked domains loaded total=%d", len(self))

    def parse_hosts(self, lines: Iterable[str]) -> int:
        """Block the names in hosts-file lines; return how many were added.

        A line holds either a bare name or an address followed by a name;
        comment lines and whitelisted names are skipped.
        """
        added = 0
        for raw in lines:
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            fields = line.split()
            if len(fields) > 1 and not fields[1].startswith("#"):
                entry = fields[1]
            else:
                entry = fields[0]
            entry = _fqdn(entry)
            if not self.exists(entry) and entry not in self._whitelist:
                self.set(entry)
                added += 1
        return added