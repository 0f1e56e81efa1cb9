"""Authoritative server bookkeeping and the nameserver delegation cache."""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sdns.cache import Cache, CacheExpiredError

__all__ = [
    "IPVersion",
    "AuthServer",
    "AuthServers",
    "sort_servers",
    "NS",
    "NSCache",
    "MAXIMUM_TTL",
    "MINIMUM_TTL",
    "DEFAULT_CAPACITY",
]

_SECOND_NS = 1_000_000_000
_MILLISECOND_NS = 1_000_000

MAXIMUM_TTL = timedelta(hours=12)
MINIMUM_TTL = timedelta(hours=1)
DEFAULT_CAPACITY = 1024 * 256


class IPVersion(enum.IntEnum):
    """Address family of an authoritative server."""

    IPv4 = 0x1
    IPv6 = 0x2

    def __str__(self) -> str:
        return self.name


def _format_fraction(value: int, unit: int) -> str:
    whole, rest = divmod(value, unit)
    if not rest:
        return str(whole)
    digits = len(str(unit)) - 1
    return f"{whole}.{str(rest).zfill(digits).rstrip('0')}"


def _format_duration(ns: int) -> str:
    if ns == 0:
        return "0s"
    if ns < _SECOND_NS:
        return _format_fraction(ns, _MILLISECOND_NS) + "ms"
    hours, rest = divmod(ns, 3600 * _SECOND_NS)
    minutes, rest = divmod(rest, 60 * _SECOND_NS)
    seconds = _format_fraction(rest, _SECOND_NS) + "s"
    if hours:
        return f"{hours}h{minutes}m{seconds}"
    if minutes:
        return f"{minutes}m{seconds}"
    return seconds


def _round_to(value: int, multiple: int) -> int:
    remainder = value % multiple
    if remainder + remainder < multiple:
        return value - remainder
    return value + multiple - remainder


class AuthServer:
    """An authoritative server with accumulated round-trip statistics.

    ``rtt`` is the summed round-trip time in nanoseconds and ``count`` the
    number of samples it holds.
    """

    def __init__(self, addr: str, version: IPVersion) -> None:
        self.addr = addr
        self.version = version
        self.rtt = 0
        self.count = 0

    def __str__(self) -> str:
        count = self.count or 1
        rtt = self.rtt
        if rtt >= _SECOND_NS:
            health = "POOR"
        elif rtt > 0:
            health = "GOOD"
        else:
            health = "UNKNOWN"
        average = _round_to(rtt // count, _MILLISECOND_NS)
        return f"{self.version}:{self.addr} rtt:{_format_duration(average)} health:[{health}]"

    def __repr__(self) -> str:
        return f"AuthServer({self.addr!r}, {self.version!r}, rtt={self.rtt}, count={self.count})"


@dataclass
class AuthServers:
    """The set of authoritative servers known for a zone."""

    servers: list[AuthServer] = field(default_factory=list)
    nss: list[str] = field(default_factory=list)
    zone: str = ""
    called: int = 0
    error_count: int = 0
    checking_disable: bool = False
    checked: bool = False
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)


def sort_servers(servers: list[AuthServer], called: int) -> None:
    """Sort servers in place by average round-trip time.

    Every thousandth call clears the statistics so that they start afresh;
    otherwise each server's samples are folded into a single average.
    """
    for server in servers:
        if called % 1000 == 0:
            server.rtt = 0
            server.count = 0
            continue
        if server.count > 0:
            server.rtt //= server.count
            server.count = 1
    servers.sort(key=lambda s: s.rtt)


@dataclass
class NS:
    """A cached delegation."""

    servers: AuthServers
    ds_rr: list[Any] | None
    ttl: timedelta
    updated: datetime


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _round_second(moment: datetime) -> datetime:
    return (moment + timedelta(microseconds=500_000)).replace(microsecond=0)


class NSCache:
    """Cache of delegations keyed by question hash, with clamped TTLs."""

    def __init__(self, now: Callable[[], datetime] | None = None) -> None:
        self._cache = Cache(DEFAULT_CAPACITY)
        self.now = now or _utc_now

    def _utc(self) -> datetime:
        return self.now().astimezone(timezone.utc)

    def get(self, key: int) -> NS:
        """Return the entry for key.

        Raises CacheNotFoundError if absent and CacheExpiredError if stale.
        """
        ns = self._cache.get(key)
        if self._utc() - ns.updated >= ns.ttl:
            raise CacheExpiredError()
        return ns

    def set(
        self,
        key: int,
        ds_rr: list[Any] | None,
        servers: AuthServers,
        ttl: timedelta,
    ) -> None:
        """Store a delegation, clamping ttl between one and twelve hours."""
        ttl = min(max(ttl, MINIMUM_TTL), MAXIMUM_TTL)
        self._cache.add(
            key,
            NS(servers=servers, ds_rr=ds_rr, ttl=ttl, updated=_round_second(self._utc())),
        )

    def remove(self, key: int) -> None:
        """Remove the entry for key if present."""
        self._cache.remove(key)