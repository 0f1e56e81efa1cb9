"""Per-client query rate limiting with DNS cookie support."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

import dns.edns
import dns.rcode

from sdns.cache import Cache, CacheNotFoundError, xxhash64
from sdns.dnsutil import generate_server_cookie
from sdns.middleware.chain import Chain, Handler

__all__ = ["TokenBucket", "RateLimit", "CACHE_SIZE", "COOKIE_SIZE"]

CACHE_SIZE = 256 * 100
COOKIE_SIZE = 16


class TokenBucket:
    """A token bucket that starts full and gains one token per interval.

    With no interval the bucket never refills.
    """

    def __init__(
        self,
        interval: float | None,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.interval = interval
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def allow(self) -> bool:
        """Take a token if one is available."""
        with self._lock:
            now = self._clock()
            if self.interval and self.interval > 0:
                elapsed = max(now - self._last, 0.0)
                self._tokens = min(float(self.burst), self._tokens + elapsed / self.interval)
            self._last = now
            if self._tokens >= 1:
                self._tokens -= 1
                return True
            return False


@dataclass
class _Limiter:
    bucket: TokenBucket
    cookie: str = ""


def _option_hex(option: dns.edns.Option) -> str:
    return bytes(option.to_wire()).hex()


class RateLimit(Handler):
    """Limits each client to ``rate`` queries a minute.

    Clients that present a valid server cookie are not limited.
    """

    name = "ratelimit"

    def __init__(self, cookie_secret: str, rate: int) -> None:
        self.cookie_secret = cookie_secret
        self.rate = rate
        self._cache = Cache(CACHE_SIZE)
        self._lock = threading.Lock()

    def _limiter(self, remote_ip: Any) -> _Limiter:
        key = xxhash64(remote_ip.packed)
        with self._lock:
            try:
                return self._cache.get(key)
            except CacheNotFoundError:
                pass
            interval = 60.0 / self.rate if self.rate > 0 else None
            limiter = _Limiter(TokenBucket(interval, self.rate))
            self._cache.add(key, limiter)
            return limiter

    def serve_dns(self, ctx: Any, chain: Chain) -> None:
        writer, req = chain.writer, chain.request

        if writer.internal or self.rate == 0:
            chain.next(ctx)
            return

        remote = writer.remote_ip
        if remote is None or remote.is_loopback:
            chain.next(ctx)
            return

        limiter = self._limiter(remote)
        cached = limiter.cookie
        server_cookie = ""

        if req.edns >= 0:
            for option in req.options:
                if option.otype != dns.edns.OptionType.COOKIE:
                    continue
                text = _option_hex(option)
                if len(text) < COOKIE_SIZE:
                    continue
                client_cookie = text[:COOKIE_SIZE]
                server_cookie = generate_server_cookie(self.cookie_secret, str(remote), client_cookie)

                if not cached or cached == text:
                    chain.next(ctx)
                    limiter.cookie = server_cookie
                    return

                if writer.proto == "udp":
                    if not limiter.bucket.allow():
                        chain.cancel()
                        return
                    limiter.cookie = server_cookie
                    replaced = [
                        dns.edns.GenericOption(dns.edns.OptionType.COOKIE, bytes.fromhex(server_cookie))
                        if o is option
                        else o
                        for o in req.options
                    ]
                    req.use_edns(req.edns, req.ednsflags, req.payload, options=replaced)
                    chain.cancel_with_rcode(dns.rcode.BADCOOKIE, False)
                    return

        if not limiter.bucket.allow():
            chain.cancel()
            return

        chain.next(ctx)

        if server_cookie:
            limiter.cookie = server_cookie