"""Drops queries from clients outside the configured networks."""

from __future__ import annotations

import ipaddress
import logging
from typing import Any, Iterable

from sdns.middleware.chain import Chain, Handler

__all__ = ["AccessList", "DEFAULT_NETWORKS"]

log = logging.getLogger(__name__)

DEFAULT_NETWORKS = ("0.0.0.0/0", "::0/0")

_IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


class AccessList(Handler):
    """Allows only clients inside the given CIDR ranges; others get no reply."""

    name = "accesslist"

    def __init__(self, cidrs: Iterable[str] | None = None) -> None:
        cidrs = list(cidrs or ()) or list(DEFAULT_NETWORKS)
        self.networks: list[ipaddress.IPv4Network | ipaddress.IPv6Network] = []
        for cidr in cidrs:
            if "/" not in cidr:
                log.error("Access list parse cidr failed error=invalid CIDR address: %s", cidr)
                continue
            try:
                self.networks.append(ipaddress.ip_network(cidr, strict=False))
            except ValueError as exc:
                log.error("Access list parse cidr failed error=%s", exc)

    def allows(self, ip: _IPAddress | str | None) -> bool:
        """Return True if ip lies in one of the allowed networks."""
        if ip is None:
            return False
        if isinstance(ip, str):
            try:
                ip = ipaddress.ip_address(ip)
            except ValueError:
                return False
        candidates = [ip]
        if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
            candidates.append(ip.ipv4_mapped)
        return any(
            addr in network
            for network in self.networks
            for addr in candidates
            if addr.version == network.version
        )

    def serve_dns(self, ctx: Any, chain: Chain) -> None:
        writer = chain.writer
        if writer.internal:
            chain.next(ctx)
            return
        if not self.allows(writer.remote_ip):
            chain.cancel()
            return
        chain.next(ctx)