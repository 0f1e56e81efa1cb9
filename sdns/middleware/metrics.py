"""Counts answered queries by question type and response code."""

from __future__ import annotations

import threading
from collections import Counter
from typing import Any

import dns.rcode
import dns.rdatatype

from sdns.middleware.chain import Chain, Handler

__all__ = ["Metrics", "METRIC_NAME"]

METRIC_NAME = "dns_queries_total"


def _type_text(qtype: int | str) -> str:
    return qtype if isinstance(qtype, str) else dns.rdatatype.to_text(qtype)


def _rcode_text(rcode: int | str) -> str:
    return rcode if isinstance(rcode, str) else dns.rcode.to_text(rcode)


class Metrics(Handler):
    """Counts every written response, labelled by qtype and rcode."""

    name = "metrics"

    def __init__(self) -> None:
        self._counts: Counter[tuple[str, str]] = Counter()
        self._lock = threading.Lock()

    def count(self, qtype: int | str, rcode: int | str) -> int:
        """Return how many responses were counted for qtype and rcode."""
        with self._lock:
            return self._counts[(_type_text(qtype), _rcode_text(rcode))]

    def render(self) -> str:
        """Return the counters in the Prometheus text exposition format."""
        lines = [
            f"# HELP {METRIC_NAME} How many DNS queries processed",
            f"# TYPE {METRIC_NAME} counter",
        ]
        with self._lock:
            for (qtype, rcode), value in sorted(self._counts.items()):
                lines.append(f'{METRIC_NAME}{{qtype="{qtype}",rcode="{rcode}"}} {value}')
        return "\n".join(lines) + "\n"

    def serve_dns(self, ctx: Any, chain: Chain) -> None:
        chain.next(ctx)

        writer = chain.writer
        if not writer.written:
            return

        key = (
            _type_text(chain.request.question[0].rdtype),
            _rcode_text(writer.rcode),
        )
        with self._lock:
            self._counts[key] += 1