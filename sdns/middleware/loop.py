"""Detects queries that recurse back into the resolver too many times."""

from __future__ import annotations

import logging
from typing import Any

import dns.rcode
import dns.rdatatype

from sdns.middleware.chain import Chain, Handler

__all__ = ["Loop", "MAX_REPEATS"]

log = logging.getLogger(__name__)

MAX_REPEATS = 10


class Loop(Handler):
    """Answers SERVFAIL once the same question has been seen too often.

    The context is a mapping; each call passes a new mapping down the
    chain holding the questions seen so far.
    """

    name = "loop"

    def serve_dns(self, ctx: Any, chain: Chain) -> None:
        q = chain.request.question[0]
        qkey = f"{q.name.to_text()}:{dns.rdatatype.to_text(q.rdtype)}"
        key = f"loopcheck:{qkey}"

        values = dict(ctx or {})
        seen = list(values.get(key, ()))

        if seen.count(qkey) > MAX_REPEATS:
            log.warning("Loop detected query=%s", qkey)
            chain.cancel_with_rcode(dns.rcode.SERVFAIL, False)

        values[key] = [*seen, qkey]
        chain.next(values)