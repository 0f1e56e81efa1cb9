"""Writes one line per answered query to an access log file."""

from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import IO, Any

import dns.flags
import dns.message
import dns.rcode
import dns.rdataclass
import dns.rdatatype

from sdns.middleware.chain import Chain, Handler

__all__ = ["AccessLog"]

log = logging.getLogger(__name__)

_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def _timestamp(moment: datetime) -> str:
    month = _MONTHS[moment.month - 1]
    return f"{moment:%d}/{month}/{moment:%Y:%H:%M:%S %z}"


def _format_question(msg: dns.message.Message) -> str:
    q = msg.question[0]
    return (
        f'"{q.name.to_text().lower()} '
        f"{dns.rdataclass.to_text(q.rdclass)} {dns.rdatatype.to_text(q.rdtype)}\""
    )


class AccessLog(Handler):
    """Logs client queries in a common-log-like format after they are answered."""

    name = "accesslog"

    def __init__(self, path: str = "") -> None:
        self.path = path
        self._file: IO[str] | None = None
        if path:
            try:
                fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
                self._file = os.fdopen(fd, "a", encoding="utf-8")
            except OSError as exc:
                log.error("Access log file open failed error=%s", str(exc).strip())

    @property
    def enabled(self) -> bool:
        return self._file is not None

    def close(self) -> None:
        """Close the log file."""
        if self._file is not None:
            self._file.close()

    def __enter__(self) -> AccessLog:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def serve_dns(self, ctx: Any, chain: Chain) -> None:
        chain.next(ctx)

        writer = chain.writer
        if self._file is None or not writer.written or writer.internal:
            return

        resp = writer.msg
        remote = writer.remote_ip
        record = [
            f"{remote if remote is not None else '<nil>'} -",
            f"[{_timestamp(datetime.now().astimezone())}]",
            _format_question(resp),
            writer.proto,
            "+cd" if resp.flags & dns.flags.CD else "-cd",
            dns.rcode.to_text(resp.rcode()),
            str(len(resp.to_wire())),
        ]
        try:
            self._file.write(" ".join(record) + "\n")
            self._file.flush()
        except (OSError, ValueError) as exc:
            log.error("Access log write failed error=%s", str(exc).strip())