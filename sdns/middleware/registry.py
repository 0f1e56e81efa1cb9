"""Ordered registry of middleware factories and the handlers built from them."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable

from sdns.middleware.chain import Handler

__all__ = ["Registry"]

log = logging.getLogger(__name__)

Factory = Callable[[Any], Handler]


@dataclass(frozen=True)
class _Entry:
    name: str
    factory: Factory


class Registry:
    """Keeps middleware in the order handlers are called."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._entries: list[_Entry] = []
        self._handlers: list[Handler] = []
        self._ready = False

    def register(self, name: str, factory: Factory) -> None:
        """Append a middleware to the end of the order."""
        with self._lock:
            self.register_at(name, factory, len(self._entries))

    def register_at(self, name: str, factory: Factory, idx: int) -> None:
        """Insert a middleware at idx; raises IndexError if idx is out of range."""
        log.debug("Register middleware name=%s index=%d", name, idx)
        with self._lock:
            if not 0 <= idx <= len(self._entries):
                raise IndexError(f"middleware index {idx} out of range")
            self._entries.insert(idx, _Entry(name, factory))

    def register_before(self, name: str, factory: Factory, before: str) -> None:
        """Insert a middleware just before another; raises LookupError if absent."""
        log.debug("Register middleware name=%s before=%s", name, before)
        with self._lock:
            for idx, entry in enumerate(self._entries):
                if entry.name == before:
                    self._entries.insert(idx, _Entry(name, factory))
                    return
        raise LookupError(f"Middleware {before} not found")

    def setup(self, cfg: Any) -> None:
        """Build every handler from its factory; may be done only once."""
        with self._lock:
            if self._ready:
                raise RuntimeError("middleware setup already done")
            for idx, entry in enumerate(self._entries):
                handler = entry.factory(cfg)
                self._handlers.append(handler)
                log.debug("Middleware registered name=%s index=%d", entry.name, idx)
            self._ready = True

    def handlers(self) -> list[Handler]:
        """Return the built handlers in call order."""
        with self._lock:
            return list(self._handlers)

    def names(self) -> list[str]:
        """Return the registered middleware names in call order."""
        with self._lock:
            return [entry.name for entry in self._entries]

    def get(self, name: str) -> Handler | None:
        """Return the built handler for name, or None."""
        with self._lock:
            if not self._ready:
                return None
            for idx, entry in enumerate(self._entries):
                if entry.name == name:
                    return self._handlers[idx] if idx < len(self._handlers) else None
        return None

    def ready(self) -> bool:
        """Return True once setup has run."""
        with self._lock:
            return self._ready