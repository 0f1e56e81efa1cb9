"""Sharded in-memory cache with random eviction and question hashing."""

from __future__ import annotations

import struct
import threading
from typing import Any

__all__ = [
    "CacheNotFoundError",
    "CacheExpiredError",
    "Shard",
    "Cache",
    "xxhash64",
    "hash_question",
    "SHARD_COUNT",
]

SHARD_COUNT = 256
_MIN_SHARD_SIZE = 4


class CacheNotFoundError(LookupError):
    """Raised when a key is not present in a cache."""

    def __init__(self, message: str = "cache not found") -> None:
        super().__init__(message)


class CacheExpiredError(LookupError):
    """Raised when a cached entry has outlived its TTL."""

    def __init__(self, message: str = "cache expired") -> None:
        super().__init__(message)


class Shard:
    """A bounded map that evicts an arbitrary element when full."""

    def __init__(self, size: int) -> None:
        self.size = size
        self._items: dict[int, Any] = {}
        self._lock = threading.Lock()

    def add(self, key: int, value: Any) -> None:
        """Store value under key, evicting one element if the shard is full."""
        if len(self) + 1 > self.size:
            self.evict()
        with self._lock:
            self._items[key] = value

    def remove(self, key: int) -> None:
        """Remove key if present."""
        with self._lock:
            self._items.pop(key, None)

    def evict(self) -> None:
        """Drop one element; does nothing on an empty shard."""
        with self._lock:
            try:
                key = next(iter(self._items))
            except StopIteration:
                return
            del self._items[key]

    def get(self, key: int) -> Any:
        """Return the value for key or raise CacheNotFoundError."""
        with self._lock:
            try:
                return self._items[key]
            except KeyError:
                raise CacheNotFoundError() from None

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class Cache:
    """A cache split into shards chosen by the low bits of the key."""

    def __init__(self, size: int) -> None:
        shard_size = max(size // SHARD_COUNT, _MIN_SHARD_SIZE)
        self._shards = [Shard(shard_size) for _ in range(SHARD_COUNT)]

    def _shard(self, key: int) -> Shard:
        return self._shards[key & (SHARD_COUNT - 1)]

    def get(self, key: int) -> Any:
        """Return the value for key or raise CacheNotFoundError."""
        return self._shard(key).get(key)

    def add(self, key: int, value: Any) -> None:
        """Store value under key, overwriting any existing value."""
        self._shard(key).add(key, value)

    def remove(self, key: int) -> None:
        """Remove key if present."""
        self._shard(key).remove(key)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, int):
            return False
        return key in self._shard(key)

    def __len__(self) -> int:
        return sum(len(shard) for shard in self._shards)


_MASK = (1 << 64) - 1
_P1 = 0x9E3779B185EBCA87
_P2 = 0xC2B2AE3D27D4EB4F
_P3 = 0x165667B19E3779F9
_P4 = 0x85EBCA77C2B2AE63
_P5 = 0x27D4EB2F165667C5


def _rotl(value: int, bits: int) -> int:
    return ((value << bits) | (value >> (64 - bits))) & _MASK


def _round(acc: int, lane: int) -> int:
    acc = (acc + lane * _P2) & _MASK
    acc = _rotl(acc, 31)
    return (acc * _P1) & _MASK


def _merge_round(acc: int, value: int) -> int:
    acc ^= _round(0, value)
    return (acc * _P1 + _P4) & _MASK


def xxhash64(data: bytes, seed: int = 0) -> int:
    """Return the 64-bit XXH64 digest of data."""
    data = bytes(data)
    length = len(data)
    seed &= _MASK
    pos = 0

    if length >= 32:
        v1 = (seed + _P1 + _P2) & _MASK
        v2 = (seed + _P2) & _MASK
        v3 = seed
        v4 = (seed - _P1) & _MASK
        stripes_end = length - length % 32
        for pos in range(0, stripes_end, 32):
            a, b, c, d = struct.unpack_from("<4Q", data, pos)
            v1 = _round(v1, a)
            v2 = _round(v2, b)
            v3 = _round(v3, c)
            v4 = _round(v4, d)
        pos = stripes_end
        acc = (_rotl(v1, 1) + _rotl(v2, 7) + _rotl(v3, 12) + _rotl(v4, 18)) & _MASK
        for v in (v1, v2, v3, v4):
            acc = _merge_round(acc, v)
    else:
        acc = (seed + _P5) & _MASK

    acc = (acc + length) & _MASK

    while pos + 8 <= length:
        (lane,) = struct.unpack_from("<Q", data, pos)
        acc ^= _round(0, lane)
        acc = (_rotl(acc, 27) * _P1 + _P4) & _MASK
        pos += 8

    if pos + 4 <= length:
        (lane,) = struct.unpack_from("<I", data, pos)
        acc ^= (lane * _P1) & _MASK
        acc = (_rotl(acc, 23) * _P2 + _P3) & _MASK
        pos += 4

    for byte in data[pos:]:
        acc ^= (byte * _P5) & _MASK
        acc = (_rotl(acc, 11) * _P1) & _MASK

    acc ^= acc >> 33
    acc = (acc * _P2) & _MASK
    acc ^= acc >> 29
    acc = (acc * _P3) & _MASK
    acc ^= acc >> 32
    return acc


def hash_question(name: str, qtype: int, cd: bool = False) -> int:
    """Return the cache key for a question name and type.

    The name is compared case-insensitively (ASCII only); setting cd gives
    a distinct key for checking-disabled queries.
    """
    buf = bytearray(struct.pack(">H", qtype & 0xFFFF))
    if cd:
        buf.append(1)
    buf += name.encode("utf-8").lower()
    return xxhash64(bytes(buf))