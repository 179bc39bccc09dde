from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Mapping


class RuntimeOverrides:
    """In-memory tenant -> URL redirects; lost on restart, never authoritative over a mapping row."""

    def __init__(self) -> None:
        self._entries: dict[str, str] = {}
        self._lock = asyncio.Lock()

    def get(self, tenant_id: int | str) -> str | None:
        return self._entries.get(str(tenant_id))

    def snapshot(self) -> dict[str, str]:
        return dict(self._entries)

    async def set(self, tenant_id: int | str, url: str) -> None:
        async with self._lock:
            self._entries[str(tenant_id)] = url

    async def clear(self, tenant_id: int | str) -> bool:
        async with self._lock:
            return self._entries.pop(str(tenant_id), None) is not None


class SchemaAppliedSet:
    """Tenants bootstrapped in this process. Safe to be wrong; DDL is idempotent."""

    def __init__(self) -> None:
        self._applied: set[int] = set()
        self._locks: dict[int, asyncio.Lock] = {}

    def __contains__(self, tenant_id: object) -> bool:
        return tenant_id in self._applied

    def lock_for(self, tenant_id: int) -> asyncio.Lock:
        # One lock per tenant so concurrent first requests do not both run DDL.
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = self._locks.setdefault(tenant_id, asyncio.Lock())
        return lock

    def mark(self, tenant_id: int) -> None:
        self._applied.add(tenant_id)

    def forget(self, tenant_id: int) -> None:
        self._applied.discard(tenant_id)
        self._locks.pop(tenant_id, None)


@dataclass
class _CacheSlot:
    value: Mapping[str, str]
    fetched_at: float


class SettingsCache:
    """Single slot holding the last global settings map and when it was fetched."""

    def __init__(self, ttl_s: float, *, time_source: Callable[[], float] | None = None) -> None:
        self._ttl_s = ttl_s
        self._time = time_source or time.monotonic
        self._slot: _CacheSlot | None = None
        self.lock = asyncio.Lock()

    def get(self) -> Mapping[str, str] | None:
        slot = self._slot
        if slot is None:
            return None
        if self._time() - slot.fetched_at >= self._ttl_s:
            return None
        return slot.value

    def stale(self) -> Mapping[str, str] | None:
        # Last fetched value regardless of age, for serving through a failed refetch.
        return self._slot.value if self._slot is not None else None

    def put(self, value: dict[str, str]) -> Mapping[str, str]:
        # Every reader shares this one object, so hand out a read-only view of it.
        frozen = MappingProxyType(value)
        self._slot = _CacheSlot(value=frozen, fetched_at=self._time())
        return frozen

    def clear(self) -> None:
        self._slot = None
