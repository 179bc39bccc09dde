from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Mapping
from urllib.parse import urlsplit

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)


logger = logging.getLogger(__name__)


# Schemes the hosting API hands back for remote libsql instances.
_REMOTE_LIBSQL_SCHEMES = ("libsql", "https", "wss")


def to_sqlalchemy_url(url: str, *, branch_dialect: str) -> str:
    # Rewrite hosting API URLs to an async SQLAlchemy dialect; pass through anything else.
    parts = urlsplit(url)
    if parts.scheme not in _REMOTE_LIBSQL_SCHEMES:
        return url
    query = parts.query
    if "secure=" not in query:
        query = f"{query}&secure=true" if query else "secure=true"
    path = parts.path if parts.path not in ("", "/") else ""
    return f"{branch_dialect}://{parts.netloc}{path}?{query}"


def _engine_kwargs(sqlalchemy_url: str, *, auth_token: str, pool_size: int, max_overflow: int) -> dict[str, Any]:
    backend = make_url(sqlalchemy_url).get_backend_name()
    driver = make_url(sqlalchemy_url).get_driver_name()
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if "libsql" in driver:
        # libsql drivers take the credential out-of-band; sqlite/postgres carry it in the URL.
        kwargs["connect_args"] = {"auth_token": auth_token}
    elif backend != "sqlite":
        kwargs["pool_size"] = max(1, pool_size)
        kwargs["max_overflow"] = max(0, max_overflow)
        kwargs["pool_timeout"] = 30
        kwargs["pool_recycle"] = 1800
    return kwargs


@dataclass
class DbHandle:
    """Lightweight view over one pooled engine for a single database URL."""

    url: str
    engine: AsyncEngine
    _sessionmaker: async_sessionmaker[AsyncSession] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False)

    async def execute(self, sql: str, params: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        # Run raw SQL in its own transaction and return rows as plain dicts.
        async with self.engine.begin() as conn:
            result = await conn.execute(text(sql), dict(params or {}))
            if not result.returns_rows:
                return []
            return [dict(row) for row in result.mappings().all()]

    async def execute_write(self, sql: str, params: Mapping[str, Any] | None = None) -> int:
        # Single write statement in its own transaction; returns the affected row count.
        async with self.engine.begin() as conn:
            result = await conn.execute(text(sql), dict(params or {}))
            return max(int(result.rowcount or 0), 0)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self._sessionmaker() as session:
            yield session


@dataclass
class _PoolEntry:
    handle: DbHandle
    last_used: float


class EnginePool:
    """Engines keyed by resolved URL, bounded in size with idle eviction."""

    def __init__(
        self,
        *,
        auth_token: str,
        branch_dialect: str,
        max_engines: int = 32,
        idle_seconds: int = 600,
        pool_size: int = 5,
        max_overflow: int = 10,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._auth_token = auth_token
        self._branch_dialect = branch_dialect
        self._max_engines = max(1, max_engines)
        self._idle_seconds = idle_seconds
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._time = time_source or time.monotonic
        self._entries: OrderedDict[str, _PoolEntry] = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, url: object) -> bool:
        return url in self._entries

    async def get(self, url: str) -> DbHandle:
        now = self._time()
        async with self._lock:
            entry = self._entries.get(url)
            if entry is not None:
                entry.last_used = now
                self._entries.move_to_end(url)
                return entry.handle
            evicted = self._collect_evictions(now)
            sqlalchemy_url = to_sqlalchemy_url(url, branch_dialect=self._branch_dialect)
            engine = create_async_engine(
                sqlalchemy_url,
                **_engine_kwargs(
                    sqlalchemy_url,
                    auth_token=self._auth_token,
                    pool_size=self._pool_size,
                    max_overflow=self._max_overflow,
                ),
            )
            handle = DbHandle(url=url, engine=engine)
            self._entries[url] = _PoolEntry(handle=handle, last_used=now)
        await self._dispose_all(evicted)
        return handle

    def _collect_evictions(self, now: float) -> list[DbHandle]:
        # Caller holds the lock; drop idle engines first, then least recently used.
        evicted: list[DbHandle] = []
        for url, entry in list(self._entries.items()):
            if now - entry.last_used >= self._idle_seconds:
                evicted.append(self._entries.pop(url).handle)
        while len(self._entries) >= self._max_engines:
            _url, entry = self._entries.popitem(last=False)
            evicted.append(entry.handle)
        return evicted

    async def evict_idle(self) -> int:
        async with self._lock:
            now = self._time()
            evicted = [
                self._entries.pop(url).handle
                for url, entry in list(self._entries.items())
                if now - entry.last_used >= self._idle_seconds
            ]
        await self._dispose_all(evicted)
        return len(evicted)

    async def discard(self, url: str) -> bool:
        async with self._lock:
            entry = self._entries.pop(url, None)
        if entry is None:
            return False
        await self._dispose_all([entry.handle])
        return True

    async def close(self) -> None:
        async with self._lock:
            handles = [entry.handle for entry in self._entries.values()]
            self._entries.clear()
        await self._dispose_all(handles)

    async def _dispose_all(self, handles: list[DbHandle]) -> None:
        for handle in handles:
            try:
                await handle.engine.dispose()
            except Exception as exc:  # noqa: BLE001 - disposal failures must not break routing
                logger.warning("engine_dispose_failed url=%s", redact_url(handle.url), exc_info=exc)


def redact_url(url: str) -> str:
    # Keep credentials embedded in URLs out of logs.
    parts = urlsplit(url)
    if parts.password is None:
        return url
    netloc = parts.netloc.replace(f":{parts.password}@", ":***@")
    return parts._replace(netloc=netloc).geturl()
