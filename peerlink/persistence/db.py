from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from peerlink.core.config import Settings, get_settings
from peerlink.domain.models import Base


logger = logging.getLogger(__name__)


class ReadyGate:
    """Run an async initializer at most once for all concurrent callers.

    Callers that arrive while the first attempt is in flight wait for it and
    share its outcome. A failed attempt is cached and re-raised to every
    caller until ``failure_ttl_s`` elapses; only then is one new attempt made.
    """

    def __init__(
        self,
        initializer: Callable[[], Awaitable[None]],
        *,
        failure_ttl_s: float,
        time_source: Callable[[], float] = time.monotonic,
    ) -> None:
        self._initializer = initializer
        self._failure_ttl_s = failure_ttl_s
        self._time_source = time_source
        self._lock = asyncio.Lock()
        self._ready = False
        self._failure: BaseException | None = None
        self._failed_at = 0.0
        self.attempts = 0

    @property
    def ready(self) -> bool:
        return self._ready

    def _cached_failure(self) -> BaseException | None:
        if self._failure is None:
            return None
        if self._time_source() - self._failed_at >= self._failure_ttl_s:
            return None
        return self._failure

    async def ensure(self) -> None:
        if self._ready:
            return
        failure = self._cached_failure()
        if failure is not None:
            raise failure
        async with self._lock:
            # Re-check after waiting: another caller may have finished the attempt.
            if self._ready:
                return
            failure = self._cached_failure()
            if failure is not None:
                raise failure
            self.attempts += 1
            try:
                await self._initializer()
            except Exception as exc:
                self._failure = exc
                self._failed_at = self._time_source()
                raise
            self._failure = None
            self._ready = True


class Database:
    """Explicit store handle: engine, session factory, and the schema-ready gate."""

    def __init__(
        self,
        url: str,
        *,
        pool_size: int = 10,
        max_overflow: int = 0,
        statement_timeout_ms: int = 0,
        failure_ttl_s: float = 30,
    ) -> None:
        engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
        # Configure bounded asyncpg pools; SQLite drivers reject pool sizing.
        if not url.startswith("sqlite"):
            engine_kwargs["pool_size"] = max(1, int(pool_size))
            engine_kwargs["max_overflow"] = max(0, int(max_overflow))
            engine_kwargs["pool_timeout"] = 30
            engine_kwargs["pool_recycle"] = 1800
            if statement_timeout_ms > 0:
                engine_kwargs["connect_args"] = {
                    "server_settings": {"statement_timeout": str(int(statement_timeout_ms))}
                }
        self.url = url
        self.engine = create_async_engine(url, **engine_kwargs)
        self.sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False)
        self._gate = ReadyGate(self._initialize, failure_ttl_s=failure_ttl_s)

    @property
    def gate(self) -> ReadyGate:
        return self._gate

    async def _initialize(self) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
                # CREATE TABLE IF NOT EXISTS semantics; safe against an already-migrated store.
                await conn.run_sync(Base.metadata.create_all)
        except Exception as exc:
            logger.error("store_init_failed error=%s", type(exc).__name__)
            raise
        logger.info("store_schema_ready")

    async def ensure_ready(self) -> None:
        await self._gate.ensure()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.sessionmaker() as session:
            yield session

    async def dispose(self) -> None:
        await self.engine.dispose()

    def pool_stats(self) -> dict[str, int | None]:
        # Expose DB pool counters for ops visibility without querying Postgres internals.
        pool = self.engine.sync_engine.pool
        checked_out_fn = getattr(pool, "checkedout", None)
        checked_in_fn = getattr(pool, "checkedin", None)
        overflow_fn = getattr(pool, "overflow", None)
        size_fn = getattr(pool, "size", None)
        return {
            "size": int(size_fn()) if callable(size_fn) else None,
            "checked_out": int(checked_out_fn()) if callable(checked_out_fn) else None,
            "checked_in": int(checked_in_fn()) if callable(checked_in_fn) else None,
            "overflow": int(overflow_fn()) if callable(overflow_fn) else None,
        }


def create_database(settings: Settings | None = None) -> Database:
    settings = settings or get_settings()
    return Database(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        statement_timeout_ms=settings.db_statement_timeout_ms,
        failure_ttl_s=settings.store_failure_cache_s,
    )
