from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from fabricsec.core.config import Settings, get_settings


# The read-only pool is bounded to protect the source systems.
READONLY_POOL_MIN = 5
READONLY_POOL_MAX = 20


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _is_postgres(url: str) -> bool:
    return url.startswith("postgresql")


def build_engine(settings: Settings) -> AsyncEngine:
    # Transactional pool for repositories and the audit chain.
    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if not _is_sqlite(settings.database_url):
        engine_kwargs["pool_size"] = max(1, int(settings.db_pool_size))
        engine_kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
        engine_kwargs["pool_timeout"] = 30
        engine_kwargs["pool_recycle"] = 1800
    return create_async_engine(settings.database_url, **engine_kwargs)


def clamp_readonly_pool_size(size: int) -> int:
    return min(READONLY_POOL_MAX, max(READONLY_POOL_MIN, int(size)))


def build_readonly_engine(settings: Settings) -> AsyncEngine:
    # Isolated pool for ad-hoc queries; no overflow so the bound is hard.
    url = settings.readonly_database_url or settings.database_url
    engine_kwargs: dict[str, Any] = {
        "pool_pre_ping": True,
        "pool_size": clamp_readonly_pool_size(settings.readonly_pool_size),
        "max_overflow": 0,
        # Acquisition shares the query's timeout budget.
        "pool_timeout": settings.query_timeout_s,
        "pool_recycle": 1800,
    }
    if _is_postgres(url):
        # Enforce read-only semantics and the timeout ceiling inside Postgres itself.
        engine_kwargs["connect_args"] = {
            "server_settings": {
                "default_transaction_read_only": "on",
                "statement_timeout": str(int(settings.query_timeout_s * 1000)),
                "application_name": f"{settings.app_name}-readonly",
            }
        }
    return create_async_engine(url, **engine_kwargs)


settings = get_settings()
engine = build_engine(settings)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


def pool_stats(target: AsyncEngine | None = None) -> dict[str, int | None]:
    # Expose pool counters for ops visibility without querying database internals.
    pool = (target or engine).sync_engine.pool
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
