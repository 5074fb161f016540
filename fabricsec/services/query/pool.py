from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time
from decimal import Decimal
from functools import lru_cache
import logging
from typing import Any, Protocol, Sequence

from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import AsyncEngine

from fabricsec.core.config import get_settings
from fabricsec.persistence.db import build_readonly_engine, pool_stats


logger = logging.getLogger(__name__)

# Type codes reported by asyncpg are Postgres OIDs.
_PG_TYPE_NAMES: dict[int, str] = {
    16: "BOOLEAN",
    20: "BIGINT",
    21: "SMALLINT",
    23: "INTEGER",
    25: "TEXT",
    700: "REAL",
    701: "DOUBLE PRECISION",
    1042: "CHAR",
    1043: "VARCHAR",
    1082: "DATE",
    1083: "TIME",
    1114: "TIMESTAMP",
    1184: "TIMESTAMPTZ",
    1700: "NUMERIC",
    2950: "UUID",
    3802: "JSONB",
}

_PY_TYPE_NAMES: tuple[tuple[type, str], ...] = (
    (bool, "BOOLEAN"),
    (int, "INTEGER"),
    (float, "FLOAT"),
    (Decimal, "DECIMAL"),
    (datetime, "TIMESTAMP"),
    (date, "DATE"),
    (dt_time, "TIME"),
    (str, "VARCHAR"),
    (bytes, "BINARY"),
)


@dataclass(frozen=True)
class ColumnMetadata:
    name: str
    type_name: str
    nullable: bool | None
    precision: int | None = None
    scale: int | None = None


@dataclass(frozen=True)
class FetchResult:
    columns: list[ColumnMetadata]
    rows: list[dict[str, Any]]
    truncated: bool = False
    extra: dict[str, Any] = field(default_factory=dict)


class QueryPool(Protocol):
    async def fetch(
        self, sql: str, params: dict[str, Any], *, max_rows: int, timeout_s: float
    ) -> FetchResult: ...

    async def fetch_scalar(self, sql: str, params: dict[str, Any], *, timeout_s: float) -> Any: ...

    async def ping(self, *, timeout_s: float) -> None: ...

    def stats(self) -> dict[str, int | None]: ...


def _type_name(type_code: Any, sample: Any) -> str:
    if isinstance(type_code, int) and type_code in _PG_TYPE_NAMES:
        return _PG_TYPE_NAMES[type_code]
    if isinstance(type_code, str) and type_code:
        return type_code.upper()
    if type_code is not None and hasattr(type_code, "__name__"):
        return str(type_code.__name__).upper()
    # SQLite reports no types; fall back to the first non-null value seen.
    for py_type, name in _PY_TYPE_NAMES:
        if isinstance(sample, py_type):
            return name
    return "UNKNOWN"


def build_column_metadata(
    description: Sequence[Sequence[Any]] | None,
    rows: list[dict[str, Any]],
) -> list[ColumnMetadata]:
    columns: list[ColumnMetadata] = []
    for entry in description or ():
        name = str(entry[0])
        padded = list(entry) + [None] * (7 - len(entry))
        type_code, _display, _internal, precision, scale, null_ok = padded[1:7]
        sample = next((row[name] for row in rows if row.get(name) is not None), None)
        nullable: bool | None = bool(null_ok) if null_ok is not None else None
        if nullable is None and any(row.get(name) is None for row in rows):
            nullable = True
        columns.append(
            ColumnMetadata(
                name=name,
                type_name=_type_name(type_code, sample),
                nullable=nullable,
                precision=int(precision) if precision is not None else None,
                scale=int(scale) if scale is not None else None,
            )
        )
    return columns


def _fetch_capped(
    conn: Connection,
    sql: str,
    params: dict[str, Any],
    max_rows: int,
) -> FetchResult:
    # Runs on the sync facade so the DBAPI cursor description is reachable.
    result = conn.execution_options(stream_results=True).execute(text(sql), params)
    try:
        description = result.cursor.description if result.cursor is not None else None
        keys = list(result.keys())
        # One extra row tells us whether the cap cut anything off.
        fetched = result.fetchmany(max_rows + 1) if max_rows >= 0 else []
    finally:
        result.close()
    truncated = len(fetched) > max_rows
    rows = [dict(zip(keys, row)) for row in fetched[:max_rows]]
    return FetchResult(columns=build_column_metadata(description, rows), rows=rows, truncated=truncated)


class ReadOnlyQueryPool:
    """Bounded, read-only connection pool reserved for ad-hoc queries.

    Acquiring a connection and running the statement share one timeout budget,
    so a caller stuck behind an exhausted pool gets a timeout rather than a
    longer wait.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def _run(self, sql: str, params: dict[str, Any], max_rows: int) -> FetchResult:
        async with self._engine.connect() as conn:
            try:
                return await conn.run_sync(_fetch_capped, sql, params, max_rows)
            finally:
                # Nothing on this pool is ever committed.
                await conn.rollback()

    async def fetch(
        self, sql: str, params: dict[str, Any], *, max_rows: int, timeout_s: float
    ) -> FetchResult:
        return await asyncio.wait_for(self._run(sql, params, max_rows), timeout=timeout_s)

    async def fetch_scalar(self, sql: str, params: dict[str, Any], *, timeout_s: float) -> Any:
        result = await self.fetch(sql, params, max_rows=1, timeout_s=timeout_s)
        if not result.rows:
            return None
        return next(iter(result.rows[0].values()), None)

    async def ping(self, *, timeout_s: float) -> None:
        await self.fetch("SELECT 1", {}, max_rows=1, timeout_s=timeout_s)

    def stats(self) -> dict[str, int | None]:
        return pool_stats(self._engine)

    async def dispose(self) -> None:
        await self._engine.dispose()
        logger.info("readonly_pool_disposed")


@lru_cache
def get_readonly_pool() -> ReadOnlyQueryPool:
    return ReadOnlyQueryPool(build_readonly_engine(get_settings()))
