from __future__ import annotations

import contextlib
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import psycopg
from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from creatorauth.logging import get_logger
from creatorauth.storage.base import (
    Filters,
    Row,
    parse_filter_key,
    parse_order,
    table_spec,
)
from creatorauth.storage.errors import (
    ConstraintViolation,
    RecordNotFound,
    StoreError,
    StoreUnavailable,
)
from creatorauth.storage.models import new_id

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS user_profiles (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL DEFAULT 'user',
        password_hash TEXT,
        token_version INTEGER NOT NULL DEFAULT 0,
        tokens_revoked_at TIMESTAMPTZ,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_sessions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        email TEXT NOT NULL,
        role TEXT NOT NULL,
        device_id TEXT NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_activity TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (user_id, device_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_tokens (
        id TEXT PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        user_id TEXT NOT NULL,
        device_id TEXT NOT NULL,
        session_id TEXT,
        expires_at TIMESTAMPTZ NOT NULL,
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS blacklisted_tokens (
        id TEXT PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        user_id TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        reason TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_lockouts (
        id TEXT PRIMARY KEY,
        identifier TEXT NOT NULL UNIQUE,
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        first_failure_at TIMESTAMPTZ NOT NULL,
        last_failure_at TIMESTAMPTZ NOT NULL,
        locked_until TIMESTAMPTZ,
        is_permanently_locked BOOLEAN NOT NULL DEFAULT FALSE,
        lock_reason TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ip_rate_limits (
        id TEXT PRIMARY KEY,
        ip_address TEXT NOT NULL,
        endpoint TEXT NOT NULL,
        request_count INTEGER NOT NULL DEFAULT 0,
        window_start TIMESTAMPTZ NOT NULL,
        blocked_until TIMESTAMPTZ,
        first_request TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_request TIMESTAMPTZ NOT NULL DEFAULT now(),
        user_agent TEXT,
        user_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (ip_address, endpoint)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS security_events (
        id TEXT PRIMARY KEY,
        event_type TEXT NOT NULL,
        user_id TEXT,
        ip_address TEXT,
        user_agent TEXT,
        device_id TEXT,
        metadata JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_tokens_user_device_idx ON refresh_tokens (user_id, device_id)",
    "CREATE INDEX IF NOT EXISTS blacklisted_tokens_expires_idx ON blacklisted_tokens (expires_at)",
    "CREATE INDEX IF NOT EXISTS ip_rate_limits_blocked_idx ON ip_rate_limits (blocked_until)",
    "CREATE INDEX IF NOT EXISTS security_events_user_idx ON security_events (user_id, created_at)",
)

_OPERATOR_SQL = {
    "eq": "=",
    "ne": "<>",
    "lt": "<",
    "lte": "<=",
    "gt": ">",
    "gte": ">=",
}


def _adapt(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return Jsonb(value)
    return value


def build_where(table: str, filters: Optional[Filters]) -> Tuple[sql.Composable, List[Any]]:
    """Compose a WHERE clause from the ``column__op`` filter grammar."""
    clauses: List[sql.Composable] = []
    params: List[Any] = []
    for key, value in (filters or {}).items():
        column, op = parse_filter_key(table, key)
        ident = sql.Identifier(column)
        if op == "isnull":
            clauses.append(
                sql.SQL("{} IS NULL" if value else "{} IS NOT NULL").format(ident)
            )
        elif op == "in":
            clauses.append(sql.SQL("{} = ANY(%s)").format(ident))
            params.append(list(value))
        elif op == "eq" and value is None:
            clauses.append(sql.SQL("{} IS NULL").format(ident))
        else:
            clauses.append(
                sql.SQL("{} {} %s").format(ident, sql.SQL(_OPERATOR_SQL[op]))
            )
            params.append(_adapt(value))
    if not clauses:
        return sql.SQL(""), params
    return sql.SQL(" WHERE ") + sql.SQL(" AND ").join(clauses), params


class PostgresStore:
    """Credential store on Postgres via a psycopg async connection pool."""

    def __init__(
        self,
        dsn: str,
        *,
        statement_timeout_seconds: float = 5.0,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        timeout_ms = int(statement_timeout_seconds * 1000)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=statement_timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": True,
                "options": f"-c statement_timeout={timeout_ms}",
            },
            open=False,
        )
        self._opened = False

    async def connect(self) -> None:
        if self._opened:
            return
        await self.pool.open()
        self._opened = True
        await self._ensure_schema()

    async def close(self) -> None:
        if self._opened:
            await self.pool.close()
            self._opened = False

    @contextlib.asynccontextmanager
    async def _connect(self) -> AsyncIterator[psycopg.AsyncConnection]:
        try:
            async with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "unique constraint violated",
                {"constraint": getattr(exc.diag, "constraint_name", None)},
            ) from exc
        except PoolTimeout as exc:
            self.logger.error("postgres_pool_timeout", error=str(exc))
            raise StoreUnavailable("database pool exhausted") from exc
        except psycopg.Error as exc:
            self.logger.error(
                "postgres_statement_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailable("database operation failed") from exc

    async def _ensure_schema(self) -> None:
        async with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                await conn.execute(statement)

    async def verify_connection(self) -> None:
        async with self._connect() as conn:
            await conn.execute("SELECT 1")

    async def _fetch(
        self, query: sql.Composable, params: Sequence[Any]
    ) -> List[Row]:
        async with self._connect() as conn:
            cur = await conn.execute(query, params)
            if cur.description is None:
                return []
            return list(await cur.fetchall())

    async def select(
        self,
        table: str,
        filters: Optional[Filters] = None,
        *,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Row]:
        table_spec(table)
        where, params = build_where(table, filters)
        query = sql.SQL("SELECT * FROM {}").format(sql.Identifier(table)) + where
        order = parse_order(table, order_by)
        if order:
            column, descending = order
            query += sql.SQL(" ORDER BY {} {} NULLS LAST").format(
                sql.Identifier(column), sql.SQL("DESC" if descending else "ASC")
            )
        if limit is not None:
            query += sql.SQL(" LIMIT %s")
            params.append(int(limit))
        return await self._fetch(query, params)

    async def select_one(self, table: str, filters: Filters) -> Row:
        rows = await self.select(table, filters, limit=1)
        if not rows:
            raise RecordNotFound(table, dict(filters))
        return rows[0]

    async def count(self, table: str, filters: Optional[Filters] = None) -> int:
        table_spec(table)
        where, params = build_where(table, filters)
        query = sql.SQL("SELECT count(*) AS n FROM {}").format(sql.Identifier(table)) + where
        rows = await self._fetch(query, params)
        return int(rows[0]["n"]) if rows else 0

    def _insert_parts(self, table: str, row: Row) -> Tuple[List[str], List[Any]]:
        spec = table_spec(table)
        unknown = set(row) - set(spec.columns)
        if unknown:
            raise StoreError(f"unknown columns for {table}", {"columns": sorted(unknown)})
        payload = dict(row)
        payload.setdefault("id", new_id())
        if not payload["id"]:
            payload["id"] = new_id()
        columns = list(payload)
        return columns, [_adapt(payload[c]) for c in columns]

    async def insert(self, table: str, row: Row) -> Row:
        columns, values = self._insert_parts(table, row)
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) RETURNING *").format(
            sql.Identifier(table),
            sql.SQL(", ").join(map(sql.Identifier, columns)),
            sql.SQL(", ").join(sql.Placeholder() * len(columns)),
        )
        rows = await self._fetch(query, values)
        return rows[0]

    async def update(self, table: str, filters: Filters, patch: Row) -> List[Row]:
        spec = table_spec(table)
        unknown = set(patch) - set(spec.columns)
        if unknown or "id" in patch or not patch:
            raise StoreError(f"invalid update columns for {table}", {"columns": sorted(patch)})
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(column)) for column in patch
        )
        where, where_params = build_where(table, filters)
        query = (
            sql.SQL("UPDATE {} SET ").format(sql.Identifier(table))
            + assignments
            + where
            + sql.SQL(" RETURNING *")
        )
        rows = await self._fetch(query, [_adapt(v) for v in patch.values()] + where_params)
        if not rows:
            raise RecordNotFound(table, dict(filters))
        return rows

    async def upsert(self, table: str, row: Row, conflict: Sequence[str]) -> Row:
        columns, values = self._insert_parts(table, row)
        updates = [c for c in columns if c != "id" and c not in conflict]
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({}) ON CONFLICT ({}) ").format(
            sql.Identifier(table),
            sql.SQL(", ").join(map(sql.Identifier, columns)),
            sql.SQL(", ").join(sql.Placeholder() * len(columns)),
            sql.SQL(", ").join(map(sql.Identifier, conflict)),
        )
        if updates:
            query += sql.SQL("DO UPDATE SET ") + sql.SQL(", ").join(
                sql.SQL("{0} = EXCLUDED.{0}").format(sql.Identifier(c)) for c in updates
            )
        else:
            query += sql.SQL("DO NOTHING")
        query += sql.SQL(" RETURNING *")
        rows = await self._fetch(query, values)
        if rows:
            return rows[0]
        return await self.select_one(table, {c: row[c] for c in conflict})

    async def delete(self, table: str, filters: Filters) -> int:
        table_spec(table)
        where, params = build_where(table, filters)
        query = sql.SQL("DELETE FROM {}").format(sql.Identifier(table)) + where
        async with self._connect() as conn:
            cur = await conn.execute(query, params)
            return cur.rowcount
