from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from creatorauth.storage.errors import StoreError

Row = Dict[str, Any]
Filters = Mapping[str, Any]

# Filter keys are ``column`` (equality) or ``column__op``
OPERATORS = frozenset({"eq", "ne", "lt", "lte", "gt", "gte", "in", "isnull"})


@dataclass(frozen=True)
class TableSpec:
    name: str
    columns: Tuple[str, ...]
    # Natural keys; each tuple must be unique across rows
    unique: Tuple[Tuple[str, ...], ...] = ()


TABLES: Dict[str, TableSpec] = {
    spec.name: spec
    for spec in (
        TableSpec(
            "user_profiles",
            (
                "id", "email", "role", "password_hash", "token_version",
                "tokens_revoked_at", "is_active", "created_at", "updated_at",
            ),
            unique=(("email",),),
        ),
        TableSpec(
            "user_sessions",
            (
                "id", "user_id", "email", "role", "device_id", "ip_address",
                "user_agent", "created_at", "last_activity",
            ),
            unique=(("user_id", "device_id"),),
        ),
        TableSpec(
            "refresh_tokens",
            (
                "id", "token_hash", "user_id", "device_id", "session_id",
                "expires_at", "is_revoked", "revoked_at", "created_at",
            ),
            unique=(("token_hash",),),
        ),
        TableSpec(
            "blacklisted_tokens",
            ("id", "token_hash", "user_id", "expires_at", "reason", "created_at"),
            unique=(("token_hash",),),
        ),
        TableSpec(
            "account_lockouts",
            (
                "id", "identifier", "failed_attempts", "first_failure_at",
                "last_failure_at", "locked_until", "is_permanently_locked",
                "lock_reason", "created_at", "updated_at",
            ),
            unique=(("identifier",),),
        ),
        TableSpec(
            "ip_rate_limits",
            (
                "id", "ip_address", "endpoint", "request_count", "window_start",
                "blocked_until", "first_request", "last_request", "user_agent",
                "user_id", "created_at", "updated_at",
            ),
            unique=(("ip_address", "endpoint"),),
        ),
        TableSpec(
            "security_events",
            (
                "id", "event_type", "user_id", "ip_address", "user_agent",
                "device_id", "metadata", "created_at",
            ),
        ),
    )
}


def table_spec(table: str) -> TableSpec:
    try:
        return TABLES[table]
    except KeyError:
        raise StoreError(f"unknown table {table!r}") from None


def parse_filter_key(table: str, key: str) -> Tuple[str, str]:
    """Split ``column__op`` into its parts and validate both against the catalog."""
    column, sep, op = key.partition("__")
    if not sep:
        op = "eq"
    if op not in OPERATORS:
        raise StoreError(f"unsupported filter operator {op!r}", {"key": key})
    if column not in table_spec(table).columns:
        raise StoreError(f"unknown column {column!r} for {table}", {"key": key})
    return column, op


def parse_order(table: str, order_by: Optional[str]) -> Optional[Tuple[str, bool]]:
    """``"-last_activity"`` -> ``("last_activity", True)`` (descending)."""
    if not order_by:
        return None
    descending = order_by.startswith("-")
    column = order_by.lstrip("-")
    if column not in table_spec(table).columns:
        raise StoreError(f"unknown order column {column!r} for {table}")
    return column, descending


class CredentialStore(Protocol):
    """Asynchronous row store backing every security component.

    All methods may raise ``StoreUnavailable`` on I/O failure; ``select_one``
    and ``update`` raise ``RecordNotFound`` when nothing matches.
    """

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def verify_connection(self) -> None: ...

    async def select(
        self,
        table: str,
        filters: Optional[Filters] = None,
        *,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Row]: ...

    async def select_one(self, table: str, filters: Filters) -> Row: ...

    async def count(self, table: str, filters: Optional[Filters] = None) -> int: ...

    async def insert(self, table: str, row: Row) -> Row: ...

    async def update(self, table: str, filters: Filters, patch: Row) -> List[Row]: ...

    async def upsert(
        self, table: str, row: Row, conflict: Sequence[str]
    ) -> Row: ...

    async def delete(self, table: str, filters: Filters) -> int: ...
