from __future__ import annotations

import copy
import threading
from typing import Any, Dict, List, Optional, Sequence

from creatorauth.logging import get_logger
from creatorauth.storage.base import (
    Filters,
    Row,
    parse_filter_key,
    parse_order,
    table_spec,
)
from creatorauth.storage.errors import ConstraintViolation, RecordNotFound, StoreError
from creatorauth.storage.models import new_id


def _compare(op: str, actual: Any, expected: Any) -> bool:
    if op == "isnull":
        return (actual is None) == bool(expected)
    if op == "eq":
        return actual == expected
    if op == "ne":
        return actual != expected
    if op == "in":
        return actual in expected
    # Range comparisons never match NULL, mirroring SQL semantics
    if actual is None or expected is None:
        return False
    if op == "lt":
        return actual < expected
    if op == "lte":
        return actual <= expected
    if op == "gt":
        return actual > expected
    if op == "gte":
        return actual >= expected
    raise StoreError(f"unsupported filter operator {op!r}")


class MemoryStore:
    """In-process credential store for tests and single-node development.

    Rows are plain dicts keyed by ``id``; every public method copies rows in
    and out so callers never share mutable state with the tables.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.tables: Dict[str, Dict[str, Row]] = {}
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def verify_connection(self) -> None:
        return None

    def _table(self, table: str) -> Dict[str, Row]:
        table_spec(table)
        return self.tables.setdefault(table, {})

    def _matches(self, table: str, row: Row, filters: Optional[Filters]) -> bool:
        for key, expected in (filters or {}).items():
            column, op = parse_filter_key(table, key)
            if not _compare(op, row.get(column), expected):
                return False
        return True

    def _check_unique(self, table: str, candidate: Row) -> None:
        spec = table_spec(table)
        for columns in spec.unique:
            key = tuple(candidate.get(c) for c in columns)
            for existing in self._table(table).values():
                if existing["id"] == candidate["id"]:
                    continue
                if tuple(existing.get(c) for c in columns) == key:
                    raise ConstraintViolation(
                        f"duplicate {table} row", {"columns": list(columns)}
                    )

    def _normalize(self, table: str, row: Row) -> Row:
        spec = table_spec(table)
        unknown = set(row) - set(spec.columns)
        if unknown:
            raise StoreError(
                f"unknown columns for {table}", {"columns": sorted(unknown)}
            )
        normalized = {column: None for column in spec.columns}
        normalized.update(copy.deepcopy(row))
        if not normalized.get("id"):
            normalized["id"] = new_id()
        return normalized

    async def select(
        self,
        table: str,
        filters: Optional[Filters] = None,
        *,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Row]:
        order = parse_order(table, order_by)
        with self._data_lock:
            rows = [
                copy.deepcopy(row)
                for row in self._table(table).values()
                if self._matches(table, row, filters)
            ]
        if order:
            column, descending = order
            # NULLs sort last in both directions
            present = [r for r in rows if r.get(column) is not None]
            missing = [r for r in rows if r.get(column) is None]
            present.sort(key=lambda r: r[column], reverse=descending)
            rows = present + missing
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def select_one(self, table: str, filters: Filters) -> Row:
        rows = await self.select(table, filters, limit=1)
        if not rows:
            raise RecordNotFound(table, dict(filters))
        return rows[0]

    async def count(self, table: str, filters: Optional[Filters] = None) -> int:
        with self._data_lock:
            return sum(
                1 for row in self._table(table).values()
                if self._matches(table, row, filters)
            )

    async def insert(self, table: str, row: Row) -> Row:
        normalized = self._normalize(table, row)
        with self._data_lock:
            if normalized["id"] in self._table(table):
                raise ConstraintViolation(f"duplicate {table} id", {"id": normalized["id"]})
            self._check_unique(table, normalized)
            self._table(table)[normalized["id"]] = normalized
            return copy.deepcopy(normalized)

    async def update(self, table: str, filters: Filters, patch: Row) -> List[Row]:
        spec = table_spec(table)
        unknown = set(patch) - set(spec.columns)
        if unknown or "id" in patch:
            raise StoreError(
                f"invalid update columns for {table}",
                {"columns": sorted(unknown | ({"id"} & set(patch)))},
            )
        with self._data_lock:
            targets = [
                row for row in self._table(table).values()
                if self._matches(table, row, filters)
            ]
            if not targets:
                raise RecordNotFound(table, dict(filters))
            updated: List[Row] = []
            for row in targets:
                candidate = {**row, **copy.deepcopy(patch)}
                self._check_unique(table, candidate)
                row.update(copy.deepcopy(patch))
                updated.append(copy.deepcopy(row))
            return updated

    async def upsert(self, table: str, row: Row, conflict: Sequence[str]) -> Row:
        key = {column: row[column] for column in conflict}
        with self._data_lock:
            existing = [
                r for r in self._table(table).values() if self._matches(table, r, key)
            ]
            if existing:
                patch = {k: v for k, v in row.items() if k != "id"}
                existing[0].update(copy.deepcopy(patch))
                return copy.deepcopy(existing[0])
            return await self.insert(table, row)

    async def delete(self, table: str, filters: Filters) -> int:
        with self._data_lock:
            rows = self._table(table)
            doomed = [
                row_id for row_id, row in rows.items()
                if self._matches(table, row, filters)
            ]
            for row_id in doomed:
                rows.pop(row_id, None)
            return len(doomed)
