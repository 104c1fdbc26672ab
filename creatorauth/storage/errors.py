from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base class for credential store failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(StoreError):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""


class StoreUnavailable(StoreError):
    """The store could not be reached or the statement failed or timed out."""


class RecordNotFound(LookupError):
    """No row matched a point lookup or update.

    Deliberately not a ``StoreError``: a missing row is an answer, not an
    infrastructure failure, and fail-open wrappers must not swallow it.
    """

    def __init__(self, table: str, filters: Optional[Dict[str, Any]] = None):
        super().__init__(f"no {table} row matched")
        self.table = table
        self.filters = filters or {}


__all__ = ["StoreError", "ConstraintViolation", "StoreUnavailable", "RecordNotFound"]
