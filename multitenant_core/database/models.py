"""
Data models for the tenant-isolated data access layer.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional


Record = Dict[str, Any]

RESERVED_FIELDS = frozenset({"id", "tenant_id", "created_at", "updated_at"})


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class DatabaseType(Enum):
    """Supported backend types."""
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    SQLITE = "sqlite"
    MONGODB = "mongodb"
    SUPABASE = "supabase"


class IsolationStrategy(Enum):
    """How a backend enforces the tenant boundary."""
    NATIVE = "native"        # backend row-level security driven by a session setting
    VIEW = "view"            # per-tenant filtered views plus WHERE injection
    DOCUMENT = "document"    # filter injection plus (tenant_id, id) compound index


@dataclass
class SortOrder:
    """Sort field and direction for a read."""
    field: str
    ascending: bool = True

    @property
    def direction(self) -> str:
        return "ASC" if self.ascending else "DESC"


@dataclass
class QueryOptions:
    """Backend-neutral read options. Adapters translate them to native syntax."""
    select: Optional[List[str]] = None
    filters: Dict[str, Any] = field(default_factory=dict)
    order: Optional[SortOrder] = None
    limit: Optional[int] = None
    offset: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "QueryOptions":
        """Build options from a plain mapping (``order`` may be a dict or a field name)."""
        if data is None:
            return cls()
        if isinstance(data, QueryOptions):
            return data
        order = data.get("order")
        if isinstance(order, str):
            order = SortOrder(field=order)
        elif isinstance(order, dict):
            order = SortOrder(field=order.get("field") or order.get("column"),
                              ascending=order.get("ascending", True))
        select = data.get("select")
        if isinstance(select, str):
            select = None if select.strip() == "*" else [s.strip() for s in select.split(",") if s.strip()]
        return cls(
            select=select,
            filters=dict(data.get("filters") or data.get("filter") or {}),
            order=order,
            limit=data.get("limit"),
            offset=data.get("offset")
        )

    @property
    def is_paginated(self) -> bool:
        """True when a total count should accompany the page."""
        return self.limit is not None or self.offset is not None

    def cache_fingerprint(self) -> str:
        """Deterministic string form used to derive cache keys."""
        payload = {
            "select": sorted(self.select) if self.select else None,
            "filters": self.filters,
            "order": [self.order.field, self.order.ascending] if self.order else None,
            "limit": self.limit,
            "offset": self.offset
        }
        return json.dumps(payload, sort_keys=True, default=str, separators=(",", ":"))


class ReadResult:
    """
    Single-pass sequence of records with an optional total count.

    The result owns whatever backend resource produced it (cursor,
    connection) and releases it once iteration finishes, ``close()`` is
    called, or the context manager exits. Iterating a second time yields
    nothing.
    """

    def __init__(self,
                 records: Iterable[Record],
                 count: Optional[int] = None,
                 on_close: Optional[Callable[[], None]] = None):
        self._iterator: Iterator[Record] = iter(records)
        self.count = count
        self._on_close = on_close
        self._closed = False

    def __iter__(self) -> Iterator[Record]:
        return self

    def __next__(self) -> Record:
        if self._closed:
            raise StopIteration
        try:
            return next(self._iterator)
        except StopIteration:
            self.close()
            raise
        except BaseException:
            self.close()
            raise

    def all(self) -> List[Record]:
        """Drain the remaining records into a list."""
        return list(self)

    def close(self):
        if self._closed:
            return
        self._closed = True
        close = getattr(self._iterator, "close", None)
        try:
            if close is not None:
                close()
        finally:
            if self._on_close is not None:
                self._on_close()

    def __enter__(self) -> "ReadResult":
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


@dataclass
class HealthStatus:
    """Backend health as reported by ``adapter.get_health()``."""
    connected: bool
    latency_ms: Optional[float] = None
    error: Optional[str] = None
    checked_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"connected": self.connected}
        if self.latency_ms is not None:
            result["latency_ms"] = self.latency_ms
        if self.error is not None:
            result["error"] = self.error
        return result


class AuditAction(Enum):
    """Actions recorded in the audit log."""
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    BULK_CREATE = "BULK_CREATE"


@dataclass
class AuditLogEntry:
    """Append-only audit record for one data operation."""
    tenant_id: str
    user_id: str
    action: AuditAction
    resource_type: str
    resource_id: Optional[str] = None
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    created_at: datetime = field(default_factory=utc_now)
