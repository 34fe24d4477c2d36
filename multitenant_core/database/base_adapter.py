"""
Base storage adapter interface.

Public methods on ``StorageAdapter`` validate input and stamp tenant
ownership, then hand a tenant id to backend hooks (``_insert``, ``_select``,
...). Backends never see a caller-supplied tenant id: the only source is the
``TenantContext`` passed to the public method.
"""

import logging
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from ..context import TenantContext, validate_tenant_id
from .config import DatabaseConfig
from .exceptions import NotFoundError, StorageError, TenantDataError, TransactionError, ValidationError
from .models import (
    DatabaseType,
    HealthStatus,
    IsolationStrategy,
    QueryOptions,
    ReadResult,
    Record,
    utc_now
)
from .validation import (
    validate_identifier,
    validate_patch,
    validate_payload,
    validate_query_options,
    validate_record_id
)


DEFAULT_SEARCH_FIELDS = ("name", "description", "title")


class Transaction(ABC):
    """
    Scoped transaction handle.

    Statements run strictly in the order issued. ``commit`` and ``rollback``
    release the underlying backend resource whether or not they succeed.
    Used as a context manager, the handle commits on normal exit and rolls
    back on an exception.
    """

    def __init__(self, backend: str):
        self.backend = backend
        self.transaction_id = str(uuid.uuid4())
        self._finished = False

    @property
    def active(self) -> bool:
        return not self._finished

    def _ensure_active(self):
        if self._finished:
            raise TransactionError(f"Transaction {self.transaction_id} is already finished",
                                   backend=self.backend)

    @abstractmethod
    def query(self, statement: Any, params: Any = None) -> List[Record]:
        """Execute a statement inside the transaction."""
        pass

    @abstractmethod
    def commit(self):
        """Commit and release the backend resource."""
        pass

    @abstractmethod
    def rollback(self):
        """Roll back and release the backend resource."""
        pass

    def __enter__(self) -> "Transaction":
        return self

    def __exit__(self, exc_type, exc, tb):
        if self._finished:
            return False
        if exc_type is None:
            self.commit()
        else:
            self.rollback()
        return False


class StorageAdapter(ABC):
    """Base class for tenant-isolating storage adapters."""

    database_type: DatabaseType
    isolation_strategy: IsolationStrategy

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.logger = logging.getLogger(self.__class__.__module__)
        self._initialized = False

    @property
    def backend_name(self) -> str:
        return self.database_type.value

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @abstractmethod
    def initialize(self):
        """Verify connectivity and create backend support objects."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Return True if the backend answers a trivial request."""
        pass

    @abstractmethod
    def close(self):
        """Release every connection held by the adapter."""
        pass

    def get_health(self) -> HealthStatus:
        """Check the backend and report connectivity and round-trip latency."""
        start = time.perf_counter()
        try:
            connected = self.test_connection()
        except Exception as e:
            return HealthStatus(connected=False, error=str(e))
        latency_ms = round((time.perf_counter() - start) * 1000, 3)
        if not connected:
            return HealthStatus(connected=False, error="Connection failed")
        return HealthStatus(connected=True, latency_ms=latency_ms)

    # ------------------------------------------------------------------
    # Tenant-scoped CRUD
    # ------------------------------------------------------------------

    def create(self, collection: str, data: Record, ctx: TenantContext) -> Record:
        """
        Persist a new record owned by ``ctx.tenant_id``.

        Caller-supplied ``id``/``tenant_id``/timestamps are replaced.

        Raises:
            ValidationError: Bad collection name or payload.
            ConflictError: Unique key violation.
            StorageError: Backend rejected the write.
        """
        tenant_id = self._tenant_of(ctx)
        validate_identifier(collection, "collection")
        record = self._stamp_new(validate_payload(data, collection), tenant_id)
        with self._translate_errors("create", collection):
            return self._insert(collection, record, tenant_id)

    def read(self, collection: str, options: Optional[QueryOptions], ctx: TenantContext) -> ReadResult:
        """
        Read records of ``ctx.tenant_id`` matching ``options``.

        A ``tenant_id`` equality filter is always added here; caller filters
        can only narrow the result further. ``count`` is populated only for
        paginated reads.
        """
        tenant_id = self._tenant_of(ctx)
        validate_identifier(collection, "collection")
        options = validate_query_options(QueryOptions.from_dict(options))
        with self._translate_errors("read", collection):
            count = self._count(collection, options.filters, tenant_id) if options.is_paginated else None
            records = self._select(collection, options, tenant_id)
        return ReadResult(self._guard_iteration(records, "read", collection), count=count)

    def get_by_id(self, collection: str, record_id: str, ctx: TenantContext) -> Record:
        """Fetch one record of the caller's tenant or raise ``NotFoundError``."""
        validate_record_id(record_id)
        with self.read(collection, QueryOptions(filters={"id": record_id}), ctx) as result:
            for record in result:
                return record
        raise NotFoundError(collection, record_id)

    def update(self, collection: str, record_id: str, patch: Record, ctx: TenantContext) -> Record:
        """
        Apply ``patch`` to the record matching both id and tenant.

        Raises:
            NotFoundError: No such id in this tenant (identical for records of
                other tenants).
        """
        tenant_id = self._tenant_of(ctx)
        validate_identifier(collection, "collection")
        validate_record_id(record_id)
        changes = validate_patch(patch)
        changes["updated_at"] = self._timestamp()
        with self._translate_errors("update", collection):
            updated = self._update(collection, record_id, changes, tenant_id)
        if updated is None:
            raise NotFoundError(collection, record_id)
        return updated

    def delete(self, collection: str, record_id: str, ctx: TenantContext) -> None:
        """Delete the record matching both id and tenant or raise ``NotFoundError``."""
        tenant_id = self._tenant_of(ctx)
        validate_identifier(collection, "collection")
        validate_record_id(record_id)
        with self._translate_errors("delete", collection):
            deleted = self._delete(collection, record_id, tenant_id)
        if not deleted:
            raise NotFoundError(collection, record_id)

    def bulk_create(self, collection: str, records: Sequence[Record], ctx: TenantContext) -> List[Record]:
        """
        Insert many records for ``ctx.tenant_id``.

        Atomicity is backend specific and documented on each adapter's
        ``_insert_many``.
        """
        tenant_id = self._tenant_of(ctx)
        validate_identifier(collection, "collection")
        if isinstance(records, (dict, str, bytes)):
            raise ValidationError("bulk_create expects a sequence of records")
        stamped = [self._stamp_new(validate_payload(r, collection), tenant_id) for r in records]
        if not stamped:
            return []
        with self._translate_errors("bulk_create", collection):
            return self._insert_many(collection, stamped, tenant_id)

    def search(self,
               collection: str,
               term: str,
               ctx: TenantContext,
               fields: Optional[Sequence[str]] = None,
               limit: int = 50,
               offset: int = 0) -> List[Record]:
        """Case-insensitive substring search over ``fields`` within the caller's tenant."""
        tenant_id = self._tenant_of(ctx)
        validate_identifier(collection, "collection")
        if not isinstance(term, str):
            raise ValidationError("Search term must be a string")
        search_fields = [validate_identifier(f, "field") for f in (fields or DEFAULT_SEARCH_FIELDS)]
        if not isinstance(limit, int) or limit <= 0:
            raise ValidationError("limit must be a positive integer")
        if not isinstance(offset, int) or offset < 0:
            raise ValidationError("offset must be a non-negative integer")
        with self._translate_errors("search", collection):
            return self._search(collection, term, search_fields, limit, offset, tenant_id)

    # ------------------------------------------------------------------
    # Isolation, transactions and migration support
    # ------------------------------------------------------------------

    @abstractmethod
    def isolate(self, tenant_id: str, collections: Optional[Sequence[str]] = None):
        """Provision backend isolation machinery for a tenant. Idempotent."""
        pass

    @abstractmethod
    def transact(self, ctx: Optional[TenantContext] = None) -> Transaction:
        """Open a transaction, scoped to ``ctx`` when given."""
        pass

    @abstractmethod
    def ensure_migration_store(self, name: str):
        """Create the table/collection holding migration records."""
        pass

    @abstractmethod
    def load_migration_records(self, name: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def save_migration_record(self, name: str, record: Dict[str, Any]):
        """Insert or replace a migration record keyed by its ``id``."""
        pass

    @abstractmethod
    def delete_migration_record(self, name: str, migration_id: str):
        pass

    @abstractmethod
    def execute_script(self, script: Any, tenant_id: Optional[str] = None):
        """Run a migration script atomically where the backend allows it."""
        pass

    # ------------------------------------------------------------------
    # Backend hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def _insert(self, collection: str, record: Record, tenant_id: str) -> Record:
        pass

    @abstractmethod
    def _insert_many(self, collection: str, records: List[Record], tenant_id: str) -> List[Record]:
        pass

    @abstractmethod
    def _select(self, collection: str, options: QueryOptions, tenant_id: str) -> Iterator[Record]:
        """Return a lazy iterator; backend work may be deferred until first ``next``."""
        pass

    @abstractmethod
    def _count(self, collection: str, filters: Dict[str, Any], tenant_id: str) -> int:
        pass

    @abstractmethod
    def _update(self, collection: str, record_id: str, changes: Record, tenant_id: str) -> Optional[Record]:
        """Return the updated record, or None when nothing matched id and tenant."""
        pass

    @abstractmethod
    def _delete(self, collection: str, record_id: str, tenant_id: str) -> bool:
        pass

    @abstractmethod
    def _search(self, collection: str, term: str, fields: List[str], limit: int, offset: int,
                tenant_id: str) -> List[Record]:
        pass

    @abstractmethod
    def _translate_exception(self, error: Exception, operation: str, collection: Optional[str]) -> TenantDataError:
        """Map a driver exception onto the error taxonomy."""
        pass

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _tenant_of(self, ctx: TenantContext) -> str:
        if not isinstance(ctx, TenantContext):
            raise ValidationError("A TenantContext is required for data operations")
        return ctx.tenant_id

    def _check_tenant_id(self, tenant_id: str) -> str:
        try:
            return validate_tenant_id(tenant_id)
        except ValueError as e:
            raise ValidationError(str(e)) from None

    def _timestamp(self):
        return utc_now()

    def _stamp_new(self, payload: Record, tenant_id: str) -> Record:
        now = self._timestamp()
        record = dict(payload)
        record["id"] = str(uuid.uuid4())
        record["tenant_id"] = tenant_id
        record["created_at"] = now
        record["updated_at"] = now
        return record

    def isolation_collections(self, collections: Optional[Sequence[str]] = None) -> List[str]:
        names = list(collections) if collections is not None else list(self.config.tenant_collections)
        return [validate_identifier(name, "collection") for name in names]

    @contextmanager
    def _translate_errors(self, operation: str, collection: Optional[str] = None):
        try:
            yield
        except TenantDataError:
            raise
        except Exception as e:
            raise self._translate_exception(e, operation, collection) from e

    def _guard_iteration(self, records: Iterator[Record], operation: str,
                         collection: Optional[str]) -> Iterator[Record]:
        """Translate driver errors raised lazily while a read is being consumed."""
        iterator = iter(records)
        try:
            while True:
                with self._translate_errors(operation, collection):
                    try:
                        record = next(iterator)
                    except StopIteration:
                        return
                yield record
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                close()

    def _run_callable_script(self, script: Callable[..., Any], handle: Any):
        result = script(handle)
        self.logger.debug(f"Callable migration script returned {result!r}")
        return result

    def _storage_error(self, message: str, error: Exception, retryable: bool = False) -> StorageError:
        return StorageError(f"{message}: {error}", backend=self.backend_name, retryable=retryable,
                            details={"driver_error": type(error).__name__})
