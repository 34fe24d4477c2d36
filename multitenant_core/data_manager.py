"""
Data Manager - tenant-scoped data access with caching and audit logging.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from .cache.base import CacheProvider
from .context import TenantContext
from .database.audit import AuditLogger
from .database.base_adapter import StorageAdapter
from .database.exceptions import TenantDataError, ValidationError
from .database.models import AuditAction, QueryOptions, Record
from .database.validation import CollectionSchema, validate_against


@dataclass
class DataManagerConfig:
    """Facade behaviour settings."""
    use_cache: bool = True
    record_ttl: int = 3600
    query_ttl: int = 300
    audit_enabled: bool = True
    audit_reads: bool = False
    audit_collection: str = "audit_logs"
    bulk_batch_size: int = 100

    def __post_init__(self):
        if self.bulk_batch_size < 1:
            raise ValueError("bulk_batch_size must be >= 1")


@dataclass
class DataResult:
    """
    Outcome of a facade operation.

    Either ``success`` with ``data`` (and ``count`` for paginated reads), or
    a failure carrying the typed error raised underneath, unchanged.
    """
    success: bool
    data: Any = None
    error: Optional[TenantDataError] = None
    count: Optional[int] = None

    @classmethod
    def ok(cls, data: Any = None, count: Optional[int] = None) -> "DataResult":
        return cls(success=True, data=data, count=count)

    @classmethod
    def fail(cls, error: TenantDataError, data: Any = None) -> "DataResult":
        return cls(success=False, data=data, error=error)

    def unwrap(self) -> Any:
        """Return ``data`` or raise the carried error."""
        if not self.success:
            raise self.error
        return self.data

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"success": self.success, "data": self.data}
        if self.count is not None:
            result["count"] = self.count
        if self.error is not None:
            result["error"] = self.error.to_dict()
        return result


class DataManager:
    """
    Single entry point for tenant-scoped data operations.

    Reads check the cache first and populate it on a miss. Mutations go to
    the adapter first, then update the record's cache entry and drop the
    collection's cached query results, then write an audit entry. Cache and
    audit failures are logged and never fail the operation; a failed
    invalidation leaves stale query results for at most ``query_ttl``.
    """

    def __init__(self,
                 adapter: StorageAdapter,
                 cache: Optional[CacheProvider] = None,
                 config: Optional[DataManagerConfig] = None,
                 audit_logger: Optional[AuditLogger] = None,
                 schemas: Optional[Dict[str, CollectionSchema]] = None):
        self.adapter = adapter
        self.cache = cache
        self.config = config or DataManagerConfig()
        self.logger = logging.getLogger(__name__)
        if audit_logger is None and self.config.audit_enabled:
            audit_logger = AuditLogger(adapter, self.config.audit_collection)
        self.audit_logger = audit_logger
        self.schemas: Dict[str, CollectionSchema] = dict(schemas or {})

    def register_schema(self, collection: str, schema: CollectionSchema):
        self.schemas[collection] = schema

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create(self, collection: str, data: Record, ctx: TenantContext) -> DataResult:
        def run():
            validate_against(self.schemas, collection, data)
            record = self.adapter.create(collection, data, ctx)
            self._cache_set(self._record_key(collection, record["id"]), record, ctx, self.config.record_ttl)
            self._invalidate_queries(collection, ctx)
            self._audit(ctx, AuditAction.CREATE, collection, record["id"], new_values=record)
            return DataResult.ok(record)
        return self._guard("create", collection, run)

    def read(self,
             collection: str,
             options: Optional[Any],
             ctx: TenantContext,
             use_cache: Optional[bool] = None) -> DataResult:
        """
        Read records of the caller's tenant.

        Args:
            collection: Collection name
            options: ``QueryOptions`` or an equivalent mapping
            ctx: Caller's tenant context
            use_cache: Override ``config.use_cache`` for this call

        Returns:
            DataResult: ``data`` is a list of records; ``count`` is set for
            paginated reads
        """
        def run():
            query = QueryOptions.from_dict(options)
            key = self._query_key(collection, "read", query.cache_fingerprint())
            if self._use_cache(use_cache):
                cached = self._cache_get(key, ctx)
                if cached is not None:
                    return DataResult.ok(cached["records"], count=cached["count"])
            with self.adapter.read(collection, query, ctx) as result:
                records = result.all()
                count = result.count
            self._cache_set(key, {"records": records, "count": count}, ctx, self.config.query_ttl)
            if self.config.audit_reads:
                self._audit(ctx, AuditAction.READ, collection)
            return DataResult.ok(records, count=count)
        return self._guard("read", collection, run)

    def get_by_id(self, collection: str, record_id: str, ctx: TenantContext,
                  use_cache: Optional[bool] = None) -> DataResult:
        def run():
            key = self._record_key(collection, record_id)
            if self._use_cache(use_cache):
                cached = self._cache_get(key, ctx)
                if cached is not None:
                    return DataResult.ok(cached)
            record = self.adapter.get_by_id(collection, record_id, ctx)
            self._cache_set(key, record, ctx, self.config.record_ttl)
            if self.config.audit_reads:
                self._audit(ctx, AuditAction.READ, collection, record_id)
            return DataResult.ok(record)
        return self._guard("get_by_id", collection, run)

    def update(self, collection: str, record_id: str, patch: Record, ctx: TenantContext) -> DataResult:
        def run():
            validate_against(self.schemas, collection, patch, partial=True)
            previous = self.adapter.get_by_id(collection, record_id, ctx) if self.audit_logger else None
            record = self.adapter.update(collection, record_id, patch, ctx)
            self._cache_set(self._record_key(collection, record_id), record, ctx, self.config.record_ttl)
            self._invalidate_queries(collection, ctx)
            self._audit(ctx, AuditAction.UPDATE, collection, record_id, old_values=previous, new_values=record)
            return DataResult.ok(record)
        return self._guard("update", collection, run)

    def delete(self, collection: str, record_id: str, ctx: TenantContext) -> DataResult:
        def run():
            previous = self.adapter.get_by_id(collection, record_id, ctx) if self.audit_logger else None
            self.adapter.delete(collection, record_id, ctx)
            self._cache_delete(self._record_key(collection, record_id), ctx)
            self._invalidate_queries(collection, ctx)
            self._audit(ctx, AuditAction.DELETE, collection, record_id, old_values=previous)
            return DataResult.ok({"id": record_id, "deleted": True})
        return self._guard("delete", collection, run)

    def bulk_create(self, collection: str, records: Sequence[Record], ctx: TenantContext,
                    batch_size: Optional[int] = None) -> DataResult:
        """
        Create records in batches of ``bulk_batch_size``.

        Each batch is one adapter call with that adapter's all-or-nothing
        guarantee. If a batch fails, earlier batches stay committed: the
        result is a failure whose ``data`` lists the records created so far.
        """
        if batch_size is not None and (isinstance(batch_size, bool) or not isinstance(batch_size, int)
                                       or batch_size < 1):
            return DataResult.fail(ValidationError(f"batch_size must be a positive integer, got {batch_size!r}"))
        size = batch_size or self.config.bulk_batch_size
        items = list(records)
        created: List[Record] = []
        try:
            for item in items:
                validate_against(self.schemas, collection, item)
            for start in range(0, len(items), size):
                created.extend(self.adapter.bulk_create(collection, items[start:start + size], ctx))
        except TenantDataError as e:
            self.logger.warning(f"bulk_create on {collection} stopped after "
                                f"{len(created)} of {len(items)} record(s): {e}")
            return DataResult.fail(e, data=created)
        finally:
            if created:
                self._after_bulk_create(collection, created, ctx)
        return DataResult.ok(created, count=len(created))

    def search(self,
               collection: str,
               term: str,
               ctx: TenantContext,
               fields: Optional[Sequence[str]] = None,
               limit: int = 50,
               offset: int = 0,
               use_cache: Optional[bool] = None) -> DataResult:
        def run():
            fingerprint = json.dumps({"term": term, "fields": list(fields) if fields else None,
                                      "limit": limit, "offset": offset}, sort_keys=True)
            key = self._query_key(collection, "search", fingerprint)
            if self._use_cache(use_cache):
                cached = self._cache_get(key, ctx)
                if cached is not None:
                    return DataResult.ok(cached, count=len(cached))
            records = self.adapter.search(collection, term, ctx, fields=fields, limit=limit, offset=offset)
            self._cache_set(key, records, ctx, self.config.query_ttl)
            return DataResult.ok(records, count=len(records))
        return self._guard("search", collection, run)

    def invalidate_collection(self, collection: str, ctx: TenantContext) -> int:
        """Drop the caller's cached query results for ``collection``."""
        return self._invalidate_queries(collection, ctx)

    def clear_tenant_cache(self, tenant_id: str) -> int:
        if self.cache is None:
            return 0
        return self.cache.clear_tenant(tenant_id)

    def get_health(self) -> Dict[str, Any]:
        health: Dict[str, Any] = {"database": self.adapter.get_health().to_dict()}
        if self.cache is not None:
            try:
                health["cache"] = self.cache.get_stats().to_dict()
            except TenantDataError as e:
                health["cache"] = {"error": str(e)}
        return health

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _guard(self, operation: str, collection: str, run: Callable[[], DataResult]) -> DataResult:
        if not isinstance(collection, str):
            return DataResult.fail(ValidationError(f"Invalid collection name: {collection!r}"))
        try:
            return run()
        except TenantDataError as e:
            self.logger.debug(f"{operation} on {collection} failed: {e.code}")
            return DataResult.fail(e)

    def _after_bulk_create(self, collection: str, created: List[Record], ctx: TenantContext):
        for record in created:
            self._cache_set(self._record_key(collection, record["id"]), record, ctx, self.config.record_ttl)
        self._invalidate_queries(collection, ctx)
        for record in created:
            self._audit(ctx, AuditAction.BULK_CREATE, collection, record["id"], new_values=record)

    def _use_cache(self, use_cache: Optional[bool]) -> bool:
        if self.cache is None:
            return False
        return self.config.use_cache if use_cache is None else use_cache

    @staticmethod
    def _record_key(collection: str, record_id: str) -> str:
        return f"{collection}:id:{record_id}"

    @staticmethod
    def _query_key(collection: str, kind: str, fingerprint: str) -> str:
        digest = hashlib.sha256(fingerprint.encode("utf-8")).hexdigest()[:32]
        return f"{collection}:query:{kind}:{digest}"

    def _cache_get(self, key: str, ctx: TenantContext) -> Optional[Any]:
        try:
            return self.cache.get(key, ctx)
        except TenantDataError as e:
            self.logger.warning(f"Cache read failed for tenant {ctx.tenant_id}: {e}")
            return None

    def _cache_set(self, key: str, value: Any, ctx: TenantContext, ttl: int):
        if self.cache is None:
            return
        try:
            self.cache.set(key, value, ctx, ttl=ttl)
        except TenantDataError as e:
            self.logger.warning(f"Cache population failed for tenant {ctx.tenant_id}: {e}")

    def _cache_delete(self, key: str, ctx: TenantContext):
        if self.cache is None:
            return
        try:
            self.cache.delete(key, ctx)
        except TenantDataError as e:
            self.logger.warning(f"Cache delete failed for tenant {ctx.tenant_id}: {e}")

    def _invalidate_queries(self, collection: str, ctx: TenantContext) -> int:
        if self.cache is None:
            return 0
        try:
            return self.cache.invalidate_prefix(f"{collection}:query:", ctx)
        except TenantDataError as e:
            self.logger.warning(f"Query cache invalidation failed for {collection}, tenant {ctx.tenant_id}: {e}")
            return 0

    def _audit(self,
               ctx: TenantContext,
               action: AuditAction,
               collection: str,
               record_id: Optional[str] = None,
               old_values: Optional[Record] = None,
               new_values: Optional[Record] = None):
        if self.audit_logger is None or collection == self.config.audit_collection:
            return
        self.audit_logger.log(ctx, action, collection, record_id, old_values=old_values, new_values=new_values)
