"""
MongoDB adapter using query-level tenant filtering.
"""

import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional, Sequence

from bson.decimal128 import Decimal128
from bson.errors import InvalidDocument
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import (
    BulkWriteError,
    ConnectionFailure,
    DuplicateKeyError,
    PyMongoError
)

from ...context import TenantContext
from ..base_adapter import StorageAdapter, Transaction
from ..config import DatabaseConfig
from ..exceptions import ConflictError, StorageError, TenantDataError, TransactionError, ValidationError
from ..models import DatabaseType, IsolationStrategy, QueryOptions, Record, utc_now
from ..validation import validate_identifier


DUPLICATE_KEY = 11000


def _to_mongo(value: Any) -> Any:
    if isinstance(value, Decimal):
        return Decimal128(value)
    return value


def _from_mongo(value: Any) -> Any:
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class MongoTransaction(Transaction):
    """
    Multi-document transaction on a client session (requires a replica set).

    ``query(collection, pipeline)`` runs an aggregation inside the
    transaction; when the handle is tenant scoped a ``$match`` on the tenant
    is prepended. ``database`` and ``session`` are exposed for writes.
    """

    def __init__(self, adapter: "MongoDBAdapter", session: Any, tenant_id: Optional[str]):
        super().__init__(adapter.backend_name)
        self.tenant_id = tenant_id
        self.session = session
        self.database = adapter.db
        self._adapter = adapter

    def query(self, statement: Any, params: Any = None) -> List[Record]:
        self._ensure_active()
        collection = validate_identifier(statement, "collection")
        pipeline = list(params or [])
        if self.tenant_id is not None:
            pipeline.insert(0, {"$match": {"tenant_id": self.tenant_id}})
        with self._adapter._translate_errors("transaction", collection):
            documents = self.database[collection].aggregate(pipeline, session=self.session)
            return [self._adapter._to_record(doc) for doc in documents]

    def commit(self):
        self._ensure_active()
        self._finished = True
        try:
            with self._adapter._translate_errors("commit"):
                self.session.commit_transaction()
        finally:
            self.session.end_session()

    def rollback(self):
        self._ensure_active()
        self._finished = True
        try:
            with self._adapter._translate_errors("rollback"):
                self.session.abort_transaction()
        finally:
            self.session.end_session()


class MongoDBAdapter(StorageAdapter):
    """
    MongoDB adapter (document isolation).

    Every query document is wrapped as ``{"$and": [{"tenant_id": ...}, ...]}``
    so caller filters can only narrow the tenant's data; filter values are
    matched with ``$eq``/``$in`` and never interpreted as operators.
    ``isolate()`` creates the ``(tenant_id, _id)`` and
    ``(tenant_id, created_at)`` compound indexes. Record ids are stored as
    ``_id`` and surfaced as ``id``. Timestamps are stored with millisecond
    precision, the resolution of BSON dates.
    """

    database_type = DatabaseType.MONGODB
    isolation_strategy = IsolationStrategy.DOCUMENT

    def __init__(self, config: DatabaseConfig, client: Optional[MongoClient] = None):
        super().__init__(config)
        self._owns_client = client is None
        if client is None:
            client = MongoClient(
                config.url,
                tz_aware=True,
                connect=False,
                maxPoolSize=config.pool.max_connections,
                minPoolSize=config.pool.min_connections,
                waitQueueTimeoutMS=int(config.pool.acquire_timeout * 1000),
                serverSelectionTimeoutMS=int(config.options.get("server_selection_timeout_ms", 5000)),
                tls=config.ssl
            )
        self.client = client
        self.db = client[config.database]
        self.transactional_bulk = bool(config.options.get("transactional_bulk", False))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self):
        if not self.test_connection():
            raise StorageError("Unable to reach mongodb backend", backend=self.backend_name, retryable=True)
        self._initialized = True
        self.logger.info(f"mongodb adapter initialized (database={self.config.database}, "
                         f"isolation={self.isolation_strategy.value})")

    def test_connection(self) -> bool:
        try:
            self.client.admin.command("ping")
            return True
        except PyMongoError as e:
            self.logger.warning(f"mongodb connection test failed: {e}")
            return False

    def close(self):
        if self._owns_client:
            self.client.close()
        self._initialized = False

    # ------------------------------------------------------------------
    # Document mapping
    # ------------------------------------------------------------------

    def _timestamp(self) -> datetime:
        now = utc_now()
        return now.replace(microsecond=(now.microsecond // 1000) * 1000)

    def _to_document(self, record: Record) -> Dict[str, Any]:
        document = {key: _to_mongo(value) for key, value in record.items() if key != "id"}
        document["_id"] = record["id"]
        return document

    def _to_record(self, document: Dict[str, Any]) -> Record:
        record = {}
        for key, value in document.items():
            record["id" if key == "_id" else key] = _from_mongo(value)
        return record

    def _query(self, filters: Dict[str, Any], tenant_id: str) -> Dict[str, Any]:
        conditions: List[Dict[str, Any]] = [{"tenant_id": tenant_id}]
        for name, value in filters.items():
            key = "_id" if name == "id" else name
            if isinstance(value, (list, tuple, set, frozenset)):
                conditions.append({key: {"$in": [_to_mongo(v) for v in value]}})
            else:
                conditions.append({key: {"$eq": _to_mongo(value)}})
        if len(conditions) == 1:
            return conditions[0]
        return {"$and": conditions}

    # ------------------------------------------------------------------
    # Backend hooks for StorageAdapter
    # ------------------------------------------------------------------

    def _insert(self, collection: str, record: Record, tenant_id: str) -> Record:
        document = self._to_document(record)
        self.db[collection].insert_one(document)
        return self._to_record(document)

    def _insert_many(self, collection: str, records: List[Record], tenant_id: str) -> List[Record]:
        """
        Insert records with an ordered ``insert_many``.

        With ``options["transactional_bulk"]`` the insert runs in a
        multi-document transaction (replica sets only). Otherwise a failure
        part way through deletes the documents already inserted by this call
        before the error is raised; if that cleanup fails too, it is logged
        and those documents remain.
        """
        documents = [self._to_document(r) for r in records]
        target = self.db[collection]
        if self.transactional_bulk:
            with self.client.start_session() as session:
                with session.start_transaction():
                    target.insert_many(documents, ordered=True, session=session)
        else:
            try:
                target.insert_many(documents, ordered=True)
            except BulkWriteError as e:
                inserted = int(e.details.get("nInserted", 0))
                self._discard_partial(target, [d["_id"] for d in documents[:inserted]], tenant_id)
                raise
        return [self._to_record(d) for d in documents]

    def _discard_partial(self, target: Any, ids: List[str], tenant_id: str):
        if not ids:
            return
        try:
            target.delete_many({"_id": {"$in": ids}, "tenant_id": tenant_id})
            self.logger.warning(f"Bulk insert into {target.name} failed; removed {len(ids)} partial document(s)")
        except PyMongoError as e:
            self.logger.error(f"Bulk insert into {target.name} failed and {len(ids)} partial document(s) "
                              f"could not be removed: {e}")

    def _select(self, collection: str, options: QueryOptions, tenant_id: str) -> Iterator[Record]:
        query = self._query(options.filters, tenant_id)
        projection = None
        if options.select:
            projection = {name: 1 for name in options.select if name != "id"}
            if "id" not in options.select:
                projection["_id"] = 0
        if options.order is not None:
            field = "_id" if options.order.field == "id" else options.order.field
            sort = [(field, ASCENDING if options.order.ascending else DESCENDING)]
        else:
            sort = [("created_at", ASCENDING), ("_id", ASCENDING)]
        return self._stream(collection, query, projection, sort, options.limit, options.offset)

    def _stream(self, collection: str, query: Dict[str, Any], projection: Optional[Dict[str, int]],
                sort: List[Any], limit: Optional[int], offset: Optional[int]) -> Iterator[Record]:
        cursor = self.db[collection].find(query, projection).sort(sort)
        if offset:
            cursor = cursor.skip(offset)
        if limit:
            cursor = cursor.limit(limit)
        try:
            for document in cursor:
                yield self._to_record(document)
        finally:
            cursor.close()

    def _count(self, collection: str, filters: Dict[str, Any], tenant_id: str) -> int:
        return self.db[collection].count_documents(self._query(filters, tenant_id))

    def _update(self, collection: str, record_id: str, changes: Record, tenant_id: str) -> Optional[Record]:
        document = self.db[collection].find_one_and_update(
            self._query({"id": record_id}, tenant_id),
            {"$set": {key: _to_mongo(value) for key, value in changes.items()}},
            return_document=ReturnDocument.AFTER
        )
        return self._to_record(document) if document is not None else None

    def _delete(self, collection: str, record_id: str, tenant_id: str) -> bool:
        result = self.db[collection].delete_one(self._query({"id": record_id}, tenant_id))
        return result.deleted_count > 0

    def _search(self, collection: str, term: str, fields: List[str], limit: int, offset: int,
                tenant_id: str) -> List[Record]:
        pattern = {"$regex": re.escape(term), "$options": "i"}
        query = {"$and": [
            {"tenant_id": tenant_id},
            {"$or": [{"_id" if f == "id" else f: pattern} for f in fields]}
        ]}
        cursor = (self.db[collection].find(query)
                  .sort([("updated_at", DESCENDING), ("_id", ASCENDING)])
                  .skip(offset)
                  .limit(limit))
        return [self._to_record(doc) for doc in cursor]

    def _translate_exception(self, error: Exception, operation: str, collection: Optional[str]) -> TenantDataError:
        details = {"operation": operation}
        if collection:
            details["collection"] = collection
        if isinstance(error, DuplicateKeyError):
            return ConflictError("Duplicate value violates a unique index", details=details)
        if isinstance(error, BulkWriteError):
            codes = {err.get("code") for err in error.details.get("writeErrors", [])}
            if DUPLICATE_KEY in codes:
                return ConflictError("Duplicate value violates a unique index", details=details)
        if isinstance(error, InvalidDocument):
            return ValidationError(f"Record cannot be stored as a document: {error}", details=details)
        return self._storage_error(f"mongodb {operation} failed", error,
                                   retryable=isinstance(error, ConnectionFailure))

    # ------------------------------------------------------------------
    # Isolation, transactions and migration support
    # ------------------------------------------------------------------

    def isolate(self, tenant_id: str, collections: Optional[Sequence[str]] = None):
        """Create the tenant-leading compound indexes. Idempotent."""
        self._check_tenant_id(tenant_id)
        names = self.isolation_collections(collections)
        with self._translate_errors("isolate"):
            for name in names:
                self.db[name].create_index([("tenant_id", ASCENDING), ("_id", ASCENDING)],
                                           name="tenant_id_1__id_1")
                self.db[name].create_index([("tenant_id", ASCENDING), ("created_at", ASCENDING)],
                                           name="tenant_id_1_created_at_1")
        self.logger.info(f"Tenant indexes provisioned for tenant {tenant_id} on {len(names)} collection(s)")

    def transact(self, ctx: Optional[TenantContext] = None) -> MongoTransaction:
        tenant_id = self._tenant_of(ctx) if ctx is not None else None
        session = self.client.start_session()
        try:
            session.start_transaction()
        except PyMongoError as e:
            session.end_session()
            raise TransactionError(f"Unable to start mongodb transaction: {e}", backend=self.backend_name) from e
        return MongoTransaction(self, session, tenant_id)

    def ensure_migration_store(self, name: str):
        validate_identifier(name, "collection")
        with self._translate_errors("ensure_migration_store", name):
            self.db[name].create_index([("status", ASCENDING)], name="status_1")

    def load_migration_records(self, name: str) -> List[Dict[str, Any]]:
        validate_identifier(name, "collection")
        with self._translate_errors("load_migration_records", name):
            return [self._to_record(doc) for doc in self.db[name].find({}).sort([("_id", ASCENDING)])]

    def save_migration_record(self, name: str, record: Dict[str, Any]):
        validate_identifier(name, "collection")
        document = self._to_document(record)
        with self._translate_errors("save_migration_record", name):
            self.db[name].replace_one({"_id": document["_id"]}, document, upsert=True)

    def delete_migration_record(self, name: str, migration_id: str):
        validate_identifier(name, "collection")
        with self._translate_errors("delete_migration_record", name):
            self.db[name].delete_one({"_id": migration_id})

    def execute_script(self, script: Any, tenant_id: Optional[str] = None):
        """
        Run a migration script.

        ``script`` is a callable receiving the database handle, a command
        document passed to ``db.command``, or a list of either. Document
        backends have no DDL transactions; each step applies independently.
        """
        if not script:
            raise ValidationError("Migration script is empty")
        steps = script if isinstance(script, list) else [script]
        for step in steps:
            if callable(step):
                self._run_callable_script(step, self.db)
            elif isinstance(step, dict):
                with self._translate_errors("execute_script"):
                    self.db.command(step)
            else:
                raise ValidationError("Document migration steps must be callables or command documents")
