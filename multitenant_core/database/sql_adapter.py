"""
Shared implementation for the relational adapters.

Dialects differ in placeholder style, identifier quoting, how a tenant is
bound to a session and whether ``RETURNING`` is available. Everything else,
including the mandatory ``tenant_id`` predicate on every statement, lives
here.
"""

import json
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from ..context import TenantContext
from .base_adapter import StorageAdapter, Transaction
from .config import DatabaseConfig
from .connection_pool import ConnectionPool, PooledConnection, PoolStatistics
from .exceptions import (
    ConflictError,
    NotFoundError,
    StorageError,
    TenantDataError,
    TransactionError,
    ValidationError
)
from .models import DatabaseType, IsolationStrategy, QueryOptions, Record
from .validation import (
    validate_identifier,
    validate_patch,
    validate_payload,
    validate_query_options,
    validate_record_id
)


SQL_TYPES: Dict[DatabaseType, Dict[str, str]] = {
    DatabaseType.POSTGRESQL: {
        "id": "VARCHAR(64)",
        "string": "VARCHAR(255)",
        "text": "TEXT",
        "integer": "BIGINT",
        "float": "DOUBLE PRECISION",
        "decimal": "NUMERIC(18, 6)",
        "boolean": "BOOLEAN",
        "timestamp": "TIMESTAMPTZ",
        "json": "JSONB",
    },
    DatabaseType.MYSQL: {
        "id": "VARCHAR(64)",
        "string": "VARCHAR(255)",
        "text": "TEXT",
        "integer": "BIGINT",
        "float": "DOUBLE",
        "decimal": "DECIMAL(18, 6)",
        "boolean": "BOOLEAN",
        "timestamp": "DATETIME(6)",
        "json": "JSON",
    },
    DatabaseType.SQLITE: {
        "id": "TEXT",
        "string": "TEXT",
        "text": "TEXT",
        "integer": "INTEGER",
        "float": "REAL",
        "decimal": "NUMERIC",
        "boolean": "BOOLEAN",
        "timestamp": "TIMESTAMP",
        # Declared type selects the registered JSON converter
        "json": "JSON",
    },
}
SQL_TYPES[DatabaseType.SUPABASE] = SQL_TYPES[DatabaseType.POSTGRESQL]

LIKE_ESCAPE = "!"


def sql_type(database_type: DatabaseType, logical_type: str) -> str:
    """Map a logical column type (``string``, ``timestamp``, ...) onto a dialect type."""
    try:
        return SQL_TYPES[database_type][logical_type]
    except KeyError:
        raise ValidationError(f"Unknown column type '{logical_type}' for {database_type.value}") from None


def escape_like(term: str) -> str:
    return (term.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
                .replace("%", LIKE_ESCAPE + "%")
                .replace("_", LIKE_ESCAPE + "_"))


def migration_table_ddl(name: str, database_type: DatabaseType, quote) -> str:
    """DDL for the migration history table of ``database_type``."""
    t = lambda logical: sql_type(database_type, logical)
    return (
        f"CREATE TABLE IF NOT EXISTS {quote(name)} ("
        f"{quote('id')} {t('string')} PRIMARY KEY, "
        f"{quote('name')} {t('string')} NOT NULL, "
        f"{quote('status')} {t('string')} NOT NULL, "
        f"{quote('tenant_id')} {t('string')} NULL, "
        f"{quote('checksum')} {t('string')} NULL, "
        f"{quote('rollback_script')} {t('text')} NULL, "
        f"{quote('error_message')} {t('text')} NULL, "
        f"{quote('duration_ms')} {t('float')} NULL, "
        f"{quote('executed_at')} {t('timestamp')} NULL, "
        f"{quote('created_at')} {t('timestamp')} NOT NULL, "
        f"{quote('updated_at')} {t('timestamp')} NOT NULL)"
    )


class SQLTransaction(Transaction):
    """
    Transaction handle holding one pooled connection until commit or rollback.

    A tenant-scoped handle offers ``select``, ``insert``, ``update`` and
    ``delete``, which carry the same ``tenant_id`` predicate as the adapter's
    own statements. Raw ``query`` on a tenant-scoped handle is only allowed
    where the backend enforces the tenant itself (row-level security) or
    when the handle was opened with ``raw=True``; on view-isolated backends
    the base tables are unfiltered and the caller then owns the predicates.
    """

    def __init__(self, adapter: "SQLStorageAdapter", pooled: PooledConnection, cursor: Any,
                 tenant_id: Optional[str], raw: bool = False):
        super().__init__(adapter.backend_name)
        self.tenant_id = tenant_id
        self.raw = raw
        self.rowcount = 0
        self._adapter = adapter
        self._pooled = pooled
        self._cursor = cursor

    def query(self, statement: Any, params: Any = None) -> List[Record]:
        """
        Execute one statement and return its rows (empty for statements
        without a result set). ``rowcount`` holds the affected row count.

        Raises:
            TransactionError: Tenant-scoped handle on a backend without
                native isolation, opened without ``raw=True``.
        """
        self._ensure_active()
        if not isinstance(statement, str) or not statement.strip():
            raise ValidationError("Statement must be a non-empty string")
        if (self.tenant_id is not None and not self.raw and
                self._adapter.isolation_strategy != IsolationStrategy.NATIVE):
            raise TransactionError(
                f"Raw SQL is not tenant-filtered on {self.backend}; use select/insert/update/delete "
                f"or open the transaction with raw=True",
                backend=self.backend
            )
        return self._run(statement, params)

    def select(self, collection: str, filters: Optional[Dict[str, Any]] = None) -> List[Record]:
        """Read the tenant's records of ``collection`` matching ``filters``."""
        tenant_id = self._scoped()
        validate_identifier(collection, "collection")
        options = validate_query_options(QueryOptions(filters=dict(filters or {})))
        sql, params = self._adapter._build_select(collection, options, tenant_id)
        return self._run(sql, params, collection)

    def insert(self, collection: str, data: Record) -> Record:
        tenant_id = self._scoped()
        validate_identifier(collection, "collection")
        record = self._adapter._stamp_new(validate_payload(data, collection), tenant_id)
        sql, params = self._adapter._insert_statement(collection, record)
        self._run(sql, params, collection)
        with self._adapter._translate_errors("transaction", collection):
            return self._adapter._fetch_by_id(self._cursor, collection, record["id"], tenant_id)

    def update(self, collection: str, record_id: str, patch: Record) -> Record:
        tenant_id = self._scoped()
        validate_identifier(collection, "collection")
        validate_record_id(record_id)
        changes = validate_patch(patch)
        changes["updated_at"] = self._adapter._timestamp()
        sql, params = self._adapter._update_statement(collection, record_id, changes, tenant_id)
        self._run(sql, params, collection)
        if self.rowcount == 0:
            raise NotFoundError(collection, record_id)
        with self._adapter._translate_errors("transaction", collection):
            return self._adapter._fetch_by_id(self._cursor, collection, record_id, tenant_id)

    def delete(self, collection: str, record_id: str) -> None:
        tenant_id = self._scoped()
        validate_identifier(collection, "collection")
        validate_record_id(record_id)
        where, params = self._adapter._where({"id": record_id}, tenant_id)
        self._run(f"DELETE FROM {self._adapter._quote(collection)} WHERE {where}", params, collection)
        if self.rowcount == 0:
            raise NotFoundError(collection, record_id)

    def _scoped(self) -> str:
        self._ensure_active()
        if self.tenant_id is None:
            raise TransactionError("Record operations need a tenant-scoped transaction", backend=self.backend)
        return self.tenant_id

    def _run(self, statement: str, params: Any = None, collection: Optional[str] = None) -> List[Record]:
        with self._adapter._translate_errors("transaction", collection):
            self._adapter._execute(self._cursor, statement, params)
            self.rowcount = self._cursor.rowcount
            if self._cursor.description is None:
                return []
            return [self._adapter._row_to_record(self._cursor, row) for row in self._cursor.fetchall()]

    def commit(self):
        self._ensure_active()
        self._finished = True
        try:
            with self._adapter._translate_errors("commit"):
                self._pooled.raw.commit()
        finally:
            self._release()

    def rollback(self):
        self._ensure_active()
        self._finished = True
        try:
            with self._adapter._translate_errors("rollback"):
                self._pooled.raw.rollback()
        finally:
            self._release()

    def _release(self):
        self._adapter._close_cursor(self._cursor)
        # release() rolls back anything still open and discards broken connections
        self._adapter.pool.release(self._pooled)

    def __del__(self):
        if not getattr(self, "_finished", True):
            self._finished = True
            self._release()


class SQLStorageAdapter(StorageAdapter):
    """Base class for DB-API backed adapters."""

    placeholder = "%s"
    supports_returning = False
    case_insensitive_like = False
    buffer_reads = False
    fetch_size = 500

    def __init__(self, config: DatabaseConfig):
        super().__init__(config)
        self.pool = ConnectionPool(self._connect, config.pool, name=self.backend_name,
                                   reset=self._reset_connection)
        self._columns_cache: Dict[str, List[str]] = {}
        self._columns_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Dialect hooks
    # ------------------------------------------------------------------

    def _connect(self) -> Any:
        raise NotImplementedError

    def _quote(self, identifier: str) -> str:
        return f'"{validate_identifier(identifier)}"'

    def _cursor(self, connection: Any) -> Any:
        return connection.cursor()

    def _close_cursor(self, cursor: Any):
        try:
            cursor.close()
        except Exception as e:
            self.logger.debug(f"Error closing cursor: {e}")

    def _begin(self, cursor: Any):
        """Start a transaction explicitly where the driver does not do it implicitly."""
        pass

    def _apply_tenant(self, cursor: Any, tenant_id: str):
        """Bind ``tenant_id`` to the current transaction."""
        pass

    def _reset_connection(self, connection: Any):
        connection.rollback()

    def _row_to_record(self, cursor: Any, row: Any) -> Record:
        if isinstance(row, dict):
            return {key: self._from_db(value) for key, value in row.items()}
        names = [column[0] for column in cursor.description]
        return {name: self._from_db(value) for name, value in zip(names, row)}

    def _to_db(self, value: Any) -> Any:
        # Mappings and lists are stored as JSON text
        if isinstance(value, (dict, list)):
            return json.dumps(value, default=str)
        return value

    def _from_db(self, value: Any) -> Any:
        return value

    def _limit_clause(self, limit: Optional[int], offset: Optional[int]) -> Tuple[str, List[Any]]:
        parts = []
        params: List[Any] = []
        if limit is not None:
            parts.append(f"LIMIT {self.placeholder}")
            params.append(limit)
        if offset is not None:
            parts.append(f"OFFSET {self.placeholder}")
            params.append(offset)
        return " ".join(parts), params

    def _run_script_text(self, cursor: Any, script: str):
        self._execute(cursor, script)

    def _is_unique_violation(self, error: Exception) -> bool:
        return False

    def _is_retryable(self, error: Exception) -> bool:
        return False

    def _create_support_objects(self):
        pass

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self):
        """Open the minimum pool size, verify connectivity and create support objects."""
        self.pool.warm_up()
        if not self.test_connection():
            raise StorageError(f"Unable to reach {self.backend_name} backend", backend=self.backend_name,
                               retryable=True)
        with self._translate_errors("initialize"):
            self._create_support_objects()
        self._initialized = True
        self.logger.info(f"{self.backend_name} adapter initialized "
                         f"(isolation={self.isolation_strategy.value})")

    def test_connection(self) -> bool:
        try:
            with self._session(None) as cursor:
                self._execute(cursor, "SELECT 1")
                cursor.fetchone()
            return True
        except Exception as e:
            self.logger.warning(f"{self.backend_name} connection test failed: {e}")
            return False

    def close(self):
        self.pool.close_all()
        self._initialized = False

    def get_pool_statistics(self) -> PoolStatistics:
        return self.pool.get_statistics()

    # ------------------------------------------------------------------
    # Session handling
    # ------------------------------------------------------------------

    @contextmanager
    def _session(self, tenant_id: Optional[str]) -> Iterator[Any]:
        """Run a unit of work on a pooled connection, committed on normal exit."""
        with self.pool.connection() as conn:
            cursor = self._cursor(conn)
            try:
                self._begin(cursor)
                if tenant_id is not None:
                    self._apply_tenant(cursor, tenant_id)
                yield cursor
                conn.commit()
            finally:
                self._close_cursor(cursor)

    def _execute(self, cursor: Any, statement: str, params: Optional[Sequence[Any]] = None):
        if params is None:
            cursor.execute(statement)
        else:
            cursor.execute(statement, params)

    def transact(self, ctx: Optional[TenantContext] = None, raw: bool = False) -> SQLTransaction:
        """
        Open a transaction on a dedicated connection.

        When ``ctx`` is given the tenant is bound to the transaction the same
        way CRUD operations bind it, and the handle's record operations are
        tenant filtered. Raw statements are never rewritten: on backends
        without native isolation a tenant-scoped handle accepts them only
        with ``raw=True``.
        """
        tenant_id = self._tenant_of(ctx) if ctx is not None else None
        pooled = self.pool.acquire()
        cursor = None
        try:
            cursor = self._cursor(pooled.raw)
            self._begin(cursor)
            if tenant_id is not None:
                self._apply_tenant(cursor, tenant_id)
        except Exception as e:
            if cursor is not None:
                self._close_cursor(cursor)
            self.pool.release(pooled)
            if isinstance(e, TenantDataError):
                raise
            raise self._translate_exception(e, "transact", None) from e
        return SQLTransaction(self, pooled, cursor, tenant_id, raw=raw)

    # ------------------------------------------------------------------
    # SQL building
    # ------------------------------------------------------------------

    def _where(self, filters: Dict[str, Any], tenant_id: str) -> Tuple[str, List[Any]]:
        ph = self.placeholder
        conditions = [f"{self._quote('tenant_id')} = {ph}"]
        params: List[Any] = [tenant_id]
        for name, value in filters.items():
            column = self._quote(name)
            if value is None:
                conditions.append(f"{column} IS NULL")
            elif isinstance(value, (list, tuple, set, frozenset)):
                values = list(value)
                if not values:
                    conditions.append("1 = 0")
                    continue
                conditions.append(f"{column} IN ({', '.join([ph] * len(values))})")
                params.extend(self._to_db(v) for v in values)
            else:
                conditions.append(f"{column} = {ph}")
                params.append(self._to_db(value))
        return " AND ".join(conditions), params

    def _order_clause(self, options: QueryOptions) -> str:
        if options.order is not None:
            return f"ORDER BY {self._quote(options.order.field)} {options.order.direction}"
        return f"ORDER BY {self._quote('created_at')} ASC, {self._quote('id')} ASC"

    def _build_select(self, collection: str, options: QueryOptions, tenant_id: str) -> Tuple[str, List[Any]]:
        columns = ", ".join(self._quote(c) for c in options.select) if options.select else "*"
        where, params = self._where(options.filters, tenant_id)
        sql = f"SELECT {columns} FROM {self._quote(collection)} WHERE {where} {self._order_clause(options)}"
        limit_sql, limit_params = self._limit_clause(options.limit, options.offset)
        if limit_sql:
            sql = f"{sql} {limit_sql}"
        return sql, params + limit_params

    def _insert_statement(self, collection: str, record: Record) -> Tuple[str, List[Any]]:
        columns = list(record.keys())
        sql = (f"INSERT INTO {self._quote(collection)} ({', '.join(self._quote(c) for c in columns)}) "
               f"VALUES ({', '.join([self.placeholder] * len(columns))})")
        return sql, [self._to_db(record[c]) for c in columns]

    # ------------------------------------------------------------------
    # Backend hooks for StorageAdapter
    # ------------------------------------------------------------------

    def _insert(self, collection: str, record: Record, tenant_id: str) -> Record:
        sql, params = self._insert_statement(collection, record)
        with self._session(tenant_id) as cursor:
            if self.supports_returning:
                self._execute(cursor, f"{sql} RETURNING *", params)
                return self._row_to_record(cursor, cursor.fetchone())
            self._execute(cursor, sql, params)
            return self._fetch_by_id(cursor, collection, record["id"], tenant_id)

    def _insert_many(self, collection: str, records: List[Record], tenant_id: str) -> List[Record]:
        """
        Insert every record in one transaction.

        All-or-nothing: a failing record rolls back the whole batch and the
        error is raised.
        """
        created: Dict[str, Record] = {}
        with self._session(tenant_id) as cursor:
            for record in records:
                sql, params = self._insert_statement(collection, record)
                if self.supports_returning:
                    self._execute(cursor, f"{sql} RETURNING *", params)
                    row = self._row_to_record(cursor, cursor.fetchone())
                    created[row["id"]] = row
                else:
                    self._execute(cursor, sql, params)
            if not self.supports_returning:
                ids = [r["id"] for r in records]
                for start in range(0, len(ids), self.fetch_size):
                    chunk = ids[start:start + self.fetch_size]
                    where, params = self._where({"id": chunk}, tenant_id)
                    self._execute(cursor, f"SELECT * FROM {self._quote(collection)} WHERE {where}", params)
                    for row in cursor.fetchall():
                        record = self._row_to_record(cursor, row)
                        created[record["id"]] = record
        return [created[r["id"]] for r in records]

    def _select(self, collection: str, options: QueryOptions, tenant_id: str) -> Iterator[Record]:
        sql, params = self._build_select(collection, options, tenant_id)
        return self._stream(sql, params, tenant_id)

    def _stream(self, sql: str, params: List[Any], tenant_id: str) -> Iterator[Record]:
        # Generator: the connection is acquired on first next() and released
        # on exhaustion, close() or garbage collection.
        if self.buffer_reads:
            with self._session(tenant_id) as cursor:
                self._execute(cursor, sql, params)
                records = [self._row_to_record(cursor, row) for row in cursor.fetchall()]
            yield from records
            return
        with self._session(tenant_id) as cursor:
            self._execute(cursor, sql, params)
            while True:
                rows = cursor.fetchmany(self.fetch_size)
                if not rows:
                    break
                for row in rows:
                    yield self._row_to_record(cursor, row)

    def _count(self, collection: str, filters: Dict[str, Any], tenant_id: str) -> int:
        where, params = self._where(filters, tenant_id)
        with self._session(tenant_id) as cursor:
            self._execute(cursor, f"SELECT COUNT(*) AS total FROM {self._quote(collection)} WHERE {where}",
                          params)
            return int(self._row_to_record(cursor, cursor.fetchone())["total"])

    def _update_statement(self, collection: str, record_id: str, changes: Record,
                          tenant_id: str) -> Tuple[str, List[Any]]:
        ph = self.placeholder
        assignments = ", ".join(f"{self._quote(name)} = {ph}" for name in changes)
        where, where_params = self._where({"id": record_id}, tenant_id)
        sql = f"UPDATE {self._quote(collection)} SET {assignments} WHERE {where}"
        return sql, [self._to_db(value) for value in changes.values()] + where_params

    def _update(self, collection: str, record_id: str, changes: Record, tenant_id: str) -> Optional[Record]:
        sql, params = self._update_statement(collection, record_id, changes, tenant_id)
        with self._session(tenant_id) as cursor:
            if self.supports_returning:
                self._execute(cursor, f"{sql} RETURNING *", params)
                row = cursor.fetchone()
                return self._row_to_record(cursor, row) if row is not None else None
            self._execute(cursor, sql, params)
            if cursor.rowcount == 0:
                return None
            return self._fetch_by_id(cursor, collection, record_id, tenant_id)

    def _delete(self, collection: str, record_id: str, tenant_id: str) -> bool:
        where, params = self._where({"id": record_id}, tenant_id)
        with self._session(tenant_id) as cursor:
            self._execute(cursor, f"DELETE FROM {self._quote(collection)} WHERE {where}", params)
            return cursor.rowcount > 0

    def _search(self, collection: str, term: str, fields: List[str], limit: int, offset: int,
                tenant_id: str) -> List[Record]:
        available = set(self._columns(collection))
        fields = [f for f in fields if f in available]
        if not fields:
            return []
        pattern = f"%{escape_like(term)}%"
        if not self.case_insensitive_like:
            pattern = pattern.lower()
        where, params = self._where({}, tenant_id)
        matches = " OR ".join(self._like(self._quote(f)) for f in fields)
        params.extend([pattern] * len(fields))
        limit_sql, limit_params = self._limit_clause(limit, offset)
        sql = (f"SELECT * FROM {self._quote(collection)} WHERE {where} AND ({matches}) "
               f"ORDER BY {self._quote('updated_at')} DESC, {self._quote('id')} ASC {limit_sql}")
        with self._session(tenant_id) as cursor:
            self._execute(cursor, sql, params + limit_params)
            return [self._row_to_record(cursor, row) for row in cursor.fetchall()]

    def _like(self, column: str) -> str:
        return f"LOWER({column}) LIKE {self.placeholder} ESCAPE '{LIKE_ESCAPE}'"

    def _fetch_by_id(self, cursor: Any, collection: str, record_id: str, tenant_id: str) -> Optional[Record]:
        where, params = self._where({"id": record_id}, tenant_id)
        self._execute(cursor, f"SELECT * FROM {self._quote(collection)} WHERE {where}", params)
        row = cursor.fetchone()
        return self._row_to_record(cursor, row) if row is not None else None

    def _columns(self, collection: str) -> List[str]:
        with self._columns_lock:
            cached = self._columns_cache.get(collection)
        if cached is not None:
            return cached
        with self._session(None) as cursor:
            self._execute(cursor, f"SELECT * FROM {self._quote(collection)} WHERE 1 = 0")
            columns = [column[0] for column in cursor.description]
            cursor.fetchall()
        with self._columns_lock:
            self._columns_cache[collection] = columns
        return columns

    def _translate_exception(self, error: Exception, operation: str, collection: Optional[str]) -> TenantDataError:
        if self._is_unique_violation(error):
            details = {"operation": operation}
            if collection:
                details["collection"] = collection
            return ConflictError("Duplicate value violates a unique constraint", details=details)
        return self._storage_error(f"{self.backend_name} {operation} failed", error,
                                   retryable=self._is_retryable(error))

    # ------------------------------------------------------------------
    # Migration support
    # ------------------------------------------------------------------

    def _migration_table_ddl(self, name: str) -> str:
        return migration_table_ddl(name, self.database_type, self._quote)

    def ensure_migration_store(self, name: str):
        validate_identifier(name, "table")
        with self._translate_errors("ensure_migration_store", name):
            with self._session(None) as cursor:
                self._execute(cursor, self._migration_table_ddl(name))

    def load_migration_records(self, name: str) -> List[Dict[str, Any]]:
        validate_identifier(name, "table")
        with self._translate_errors("load_migration_records", name):
            with self._session(None) as cursor:
                self._execute(cursor, f"SELECT * FROM {self._quote(name)} ORDER BY {self._quote('id')} ASC")
                return [self._row_to_record(cursor, row) for row in cursor.fetchall()]

    def save_migration_record(self, name: str, record: Dict[str, Any]):
        validate_identifier(name, "table")
        sql, params = self._insert_statement(name, record)
        with self._translate_errors("save_migration_record", name):
            with self._session(None) as cursor:
                self._execute(cursor, f"DELETE FROM {self._quote(name)} WHERE {self._quote('id')} = "
                                      f"{self.placeholder}", [record["id"]])
                self._execute(cursor, sql, params)

    def delete_migration_record(self, name: str, migration_id: str):
        validate_identifier(name, "table")
        with self._translate_errors("delete_migration_record", name):
            with self._session(None) as cursor:
                self._execute(cursor, f"DELETE FROM {self._quote(name)} WHERE {self._quote('id')} = "
                                      f"{self.placeholder}", [migration_id])

    def execute_script(self, script: Any, tenant_id: Optional[str] = None):
        """
        Run a migration script in one transaction.

        ``script`` is SQL text, a list of SQL statements, or a callable that
        receives an open ``SQLTransaction``. With ``tenant_id`` the tenant is
        bound to the transaction first.
        """
        if not script:
            raise ValidationError("Migration script is empty")
        try:
            if callable(script):
                ctx = TenantContext.system(tenant_id) if tenant_id is not None else None
                with self.transact(ctx, raw=True) as tx:
                    self._run_callable_script(script, tx)
                return
            with self._translate_errors("execute_script"):
                with self._session(tenant_id) as cursor:
                    if isinstance(script, str):
                        self._run_script_text(cursor, script)
                    else:
                        for statement in script:
                            self._execute(cursor, statement)
        finally:
            with self._columns_lock:
                self._columns_cache.clear()
