"""
Supabase adapter: PostgreSQL row-level security reached over PostgREST.
"""

import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional, Sequence

import httpx
from postgrest.exceptions import APIError
from supabase import Client, create_client

from ...context import TenantContext
from ..base_adapter import StorageAdapter, Transaction
from ..config import DatabaseConfig
from ..exceptions import ConflictError, StorageError, TenantDataError, TransactionError, ValidationError
from ..models import DatabaseType, IsolationStrategy, QueryOptions, Record
from ..sql_adapter import migration_table_ddl
from ..validation import validate_identifier
from .postgresql import TENANT_CONTEXT_FUNCTION, TENANT_SETTING, rls_policy_statements


UNIQUE_VIOLATION = "23505"
UNDEFINED_TABLE_CODES = ("42P01", "PGRST205")
TIMESTAMP_FIELDS = ("created_at", "updated_at", "executed_at")

_FRACTION = re.compile(r"\.(\d+)")


def _quote(identifier: str) -> str:
    return f'"{validate_identifier(identifier)}"'


def _literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _to_api(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _to_api(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_api(v) for v in value]
    return value


def parse_timestamp(value: Any) -> Any:
    """Parse a PostgREST timestamp string into an aware datetime."""
    if not isinstance(value, str):
        return value
    text = value.replace("Z", "+00:00").replace(" ", "T", 1)
    # fromisoformat wants exactly six fractional digits before 3.11
    text = _FRACTION.sub(lambda m: "." + (m.group(1) + "000000")[:6], text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return value
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _filter_value(term: str) -> str:
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    quoted = f"*{escaped}*".replace("\\", "\\\\").replace('"', '\\"')
    return f'"{quoted}"'


class SupabaseAdapter(StorageAdapter):
    """
    Supabase adapter (native isolation).

    Requests go through PostgREST with the service key, which bypasses RLS,
    so every request also carries an explicit ``tenant_id=eq.<tenant>``
    filter and every insert is stamped by the base class. ``isolate()``
    installs the same policies as the PostgreSQL adapter for other clients
    (anon or user keys) of the project.

    DDL and raw SQL are sent to a SQL function exposed over RPC,
    ``execute_migration(migration_sql text)`` by default
    (``options["sql_function"]``). PostgREST has no client-side
    transactions, so ``transact`` is unsupported and ``bulk_create`` relies
    on a single multi-row insert request, which PostgREST applies
    atomically.
    """

    database_type = DatabaseType.SUPABASE
    isolation_strategy = IsolationStrategy.NATIVE
    fetch_size = 500

    def __init__(self, config: DatabaseConfig, client: Optional[Client] = None):
        super().__init__(config)
        if client is None:
            client = create_client(config.url, config.service_key)
        self.client = client
        self.sql_function = config.options.get("sql_function", "execute_migration")
        self.health_table = config.options.get("health_table", "tenants")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self):
        if not self.test_connection():
            raise StorageError("Unable to reach supabase backend", backend=self.backend_name, retryable=True)
        self._initialized = True
        self.logger.info(f"supabase adapter initialized (url={self.config.url}, "
                         f"isolation={self.isolation_strategy.value})")

    def test_connection(self) -> bool:
        try:
            self.client.table(self.health_table).select("id").limit(1).execute()
            return True
        except APIError as e:
            # The API answered; only the health table is missing
            if e.code in UNDEFINED_TABLE_CODES:
                return True
            self.logger.warning(f"supabase connection test failed: {e.message}")
            return False
        except httpx.HTTPError as e:
            self.logger.warning(f"supabase connection test failed: {e}")
            return False

    def close(self):
        self._initialized = False

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _to_record(self, row: Dict[str, Any]) -> Record:
        record = dict(row)
        for name in TIMESTAMP_FIELDS:
            if name in record:
                record[name] = parse_timestamp(record[name])
        return record

    def _filtered(self, builder: Any, filters: Dict[str, Any], tenant_id: Optional[str]) -> Any:
        if tenant_id is not None:
            builder = builder.eq("tenant_id", tenant_id)
        for name, value in filters.items():
            validate_identifier(name, "field")
            if value is None:
                builder = builder.is_(name, "null")
            elif isinstance(value, (list, tuple, set, frozenset)):
                builder = builder.in_(name, [_to_api(v) for v in value])
            else:
                builder = builder.eq(name, _to_api(value))
        return builder

    def _rpc_sql(self, sql: str):
        self.client.rpc(self.sql_function, {"migration_sql": sql}).execute()

    # ------------------------------------------------------------------
    # Backend hooks for StorageAdapter
    # ------------------------------------------------------------------

    def _insert(self, collection: str, record: Record, tenant_id: str) -> Record:
        response = self.client.table(collection).insert(_to_api(record)).execute()
        return self._to_record(response.data[0])

    def _insert_many(self, collection: str, records: List[Record], tenant_id: str) -> List[Record]:
        """Insert all records in one request; PostgREST commits all of them or none."""
        response = self.client.table(collection).insert([_to_api(r) for r in records]).execute()
        by_id = {row["id"]: row for row in response.data}
        return [self._to_record(by_id.get(r["id"], r)) for r in records]

    def _select(self, collection: str, options: QueryOptions, tenant_id: str) -> Iterator[Record]:
        columns = ",".join(options.select) if options.select else "*"
        start = options.offset or 0
        remaining = options.limit
        while remaining is None or remaining > 0:
            size = self.fetch_size if remaining is None else min(remaining, self.fetch_size)
            builder = self._filtered(self.client.table(collection).select(columns), options.filters, tenant_id)
            if options.order is not None:
                builder = builder.order(options.order.field, desc=not options.order.ascending)
            else:
                builder = builder.order("created_at")
            rows = builder.range(start, start + size - 1).execute().data
            for row in rows:
                yield self._to_record(row)
            if len(rows) < size:
                return
            start += size
            if remaining is not None:
                remaining -= size

    def _count(self, collection: str, filters: Dict[str, Any], tenant_id: str) -> int:
        builder = self.client.table(collection).select("id", count="exact")
        response = self._filtered(builder, filters, tenant_id).limit(1).execute()
        return response.count or 0

    def _update(self, collection: str, record_id: str, changes: Record, tenant_id: str) -> Optional[Record]:
        builder = self.client.table(collection).update(_to_api(changes))
        response = self._filtered(builder, {"id": record_id}, tenant_id).execute()
        return self._to_record(response.data[0]) if response.data else None

    def _delete(self, collection: str, record_id: str, tenant_id: str) -> bool:
        response = self._filtered(self.client.table(collection).delete(), {"id": record_id}, tenant_id).execute()
        return bool(response.data)

    def _search(self, collection: str, term: str, fields: List[str], limit: int, offset: int,
                tenant_id: str) -> List[Record]:
        sample = self._filtered(self.client.table(collection).select("*"), {}, tenant_id).limit(1).execute()
        if not sample.data:
            return []
        available = set(sample.data[0])
        fields = [f for f in fields if f in available]
        if not fields:
            return []
        pattern = _filter_value(term)
        builder = self._filtered(self.client.table(collection).select("*"), {}, tenant_id)
        response = (builder.or_(",".join(f"{f}.ilike.{pattern}" for f in fields))
                    .order("updated_at", desc=True)
                    .range(offset, offset + limit - 1)
                    .execute())
        return [self._to_record(row) for row in response.data]

    def _translate_exception(self, error: Exception, operation: str, collection: Optional[str]) -> TenantDataError:
        details = {"operation": operation}
        if collection:
            details["collection"] = collection
        if isinstance(error, APIError):
            details["code"] = error.code
            if error.code == UNIQUE_VIOLATION:
                return ConflictError("Duplicate value violates a unique constraint", details=details)
            return StorageError(f"supabase {operation} failed: {error.message}", backend=self.backend_name,
                                details=details)
        return self._storage_error(f"supabase {operation} failed", error,
                                   retryable=isinstance(error, httpx.TransportError))

    # ------------------------------------------------------------------
    # Isolation, transactions and migration support
    # ------------------------------------------------------------------

    def isolate(self, tenant_id: str, collections: Optional[Sequence[str]] = None):
        """Install the tenant context function and RLS policies. Idempotent."""
        self._check_tenant_id(tenant_id)
        names = self.isolation_collections(collections)
        statements = [TENANT_CONTEXT_FUNCTION.strip()]
        for name in names:
            statements.extend(rls_policy_statements(name, _quote))
        with self._translate_errors("isolate"):
            self._rpc_sql(";\n".join(statements))
        self.logger.info(f"RLS policies provisioned for tenant {tenant_id} on {len(names)} table(s)")

    def transact(self, ctx: Optional[TenantContext] = None) -> Transaction:
        raise TransactionError("PostgREST does not expose client-side transactions", backend=self.backend_name)

    def ensure_migration_store(self, name: str):
        with self._translate_errors("ensure_migration_store", name):
            self._rpc_sql(migration_table_ddl(name, self.database_type, _quote))

    def load_migration_records(self, name: str) -> List[Dict[str, Any]]:
        validate_identifier(name, "table")
        with self._translate_errors("load_migration_records", name):
            response = self.client.table(name).select("*").order("id").execute()
        return [self._to_record(row) for row in response.data]

    def save_migration_record(self, name: str, record: Dict[str, Any]):
        validate_identifier(name, "table")
        with self._translate_errors("save_migration_record", name):
            self.client.table(name).upsert(_to_api(record), on_conflict="id").execute()

    def delete_migration_record(self, name: str, migration_id: str):
        validate_identifier(name, "table")
        with self._translate_errors("delete_migration_record", name):
            self.client.table(name).delete().eq("id", migration_id).execute()

    def execute_script(self, script: Any, tenant_id: Optional[str] = None):
        """
        Run a migration script through the SQL function.

        ``script`` is SQL text, a list of statements (sent as one request,
        so the function runs them in one transaction) or a callable receiving
        the Supabase client. With ``tenant_id`` the SQL is prefixed with the
        transaction-local tenant setting the RLS policies read.
        """
        if not script:
            raise ValidationError("Migration script is empty")
        if callable(script):
            self._run_callable_script(script, self.client)
            return
        if isinstance(script, list):
            if not all(isinstance(s, str) for s in script):
                raise ValidationError("SQL migration steps must be strings")
            script = ";\n".join(s.strip().rstrip(";") for s in script if s.strip())
        if not isinstance(script, str):
            raise ValidationError("SQL migrations must be a string, a list of strings or a callable")
        if tenant_id is not None:
            self._check_tenant_id(tenant_id)
            script = f"SELECT set_config('{TENANT_SETTING}', {_literal(tenant_id)}, true);\n{script}"
        with self._translate_errors("execute_script"):
            self._rpc_sql(script)
