"""
PostgreSQL adapter using row-level security for tenant isolation.
"""

import json
import uuid
from functools import partial
from typing import Any, Callable, Iterator, List, Optional, Sequence

import psycopg2
import psycopg2.errorcodes
import psycopg2.extras

from ..config import DatabaseConfig
from ..models import DatabaseType, IsolationStrategy, Record
from ..sql_adapter import SQLStorageAdapter


TENANT_SETTING = "app.current_tenant_id"

TENANT_CONTEXT_FUNCTION = f"""
CREATE OR REPLACE FUNCTION set_tenant_context(p_tenant_id TEXT)
RETURNS VOID AS $$
BEGIN
    PERFORM set_config('{TENANT_SETTING}', p_tenant_id, true);
END;
$$ LANGUAGE plpgsql
"""


def rls_policy_statements(table: str, quote: Callable[[str], str]) -> List[str]:
    """Statements enabling, forcing and (re)creating the tenant policy on ``table``."""
    quoted = quote(table)
    policy = quote(f"{table}_tenant_isolation"[:63])
    predicate = f"tenant_id::text = current_setting('{TENANT_SETTING}', true)"
    return [
        f"ALTER TABLE {quoted} ENABLE ROW LEVEL SECURITY",
        f"ALTER TABLE {quoted} FORCE ROW LEVEL SECURITY",
        f"DROP POLICY IF EXISTS {policy} ON {quoted}",
        f"CREATE POLICY {policy} ON {quoted} USING ({predicate}) WITH CHECK ({predicate})",
    ]


class PostgreSQLAdapter(SQLStorageAdapter):
    """
    PostgreSQL adapter (native isolation).

    Every transaction binds the caller's tenant with
    ``set_config('app.current_tenant_id', <tenant>, true)``, which is local to
    the transaction and therefore cannot leak to the next user of a pooled
    connection. ``isolate()`` installs a row-level security policy comparing
    each row's ``tenant_id`` with that setting, and the adapter also adds a
    ``tenant_id`` predicate to every statement, so isolation holds even for
    roles that bypass RLS (superusers, ``BYPASSRLS``).

    Reads stream through a named (server-side) cursor, so at most
    ``fetch_size`` rows are held in memory at a time.
    """

    database_type = DatabaseType.POSTGRESQL
    isolation_strategy = IsolationStrategy.NATIVE
    supports_returning = True
    case_insensitive_like = True

    def __init__(self, config: DatabaseConfig):
        super().__init__(config)
        self.connect_timeout = int(config.options.get("connect_timeout", 10))

    def _connect(self) -> Any:
        if self.config.url:
            connection = psycopg2.connect(self.config.url, connect_timeout=self.connect_timeout)
        else:
            connection = psycopg2.connect(
                host=self.config.host,
                port=self.config.port or 5432,
                dbname=self.config.database,
                user=self.config.username,
                password=self.config.password,
                sslmode="require" if self.config.ssl else "prefer",
                connect_timeout=self.connect_timeout
            )
        connection.autocommit = False
        return connection

    def _cursor(self, connection: Any) -> Any:
        return connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)

    def _apply_tenant(self, cursor: Any, tenant_id: str):
        cursor.execute("SELECT set_config(%s, %s, true)", (TENANT_SETTING, tenant_id))

    def _row_to_record(self, cursor: Any, row: Any) -> dict:
        return dict(row)

    def _to_db(self, value: Any) -> Any:
        # JSON/JSONB columns come back already decoded by psycopg2
        if isinstance(value, (dict, list)):
            return psycopg2.extras.Json(value, dumps=partial(json.dumps, default=str))
        return value

    def _stream(self, sql: str, params: List[Any], tenant_id: str) -> Iterator[Record]:
        with self.pool.connection() as conn:
            with conn.cursor() as setup:
                self._apply_tenant(setup, tenant_id)
            # A named cursor can run a single statement only
            cursor = conn.cursor(name=f"mtc_read_{uuid.uuid4().hex}",
                                 cursor_factory=psycopg2.extras.RealDictCursor)
            cursor.itersize = self.fetch_size
            try:
                cursor.execute(sql, params)
                while True:
                    rows = cursor.fetchmany(self.fetch_size)
                    if not rows:
                        break
                    for row in rows:
                        yield self._row_to_record(cursor, row)
            finally:
                self._close_cursor(cursor)
            conn.commit()

    def _like(self, column: str) -> str:
        return f"{column}::text ILIKE %s ESCAPE '!'"

    def _is_unique_violation(self, error: Exception) -> bool:
        return (isinstance(error, psycopg2.IntegrityError) and
                getattr(error, "pgcode", None) == psycopg2.errorcodes.UNIQUE_VIOLATION)

    def _is_retryable(self, error: Exception) -> bool:
        if isinstance(error, psycopg2.OperationalError):
            return True
        return getattr(error, "pgcode", None) in (
            psycopg2.errorcodes.SERIALIZATION_FAILURE,
            psycopg2.errorcodes.DEADLOCK_DETECTED,
        )

    def _create_support_objects(self):
        # Helper so ad-hoc SQL sessions can bind a tenant the same way the adapter does.
        with self._session(None) as cursor:
            cursor.execute(TENANT_CONTEXT_FUNCTION)

    def isolate(self, tenant_id: str, collections: Optional[Sequence[str]] = None):
        """
        Enable and force row-level security on the tenant collections and
        (re)create the isolation policy. The policy is shared by all tenants,
        so calling this again for any tenant is a no-op in effect.
        """
        self._check_tenant_id(tenant_id)
        names = self.isolation_collections(collections)
        with self._translate_errors("isolate"):
            with self._session(None) as cursor:
                for name in names:
                    for statement in rls_policy_statements(name, self._quote):
                        cursor.execute(statement)
        self.logger.info(f"Row-level security provisioned for tenant {tenant_id} on {len(names)} collection(s)")
