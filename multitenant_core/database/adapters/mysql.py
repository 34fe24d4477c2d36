"""
MySQL adapter using per-tenant views for tenant isolation.
"""

import json
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

import pymysql
import pymysql.cursors
from pymysql.constants import CLIENT, ER, FIELD_TYPE

from ..config import DatabaseConfig
from ..models import DatabaseType, IsolationStrategy, Record
from ..sql_adapter import SQLStorageAdapter
from .views import tenant_view_name


# Error codes worth retrying: lock wait timeout, deadlock, gone away, lost connection.
RETRYABLE_ERRORS = {1205, 1213, 2006, 2013}


class MySQLAdapter(SQLStorageAdapter):
    """
    MySQL adapter (view isolation).

    MySQL has no row-level security. ``isolate()`` creates one view per
    tenant and collection whose definition embeds the tenant id as a quoted
    literal (views cannot reference session variables). The adapter itself
    never relies on those views: every statement it issues carries a
    ``tenant_id`` predicate, and the views are for reporting users that are
    granted access to them instead of the base tables.

    DDL statements commit implicitly in MySQL, so a migration script mixing
    DDL and DML is not atomic.
    """

    database_type = DatabaseType.MYSQL
    isolation_strategy = IsolationStrategy.VIEW

    def __init__(self, config: DatabaseConfig):
        super().__init__(config)
        self.connect_timeout = int(config.options.get("connect_timeout", 10))

    def _connect(self) -> Any:
        kwargs = {
            "host": self.config.host,
            "port": self.config.port or 3306,
            "user": self.config.username,
            "password": self.config.password or "",
            "database": self.config.database,
            "charset": "utf8mb4",
            "autocommit": False,
            "connect_timeout": self.connect_timeout,
            "cursorclass": pymysql.cursors.DictCursor,
            # FOUND_ROWS: rowcount reports matched rather than changed rows on UPDATE
            "client_flag": CLIENT.MULTI_STATEMENTS | CLIENT.FOUND_ROWS,
        }
        if self.config.ssl:
            kwargs["ssl"] = self.config.options.get("ssl_options") or {"check_hostname": True}
        return pymysql.connect(**kwargs)

    def _quote(self, identifier: str) -> str:
        return f"`{super()._quote(identifier)[1:-1]}`"

    def _apply_tenant(self, cursor: Any, tenant_id: str):
        cursor.execute("SET @current_tenant_id = %s", (tenant_id,))

    def _reset_connection(self, connection: Any):
        connection.rollback()
        with connection.cursor() as cursor:
            cursor.execute("SET @current_tenant_id = NULL")

    def _to_db(self, value: Any) -> Any:
        if isinstance(value, datetime) and value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return super()._to_db(value)

    def _row_to_record(self, cursor: Any, row: Any) -> Record:
        record = super()._row_to_record(cursor, row)
        # PyMySQL returns JSON columns as text
        for column in cursor.description or ():
            if len(column) > 1 and column[1] == FIELD_TYPE.JSON and isinstance(record.get(column[0]), str):
                record[column[0]] = json.loads(record[column[0]])
        return record

    def _from_db(self, value: Any) -> Any:
        # DATETIME columns hold UTC wall-clock time
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def _limit_clause(self, limit: Optional[int], offset: Optional[int]):
        if limit is None and offset is not None:
            return "LIMIT 18446744073709551615 OFFSET %s", [offset]
        return super()._limit_clause(limit, offset)

    def _run_script_text(self, cursor: Any, script: str):
        cursor.execute(script)
        while cursor.nextset():
            pass

    def _is_unique_violation(self, error: Exception) -> bool:
        return (isinstance(error, pymysql.err.IntegrityError) and
                bool(error.args) and error.args[0] == ER.DUP_ENTRY)

    def _is_retryable(self, error: Exception) -> bool:
        if isinstance(error, pymysql.err.OperationalError):
            return True
        return bool(getattr(error, "args", None)) and error.args[0] in RETRYABLE_ERRORS

    def isolate(self, tenant_id: str, collections: Optional[Sequence[str]] = None):
        """Create or replace the tenant's filtered view of each tenant collection."""
        self._check_tenant_id(tenant_id)
        names = self.isolation_collections(collections)
        with self._translate_errors("isolate"):
            with self.pool.connection() as conn:
                literal = conn.escape(tenant_id)
                with conn.cursor() as cursor:
                    for name in names:
                        view = self._quote(tenant_view_name(name, tenant_id))
                        cursor.execute(f"CREATE OR REPLACE VIEW {view} AS SELECT * FROM {self._quote(name)} "
                                       f"WHERE {self._quote('tenant_id')} = {literal}")
                conn.commit()
        self.logger.info(f"Tenant views provisioned for tenant {tenant_id} on {len(names)} collection(s)")
