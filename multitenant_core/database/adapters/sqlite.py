"""
SQLite adapter using per-tenant views for tenant isolation.
"""

import json
import os
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from ..config import DatabaseConfig
from ..models import DatabaseType, IsolationStrategy
from ..sql_adapter import SQLStorageAdapter
from .views import tenant_view_name


def _adapt_datetime(value: datetime) -> str:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.isoformat()


def _convert_timestamp(raw: bytes) -> datetime:
    value = datetime.fromisoformat(raw.decode("utf-8"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _convert_json(raw: bytes) -> Any:
    text = raw.decode("utf-8")
    try:
        return json.loads(text)
    except ValueError:
        # Plain strings written to a JSON column are stored unencoded
        return text


sqlite3.register_adapter(datetime, _adapt_datetime)
sqlite3.register_converter("TIMESTAMP", _convert_timestamp)
sqlite3.register_converter("DATETIME", _convert_timestamp)
sqlite3.register_converter("BOOLEAN", lambda raw: bool(int(raw)))
sqlite3.register_converter("JSON", _convert_json)


class SQLiteAdapter(SQLStorageAdapter):
    """
    SQLite adapter (view isolation), intended for development and tests.

    ``:memory:`` databases use a private shared-cache URI so every pooled
    connection sees the same data; one anchor connection keeps the database
    alive until ``close()``. Reads are buffered before records are yielded
    because a shared-cache reader would otherwise lock out writers on other
    connections.
    """

    database_type = DatabaseType.SQLITE
    isolation_strategy = IsolationStrategy.VIEW
    placeholder = "?"
    buffer_reads = True

    def __init__(self, config: DatabaseConfig):
        super().__init__(config)
        self.timeout = float(config.options.get("timeout", 30.0))
        self._anchor: Optional[sqlite3.Connection] = None
        if config.database == ":memory:":
            self._target = f"file:mtc_{uuid.uuid4().hex}?mode=memory&cache=shared"
            self._uri = True
            self._anchor = sqlite3.connect(self._target, uri=True, check_same_thread=False)
        else:
            self._target = config.database
            self._uri = bool(config.database and config.database.startswith("file:"))

    def _connect(self) -> Any:
        if not self._uri:
            directory = os.path.dirname(os.path.abspath(self._target))
            os.makedirs(directory, exist_ok=True)
        connection = sqlite3.connect(
            self._target,
            uri=self._uri,
            timeout=self.timeout,
            detect_types=sqlite3.PARSE_DECLTYPES,
            check_same_thread=False,
            isolation_level=None
        )
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    def _begin(self, cursor: Any):
        # Autocommit mode plus explicit BEGIN keeps DDL inside the transaction.
        cursor.execute("BEGIN")

    def _limit_clause(self, limit: Optional[int], offset: Optional[int]):
        if limit is None and offset is not None:
            return "LIMIT -1 OFFSET ?", [offset]
        return super()._limit_clause(limit, offset)

    def _run_script_text(self, cursor: Any, script: str):
        statement = ""
        for part in script.split(";"):
            statement += part + ";"
            if sqlite3.complete_statement(statement):
                if statement.strip(" \t\r\n;"):
                    cursor.execute(statement)
                statement = ""
        if statement.strip(" \t\r\n;"):
            cursor.execute(statement.rstrip(";"))

    def _is_unique_violation(self, error: Exception) -> bool:
        return isinstance(error, sqlite3.IntegrityError) and "UNIQUE constraint failed" in str(error)

    def _is_retryable(self, error: Exception) -> bool:
        message = str(error).lower()
        return isinstance(error, sqlite3.OperationalError) and ("locked" in message or "busy" in message)

    def close(self):
        super().close()
        if self._anchor is not None:
            self._anchor.close()
            self._anchor = None

    def isolate(self, tenant_id: str, collections: Optional[Sequence[str]] = None):
        """Create the tenant's filtered view of each tenant collection if missing."""
        self._check_tenant_id(tenant_id)
        names = self.isolation_collections(collections)
        literal = "'" + tenant_id.replace("'", "''") + "'"
        with self._translate_errors("isolate"):
            with self._session(None) as cursor:
                for name in names:
                    view = self._quote(tenant_view_name(name, tenant_id))
                    cursor.execute(f"CREATE VIEW IF NOT EXISTS {view} AS SELECT * FROM {self._quote(name)} "
                                   f"WHERE {self._quote('tenant_id')} = {literal}")
        self.logger.info(f"Tenant views provisioned for tenant {tenant_id} on {len(names)} collection(s)")
