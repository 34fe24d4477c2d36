"""
Shared fixtures: a file-backed SQLite adapter with a ``projects`` table,
two tenant contexts, an in-memory cache and a scripted DB-API connection
for the PostgreSQL and MySQL adapters.
"""

import pytest

from multitenant_core.cache import CacheConfig, MemoryCache
from multitenant_core.context import Role, TenantContext
from multitenant_core.database import DatabaseConfig, DatabaseType, MigrationManager, SQLiteAdapter
from multitenant_core.database.migrations import core_schema_migrations, create_tenant_table_migration


PROJECT_COLUMNS = {
    "name": "string",
    "description": "text",
    "slug": "string",
    "status": "string",
    "budget": "float",
    "active": "boolean",
}


def project_migrations():
    """Migrations for the tables the tests write to."""
    return core_schema_migrations(DatabaseType.SQLITE) + [
        create_tenant_table_migration(
            migration_id="20240102000000_create_projects",
            table="projects",
            columns=PROJECT_COLUMNS,
            database_type=DatabaseType.SQLITE,
            unique=["slug"]
        )
    ]


class FakeCursor:
    """DB-API cursor answering statements from its connection's canned responses."""

    def __init__(self, connection):
        self.connection = connection
        self.description = None
        self.rowcount = -1
        self.closed = False
        self._rows = []

    def execute(self, statement, params=None):
        self.connection.statements.append((" ".join(statement.split()), params))
        error, rows, description, rowcount = self.connection.respond(statement, params)
        if error is not None:
            raise error
        self._rows = list(rows)
        self.description = description
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows.pop(0) if self._rows else None

    def fetchall(self):
        rows, self._rows = self._rows, []
        return rows

    def fetchmany(self, size):
        rows, self._rows = self._rows[:size], self._rows[size:]
        return rows

    def nextset(self):
        return None

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class FakeConnection:
    """
    Scriptable DB-API connection.

    ``when(fragment, ...)`` registers the rows, row count or error returned
    by any later statement containing ``fragment``; the most recent matching
    registration wins. ``rows`` may be a callable receiving the statement's
    parameters. Every executed statement is recorded with whitespace
    collapsed.
    """

    def __init__(self):
        self.statements = []
        self.responses = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = False
        self.autocommit = True

    def when(self, fragment, rows=(), rowcount=None, error=None, columns=None):
        self.responses.insert(0, (fragment, rows if callable(rows) else list(rows), rowcount, error, columns))

    def respond(self, statement, params=None):
        for fragment, rows, rowcount, error, columns in self.responses:
            if fragment in statement:
                if callable(rows):
                    rows = rows(params)
                if columns is not None:
                    description = [(name,) for name in columns]
                elif rows:
                    description = [(name,) for name in rows[0]]
                else:
                    description = None
                return error, rows, description, len(rows) if rowcount is None else rowcount
        return None, [], None, 1

    def executed(self, fragment):
        """Recorded (statement, params) pairs containing ``fragment``."""
        return [(sql, params) for sql, params in self.statements if fragment in sql]

    def cursor(self, *args, **kwargs):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def close(self):
        self.closed = True

    def escape(self, value):
        return "'" + str(value).replace("'", "''") + "'"


@pytest.fixture
def fake_connection():
    return FakeConnection()


@pytest.fixture
def sqlite_config(tmp_path):
    """Config for a fresh SQLite database file."""
    return DatabaseConfig(
        database_type=DatabaseType.SQLITE,
        database=str(tmp_path / "tenants.db"),
        tenant_collections=["projects"]
    )


@pytest.fixture
def sqlite_adapter(sqlite_config):
    """Initialized SQLite adapter with the core and projects schema applied."""
    adapter = SQLiteAdapter(sqlite_config)
    adapter.initialize()
    MigrationManager(adapter).run_migrations(project_migrations())
    yield adapter
    adapter.close()


@pytest.fixture
def ctx_a():
    return TenantContext(tenant_id="tenant-a", user_id="alice", role=Role.ADMIN)


@pytest.fixture
def ctx_b():
    return TenantContext(tenant_id="tenant-b", user_id="bob", role=Role.MEMBER)


@pytest.fixture
def memory_cache():
    cache = MemoryCache(CacheConfig(key_prefix="test"))
    yield cache
    cache.close()


@pytest.fixture
def project_batch():
    """The migrations applied by ``sqlite_adapter``."""
    return project_migrations()
