"""
Tenant table migration - builds a migration creating one tenant-owned collection.
"""

from typing import Any, Dict, List, Optional, Sequence

from ..migration_manager import Migration
from ..models import DatabaseType
from ..sql_adapter import sql_type
from ..validation import validate_identifier


def create_tenant_table_migration(migration_id: str,
                                  table: str,
                                  columns: Dict[str, str],
                                  database_type: DatabaseType,
                                  unique: Sequence[str] = (),
                                  name: Optional[str] = None) -> Migration:
    """
    Create a migration for a tenant-owned table or collection.

    The table always gets ``id``, ``tenant_id``, ``created_at`` and
    ``updated_at`` plus an index on ``(tenant_id, created_at)``.

    Args:
        migration_id: Sortable migration id
        table: Table or collection name
        columns: Column name to logical type (``string``, ``text``,
            ``integer``, ``float``, ``decimal``, ``boolean``, ``timestamp``,
            ``json``)
        database_type: Target backend
        unique: Columns unique within a tenant
        name: Migration name (defaults to ``create_<table>``)

    Returns:
        Migration: Migration with forward and reverse scripts
    """
    validate_identifier(table, "table")
    for column in list(columns) + list(unique):
        validate_identifier(column, "column")

    if database_type == DatabaseType.MONGODB:
        up, down = _document_scripts(table, unique)
    else:
        up, down = _sql_scripts(table, columns, unique, database_type)

    return Migration(
        id=migration_id,
        name=name or f"create_{table}",
        up=up,
        down=down,
        description=f"Create tenant collection {table}"
    )


def _quote(database_type: DatabaseType, identifier: str) -> str:
    if database_type == DatabaseType.MYSQL:
        return f"`{identifier}`"
    return f'"{identifier}"'


def _sql_scripts(table: str, columns: Dict[str, str], unique: Sequence[str],
                 database_type: DatabaseType):
    q = lambda identifier: _quote(database_type, identifier)
    definitions = [
        f"{q('id')} {sql_type(database_type, 'id')} PRIMARY KEY",
        f"{q('tenant_id')} {sql_type(database_type, 'string')} NOT NULL",
    ]
    for column, logical_type in columns.items():
        definitions.append(f"{q(column)} {sql_type(database_type, logical_type)}")
    definitions.append(f"{q('created_at')} {sql_type(database_type, 'timestamp')} NOT NULL")
    definitions.append(f"{q('updated_at')} {sql_type(database_type, 'timestamp')} NOT NULL")
    for column in unique:
        definitions.append(f"CONSTRAINT {q(f'uq_{table}_{column}'[:63])} UNIQUE ({q('tenant_id')}, {q(column)})")

    index = q(f"idx_{table}_tenant_created"[:63])
    statements: List[str] = []
    if database_type == DatabaseType.MYSQL:
        # MySQL has no CREATE INDEX IF NOT EXISTS; declare the index inline.
        definitions.append(f"INDEX {index} ({q('tenant_id')}, {q('created_at')})")
        statements.append(f"CREATE TABLE IF NOT EXISTS {q(table)} ({', '.join(definitions)}) "
                          f"ENGINE=InnoDB DEFAULT CHARSET=utf8mb4")
    else:
        statements.append(f"CREATE TABLE IF NOT EXISTS {q(table)} ({', '.join(definitions)})")
        statements.append(f"CREATE INDEX IF NOT EXISTS {index} ON {q(table)} ({q('tenant_id')}, {q('created_at')})")

    up = ";\n".join(statements) + ";"
    down = f"DROP TABLE IF EXISTS {q(table)};"
    return up, down


def _document_scripts(collection: str, unique: Sequence[str]):
    def up(db: Any):
        target = db[collection]
        target.create_index([("tenant_id", 1), ("created_at", 1)], name="tenant_id_1_created_at_1")
        for column in unique:
            target.create_index([("tenant_id", 1), (column, 1)], name=f"tenant_id_1_{column}_1", unique=True)

    def down(db: Any):
        db.drop_collection(collection)

    up.__qualname__ = f"create_{collection}"
    down.__qualname__ = f"drop_{collection}"
    return up, down
