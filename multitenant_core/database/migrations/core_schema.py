"""
Core schema migration - creates the tables the library itself writes to.
"""

from typing import List

from ..migration_manager import Migration
from ..models import DatabaseType
from .tenant_tables import create_tenant_table_migration


AUDIT_LOG_COLUMNS = {
    "user_id": "string",
    "action": "string",
    "resource_type": "string",
    "resource_id": "string",
    "old_values": "text",
    "new_values": "text",
}


def core_schema_migrations(database_type: DatabaseType, audit_table: str = "audit_logs") -> List[Migration]:
    """
    Create the core schema migrations for a backend.

    Args:
        database_type: Target backend
        audit_table: Name of the audit log table or collection

    Returns:
        List[Migration]: Migrations in apply order
    """
    return [
        create_tenant_table_migration(
            migration_id=f"20240101000000_create_{audit_table}",
            table=audit_table,
            columns=AUDIT_LOG_COLUMNS,
            database_type=database_type,
            name=f"create_{audit_table}"
        )
    ]
