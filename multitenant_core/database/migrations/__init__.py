"""
Built-in migrations.
"""

from .core_schema import AUDIT_LOG_COLUMNS, core_schema_migrations
from .tenant_tables import create_tenant_table_migration

__all__ = [
    'AUDIT_LOG_COLUMNS',
    'core_schema_migrations',
    'create_tenant_table_migration'
]
