"""
Database abstraction layer for the multi-tenant core.

This module provides one tenant-isolating storage interface over
PostgreSQL, MySQL, SQLite, MongoDB and Supabase, plus the migration
engine and the audit logger built on top of it.
"""

from .adapter_factory import AdapterFactory
from .adapters import (
    MongoDBAdapter,
    MongoTransaction,
    MySQLAdapter,
    PostgreSQLAdapter,
    SQLiteAdapter,
    SupabaseAdapter,
    tenant_view_name
)
from .audit import AuditLogger
from .base_adapter import StorageAdapter, Transaction
from .config import DatabaseConfig, MigrationConfig, PoolConfig
from .connection_pool import ConnectionPool, PoolStatistics
from .exceptions import (
    TenantDataError,
    ConfigurationError,
    ValidationError,
    NotFoundError,
    ConflictError,
    StorageError,
    TransactionError,
    CacheError,
    MigrationError,
    MigrationValidationError,
    MigrationLockError
)
from .migration_manager import (
    MigrationManager,
    Migration,
    MigrationLock,
    MigrationRecord,
    MigrationResult,
    MigrationStatus,
    ValidationResult
)
from .models import (
    AuditAction,
    AuditLogEntry,
    DatabaseType,
    HealthStatus,
    IsolationStrategy,
    QueryOptions,
    ReadResult,
    Record,
    SortOrder
)
from .sql_adapter import SQLStorageAdapter, SQLTransaction
from .validation import CollectionSchema

__all__ = [
    'AdapterFactory',
    'StorageAdapter',
    'SQLStorageAdapter',
    'Transaction',
    'SQLTransaction',
    'MongoTransaction',
    'PostgreSQLAdapter',
    'MySQLAdapter',
    'SQLiteAdapter',
    'MongoDBAdapter',
    'SupabaseAdapter',
    'tenant_view_name',
    'AuditLogger',
    'DatabaseConfig',
    'MigrationConfig',
    'PoolConfig',
    'ConnectionPool',
    'PoolStatistics',
    'TenantDataError',
    'ConfigurationError',
    'ValidationError',
    'NotFoundError',
    'ConflictError',
    'StorageError',
    'TransactionError',
    'CacheError',
    'MigrationError',
    'MigrationValidationError',
    'MigrationLockError',
    'MigrationManager',
    'Migration',
    'MigrationLock',
    'MigrationRecord',
    'MigrationResult',
    'MigrationStatus',
    'ValidationResult',
    'AuditAction',
    'AuditLogEntry',
    'DatabaseType',
    'HealthStatus',
    'IsolationStrategy',
    'QueryOptions',
    'ReadResult',
    'Record',
    'SortOrder',
    'CollectionSchema'
]
