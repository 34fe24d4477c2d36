"""
Multi-tenant data access core.

Tenant-isolated storage adapters, a tenant-scoped cache and a data manager
facade combining the two with audit logging.
"""

from .cache import CacheConfig, CacheProvider, MemoryCache, RedisCache, create_cache_provider
from .context import Role, TenantContext
from .data_manager import DataManager, DataManagerConfig, DataResult
from .database import (
    AdapterFactory,
    AuditLogger,
    DatabaseConfig,
    DatabaseType,
    MigrationManager,
    Migration,
    QueryOptions,
    SortOrder,
    StorageAdapter,
    TenantDataError,
    ConfigurationError,
    ValidationError,
    NotFoundError,
    ConflictError,
    StorageError,
    TransactionError,
    CacheError,
    MigrationError
)

__version__ = "0.1.0"

__all__ = [
    'TenantContext',
    'Role',
    'DataManager',
    'DataManagerConfig',
    'DataResult',
    'AdapterFactory',
    'AuditLogger',
    'DatabaseConfig',
    'DatabaseType',
    'MigrationManager',
    'Migration',
    'QueryOptions',
    'SortOrder',
    'StorageAdapter',
    'CacheConfig',
    'CacheProvider',
    'MemoryCache',
    'RedisCache',
    'create_cache_provider',
    'TenantDataError',
    'ConfigurationError',
    'ValidationError',
    'NotFoundError',
    'ConflictError',
    'StorageError',
    'TransactionError',
    'CacheError',
    'MigrationError'
]
