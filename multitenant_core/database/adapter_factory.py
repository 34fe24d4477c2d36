"""
Adapter factory - validates configuration and builds storage adapters.
"""

import logging
from typing import Dict, List, Type

from .adapters import MongoDBAdapter, MySQLAdapter, PostgreSQLAdapter, SQLiteAdapter, SupabaseAdapter
from .base_adapter import StorageAdapter
from .config import DatabaseConfig
from .exceptions import ConfigurationError
from .models import DatabaseType


logger = logging.getLogger(__name__)


REQUIRED_FIELDS: Dict[DatabaseType, List[str]] = {
    DatabaseType.POSTGRESQL: ["host", "database", "username", "password"],
    DatabaseType.MYSQL: ["host", "database", "username", "password"],
    DatabaseType.SQLITE: ["database"],
    DatabaseType.MONGODB: ["url", "database"],
    DatabaseType.SUPABASE: ["url", "service_key"],
}


class AdapterFactory:
    """Builds the adapter matching a ``DatabaseConfig``."""

    _adapters: Dict[DatabaseType, Type[StorageAdapter]] = {
        DatabaseType.POSTGRESQL: PostgreSQLAdapter,
        DatabaseType.MYSQL: MySQLAdapter,
        DatabaseType.SQLITE: SQLiteAdapter,
        DatabaseType.MONGODB: MongoDBAdapter,
        DatabaseType.SUPABASE: SupabaseAdapter,
    }

    @classmethod
    def supported_types(cls) -> List[str]:
        return [db_type.value for db_type in cls._adapters]

    @classmethod
    def validate(cls, config: DatabaseConfig) -> None:
        """
        Check the fields the backend type requires.

        PostgreSQL and MySQL need host, database, username and password;
        SQLite needs database (a path or ``:memory:``); MongoDB needs url and
        database; Supabase needs url and service_key. A PostgreSQL config may
        give ``url`` instead of the individual fields.

        Raises:
            ConfigurationError: Naming the first missing field.
        """
        if not isinstance(config, DatabaseConfig):
            raise ConfigurationError("A DatabaseConfig is required", field="config")
        if config.database_type not in cls._adapters:
            raise ConfigurationError(f"Unsupported database type: {config.database_type}",
                                     field="database_type")
        if config.database_type == DatabaseType.POSTGRESQL and config.url:
            return
        for field_name in REQUIRED_FIELDS[config.database_type]:
            if not getattr(config, field_name):
                raise ConfigurationError(
                    f"Missing required field '{field_name}' for {config.database_type.value}",
                    field=field_name
                )

    @classmethod
    def create(cls, config: DatabaseConfig) -> StorageAdapter:
        """
        Validate ``config`` and construct an uninitialized adapter.

        Call ``initialize()`` on the result before use.
        """
        cls.validate(config)
        adapter_class = cls._adapters[config.database_type]
        logger.info(f"Creating {adapter_class.__name__} for {config.database_type.value}")
        return adapter_class(config)

    @classmethod
    def create_with_validation(cls, config: DatabaseConfig) -> StorageAdapter:
        """Create an adapter and initialize it, closing it again if initialization fails."""
        adapter = cls.create(config)
        try:
            adapter.initialize()
        except Exception:
            adapter.close()
            raise
        return adapter
