"""
Configuration objects for storage backends and migrations.
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .exceptions import ConfigurationError
from .models import DatabaseType


def _env_bool(value: Optional[str]) -> bool:
    return str(value).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class PoolConfig:
    """Connection pool settings shared by the relational adapters."""
    min_connections: int = 1
    max_connections: int = 10
    acquire_timeout: float = 30.0
    idle_timeout: float = 300.0
    max_lifetime: float = 3600.0

    def __post_init__(self):
        if self.min_connections < 0:
            raise ConfigurationError("min_connections must be >= 0", field="pool.min_connections")
        if self.max_connections < 1:
            raise ConfigurationError("max_connections must be >= 1", field="pool.max_connections")
        if self.min_connections > self.max_connections:
            raise ConfigurationError("min_connections cannot exceed max_connections",
                                     field="pool.min_connections")


@dataclass
class DatabaseConfig:
    """
    Backend connection settings.

    Field requirements differ per backend type and are checked by
    ``AdapterFactory.validate`` rather than on construction, so a config can
    be assembled incrementally and pre-flighted separately.
    """
    database_type: DatabaseType
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    url: Optional[str] = None
    service_key: Optional[str] = None
    ssl: bool = False
    pool: PoolConfig = field(default_factory=PoolConfig)
    tenant_collections: List[str] = field(default_factory=list)
    options: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if isinstance(self.database_type, str):
            try:
                self.database_type = DatabaseType(self.database_type.lower())
            except ValueError:
                raise ConfigurationError(
                    f"Unsupported database type: {self.database_type}",
                    field="database_type"
                ) from None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DatabaseConfig":
        """Build a config from a plain mapping such as parsed JSON/YAML settings."""
        if not data.get("database_type") and not data.get("type"):
            raise ConfigurationError("Database type is required", field="database_type")
        pool_data = data.get("pool") or {}
        return cls(
            database_type=data.get("database_type") or data.get("type"),
            host=data.get("host"),
            port=int(data["port"]) if data.get("port") is not None else None,
            database=data.get("database"),
            username=data.get("username"),
            password=data.get("password"),
            url=data.get("url"),
            service_key=data.get("service_key"),
            ssl=bool(data.get("ssl", False)),
            pool=pool_data if isinstance(pool_data, PoolConfig) else PoolConfig(**pool_data),
            tenant_collections=list(data.get("tenant_collections") or []),
            options=dict(data.get("options") or {})
        )

    @classmethod
    def from_env(cls, prefix: str = "MTC_DB_", environ: Optional[Mapping[str, str]] = None) -> "DatabaseConfig":
        """
        Build a config from environment variables.

        Args:
            prefix: Variable name prefix, e.g. ``MTC_DB_`` reads ``MTC_DB_TYPE``.
            environ: Mapping to read instead of ``os.environ``.

        Returns:
            DatabaseConfig: Unvalidated configuration
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            value = env.get(prefix + name)
            return value if value not in (None, "") else None

        db_type = get("TYPE")
        if not db_type:
            raise ConfigurationError(f"{prefix}TYPE is not set", field="database_type")

        pool_kwargs: Dict[str, Any] = {}
        if get("POOL_MIN"):
            pool_kwargs["min_connections"] = int(get("POOL_MIN"))
        if get("POOL_MAX"):
            pool_kwargs["max_connections"] = int(get("POOL_MAX"))
        if get("POOL_TIMEOUT"):
            pool_kwargs["acquire_timeout"] = float(get("POOL_TIMEOUT"))

        collections = get("TENANT_COLLECTIONS")
        return cls(
            database_type=db_type,
            host=get("HOST"),
            port=int(get("PORT")) if get("PORT") else None,
            database=get("NAME"),
            username=get("USER"),
            password=get("PASSWORD"),
            url=get("URL"),
            service_key=get("SERVICE_KEY"),
            ssl=_env_bool(get("SSL")),
            pool=PoolConfig(**pool_kwargs),
            tenant_collections=[c.strip() for c in collections.split(",") if c.strip()] if collections else []
        )


@dataclass
class MigrationConfig:
    """Migration engine settings."""
    table_name: str = "schema_migrations"
    lock_timeout: float = 30.0
    create_table: bool = True

    def __post_init__(self):
        if self.lock_timeout <= 0:
            raise ConfigurationError("lock_timeout must be positive", field="lock_timeout")
