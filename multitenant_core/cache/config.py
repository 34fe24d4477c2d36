"""
Cache configuration.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from ..database.exceptions import ConfigurationError


CACHE_TYPES = ("memory", "redis")


@dataclass
class CacheConfig:
    """Settings for a tenant-scoped cache provider."""
    cache_type: str = "memory"
    url: Optional[str] = None
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    key_prefix: str = "mtc"
    default_ttl: int = 3600
    enabled: bool = True
    socket_timeout: float = 5.0

    def __post_init__(self):
        self.cache_type = str(self.cache_type).lower()
        if self.cache_type not in CACHE_TYPES:
            raise ConfigurationError(f"Unsupported cache type: {self.cache_type}", field="cache_type")
        if not self.key_prefix or ":" in self.key_prefix or any(c in self.key_prefix for c in "*?[]"):
            raise ConfigurationError("key_prefix must be non-empty and contain no ':' or glob characters",
                                     field="key_prefix")
        if self.default_ttl <= 0:
            raise ConfigurationError("default_ttl must be positive", field="default_ttl")

    @classmethod
    def from_env(cls, prefix: str = "MTC_CACHE_", environ: Optional[Mapping[str, str]] = None) -> "CacheConfig":
        """Build a config from ``MTC_CACHE_TYPE``, ``MTC_CACHE_URL``, ``MTC_CACHE_TTL`` and friends."""
        env = os.environ if environ is None else environ

        def get(name: str, default: Optional[str] = None) -> Optional[str]:
            value = env.get(prefix + name)
            return value if value not in (None, "") else default

        return cls(
            cache_type=get("TYPE", "memory"),
            url=get("URL"),
            host=get("HOST", "localhost"),
            port=int(get("PORT", "6379")),
            db=int(get("DB", "0")),
            password=get("PASSWORD"),
            key_prefix=get("PREFIX", "mtc"),
            default_ttl=int(get("TTL", "3600")),
            enabled=get("ENABLED", "true").strip().lower() in ("1", "true", "yes", "on"),
            socket_timeout=float(get("SOCKET_TIMEOUT", "5.0"))
        )
