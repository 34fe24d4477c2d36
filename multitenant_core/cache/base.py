"""
Tenant-scoped cache provider interface.

Every physical key is ``<prefix>:tenant:<tenant_id>:<key>``. Tenant ids
cannot contain ``:``, so two different (tenant, key) pairs never map to the
same physical key.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..context import TenantContext, validate_tenant_id
from ..database.exceptions import CacheError, ValidationError
from . import serializers
from .config import CacheConfig


def tenant_namespace(prefix: str, tenant_id: str) -> str:
    return f"{prefix}:tenant:{tenant_id}:"


def tenant_key(prefix: str, tenant_id: str, key: str) -> str:
    return tenant_namespace(prefix, tenant_id) + key


def escape_glob(text: str) -> str:
    """Escape glob metacharacters so ``text`` matches literally in a Redis pattern."""
    for char in "\\*?[]":
        text = text.replace(char, "\\" + char)
    return text


@dataclass
class CacheStats:
    """Cache statistics."""
    hits: int = 0
    misses: int = 0
    total_keys: int = 0

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hit_rate, 4),
            "total_keys": self.total_keys
        }


class CacheProvider(ABC):
    """Base class for cache providers. All data methods require a ``TenantContext``."""

    def __init__(self, config: CacheConfig):
        self.config = config
        self.prefix = config.key_prefix
        self.logger = logging.getLogger(self.__class__.__module__)
        self._stats_lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def tenant_of(self, ctx: TenantContext) -> str:
        if not isinstance(ctx, TenantContext):
            raise ValidationError("A TenantContext is required for cache operations")
        return ctx.tenant_id

    def key_for(self, key: str, ctx: TenantContext) -> str:
        """Physical key for ``key`` in the caller's tenant."""
        tenant_id = self.tenant_of(ctx)
        if not isinstance(key, str) or not key:
            raise ValidationError(f"Invalid cache key: {key!r}")
        return tenant_key(self.prefix, tenant_id, key)

    def tenant_pattern(self, tenant_id: str, key_prefix: str = "") -> str:
        try:
            validate_tenant_id(tenant_id)
        except ValueError as e:
            raise ValidationError(str(e)) from None
        return escape_glob(tenant_namespace(self.prefix, tenant_id) + key_prefix) + "*"

    def namespace_pattern(self) -> str:
        return f"{escape_glob(self.prefix)}:tenant:*"

    def _record_lookup(self, hit: bool):
        with self._stats_lock:
            if hit:
                self._hits += 1
            else:
                self._misses += 1

    def get_stats(self) -> CacheStats:
        with self._stats_lock:
            hits, misses = self._hits, self._misses
        return CacheStats(hits=hits, misses=misses, total_keys=self._count_keys())

    def reset_stats(self):
        with self._stats_lock:
            self._hits = 0
            self._misses = 0

    def initialize(self):
        """Verify the cache backend is reachable."""
        pass

    @abstractmethod
    def get(self, key: str, ctx: TenantContext) -> Optional[Any]:
        """Return the cached value or None on a miss."""
        pass

    @abstractmethod
    def set(self, key: str, value: Any, ctx: TenantContext, ttl: Optional[int] = None) -> bool:
        """Store ``value`` for ``ttl`` seconds (``default_ttl`` when omitted)."""
        pass

    @abstractmethod
    def delete(self, key: str, ctx: TenantContext) -> bool:
        pass

    @abstractmethod
    def exists(self, key: str, ctx: TenantContext) -> bool:
        pass

    @abstractmethod
    def increment(self, key: str, ctx: TenantContext, amount: int = 1) -> int:
        """Atomically add ``amount`` to an integer value, creating it at 0."""
        pass

    @abstractmethod
    def mget(self, keys: Sequence[str], ctx: TenantContext) -> List[Optional[Any]]:
        """Values for ``keys`` in order, None for misses."""
        pass

    @abstractmethod
    def mset(self, mapping: Mapping[str, Any], ctx: TenantContext, ttl: Optional[int] = None) -> bool:
        pass

    @abstractmethod
    def clear_tenant(self, tenant_id: str) -> int:
        """Delete every key of one tenant. Returns the number removed."""
        pass

    @abstractmethod
    def invalidate_prefix(self, prefix: str, ctx: TenantContext) -> int:
        """Delete the caller's keys starting with ``prefix``."""
        pass

    @abstractmethod
    def flush(self) -> int:
        """Delete every key under the namespace prefix and reset statistics."""
        pass

    @abstractmethod
    def close(self):
        pass

    @abstractmethod
    def _count_keys(self) -> int:
        pass

    def _dumps(self, value: Any) -> str:
        try:
            return serializers.dumps(value)
        except (TypeError, ValueError) as e:
            raise CacheError(f"Value is not cacheable: {e}") from e

    def _ttl(self, ttl: Optional[int]) -> int:
        ttl = self.config.default_ttl if ttl is None else ttl
        if not isinstance(ttl, int) or ttl <= 0:
            raise ValidationError(f"Invalid cache TTL: {ttl!r}")
        return ttl
