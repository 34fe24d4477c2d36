"""
In-process cache provider.
"""

import threading
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ..context import TenantContext
from ..database.exceptions import CacheError
from . import serializers
from .base import CacheProvider, tenant_namespace
from .config import CacheConfig


class MemoryCache(CacheProvider):
    """
    Dictionary-backed cache with per-key expiry.

    Values are stored serialized, so callers always get a fresh copy and the
    behaviour matches the Redis provider. Expired entries are dropped lazily
    on access.
    """

    def __init__(self, config: Optional[CacheConfig] = None, clock: Callable[[], float] = time.monotonic):
        super().__init__(config or CacheConfig())
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: Dict[str, Tuple[str, Optional[float]]] = {}

    def _live(self, physical: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._entries.get(physical)
        if entry is None:
            return None
        expires_at = entry[1]
        if expires_at is not None and expires_at <= self._clock():
            del self._entries[physical]
            return None
        return entry

    def get(self, key: str, ctx: TenantContext) -> Optional[Any]:
        physical = self.key_for(key, ctx)
        with self._lock:
            entry = self._live(physical)
        self._record_lookup(entry is not None)
        return serializers.loads(entry[0]) if entry is not None else None

    def set(self, key: str, value: Any, ctx: TenantContext, ttl: Optional[int] = None) -> bool:
        physical = self.key_for(key, ctx)
        payload = self._dumps(value)
        expires_at = self._clock() + self._ttl(ttl)
        with self._lock:
            self._entries[physical] = (payload, expires_at)
        return True

    def delete(self, key: str, ctx: TenantContext) -> bool:
        physical = self.key_for(key, ctx)
        with self._lock:
            return self._live(physical) is not None and self._entries.pop(physical, None) is not None

    def exists(self, key: str, ctx: TenantContext) -> bool:
        physical = self.key_for(key, ctx)
        with self._lock:
            return self._live(physical) is not None

    def increment(self, key: str, ctx: TenantContext, amount: int = 1) -> int:
        physical = self.key_for(key, ctx)
        with self._lock:
            entry = self._live(physical)
            current, expires_at = (entry[0], entry[1]) if entry is not None else ("0", None)
            try:
                value = int(current) + amount
            except ValueError:
                raise CacheError(f"Value at '{key}' is not an integer") from None
            self._entries[physical] = (str(value), expires_at)
            return value

    def mget(self, keys: Sequence[str], ctx: TenantContext) -> List[Optional[Any]]:
        return [self.get(key, ctx) for key in keys]

    def mset(self, mapping: Mapping[str, Any], ctx: TenantContext, ttl: Optional[int] = None) -> bool:
        expires_at = self._clock() + self._ttl(ttl)
        prepared = {self.key_for(key, ctx): self._dumps(value) for key, value in mapping.items()}
        with self._lock:
            for physical, payload in prepared.items():
                self._entries[physical] = (payload, expires_at)
        return True

    def clear_tenant(self, tenant_id: str) -> int:
        self.tenant_pattern(tenant_id)
        removed = self._remove_prefix(tenant_namespace(self.prefix, tenant_id))
        self.logger.info(f"Cleared {removed} cache entries for tenant {tenant_id}")
        return removed

    def invalidate_prefix(self, prefix: str, ctx: TenantContext) -> int:
        return self._remove_prefix(tenant_namespace(self.prefix, self.tenant_of(ctx)) + prefix)

    def flush(self) -> int:
        removed = self._remove_prefix(f"{self.prefix}:tenant:")
        self.reset_stats()
        return removed

    def close(self):
        with self._lock:
            self._entries.clear()

    def _remove_prefix(self, physical_prefix: str) -> int:
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(physical_prefix)]
            for physical in doomed:
                del self._entries[physical]
        return len(doomed)

    def _count_keys(self) -> int:
        with self._lock:
            return len([k for k in list(self._entries) if self._live(k) is not None])
