"""
Redis cache provider.
"""

from contextlib import contextmanager
from typing import Any, Iterator, List, Mapping, Optional, Sequence

import redis

from ..context import TenantContext
from ..database.exceptions import CacheError
from . import serializers
from .base import CacheProvider
from .config import CacheConfig


SCAN_BATCH = 500


class RedisCache(CacheProvider):
    """
    Cache provider backed by Redis.

    Tenant-wide and prefix invalidation use ``SCAN`` with an escaped match
    pattern, never ``KEYS``. ``flush`` deletes only keys under the
    namespace prefix, so a Redis database shared with other applications is
    left alone.
    """

    def __init__(self, config: Optional[CacheConfig] = None, client: Optional[redis.Redis] = None):
        super().__init__(config or CacheConfig(cache_type="redis"))
        if client is None:
            if self.config.url:
                client = redis.from_url(self.config.url, decode_responses=True,
                                        socket_timeout=self.config.socket_timeout)
            else:
                client = redis.Redis(
                    host=self.config.host,
                    port=self.config.port,
                    db=self.config.db,
                    password=self.config.password,
                    socket_timeout=self.config.socket_timeout,
                    decode_responses=True
                )
        self.client = client

    @contextmanager
    def _redis_call(self, operation: str) -> Iterator[None]:
        try:
            yield
        except redis.RedisError as e:
            raise CacheError(f"Redis {operation} failed: {e}", details={"operation": operation}) from e

    def initialize(self):
        with self._redis_call("ping"):
            self.client.ping()
        self.logger.info("Redis cache connection established")

    def get(self, key: str, ctx: TenantContext) -> Optional[Any]:
        physical = self.key_for(key, ctx)
        with self._redis_call("get"):
            raw = self.client.get(physical)
        self._record_lookup(raw is not None)
        return serializers.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any, ctx: TenantContext, ttl: Optional[int] = None) -> bool:
        physical = self.key_for(key, ctx)
        payload = self._dumps(value)
        with self._redis_call("set"):
            return bool(self.client.set(physical, payload, ex=self._ttl(ttl)))

    def delete(self, key: str, ctx: TenantContext) -> bool:
        physical = self.key_for(key, ctx)
        with self._redis_call("delete"):
            return self.client.delete(physical) > 0

    def exists(self, key: str, ctx: TenantContext) -> bool:
        physical = self.key_for(key, ctx)
        with self._redis_call("exists"):
            return self.client.exists(physical) > 0

    def increment(self, key: str, ctx: TenantContext, amount: int = 1) -> int:
        physical = self.key_for(key, ctx)
        with self._redis_call("increment"):
            return int(self.client.incrby(physical, amount))

    def mget(self, keys: Sequence[str], ctx: TenantContext) -> List[Optional[Any]]:
        if not keys:
            return []
        physical = [self.key_for(key, ctx) for key in keys]
        with self._redis_call("mget"):
            raw_values = self.client.mget(physical)
        values = []
        for raw in raw_values:
            self._record_lookup(raw is not None)
            values.append(serializers.loads(raw) if raw is not None else None)
        return values

    def mset(self, mapping: Mapping[str, Any], ctx: TenantContext, ttl: Optional[int] = None) -> bool:
        ttl = self._ttl(ttl)
        prepared = {self.key_for(key, ctx): self._dumps(value) for key, value in mapping.items()}
        if not prepared:
            return True
        with self._redis_call("mset"):
            pipe = self.client.pipeline(transaction=False)
            for physical, payload in prepared.items():
                pipe.set(physical, payload, ex=ttl)
            pipe.execute()
        return True

    def clear_tenant(self, tenant_id: str) -> int:
        removed = self._delete_matching(self.tenant_pattern(tenant_id))
        self.logger.info(f"Cleared {removed} cache entries for tenant {tenant_id}")
        return removed

    def invalidate_prefix(self, prefix: str, ctx: TenantContext) -> int:
        return self._delete_matching(self.tenant_pattern(self.tenant_of(ctx), prefix))

    def flush(self) -> int:
        removed = self._delete_matching(self.namespace_pattern())
        self.reset_stats()
        self.logger.info(f"Flushed {removed} cache entries under '{self.prefix}'")
        return removed

    def close(self):
        with self._redis_call("close"):
            self.client.close()

    def _delete_matching(self, pattern: str) -> int:
        removed = 0
        batch: List[str] = []
        with self._redis_call("scan"):
            for physical in self.client.scan_iter(match=pattern, count=SCAN_BATCH):
                batch.append(physical)
                if len(batch) >= SCAN_BATCH:
                    removed += self.client.delete(*batch)
                    batch = []
            if batch:
                removed += self.client.delete(*batch)
        return removed

    def _count_keys(self) -> int:
        with self._redis_call("scan"):
            return sum(1 for _ in self.client.scan_iter(match=self.namespace_pattern(), count=SCAN_BATCH))
