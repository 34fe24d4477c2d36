"""
Tenant-scoped cache layer.
"""

from .base import CacheProvider, CacheStats, escape_glob, tenant_key, tenant_namespace
from .config import CacheConfig
from .factory import create_cache_provider
from .memory_cache import MemoryCache
from .redis_cache import RedisCache

__all__ = [
    'CacheProvider',
    'CacheStats',
    'CacheConfig',
    'MemoryCache',
    'RedisCache',
    'create_cache_provider',
    'tenant_key',
    'tenant_namespace',
    'escape_glob'
]
