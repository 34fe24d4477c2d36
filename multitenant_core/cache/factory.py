"""
Cache provider factory.
"""

import logging
from typing import Optional

from .base import CacheProvider
from .config import CacheConfig
from .memory_cache import MemoryCache
from .redis_cache import RedisCache


logger = logging.getLogger(__name__)


def create_cache_provider(config: Optional[CacheConfig] = None) -> Optional[CacheProvider]:
    """
    Build the provider named by ``config.cache_type``.

    Returns None when caching is disabled; callers treat that as a
    permanently cold cache.
    """
    config = config or CacheConfig()
    if not config.enabled:
        logger.info("Caching disabled")
        return None
    if config.cache_type == "redis":
        provider: CacheProvider = RedisCache(config)
    else:
        provider = MemoryCache(config)
    logger.info(f"Created {type(provider).__name__} (prefix={config.key_prefix}, ttl={config.default_ttl}s)")
    return provider
