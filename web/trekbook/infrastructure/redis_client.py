from functools import lru_cache

import redis.asyncio as redis
from redis.asyncio import Redis

from trekbook.core import get_settings


@lru_cache()
def get_redis() -> Redis:
    """Shared pooled client; connections are opened lazily on first command"""
    settings = get_settings()
    return redis.from_url(settings.REDIS_DSN, encoding="utf-8", decode_responses=True)
