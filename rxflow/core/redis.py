"""rxflow — Redis client (anti-forgery token store)."""
from typing import Optional

import redis.asyncio as redis

from rxflow.config import get_settings

_settings = get_settings()
_redis: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    """Get Redis connection (application cache DB 1)."""
    global _redis
    if _redis is None:
        _redis = redis.from_url(_settings.REDIS_URL, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


def csrf_token_key(user_id: str, token: str) -> str:
    """Key for a single-use anti-forgery token: csrf:{uid}:{token}"""
    return f"csrf:{user_id}:{token}"
