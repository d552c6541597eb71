"""rxflow — Anti-forgery token service: single-use tokens bound to a user."""
import logging
import secrets
from uuid import UUID

import redis.asyncio as redis

from rxflow.config import get_settings
from rxflow.core.redis import csrf_token_key

logger = logging.getLogger(__name__)


class CsrfTokenService:
    """Issue and consume tokens required before cancellation and refund writes."""

    def __init__(self, client: redis.Redis, ttl_seconds: int | None = None):
        self.client = client
        self.ttl_seconds = ttl_seconds or get_settings().CSRF_TOKEN_TTL_SECONDS

    async def issue(self, user_id: UUID) -> str:
        token = secrets.token_urlsafe(32)
        await self.client.setex(csrf_token_key(str(user_id), token), self.ttl_seconds, "1")
        return token

    async def consume(self, user_id: UUID, token: str | None) -> bool:
        """True exactly once per issued token; the key is deleted atomically."""
        if not token:
            return False
        deleted = await self.client.delete(csrf_token_key(str(user_id), token))
        if not deleted:
            logger.warning("Rejected anti-forgery token for user %s", user_id)
        return bool(deleted)
