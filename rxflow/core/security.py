"""rxflow — JWT verification.

Tokens are minted by the identity provider; this service only verifies them.
"""
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from rxflow.config import get_settings

settings = get_settings()


def create_access_token(subject: str | Any, role: str, extra_claims: dict | None = None, ttl_minutes: int = 30) -> str:
    """Mint an access token in the identity provider's format (dev seeding and tests)."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(subject),
        "role": role,
        "exp": now + timedelta(minutes=ttl_minutes),
        "iat": now,
        "type": "access",
    }
    if extra_claims:
        payload.update(extra_claims)
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> dict | None:
    try:
        return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None
