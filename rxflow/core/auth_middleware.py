"""rxflow — JWT auth middleware: verifies the bearer token, sets request.state.user."""
import logging
from typing import Callable
from uuid import UUID

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from rxflow.api.deps import CurrentUser
from rxflow.core.roles import Role
from rxflow.core.security import decode_token

logger = logging.getLogger(__name__)


def _uuid_or_none(value) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


class JWTAuthMiddleware(BaseHTTPMiddleware):
    """Populate request.state.user from ``Authorization: Bearer <jwt>``.

    An admin impersonating another user carries ``impersonated_user_id`` and
    ``impersonated_role`` claims; the impersonated identity becomes the effective one.
    """

    PUBLIC_PATHS = {
        "/health",
        "/api/v1/docs",
        "/api/v1/redoc",
        "/api/v1/openapi.json",
    }

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request.state.user = None

        path = request.url.path
        if path in self.PUBLIC_PATHS or path.startswith("/api/v1/docs") or path.startswith("/api/v1/redoc"):
            return await call_next(request)

        auth = request.headers.get("Authorization", "")
        if auth.startswith("Bearer "):
            payload = decode_token(auth[7:].strip())
            if payload and payload.get("type") == "access":
                request.state.user = self._user_from_claims(payload)
            else:
                logger.info("Rejected bearer token on %s", path)

        return await call_next(request)

    @staticmethod
    def _user_from_claims(payload: dict) -> CurrentUser | None:
        sub = _uuid_or_none(payload.get("sub"))
        if not sub:
            return None
        user = CurrentUser(id=sub, role=payload.get("role", "patient"), email=payload.get("email"))

        impersonated = _uuid_or_none(payload.get("impersonated_user_id"))
        if impersonated and user.role == Role.ADMIN.value:
            return CurrentUser(
                id=impersonated,
                role=payload.get("impersonated_role", "patient"),
                email=None,
                impersonator_id=user.id,
            )
        return user
