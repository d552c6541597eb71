"""rxflow — FastAPI dependencies (auth, DB, collaborators)."""
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from rxflow.core.redis import get_redis
from rxflow.core.roles import Actor, Capability, has_capability
from rxflow.db.session import get_db
from rxflow.services.csrf_service import CsrfTokenService
from rxflow.services.notification_service import CeleryNotificationSink, NotificationSink
from rxflow.services.payment_processor import PaymentProcessor, PaymentProcessorClient
from rxflow.services.status_registry import StatusRegistry, StatusRegistryService

DbSession = Annotated[AsyncSession, Depends(get_db)]


class CurrentUser:
    """Effective identity from the JWT — set on request.state by middleware."""

    def __init__(
        self,
        id: UUID,
        role: str,
        email: str | None = None,
        impersonator_id: UUID | None = None,
    ):
        self.id = id
        self.role = role
        self.email = email
        # Admin acting on behalf of this user, if any
        self.impersonator_id = impersonator_id

    def has_capability(self, capability: Capability) -> bool:
        return has_capability(self.role, capability)

    @property
    def actor(self) -> Actor:
        return Actor(user_id=self.id, role=self.role, impersonator_id=self.impersonator_id)


async def require_auth(request: Request) -> CurrentUser:
    """Require authenticated user. Raise 401 if not logged in."""
    user = getattr(request.state, "user", None)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return user


async def get_actor(user: CurrentUser = Depends(require_auth)) -> Actor:
    return user.actor


CurrentActor = Annotated[Actor, Depends(get_actor)]


def get_sink() -> NotificationSink:
    return CeleryNotificationSink()


def get_processor() -> PaymentProcessor:
    return PaymentProcessorClient()


async def get_token_service() -> CsrfTokenService:
    return CsrfTokenService(await get_redis())


async def get_registry(db: DbSession) -> StatusRegistry:
    """Registry snapshot read at call time."""
    return await StatusRegistryService.load(db)


Sink = Annotated[NotificationSink, Depends(get_sink)]
Processor = Annotated[PaymentProcessor, Depends(get_processor)]
TokenService = Annotated[CsrfTokenService, Depends(get_token_service)]
Registry = Annotated[StatusRegistry, Depends(get_registry)]
CsrfToken = Annotated[str | None, Header(alias="X-CSRF-Token")]
