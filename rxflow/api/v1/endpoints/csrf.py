"""rxflow — Anti-forgery token endpoint."""
from typing import Any

from fastapi import APIRouter

from rxflow.api.deps import CurrentActor, TokenService
from rxflow.schemas.common import ApiResponse

router = APIRouter()


@router.get("", response_model=ApiResponse[dict])
async def issue_csrf_token(actor: CurrentActor, tokens: TokenService) -> Any:
    """Single-use token to send as ``X-CSRF-Token`` on cancel and refund requests."""
    token = await tokens.issue(actor.user_id)
    return ApiResponse(data={"token": token, "expires_in": tokens.ttl_seconds})
