"""rxflow — Status registry administration."""
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Query

from rxflow.api.deps import CurrentActor, DbSession
from rxflow.schemas.common import ApiResponse, Meta
from rxflow.schemas.status_config import StatusConfigCreate, StatusConfigResponse, StatusConfigUpdate
from rxflow.services.status_registry import StatusRegistryService

router = APIRouter()


@router.get("", response_model=ApiResponse[list[StatusConfigResponse]])
async def list_status_configs(
    db: DbSession,
    actor: CurrentActor,
    include_inactive: bool = Query(False),
) -> Any:
    configs = await StatusRegistryService.list_configs(db, include_inactive=include_inactive)
    return ApiResponse(data=configs, meta=Meta(total_count=len(configs)))


@router.post("", response_model=ApiResponse[StatusConfigResponse])
async def create_status_config(request: StatusConfigCreate, db: DbSession, actor: CurrentActor) -> Any:
    config = await StatusRegistryService.create_config(db, actor, **request.model_dump())
    return ApiResponse(data=config, meta=Meta(message="Status created"))


@router.patch("/{config_id}", response_model=ApiResponse[StatusConfigResponse])
async def update_status_config(
    config_id: UUID,
    request: StatusConfigUpdate,
    db: DbSession,
    actor: CurrentActor,
) -> Any:
    config = await StatusRegistryService.update_config(db, actor, config_id, request.model_dump(exclude_unset=True))
    return ApiResponse(data=config, meta=Meta(message="Status updated"))


@router.delete("/{config_id}", response_model=ApiResponse[StatusConfigResponse])
async def delete_status_config(config_id: UUID, db: DbSession, actor: CurrentActor) -> Any:
    """Soft delete: the key stays in history but can no longer be assigned."""
    config = await StatusRegistryService.deactivate_config(db, actor, config_id)
    return ApiResponse(data=config, meta=Meta(message="Status deactivated"))
