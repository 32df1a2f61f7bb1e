"""Port discovery endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Path
from pydantic import BaseModel

from berth.api.dependencies import CurrentUser, ServicesDep

router = APIRouter()


class PortMappingResponse(BaseModel):
    container_port: int
    host_port: int
    status: str


class PortMappingListResponse(BaseModel):
    success: bool = True
    port_mappings: list[PortMappingResponse]


class PortStatusResponse(BaseModel):
    success: bool = True
    port: int
    is_running: bool


@router.get("", response_model=PortMappingListResponse)
async def list_ports(user_id: CurrentUser, services: ServicesDep) -> PortMappingListResponse:
    """Published ports of the caller's container (empty without a container)."""
    mappings = await services.ports.list_port_mappings(user_id)
    return PortMappingListResponse(
        port_mappings=[PortMappingResponse(**m.to_dict()) for m in mappings],
    )


@router.get("/{port}", response_model=PortStatusResponse)
async def port_status(
    user_id: CurrentUser,
    services: ServicesDep,
    port: int = Path(ge=1, le=65535),
) -> PortStatusResponse:
    """Whether something listens on ``port`` inside the caller's container."""
    active = await services.ports.is_port_active(user_id, port)
    return PortStatusResponse(port=port, is_running=active)
