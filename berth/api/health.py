"""Health endpoint."""

from __future__ import annotations

import asyncio

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from berth.api.dependencies import ServicesDep
from berth.utils.datetime import utcnow

router = APIRouter()


def _status(healthy: bool) -> dict[str, object]:
    return {"status": "healthy" if healthy else "unhealthy", "connected": healthy}


@router.get("/health")
async def health(services: ServicesDep) -> JSONResponse:
    docker_ok, storage_ok = await asyncio.gather(
        services.runtime.is_healthy(),
        services.storage.is_healthy(),
    )
    body = {
        "status": "ok" if docker_ok and storage_ok else "degraded",
        "timestamp": utcnow().isoformat(),
        "services": {
            "docker": _status(docker_ok),
            "storage": _status(storage_ok),
            "sessions": {"active": len(services.sessions)},
        },
    }
    return JSONResponse(body, status_code=200 if docker_ok else 503)
