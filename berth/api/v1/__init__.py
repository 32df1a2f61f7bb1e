"""API v1 router."""

from fastapi import APIRouter

from berth.api.v1.ports import router as ports_router

router = APIRouter()

# Include sub-routers
router.include_router(ports_router, prefix="/ports", tags=["ports"])
