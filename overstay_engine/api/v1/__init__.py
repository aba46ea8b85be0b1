# ================================
# API V1 INITIALIZATION (api/v1/__init__.py)
# ================================

"""
API Version 1

All V1 routes
"""

from fastapi import APIRouter

from overstay_engine.api.v1 import overstays

v1_router = APIRouter(prefix="/v1")

v1_router.include_router(
    overstays.router,
    responses={
        404: {"description": "Overstay record not found"},
        409: {"description": "Record is not in a status that allows this action"},
        422: {"description": "Invalid request"}
    }
)

@v1_router.get("/health", tags=["Health"])
async def v1_health_check():
    """V1 API Health Check"""
    return {
        "status": "healthy",
        "version": "1.0.0",
        "api_version": "v1"
    }

__all__ = ["v1_router"]
