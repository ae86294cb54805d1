############################################################
#
# fleetrouter - Fleet Health and Model Routing Service
#
# __init__.py: API endpoints package and router configuration
#
############################################################

"""API endpoints for fleetrouter."""

from fastapi import APIRouter

from fleetrouter.api.fleet_api import router as fleet_router
from fleetrouter.api.health import router as health_router

# Create main API router
api_router = APIRouter()

api_router.include_router(health_router)
api_router.include_router(fleet_router, prefix="/api/fleet", tags=["fleet"])

__all__ = ["api_router"]
