"""
Main API router for Registrations Service.
Combines all API endpoints and provides health checks.
"""

from fastapi import APIRouter
import logging

from registrations.api.dependencies import check_service_health
from registrations.schemas.registration import HealthCheckResponse

logger = logging.getLogger(__name__)

# Create main router
router = APIRouter(prefix="/api/v1")

# Include sub-routers
from registrations.api.v1.registrations import router as registrations_router

router.include_router(registrations_router)


@router.get("/health", response_model=HealthCheckResponse)
async def health_check():
    """
    Health check endpoint for the registrations service.

    Returns:
        Service health status
    """
    health_status = await check_service_health()

    return HealthCheckResponse(
        status=health_status["overall"],
        version="1.0.0",
        database=health_status["database"],
        redis=health_status["redis"]
    )


@router.get("/info")
async def service_info():
    """
    Service information endpoint.

    Returns:
        Service information and capabilities
    """
    return {
        "service": "Registrations Service",
        "version": "1.0.0",
        "description": "Event registration and live capacity tracking",
        "capabilities": [
            "Live enrolled counts per event and activity",
            "Register and cancel through the backend's atomic procedures",
            "Activity waitlists with promotion on cancellation",
            "Optimistic updates reconciled by change notifications"
        ],
        "endpoints": {
            "capacity": "/api/v1/{events|activities}/{id}/capacity",
            "registration": "/api/v1/{events|activities}/{id}/registration",
            "my_registrations": "/api/v1/me/registrations",
            "health": "/api/v1/health",
            "docs": "/docs"
        }
    }
