"""
Health check API routes.
"""
from fastapi import APIRouter, Depends
import logging

from ..deps import get_services
from ...models.schemas import HealthResponse
from ...config import settings
from ...services.container import PortalServices
from ...utils.clock import utcnow

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=HealthResponse)
async def health_check():
    """
    Basic health check endpoint.

    Returns:
        System health status
    """
    return HealthResponse(
        status="healthy",
        timestamp=utcnow(),
        version=settings.app_version,
        services={}
    )


@router.get("/ready", response_model=HealthResponse)
async def readiness_check(services: PortalServices = Depends(get_services)):
    """
    Readiness check for all services.

    Returns:
        Detailed service health status
    """
    checks = {}
    overall_status = "healthy"

    # Check store (a database round trip for the SQL store)
    try:
        await services.store.get_stats()
        checks["store"] = "healthy"
    except Exception as e:
        logger.error(f"Store health check failed: {e}")
        checks["store"] = "unhealthy"
        overall_status = "unhealthy"

    checks["change_feed"] = type(services.change_feed).__name__

    checks["agent_circuit"] = services.bridge.circuit_state
    if checks["agent_circuit"] == "open" and overall_status == "healthy":
        overall_status = "degraded"

    checks["background"] = "accepting" if services.runner.accepting else "draining"
    if not services.runner.accepting:
        overall_status = "unhealthy"

    return HealthResponse(
        status=overall_status,
        timestamp=utcnow(),
        version=settings.app_version,
        services=checks
    )


@router.get("/live")
async def liveness_check():
    """
    Simple liveness check.

    Returns:
        Basic alive status
    """
    return {"status": "alive", "timestamp": utcnow().isoformat()}
