"""Health check endpoints."""

from fastapi import APIRouter, Request

from careslot import __version__

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    """Basic health check."""
    return {
        "status": "healthy",
        "service": "careslot",
        "version": __version__,
    }


@router.get("/health/ready")
async def readiness_check(request: Request) -> dict:
    """Readiness check - verifies the scheduling store answers."""
    service = getattr(request.app.state, "scheduling_service", None)
    if service is None:
        return {"status": "not_ready", "errors": ["Scheduling service not initialized"]}

    try:
        await service.repository.get_provider("__readiness_check__")
    except Exception as e:
        return {"status": "not_ready", "errors": [f"Store check failed: {e}"]}

    return {"status": "ready"}


@router.get("/health/live")
async def liveness_check() -> dict:
    """Liveness check - basic process health."""
    return {"status": "alive"}
