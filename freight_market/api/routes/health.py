"""
Health check endpoints for monitoring and load balancing.
"""
import logging
from fastapi import APIRouter, HTTPException
from redis.exceptions import RedisError

from freight_market.api.dependencies import get_session_data_store
from freight_market.config.settings import settings, get_effective_redis_url
from freight_market.services.cache_service import get_redis_client

logger = logging.getLogger(__name__)

router = APIRouter()

@router.get("/health")
async def health_check():
    """
    Basic health check endpoint.
    Returns 200 if the service is running.
    """
    return {"status": "healthy", "service": settings.SERVICE_NAME}

@router.get("/health/detailed")
async def detailed_health_check():
    """
    Detailed health check that verifies the realtime transport and the data store.
    """
    health_status = {
        "status": "healthy",
        "service": settings.SERVICE_NAME,
        "components": {}
    }

    # The realtime layer cannot work without Redis
    if get_effective_redis_url():
        try:
            redis_client = await get_redis_client()
            if redis_client is None or not await redis_client.ping():
                raise RedisError("ping failed")
            health_status["components"]["redis"] = "healthy"
        except (RedisError, OSError) as e:
            logger.warning(f"Redis health check failed: {e}")
            health_status["components"]["redis"] = "unhealthy"
            health_status["status"] = "unhealthy"
    else:
        health_status["components"]["redis"] = "disabled"
        health_status["status"] = "degraded"

    # Enrichment lookups degrade to placeholders without the data store
    try:
        data_store = get_session_data_store()
        ping = getattr(data_store, "ping", None)
        healthy = await ping() if ping is not None else True
        health_status["components"]["database"] = "healthy" if healthy else "unhealthy"
        if not healthy and health_status["status"] == "healthy":
            health_status["status"] = "degraded"
    except ValueError as e:
        logger.warning(f"Database health check skipped: {e}")
        health_status["components"]["database"] = "disabled"
        if health_status["status"] == "healthy":
            health_status["status"] = "degraded"

    # Return appropriate HTTP status
    if health_status["status"] == "unhealthy":
        raise HTTPException(status_code=503, detail=health_status)

    return health_status

@router.get("/ready")
async def readiness_check():
    """
    Readiness check for Kubernetes deployments.
    Returns 200 when the service is ready to accept traffic.
    """
    return await health_check()
