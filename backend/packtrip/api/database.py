"""
Database management API endpoints
Health checks and connection statistics for operators
"""

import logging

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import JSONResponse

from packtrip.core.settings import get_settings
from packtrip.db.session import database_health_check, get_database_stats

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health",
    responses={
        200: {"description": "Database is healthy"},
        503: {"description": "Database is unhealthy"}
    },
    summary="Database health check",
    description="Check database connectivity and connection pool status"
)
async def get_database_health():
    health_info = await database_health_check()
    code = status.HTTP_200_OK if health_info["status"] == "healthy" else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=code, content=health_info)


@router.get("/stats",
    responses={
        200: {"description": "Database connection statistics"},
        500: {"description": "Failed to retrieve statistics"}
    },
    summary="Database statistics"
)
async def get_database_statistics():
    """Connection counters plus pool utilisation against the configured pool size"""
    try:
        stats = get_database_stats()
        pool_size = max(get_settings().DB_POOL_SIZE, 1)
        stats["computed_metrics"] = {
            "connection_utilization": stats["active_connections"] / pool_size * 100,
            "error_rate": stats["failed_connections"] / max(stats["total_connections"], 1) * 100,
        }
        return stats
    except KeyError as e:
        logger.error(f"Connection statistics incomplete: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to retrieve database statistics"
        )
