"""
Matching Service Health Check Endpoints
Liveness and readiness probes for the matching worker deployment.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel

from backend.core.config import settings
from backend.database import check_db_connection
from backend.events import ConsumerGroups, EventBus, StreamNames, get_event_bus

logger = logging.getLogger(__name__)

# Components whose failure makes the service unable to match at all
CRITICAL_COMPONENTS = ("database", "redis")


# =============================================================================
# Health Status Models
# =============================================================================


class HealthStatus(str, Enum):
    """Health status values for components and overall system."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class ComponentHealth(BaseModel):
    """Health status for an individual component."""

    status: HealthStatus
    latency_ms: Optional[float] = None
    message: Optional[str] = None
    details: Optional[dict[str, Any]] = None


class HealthResponse(BaseModel):
    """Full health check response."""

    status: HealthStatus
    timestamp: str
    components: dict[str, ComponentHealth]
    version: str


class LivenessResponse(BaseModel):
    status: str


# =============================================================================
# Health Check Functions
# =============================================================================


async def check_database() -> ComponentHealth:
    """Check PostgreSQL connectivity with a SELECT 1."""
    start_time = time.perf_counter()
    result = await check_db_connection()
    latency = round((time.perf_counter() - start_time) * 1000, 2)

    if result.get("status") == "healthy":
        return ComponentHealth(
            status=HealthStatus.HEALTHY,
            latency_ms=latency,
            message="Database connection successful",
        )

    logger.error(f"Database health check failed: {result.get('error')}")
    return ComponentHealth(
        status=HealthStatus.UNHEALTHY,
        latency_ms=latency,
        message=f"Database connection failed: {result.get('error')}",
    )


async def check_event_bus(event_bus: EventBus) -> ComponentHealth:
    """Check Redis and report stream lengths and the trigger backlog."""
    result = await event_bus.health_check()

    if result.get("status") != "healthy":
        logger.error(f"Redis health check failed: {result.get('error')}")
        return ComponentHealth(
            status=HealthStatus.UNHEALTHY,
            message=f"Redis connection failed: {result.get('error')}",
        )

    pending = await event_bus.get_pending_count(
        StreamNames.MATCHING_REQUESTED,
        ConsumerGroups.MATCHING_WORKERS,
    )
    return ComponentHealth(
        status=HealthStatus.HEALTHY,
        latency_ms=result.get("latency_ms"),
        message="Redis connection successful",
        details={
            "stream_lengths": result.get("stream_lengths", {}),
            "pending_triggers": pending,
        },
    )


def determine_overall_status(components: dict[str, ComponentHealth]) -> HealthStatus:
    """
    Overall health from component statuses.

    - UNHEALTHY: a critical component (database, redis) is unhealthy
    - DEGRADED: any other component is degraded or unhealthy
    - HEALTHY: everything is healthy
    """
    for name in CRITICAL_COMPONENTS:
        component = components.get(name)
        if component and component.status == HealthStatus.UNHEALTHY:
            return HealthStatus.UNHEALTHY

    if any(c.status != HealthStatus.HEALTHY for c in components.values()):
        return HealthStatus.DEGRADED

    return HealthStatus.HEALTHY


# =============================================================================
# Router Definition
# =============================================================================

router = APIRouter(prefix="/health", tags=["Health"])


@router.get("/live", response_model=LivenessResponse, summary="Liveness probe")
async def liveness_probe() -> LivenessResponse:
    return LivenessResponse(status="ok")


@router.get(
    "/ready",
    response_model=HealthResponse,
    summary="Readiness check",
    responses={
        200: {"description": "All systems operational"},
        503: {"description": "Database or Redis unavailable"},
    },
)
async def readiness_check(
    response: Response,
    event_bus: EventBus = Depends(get_event_bus),
) -> HealthResponse:
    """
    Verify connectivity to PostgreSQL and Redis.

    Returns 503 when either is down, since no matching run can make progress.
    """
    db_check, redis_check = await asyncio.gather(
        check_database(),
        check_event_bus(event_bus),
    )
    components = {"database": db_check, "redis": redis_check}

    overall_status = determine_overall_status(components)
    if overall_status == HealthStatus.UNHEALTHY:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthResponse(
        status=overall_status,
        timestamp=datetime.now(timezone.utc).isoformat(),
        components=components,
        version=settings.app_version,
    )
