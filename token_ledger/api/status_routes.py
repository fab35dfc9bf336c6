"""
Status API routes - Health checks for the ledger's dependencies.

Public endpoints (no auth) for load balancers and status pages.
"""

import time
from datetime import UTC, datetime
from enum import Enum

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from token_ledger.config import settings
from token_ledger.db.session import get_read_db

logger = get_logger(__name__)
router = APIRouter(tags=["status"])

DEGRADED_LATENCY_THRESHOLD = 1000  # ms

# Rate limiting: cache last result for 10 seconds
_status_cache: dict[str, tuple[datetime, "ServiceStatusResponse"]] = {}
_CACHE_TTL_SECONDS = 10


class StatusLevel(str, Enum):
    """Status levels for health checks."""

    OPERATIONAL = "operational"
    DEGRADED = "degraded"
    OUTAGE = "outage"


class HealthResponse(BaseModel):
    """Response for /health endpoint."""

    status: str
    database: str
    timestamp: str = Field(..., description="ISO 8601 timestamp")


class DependencyStatus(BaseModel):
    """Status of a single dependency."""

    status: StatusLevel
    latency_ms: int | None = None
    last_check: str = Field(..., description="ISO 8601 timestamp")
    message: str | None = None


class ServiceStatusResponse(BaseModel):
    """Response for /v1/status endpoint."""

    service: str
    status: StatusLevel
    timestamp: str = Field(..., description="ISO 8601 timestamp")
    version: str
    dependencies: dict[str, DependencyStatus]


async def check_postgresql(db: AsyncSession) -> DependencyStatus:
    """Check PostgreSQL connectivity and latency."""
    start = time.perf_counter()
    timestamp = datetime.now(UTC).isoformat()

    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("postgresql_health_check_failed", error=str(e))
        return DependencyStatus(
            status=StatusLevel.OUTAGE,
            latency_ms=None,
            last_check=timestamp,
            message="Connection failed",
        )

    latency_ms = int((time.perf_counter() - start) * 1000)
    level = (
        StatusLevel.DEGRADED if latency_ms > DEGRADED_LATENCY_THRESHOLD else StatusLevel.OPERATIONAL
    )
    return DependencyStatus(
        status=level,
        latency_ms=latency_ms,
        last_check=timestamp,
        message="High latency" if level == StatusLevel.DEGRADED else None,
    )


def calculate_overall_status(dependencies: dict[str, DependencyStatus]) -> StatusLevel:
    """Worst status across all dependencies."""
    statuses = [d.status for d in dependencies.values()]

    if StatusLevel.OUTAGE in statuses:
        return StatusLevel.OUTAGE
    if StatusLevel.DEGRADED in statuses:
        return StatusLevel.DEGRADED
    return StatusLevel.OPERATIONAL


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=datetime.now(UTC).isoformat(),
    )


@router.get("/v1/status", response_model=ServiceStatusResponse)
async def get_status(db: AsyncSession = Depends(get_read_db)) -> ServiceStatusResponse:
    """
    Get ledger service status.

    Rate limited via 10-second cache.
    """
    cache_key = "status"
    now = datetime.now(UTC)

    if cache_key in _status_cache:
        cached_time, cached_response = _status_cache[cache_key]
        age_seconds = (now - cached_time).total_seconds()
        if age_seconds < _CACHE_TTL_SECONDS:
            logger.debug("status_cache_hit", age_seconds=age_seconds)
            return cached_response

    dependencies = {"postgresql": await check_postgresql(db)}

    response = ServiceStatusResponse(
        service=settings.service_name,
        status=calculate_overall_status(dependencies),
        timestamp=now.isoformat(),
        version=settings.api_version,
        dependencies=dependencies,
    )
    _status_cache[cache_key] = (now, response)
    return response
