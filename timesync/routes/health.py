"""
TimeSync Backend — Health Check Route
=======================================

What:  Health check endpoint for monitoring and load balancer checks, plus
       the service banner at `/`.
How:   Reads process/system metrics and runs SELECT 1 against the database.
Who:   Called by Docker health checks, load balancers, and monitoring systems.

Status levels:
    - healthy:   metrics readable and database reachable (HTTP 200)
    - unhealthy: system metrics unreadable or database unreachable (HTTP 503)
"""

import logging
import os
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Response
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from timesync import __version__
from timesync.database import get_session_factory
from timesync.schemas.sync import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

# Process start, for uptime reporting
_start_time = time.time()


@router.get("/", summary="Service banner")
async def root() -> dict:
    return {"name": "TimeSync API", "version": __version__}


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={503: {"description": "Service unhealthy", "model": HealthResponse}},
    summary="Service health check",
    description=(
        "Returns server time, uptime, load average and database connectivity. "
        "Responds 503 when system metrics cannot be read or the database is unreachable."
    ),
)
async def health_check(
    response: Response,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> HealthResponse:
    overall = "healthy"

    # ── System Metrics ────────────────────────────────────────────────────
    load_average = None
    try:
        load_average = [round(value, 2) for value in os.getloadavg()]
    except (OSError, AttributeError) as e:
        overall = "unhealthy"
        logger.warning("Health check: system metrics unavailable: %s", str(e))

    # ── Database ──────────────────────────────────────────────────────────
    db_status = "connected"
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        db_status = "disconnected"
        overall = "unhealthy"
        logger.warning("Health check: database unreachable: %s", str(e))

    if overall != "healthy":
        response.status_code = 503

    return HealthResponse(
        status=overall,
        version=__version__,
        server_time=datetime.now(timezone.utc),
        uptime_seconds=round(time.time() - _start_time, 2),
        load_average=load_average,
        database=db_status,
    )
