"""
Exposure Backend — Health Check Route
=======================================

What:  Health check endpoint for monitoring and load balancer probes.
Why:   Load balancers route away from instances that cannot serve requests.
How:   Probes the database (SELECT 1) and the storage root (writable
       directory), and reports the thumbnail backlog.
Who:   Docker health checks, load balancers, monitoring.

Status levels:
    - healthy:   database and storage available (HTTP 200)
    - degraded:  storage unavailable; listings still work (HTTP 200)
    - unhealthy: database unreachable (HTTP 503)
"""

import logging
import os
import time

from fastapi import APIRouter, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app import __version__
from app.database import engine
from app.schemas.common import HealthResponse
from app.services.file_service import file_service
from app.services.thumbnail_service import thumbnail_queue

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
)
async def health_check(response: Response) -> HealthResponse:
    db_status = "connected"
    storage_status = "writable"
    overall = "healthy"

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        db_status = "disconnected"
        overall = "unhealthy"
        logger.warning("Health check: database unreachable: %s", str(e))

    root = file_service.places_root
    if not (root.is_dir() and os.access(root, os.W_OK)):
        storage_status = "unavailable"
        if overall == "healthy":
            overall = "degraded"
        logger.warning("Health check: storage root is not writable")

    if overall == "unhealthy":
        response.status_code = 503

    return HealthResponse(
        status=overall,
        version=__version__,
        database=db_status,
        storage=storage_status,
        thumbnail_jobs=thumbnail_queue.pending_jobs,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
