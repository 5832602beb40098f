from fastapi import APIRouter, Depends, status as http_status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from timecards.core.database import get_db
from timecards.core.config import settings
from sqlalchemy import text
from typing import Dict, Any
import logging
import sys
import time
from datetime import datetime, timezone

router = APIRouter()
logger = logging.getLogger(__name__)

# Track server startup time for uptime calculation
SERVER_START_TIME = time.time()


async def get_database_info(db: AsyncSession) -> Dict[str, Any]:
    """Check database connectivity."""
    db_info: Dict[str, Any] = {"status": "unknown", "dialect": None}
    try:
        await db.execute(text("SELECT 1"))
        db_info["status"] = "connected"
        db_info["dialect"] = db.bind.dialect.name if db.bind is not None else None
    except Exception as e:
        db_info["status"] = "disconnected"
        db_info["error"] = str(e)
        logger.error(f"Database connection error in health check: {str(e)}", exc_info=True)
    return db_info


@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check with database connectivity and engine configuration.

    Returns:
        - 200 OK: Service is healthy
        - 503 Service Unavailable: Database disconnected
    """
    uptime_seconds = time.time() - SERVER_START_TIME
    health_status: Dict[str, Any] = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": {
            "name": "Timecard Engine API",
            "version": "1.0.0",
            "uptime_seconds": round(uptime_seconds, 2),
        },
        "python_version": sys.version.split()[0],
        "configuration": {
            "environment": settings.ENVIRONMENT,
            "max_hours_before_stop": settings.MAX_HOURS_BEFORE_STOP,
            "break_grace_minutes": settings.BREAK_GRACE_MINUTES,
            "shift_sweep_interval_seconds": settings.SHIFT_SWEEP_INTERVAL_SECONDS,
        },
    }

    http_code = http_status.HTTP_200_OK
    db_info = await get_database_info(db)
    health_status["database"] = db_info
    if db_info.get("status") != "connected":
        health_status["status"] = "unhealthy"
        http_code = http_status.HTTP_503_SERVICE_UNAVAILABLE

    return JSONResponse(status_code=http_code, content=health_status)
