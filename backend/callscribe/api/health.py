# backend/callscribe/api/health.py
"""
Health check endpoints.

/health reports database connectivity, configuration presence (booleans
only) and in-flight pipeline work; /health/simple is for load balancers.
"""

from datetime import datetime
from typing import Dict, Any

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from callscribe.config import get_config_status
from callscribe.database import get_db
from callscribe.pipelines.dispatch import dispatcher
from callscribe.utils.logger import logger

router = APIRouter(tags=["health"])


def check_database(db: Session) -> Dict[str, Any]:
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as e:
        logger.error(f"[Health Check] Database failed: {e}")
        return {"status": "error", "message": str(e)[:100]}


@router.get("/health")
async def health(db: Session = Depends(get_db)):
    health_status = {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "version": "1.0.0",
        "checks": {},
    }

    database = check_database(db)
    health_status["checks"]["database"] = database["status"]
    if database["status"] != "ok":
        health_status["status"] = "degraded"

    config_status = get_config_status()
    health_status["checks"]["config"] = config_status
    health_status["checks"]["pipeline_jobs_in_flight"] = dispatcher.pending

    if not config_status.get("database_configured"):
        health_status["status"] = "unhealthy"
    elif not config_status.get("assemblyai_configured") or not config_status.get("auth_configured"):
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/simple")
async def health_simple():
    """Simple health check for load balancers."""
    return {"status": "ok"}
