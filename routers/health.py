"""
Health check endpoint for the database mirror and sync runs.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models
from config import config
from database import get_db
from routers.sync import get_sync_service
from services.sync_orchestrator import SyncState
from services.sync_service import SyncService
from utils.structured_logging import StructuredLogger

router = APIRouter(tags=["health"])

# Create health-specific structured logger
health_logger = StructuredLogger(service="health", logger_name="drive_mirror.health")


@router.get("/health")
def general_health_check(
    db: Session = Depends(get_db),
    sync_service: SyncService = Depends(get_sync_service),
):
    """
    Returns:
        - status: healthy / degraded / unhealthy
        - database: reachability and mirrored row counts
        - runs: latest run per scope

    Status determination:
        - unhealthy: database unreachable
        - degraded: the latest run of some scope ended in error
        - healthy: otherwise
    """
    now = datetime.now(timezone.utc)
    status = "healthy"
    issues = []
    database = {"reachable": False}

    try:
        db.execute(text("SELECT 1"))
        database = {
            "reachable": True,
            "entries": db.query(models.DriveEntry).count(),
            "grants": db.query(models.DriveGrant).count(),
        }
    except SQLAlchemyError as e:
        status = "unhealthy"
        issues.append("Database not reachable")
        health_logger.error(action="health_check", message="Database check failed", error=e)

    runs = []
    for handle in sync_service.runs():
        stats = handle.stats
        runs.append({
            "run_id": stats.run_id,
            "scope": stats.scope,
            "state": stats.state.value,
            "running": handle.is_running,
            "finished_at": stats.finished_at.isoformat() if stats.finished_at else None,
            "errors": stats.errors,
            "error_message": stats.error_message,
        })
        if stats.state is SyncState.ERRORED:
            issues.append(f"Last sync of scope '{stats.scope}' failed")
            if status == "healthy":
                status = "degraded"

    response = {
        "status": status,
        "timestamp": now.isoformat(),
        "mock_drive": config.USE_MOCK_DRIVE,
        "scheduler_enabled": config.SCHEDULER_ENABLED,
        "database": database,
        "runs": runs,
    }
    if issues:
        response["issues"] = issues

    return response
