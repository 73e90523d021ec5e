"""Enhanced health check endpoints"""
import time
from typing import Dict, Any

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.database import get_db
from app.config import settings
from app.messenger.store import QueueStore
from app.models.user import User
from app.utils.clock import utcnow

router = APIRouter(prefix="/health", tags=["health"])

# Track startup time
STARTUP_TIME = time.time()


@router.get("")
def health_check():
    """
    Basic health check endpoint

    Returns 200 if service is running
    """
    return {
        "status": "healthy",
        "service": "identity",
        "version": "0.1.0",
        "timestamp": utcnow().isoformat()
    }


@router.get("/ready")
def readiness_check(db: Session = Depends(get_db)):
    """
    Readiness check - verifies the database is reachable

    Returns 200 if ready to serve traffic, 503 if not ready
    """
    checks = {
        "database": False,
        "database_latency_ms": None
    }

    try:
        start = time.perf_counter()
        db.execute(text("SELECT 1"))
        latency_ms = (time.perf_counter() - start) * 1000
        checks["database"] = True
        checks["database_latency_ms"] = round(latency_ms, 2)
    except SQLAlchemyError as e:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "unhealthy",
                "checks": checks,
                "message": f"Database check failed: {str(e)}"
            }
        )

    # More than 1 second
    if latency_ms > 1000:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "degraded",
                "checks": checks,
                "message": "Database latency is high"
            }
        )

    return {
        "status": "ready",
        "checks": checks,
        "timestamp": utcnow().isoformat()
    }


@router.get("/live")
def liveness_check():
    """
    Liveness check - verifies service is alive

    Used by Kubernetes liveness probe
    """
    return {
        "status": "alive",
        "uptime_seconds": round(time.time() - STARTUP_TIME, 2),
        "timestamp": utcnow().isoformat()
    }


@router.get("/stats")
def health_stats(request: Request, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """
    Account and queue statistics

    Returns:
    - User counts
    - Undelivered messages per queue
    - In-process worker lane states (when the worker runs in this process)
    """
    try:
        total_users = db.query(User).count()
        active_users = db.query(User).filter(User.is_active.is_(True), User.deleted_at.is_(None)).count()
        verified_users = db.query(User).filter(User.is_verified.is_(True)).count()
        pending = QueueStore().count_pending(db)
    except SQLAlchemyError as e:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "error",
                "message": str(e),
                "timestamp": utcnow().isoformat()
            }
        )

    worker = getattr(request.app.state, "worker", None)
    return {
        "status": "healthy",
        "users": {
            "total": total_users,
            "active": active_users,
            "verified": verified_users
        },
        "messenger": {
            "pending": pending,
            "worker": dict(worker.lane_state) if worker is not None else None
        },
        "system": {
            "uptime_seconds": round(time.time() - STARTUP_TIME, 2),
            "revocation_backend": settings.REVOCATION_BACKEND
        },
        "timestamp": utcnow().isoformat()
    }
