"""
Health Check Endpoints

- /health/live     - Liveness check (is process running)
- /health/ready    - Readiness check (database reachable)
- /health/detailed - Database, provider credentials, dead letters and
                     the side-effect queue (admin token required)
"""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from sqlalchemy import text
from datetime import datetime, timedelta, timezone
import time

from ..config import settings
from ..database import get_db
from ..models.dead_letter import DeadLetterEvent, DeadLetterStatus
from ..models.outbox import SideEffectOutbox, OutboxStatus
from ..services.credential_manager import CredentialManager, CredentialStatus
from ..utils.dependencies import get_credential_manager, require_admin_token

router = APIRouter(prefix="/health", tags=["Health"])


def get_db_health(db: Session) -> dict:
    """Check database connectivity and latency"""
    try:
        start = time.time()
        db.execute(text("SELECT 1"))
        latency_ms = (time.time() - start) * 1000
        return {
            "status": "up",
            "latency_ms": round(latency_ms, 2),
            "type": db.bind.dialect.name
        }
    except Exception as e:
        return {
            "status": "down",
            "error": str(e)[:100]
        }


def get_credentials_health(credentials: CredentialManager) -> dict:
    """Healthy/unhealthy counts per provider; degraded when a provider has none usable"""
    providers = {}
    for provider, entries in credentials.snapshot().items():
        healthy = sum(1 for c in entries if c["status"] == CredentialStatus.ACTIVE.value)
        providers[provider] = {
            "healthy": healthy,
            "unhealthy": len(entries) - healthy,
            "available": credentials.has_healthy(provider),
        }
    degraded = any(not p["available"] for p in providers.values())
    return {"status": "degraded" if degraded else "up", "providers": providers}


def get_dead_letter_health(db: Session) -> dict:
    pending = db.query(DeadLetterEvent).filter(
        DeadLetterEvent.status == DeadLetterStatus.PENDING.value
    ).count()
    return {"status": "degraded" if pending else "up", "pending": pending}


def get_outbox_health(db: Session) -> dict:
    """Failed entries wait for an operator; stale processing means a worker died mid-call"""
    cutoff = datetime.utcnow() - timedelta(seconds=settings.outbox_processing_timeout_seconds)
    failed = db.query(SideEffectOutbox).filter(
        SideEffectOutbox.status == OutboxStatus.FAILED.value
    ).count()
    stale = db.query(SideEffectOutbox).filter(
        SideEffectOutbox.status == OutboxStatus.PROCESSING.value,
        SideEffectOutbox.updated_at < cutoff
    ).count()
    queued = db.query(SideEffectOutbox).filter(
        SideEffectOutbox.status.in_([OutboxStatus.PENDING.value, OutboxStatus.RETRYING.value])
    ).count()
    return {
        "status": "degraded" if failed or stale else "up",
        "queued": queued,
        "failed": failed,
        "stale_processing": stale,
    }


# ================================
# ENDPOINTS
# ================================

@router.get("/live")
@router.get("/live/")
async def liveness_check():
    """
    Liveness check - is the process running?
    Used by load balancers and orchestrators.
    """
    return {
        "status": "alive",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.get("/ready")
@router.get("/ready/")
def readiness_check(db: Session = Depends(get_db)):
    """
    Readiness check - is the service ready to accept webhooks?
    Checks database connectivity.
    """
    db_health = get_db_health(db)

    if db_health["status"] == "up":
        return {
            "status": "ready",
            "database": db_health,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={
            "status": "not_ready",
            "reason": "database_unavailable",
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    )


@router.get("/detailed", dependencies=[Depends(require_admin_token)])
@router.get("/detailed/", dependencies=[Depends(require_admin_token)])
def detailed_health_check(
    db: Session = Depends(get_db),
    credentials: CredentialManager = Depends(get_credential_manager)
):
    """
    Detailed health check with all component statuses.
    Admin-only endpoint.
    """
    db_health = get_db_health(db)
    checks = {"database": db_health}

    if db_health["status"] == "up":
        checks["dead_letters"] = get_dead_letter_health(db)
        checks["outbox"] = get_outbox_health(db)
    checks["credentials"] = get_credentials_health(credentials)

    if db_health["status"] == "down":
        overall_status = "unhealthy"
    elif any(c.get("status") == "degraded" for c in checks.values()):
        overall_status = "degraded"
    else:
        overall_status = "healthy"

    return {
        "status": overall_status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": settings.environment,
        "checks": checks,
        "config": {
            "worker_enabled": settings.worker_enabled,
            "worker_poll_interval": settings.worker_poll_interval,
            "payment_without_scheduling": settings.payment_without_scheduling,
            "rate_limit_enabled": settings.rate_limit_enabled
        }
    }
