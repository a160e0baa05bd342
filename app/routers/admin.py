"""
Operator Router

Credential health, dead-letter replay and failed side-effect retry.
Every endpoint requires X-Admin-Token.
"""

from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.dead_letter import DeadLetterEvent, DeadLetterStatus
from ..schemas.admin import (
    CredentialRefreshRequest,
    CredentialStatusResponse,
    DeadLetterResponse,
    OutboxEntryResponse
)
from ..schemas.webhook import WebhookResponse
from ..services.credential_manager import CredentialManager
from ..services.outbox_worker import OutboxProcessor
from ..services.provider_clients import ProviderClient
from ..services.reconciliation import ReconciliationCoordinator
from ..utils.dependencies import (
    get_coordinator,
    get_credential_manager,
    get_provider_clients,
    require_admin_token
)
from ..utils.logging_config import get_logger
from ..utils.rate_limiter import limiter, get_rate_limit

router = APIRouter(
    prefix="/admin",
    tags=["Admin"],
    dependencies=[Depends(require_admin_token)]
)

logger = get_logger(__name__)


# ==================
# Credentials
# ==================

@router.get("/credentials", response_model=CredentialStatusResponse)
@limiter.limit(get_rate_limit("admin"))
def credential_status(
    request: Request,
    credentials: CredentialManager = Depends(get_credential_manager)
):
    return {"providers": credentials.snapshot()}


@router.post("/credentials/{provider}/refresh", response_model=CredentialStatusResponse)
@limiter.limit(get_rate_limit("admin"))
def refresh_credentials(
    request: Request,
    provider: str,
    refresh_data: Optional[CredentialRefreshRequest] = None,
    credentials: CredentialManager = Depends(get_credential_manager)
):
    """
    Bring credentials back to active, or replace the provider's list when
    new secrets are supplied.
    """
    if provider not in ("calendly", "stripe"):
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")

    if refresh_data and refresh_data.secrets:
        credentials.set_credentials(provider, refresh_data.secrets)
    else:
        credentials.refresh(provider, refresh_data.name if refresh_data else None)

    return {"providers": credentials.snapshot()}


# ==================
# Dead letters
# ==================

@router.get("/dead-letters", response_model=List[DeadLetterResponse])
@limiter.limit(get_rate_limit("admin"))
def list_dead_letters(
    request: Request,
    status: Optional[str] = Query(DeadLetterStatus.PENDING.value),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db)
):
    query = db.query(DeadLetterEvent)
    if status:
        query = query.filter(DeadLetterEvent.status == status)
    return query.order_by(DeadLetterEvent.created_at.desc()).limit(limit).all()


@router.post("/dead-letters/{dead_letter_id}/replay", response_model=WebhookResponse)
@limiter.limit(get_rate_limit("admin"))
def replay_dead_letter(
    request: Request,
    dead_letter_id: str,
    coordinator: ReconciliationCoordinator = Depends(get_coordinator)
):
    result = coordinator.replay_dead_letter(dead_letter_id)
    logger.info(f"Dead letter {dead_letter_id} replayed: {result.outcome}")
    return JSONResponse(status_code=result.http_status, content=result.to_dict())


# ==================
# Side-effect outbox
# ==================

@router.get("/outbox/failures", response_model=List[OutboxEntryResponse])
@limiter.limit(get_rate_limit("admin"))
def list_outbox_failures(
    request: Request,
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    clients: Dict[str, ProviderClient] = Depends(get_provider_clients)
):
    """Side effects that exhausted their attempts"""
    return OutboxProcessor(db, clients).get_failed_events(limit)


@router.post("/outbox/{entry_id}/retry")
@limiter.limit(get_rate_limit("admin"))
def retry_outbox_entry(
    request: Request,
    entry_id: str,
    db: Session = Depends(get_db),
    clients: Dict[str, ProviderClient] = Depends(get_provider_clients)
):
    if not OutboxProcessor(db, clients).retry_failed_event(entry_id):
        raise HTTPException(status_code=404, detail="Failed outbox entry not found")
    return {"success": True, "message": f"Outbox entry {entry_id} queued for retry"}
