from pydantic import BaseModel
from typing import Any, Dict, List, Optional
from datetime import datetime


class CredentialStatus(BaseModel):
    """Credential health without secret material"""
    provider: str
    name: str
    priority: int
    status: str
    key: str
    failure_count: int
    last_failure_at: Optional[str] = None
    last_failure_kind: Optional[str] = None
    cooldown_until: Optional[str] = None
    last_used_at: Optional[str] = None


class CredentialStatusResponse(BaseModel):
    providers: Dict[str, List[CredentialStatus]]


class CredentialRefreshRequest(BaseModel):
    name: Optional[str] = None
    # Replaces the provider's credentials when given (priority order)
    secrets: Optional[List[str]] = None


class DeadLetterResponse(BaseModel):
    id: str
    provider: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    reason: Optional[str] = None
    attempts: int = 0
    status: str
    replay_outcome: Optional[str] = None
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class OutboxEntryResponse(BaseModel):
    id: str
    booking_id: str
    action: str
    provider: str
    status: str
    attempts: int
    max_attempts: int
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    idempotency_key: str
    payload: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True
