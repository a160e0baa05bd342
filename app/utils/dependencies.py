"""
FastAPI dependencies.

Long-lived collaborators (credential manager, event bus, signature
verifier, provider clients) are created once in the app lifespan and
kept on app.state; the getters below create them on first use when the
app runs without its lifespan (tests, scripts).
"""

import secrets
from typing import Dict, Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from ..config import settings
from ..database import get_db
from ..services.booking_events import BookingEventBus
from ..services.credential_manager import CredentialManager
from ..services.provider_clients import ProviderClient, build_clients
from ..services.reconciliation import ReconciliationCoordinator
from ..services.signature_verifier import SignatureVerifier


def get_credential_manager(request: Request) -> CredentialManager:
    state = request.app.state
    if getattr(state, "credentials", None) is None:
        state.credentials = CredentialManager.from_settings(settings)
    return state.credentials


def get_event_bus(request: Request) -> BookingEventBus:
    state = request.app.state
    if getattr(state, "event_bus", None) is None:
        state.event_bus = BookingEventBus()
    return state.event_bus


def get_signature_verifier(request: Request) -> SignatureVerifier:
    state = request.app.state
    if getattr(state, "verifier", None) is None:
        state.verifier = SignatureVerifier.from_settings(settings)
    return state.verifier


def get_provider_clients(
    request: Request,
    credentials: CredentialManager = Depends(get_credential_manager)
) -> Dict[str, ProviderClient]:
    state = request.app.state
    if getattr(state, "provider_clients", None) is None:
        state.provider_clients = build_clients(settings, credentials)
    return state.provider_clients


def get_coordinator(
    db: Session = Depends(get_db),
    verifier: SignatureVerifier = Depends(get_signature_verifier),
    event_bus: BookingEventBus = Depends(get_event_bus)
) -> ReconciliationCoordinator:
    return ReconciliationCoordinator(db, verifier=verifier, event_bus=event_bus, settings=settings)


def require_admin_token(
    x_admin_token: Optional[str] = Header(None, alias="X-Admin-Token")
) -> None:
    """Operator endpoints. Disabled entirely while ADMIN_API_TOKEN is unset."""
    expected = settings.admin_api_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin API is disabled"
        )
    if not x_admin_token or not secrets.compare_digest(x_admin_token, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin token"
        )


def get_user_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id")
) -> str:
    """Actor for direct commands; authentication happens upstream."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Id header is required"
        )
    return x_user_id.strip()[:255]
