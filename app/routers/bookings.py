"""
Booking Commands Router

Direct commands from the surrounding application. The caller is already
authenticated upstream; the acting user arrives in X-User-Id.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from ..database import get_db
from ..errors import BookingNotFoundError
from ..schemas.booking import (
    BookingCreate,
    BookingCancelRequest,
    BookingResponse,
    BookingTransitionResponse
)
from ..services.booking_store import BookingStore
from ..services.reconciliation import ReconciliationCoordinator
from ..utils.dependencies import get_coordinator, get_user_id
from ..utils.logging_config import get_logger
from ..utils.rate_limiter import limiter, get_rate_limit

router = APIRouter(prefix="/bookings", tags=["Bookings"])

logger = get_logger(__name__)


def _get_booking_or_404(db: Session, booking_id: str):
    booking = BookingStore(db).get(booking_id)
    if not booking:
        raise BookingNotFoundError(f"Booking {booking_id} not found")
    return booking


@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
@router.post("/", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(get_rate_limit("booking_create"))
def create_booking(
    request: Request,
    booking_data: BookingCreate,
    user_id: str = Depends(get_user_id),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator)
):
    """Create a booking intent in CREATED (version 0)."""
    booking = coordinator.create_booking(
        amount=booking_data.amount,
        currency=booking_data.currency,
        builder_id=booking_data.builder_id,
        client_id=booking_data.client_id or user_id,
        start_time=booking_data.start_time,
        end_time=booking_data.end_time,
    )
    logger.log_with_context(logging.INFO, f"Booking intent created by {user_id}", entity_type="booking", entity_id=booking.id)
    return booking


@router.get("/{booking_id}", response_model=BookingResponse)
@limiter.limit(get_rate_limit("booking_get"))
def get_booking(
    request: Request,
    booking_id: str,
    db: Session = Depends(get_db)
):
    return _get_booking_or_404(db, booking_id)


@router.get("/{booking_id}/transitions", response_model=List[BookingTransitionResponse])
@limiter.limit(get_rate_limit("booking_get"))
def get_booking_transitions(
    request: Request,
    booking_id: str,
    db: Session = Depends(get_db)
):
    """Audit trail of accepted transitions, oldest first."""
    _get_booking_or_404(db, booking_id)
    return BookingStore(db).transitions(booking_id)


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
@limiter.limit(get_rate_limit("booking_cancel"))
def cancel_booking(
    request: Request,
    booking_id: str,
    cancel_data: Optional[BookingCancelRequest] = None,
    user_id: str = Depends(get_user_id),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator)
):
    """
    User-initiated cancel.

    Only bookings that are not yet paid can be cancelled here; paid
    bookings are cancelled through the scheduling provider so the refund
    follows. Rejections come back as 409 {success, code, message}.
    """
    reason = cancel_data.reason if cancel_data else None
    return coordinator.cancel_booking(booking_id, actor=user_id, reason=reason)
