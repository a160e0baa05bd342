"""
Reconciliation Error Taxonomy

Every failure the engine can report carries:
- code: stable machine-readable reason
- retryable: whether a later attempt can succeed
- http_status: how the webhook/command surface reports it
"""

from typing import Optional


class ReconciliationError(Exception):
    """Base class for all reconciliation failures."""

    code = "reconciliation_error"
    retryable = False
    http_status = 500

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"success": False, "code": self.code, "message": self.message}


class AuthenticityError(ReconciliationError):
    """Bad, missing or expired webhook signature. Never retried."""

    code = "invalid_signature"
    http_status = 401


class ValidationError(ReconciliationError):
    """Malformed or unrecognized payload shape. Never retried."""

    code = "invalid_payload"
    http_status = 400


class InvalidTransitionError(ReconciliationError):
    """
    Event does not apply to the booking's current state.

    deferrable=True means the booking has not reached the event's
    source state yet, so the event may apply once it does.
    """

    code = "invalid_transition"
    http_status = 409

    def __init__(
        self,
        message: str,
        current_state: Optional[str] = None,
        event_type: Optional[str] = None,
        deferrable: bool = False
    ):
        super().__init__(message)
        self.current_state = current_state
        self.event_type = event_type
        self.deferrable = deferrable


class StaleEventError(ReconciliationError):
    """Event sequence is behind the booking version. Ignored, not a failure."""

    code = "stale_event"
    http_status = 200

    def __init__(self, message: str, sequence: Optional[int] = None, version: Optional[int] = None):
        super().__init__(message)
        self.sequence = sequence
        self.version = version


class NotFoundError(ReconciliationError):
    code = "not_found"
    http_status = 404


class BookingNotFoundError(NotFoundError):
    code = "booking_not_found"


class TransientPersistenceError(ReconciliationError):
    """Storage unavailable or lock contention. Retried with backoff."""

    code = "transient_persistence"
    retryable = True
    http_status = 503


class CredentialExhaustionError(ReconciliationError):
    """No healthy credential for an outbound call."""

    code = "no_healthy_credential"
    retryable = True
    http_status = 503

    def __init__(self, provider: str):
        super().__init__(f"No healthy credential available for {provider}")
        self.provider = provider


class ProviderError(ReconciliationError):
    """Outbound provider call failed."""

    code = "provider_error"

    def __init__(self, provider: str, kind: str, message: str, status_code: int = 0):
        super().__init__(message, code=f"provider_{kind}")
        self.provider = provider
        self.kind = kind
        self.status_code = status_code
        self.retryable = kind in ("transient", "rate_limited", "authentication")
