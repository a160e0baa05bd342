# Services package
from .state_machine import (
    EventType, PaymentOrderingPolicy, BookingSnapshot, TransitionInput,
    TransitionPolicy, TransitionResult, transition
)
from .signature_verifier import SignatureVerifier, VerifiedPayload
from .event_normalizer import EventNormalizer, NormalizedEvent
from .idempotency_store import IdempotencyStore, IdempotencyCheck
from .booking_store import BookingStore
from .booking_events import BookingEventBus, BookingStateChanged
from .credential_manager import CredentialManager, CredentialStatus, FailureKind
from .provider_clients import ProviderClient, StripeClient, CalendlyClient, build_clients
from .reconciliation import ReconciliationCoordinator, ProcessingResult
from .outbox_worker import OutboxProcessor, run_outbox_cycle
from .maintenance import MaintenanceService

__all__ = [
    "EventType", "PaymentOrderingPolicy", "BookingSnapshot", "TransitionInput",
    "TransitionPolicy", "TransitionResult", "transition",
    "SignatureVerifier", "VerifiedPayload",
    "EventNormalizer", "NormalizedEvent",
    "IdempotencyStore", "IdempotencyCheck",
    "BookingStore",
    "BookingEventBus", "BookingStateChanged",
    "CredentialManager", "CredentialStatus", "FailureKind",
    "ProviderClient", "StripeClient", "CalendlyClient", "build_clients",
    "ReconciliationCoordinator", "ProcessingResult",
    "OutboxProcessor", "run_outbox_cycle",
    "MaintenanceService",
]
