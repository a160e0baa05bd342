# Models package
from .booking import Booking, BookingState, BookingSource, TERMINAL_STATES
from .booking_transition import BookingTransition
from .processed_event import ProcessedEvent, EventOutcome
from .pending_event import PendingEvent, PendingStatus
from .dead_letter import DeadLetterEvent, DeadLetterStatus
from .outbox import SideEffectOutbox, OutboxStatus, SideEffectAction, ACTION_PROVIDERS

__all__ = [
    "Booking", "BookingState", "BookingSource", "TERMINAL_STATES",
    "BookingTransition",
    "ProcessedEvent", "EventOutcome",
    "PendingEvent", "PendingStatus",
    "DeadLetterEvent", "DeadLetterStatus",
    "SideEffectOutbox", "OutboxStatus", "SideEffectAction", "ACTION_PROVIDERS",
]
