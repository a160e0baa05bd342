"""
Reconciliation Coordinator

Linear pipeline per inbound webhook:

    verify -> normalize -> lock -> dedup -> resolve/create booking
           -> transition -> persist (booking + ledger + outbox, one commit)
           -> publish booking-state-changed

Transient persistence failures roll the unit of work back and retry with
exponential backoff; after the last attempt the delivery is stored as a
DeadLetterEvent and the provider gets a 503 so it redelivers later.

Direct commands (create booking intent, user cancel, finalize) go
through the same transition/persist path.
"""

import time
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Mapping, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from ..config import settings as default_settings, Settings
from ..errors import (
    AuthenticityError,
    BookingNotFoundError,
    InvalidTransitionError,
    NotFoundError,
    StaleEventError,
    TransientPersistenceError,
)
from ..models.booking import Booking, BookingState, BookingSource
from ..models.dead_letter import DeadLetterEvent, DeadLetterStatus
from ..models.outbox import SideEffectOutbox, SideEffectAction
from ..models.pending_event import PendingEvent, PendingStatus
from ..models.processed_event import ProcessedEvent, EventOutcome
from ..utils.db_helpers import KeyedLock, booking_locks
from ..utils.logging_config import get_logger
from .booking_events import BookingEventBus, BookingStateChanged
from .booking_store import BookingStore
from .event_normalizer import EventNormalizer, NormalizedEvent
from .idempotency_store import IdempotencyStore
from .side_effects import enqueue_side_effect, idempotency_key_for
from .signature_verifier import SignatureVerifier
from .state_machine import (
    EventType,
    ORIGINATING_EVENTS,
    PaymentOrderingPolicy,
    TransitionInput,
    TransitionPolicy,
    TransitionResult,
    transition,
)

logger = get_logger(__name__)


DEAD_LETTERED = "dead_lettered"

# Payment events may arrive before the booking they belong to exists
PARKABLE_EVENTS = frozenset({
    EventType.PAYMENT_INITIATED,
    EventType.PAYMENT_SUCCEEDED,
    EventType.PAYMENT_FAILED,
    EventType.PAYMENT_REFUNDED,
})


@dataclass
class ProcessingResult:
    outcome: str
    provider: Optional[str] = None
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    booking_id: Optional[str] = None
    state: Optional[str] = None
    version: Optional[int] = None
    prior_outcome: Optional[str] = None
    code: Optional[str] = None
    message: str = ""

    @property
    def http_status(self) -> int:
        if self.outcome == EventOutcome.DEFERRED.value:
            return 202
        if self.outcome == DEAD_LETTERED:
            return 503
        return 200

    def to_dict(self) -> dict:
        return {
            "success": self.outcome != DEAD_LETTERED,
            "outcome": self.outcome,
            "provider": self.provider,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "booking_id": self.booking_id,
            "state": self.state,
            "version": self.version,
            "prior_outcome": self.prior_outcome,
            "code": self.code,
            "message": self.message,
        }


class ReconciliationCoordinator:
    """
    One instance per unit of work (request or worker cycle); it owns the
    session it is given.

    Usage:
        coordinator = ReconciliationCoordinator(db, verifier)
        result = coordinator.handle_webhook("stripe", raw_body, headers)
    """

    def __init__(
        self,
        db: Session,
        verifier: Optional[SignatureVerifier] = None,
        normalizer: Optional[EventNormalizer] = None,
        event_bus: Optional[BookingEventBus] = None,
        settings: Settings = default_settings,
        locks: KeyedLock = booking_locks,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.db = db
        self.settings = settings
        self.verifier = verifier or SignatureVerifier.from_settings(settings)
        self.normalizer = normalizer or EventNormalizer()
        self.event_bus = event_bus
        self.locks = locks
        self.sleep = sleep
        self.clock = clock
        self.bookings = BookingStore(db)
        self.ledger = IdempotencyStore(db)
        self.policy = TransitionPolicy(
            max_payment_attempts=settings.payment_max_attempts,
            payment_without_scheduling=PaymentOrderingPolicy(settings.payment_without_scheduling),
        )
        self._notifications: List[BookingStateChanged] = []
        self._last_error: Optional[Exception] = None

    # ==================
    # Webhooks
    # ==================

    def handle_webhook(
        self,
        provider: str,
        raw_body: bytes,
        headers: Mapping[str, str],
        client_ip: Optional[str] = None
    ) -> ProcessingResult:
        """
        Full pipeline for one delivery.

        Raises:
            AuthenticityError: signature problems (caller answers 401)
            ValidationError: malformed payload (caller answers 400)
            TransientPersistenceError: dead-letter could not be stored either
        """
        try:
            verified = self.verifier.verify_request(provider, raw_body, headers)
        except AuthenticityError as e:
            logger.security_rejection(provider, e.code, client_ip)
            raise

        event = self.normalizer.normalize(verified)
        return self.process_event(
            event,
            raw_body=verified.raw_body,
            headers=self.verifier.signature_headers(provider, headers)
        )

    def process_event(
        self,
        event: NormalizedEvent,
        raw_body: Optional[bytes] = None,
        headers: Optional[dict] = None
    ) -> ProcessingResult:
        """Apply a normalized event with transient-failure retries."""
        result = self._with_retries(lambda: self._process_once(event), f"{event.provider}:{event.event_id}")
        if result is not None:
            if result.outcome == EventOutcome.APPLIED.value:
                self._resolve_dead_letters(event)
            return result

        return self._dead_letter(event, raw_body, headers)

    def _with_retries(self, operation: Callable, label: str):
        """
        Run operation; on transient failure roll back, sleep, retry.
        Returns None when every attempt failed.
        """
        max_attempts = self.settings.transition_max_attempts
        self._last_error = None

        for attempt in range(1, max_attempts + 1):
            try:
                result = operation()
            except (TransientPersistenceError, OperationalError, IntegrityError) as e:
                self.db.rollback()
                self._notifications.clear()
                self._last_error = e
                if attempt < max_attempts:
                    delay = self.settings.transition_retry_base_delay * (2 ** (attempt - 1))
                    logger.warning(
                        f"Transient failure on {label} (attempt {attempt}/{max_attempts}), "
                        f"retrying in {delay:.2f}s: {e}"
                    )
                    self.sleep(delay)
                continue
            except Exception:
                self.db.rollback()
                self._notifications.clear()
                raise

            self._publish()
            return result

        logger.error(f"Giving up on {label} after {max_attempts} attempts: {self._last_error}")
        return None

    def _process_once(self, event: NormalizedEvent) -> ProcessingResult:
        lock_key, booking_id = self._lock_key(event)
        timeout = self.settings.lock_timeout_seconds

        with self.locks.hold(lock_key, timeout=timeout):
            check = self.ledger.record_if_new(
                event.provider,
                event.event_id,
                event.event_type.value if event.event_type else event.raw_type
            )
            if not check.is_new:
                self.db.rollback()
                return self._result(
                    event,
                    EventOutcome.DUPLICATE,
                    booking_id=check.prior_booking_id,
                    prior_outcome=check.prior_outcome,
                    message="Event already processed"
                )

            record = check.record

            if not event.is_actionable:
                self.ledger.mark(record, EventOutcome.IGNORED, error_code="unhandled_event_type")
                self.db.commit()
                logger.info(f"Ignoring {event.provider} event {event.event_id}: {event.ignore_reason}")
                return self._result(event, EventOutcome.IGNORED, code="unhandled_event_type", message=event.ignore_reason or "")

            booking = self._resolve(event)

            if booking is None:
                if booking_id is None:
                    return self._handle_unresolved(event, record)
                # Booking disappeared or changed keys between lookup and lock
                raise TransientPersistenceError("Booking resolution changed, retrying")

            if booking_id is None:
                # Created by a concurrent delivery while we waited for the correlation lock
                with self.locks.hold(booking.id, timeout=timeout):
                    return self._apply_to_booking(event, record, self.bookings.lock(booking.id))

            if booking.id != booking_id:
                raise TransientPersistenceError("Booking resolution changed, retrying")

            return self._apply_to_booking(event, record, self.bookings.lock(booking.id))

    def _resolve(self, event: NormalizedEvent) -> Optional[Booking]:
        return self.bookings.find_by_correlation(
            booking_id=event.booking_id,
            scheduling_ref=event.scheduling_ref,
            payment_ref=event.payment_ref,
            previous_scheduling_ref=event.previous_scheduling_ref,
        )

    def _lock_key(self, event: NormalizedEvent) -> tuple:
        """(lock key, resolved booking id or None) for the event's exclusive section."""
        if event.is_actionable:
            booking = self._resolve(event)
            if booking is not None:
                key = booking.id
                self.db.rollback()
                return key, key
        for prefix, ref in (
            ("scheduling", event.scheduling_ref),
            ("scheduling", event.previous_scheduling_ref),
            ("payment", event.payment_ref),
            ("booking", event.booking_id),
        ):
            if ref:
                return f"{prefix}:{ref}", None
        return f"event:{event.provider}:{event.event_id}", None

    def _handle_unresolved(self, event: NormalizedEvent, record: ProcessedEvent) -> ProcessingResult:
        event_type = event.event_type

        can_originate = event_type in ORIGINATING_EVENTS or (
            event_type == EventType.PAYMENT_INITIATED
            and self.policy.payment_without_scheduling == PaymentOrderingPolicy.DIRECT
            and event.has_scheduling_proof
        )

        if can_originate:
            if event.booking_id:
                logger.warning(f"Event {event.event_id} references unknown booking {event.booking_id}, creating a new one")
            source = BookingSource.SCHEDULING if event_type in ORIGINATING_EVENTS else BookingSource.PAYMENT
            booking = self.bookings.create(
                source,
                amount=event.amount,
                currency=event.currency,
                builder_id=event.builder_id,
                client_id=event.client_id,
                start_time=event.start_time,
                end_time=event.end_time,
            )
            return self._apply_to_booking(event, record, booking)

        if event_type in PARKABLE_EVENTS and event.has_correlation:
            self._park(event, booking_id=None)
            self.ledger.mark(record, EventOutcome.DEFERRED)
            self.db.commit()
            logger.info(f"Deferred {event.provider} event {event.event_id} ({event_type.value}): no booking yet")
            return self._result(event, EventOutcome.DEFERRED, message="Waiting for the booking to be scheduled")

        self.ledger.mark(record, EventOutcome.REJECTED, error_code="unknown_correlation")
        self.db.commit()
        logger.event_rejected(event.provider, event.event_id, "unknown_correlation", event_type=event_type.value)
        return self._result(event, EventOutcome.REJECTED, code="unknown_correlation", message="No booking matches this event")

    def _apply_to_booking(self, event: NormalizedEvent, record: ProcessedEvent, booking: Booking) -> ProcessingResult:
        if booking is None:
            raise TransientPersistenceError("Booking vanished under lock")

        if self._is_refund_echo(event, booking):
            self.ledger.mark(record, EventOutcome.IGNORED, booking.id, "refund_echo")
            self.db.commit()
            logger.info(f"Refund notification for cancelled booking {booking.id} acknowledged")
            return self._result(event, EventOutcome.IGNORED, booking=booking, code="refund_echo")

        try:
            result = transition(self.bookings.snapshot(booking), event.to_transition_input(), self.policy)
        except StaleEventError as e:
            self.ledger.mark(record, EventOutcome.IGNORED, booking.id, e.code)
            self.db.commit()
            logger.debug(f"Stale event {event.provider}:{event.event_id} for booking {booking.id}: {e.message}")
            return self._result(event, EventOutcome.IGNORED, booking=booking, code=e.code, message=e.message)
        except InvalidTransitionError as e:
            if e.deferrable:
                self._park(event, booking_id=booking.id)
                self.ledger.mark(record, EventOutcome.DEFERRED, booking.id)
                self.db.commit()
                logger.info(f"Deferred {event.event_type.value} for booking {booking.id} in {booking.state}")
                return self._result(event, EventOutcome.DEFERRED, booking=booking, message=e.message)
            self.ledger.mark(record, EventOutcome.REJECTED, booking.id, e.code)
            self.db.commit()
            logger.event_rejected(
                event.provider, event.event_id, e.code,
                booking_id=booking.id, state=e.current_state, event_type=e.event_type
            )
            return self._result(event, EventOutcome.REJECTED, booking=booking, code=e.code, message=e.message)

        self._record_transition(booking, result, provider=event.provider, event_id=event.event_id, event=event)
        self.ledger.mark(record, EventOutcome.APPLIED, booking.id)
        self._drain_pending(booking)
        self.db.commit()

        return self._result(event, EventOutcome.APPLIED, booking=booking)

    def _is_refund_echo(self, event: NormalizedEvent, booking: Booking) -> bool:
        """A refund notification for a refund this service queued on cancel."""
        if event.event_type != EventType.PAYMENT_REFUNDED or booking.state != BookingState.CANCELLED.value:
            return False
        if booking.refund_reference:
            return True
        refund_key = idempotency_key_for(booking, SideEffectAction.ISSUE_REFUND)
        return self.db.query(SideEffectOutbox.id).filter(
            SideEffectOutbox.idempotency_key == refund_key
        ).first() is not None

    def _record_transition(
        self,
        booking: Booking,
        result: TransitionResult,
        provider: Optional[str] = None,
        event_id: Optional[str] = None,
        actor: Optional[str] = None,
        event: Optional[NormalizedEvent] = None,
        reason: Optional[str] = None
    ) -> None:
        """Persist one accepted transition: row, audit, outbox, notification."""
        self.bookings.apply(booking, result, provider=provider, event_id=event_id, actor=actor)

        if event is not None:
            booking.builder_id = booking.builder_id or event.builder_id
            booking.client_id = booking.client_id or event.client_id
            if result.to_state == BookingState.CANCELLED:
                booking.cancel_reason = event.cancel_reason
                booking.cancelled_by = event.canceled_by or provider
        if actor is not None and result.to_state == BookingState.CANCELLED:
            booking.cancelled_by = actor
            booking.cancel_reason = reason

        for action in result.side_effects:
            enqueue_side_effect(self.db, booking, action, self.settings, reason=reason, now=self.clock())

        self._notifications.append(BookingStateChanged(
            booking_id=booking.id,
            from_state=result.from_state.value,
            to_state=result.to_state.value,
            version=result.version,
            event_type=result.event_type.value,
            provider=provider,
            event_id=event_id,
            occurred_at=self.clock(),
        ))
        logger.transition_applied(booking.id, result.from_state.value, result.to_state.value, result.version, event_id)

    # ==================
    # Pending buffer
    # ==================

    def _park(self, event: NormalizedEvent, booking_id: Optional[str]) -> PendingEvent:
        pending = PendingEvent(
            provider=event.provider,
            event_id=event.event_id,
            event_type=event.event_type.value,
            sequence=event.sequence,
            booking_id=booking_id or event.booking_id,
            scheduling_ref=event.scheduling_ref or event.previous_scheduling_ref,
            payment_ref=event.payment_ref,
            event_data=event.to_dict(),
            status=PendingStatus.PENDING.value,
            expires_at=self.clock() + timedelta(seconds=self.settings.pending_event_max_wait_seconds),
        )
        self.db.add(pending)
        return pending

    def _pending_for(self, booking: Booking) -> List[PendingEvent]:
        conditions = [PendingEvent.booking_id == booking.id]
        if booking.scheduling_ref:
            conditions.append(PendingEvent.scheduling_ref == booking.scheduling_ref)
        if booking.payment_ref:
            conditions.append(PendingEvent.payment_ref == booking.payment_ref)

        return self.db.query(PendingEvent).filter(
            PendingEvent.status == PendingStatus.PENDING.value,
            PendingEvent.expires_at > self.clock(),
            or_(*conditions)
        ).order_by(
            PendingEvent.sequence.is_(None),
            PendingEvent.sequence,
            PendingEvent.created_at
        ).all()

    def _drain_pending(self, booking: Booking) -> int:
        """
        Apply buffered events that the booking's new state unlocks, lowest
        sequence first. Runs inside the caller's transaction and lock.
        """
        applied = 0
        progressed = True

        while progressed:
            progressed = False
            for pending in self._pending_for(booking):
                event = NormalizedEvent.from_dict(pending.event_data)
                try:
                    result = transition(self.bookings.snapshot(booking), event.to_transition_input(), self.policy)
                except StaleEventError as e:
                    self._resolve_pending(pending, booking, PendingStatus.REJECTED, EventOutcome.IGNORED, e.code)
                    continue
                except InvalidTransitionError as e:
                    if e.deferrable:
                        continue
                    self._resolve_pending(pending, booking, PendingStatus.REJECTED, EventOutcome.REJECTED, e.code)
                    logger.event_rejected(pending.provider, pending.event_id, e.code, booking_id=booking.id)
                    continue

                self._record_transition(booking, result, provider=pending.provider, event_id=pending.event_id, event=event)
                self._resolve_pending(pending, booking, PendingStatus.APPLIED, EventOutcome.APPLIED)
                applied += 1
                progressed = True
                break  # state changed, re-read the buffer in order

        if applied:
            logger.info(f"Applied {applied} buffered event(s) to booking {booking.id}")
        return applied

    def _resolve_pending(
        self,
        pending: PendingEvent,
        booking: Booking,
        status: PendingStatus,
        outcome: EventOutcome,
        error_code: Optional[str] = None
    ) -> None:
        pending.status = status.value
        pending.booking_id = booking.id
        pending.reason = error_code
        pending.resolved_at = self.clock()
        self.ledger.mark_by_key(pending.provider, pending.event_id, outcome, booking.id, error_code)

    # ==================
    # Direct commands
    # ==================

    def create_booking(
        self,
        amount: Optional[int] = None,
        currency: Optional[str] = None,
        builder_id: Optional[str] = None,
        client_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None
    ) -> Booking:
        """Booking intent in CREATED (version 0)."""
        booking = self.bookings.create(
            BookingSource.DIRECT,
            amount=amount,
            currency=currency,
            builder_id=builder_id,
            client_id=client_id,
            start_time=start_time,
            end_time=end_time,
        )
        self.db.commit()
        self.db.refresh(booking)
        return booking

    def cancel_booking(self, booking_id: str, actor: str, reason: Optional[str] = None) -> Booking:
        """
        User-initiated cancel.

        Raises:
            BookingNotFoundError
            InvalidTransitionError: booking already paid or terminal (caller answers 409)
            TransientPersistenceError: storage kept failing
        """
        return self._run_command(booking_id, EventType.USER_CANCEL, actor=actor, reason=reason)

    def finalize_booking(self, booking_id: str) -> Booking:
        """Internal confirmation once scheduling and payment are both settled."""
        return self._run_command(booking_id, EventType.CONFIRMATION_FINALIZED, actor="system")

    def _run_command(
        self,
        booking_id: str,
        event_type: EventType,
        actor: Optional[str] = None,
        reason: Optional[str] = None
    ) -> Booking:
        def operation():
            with self.locks.hold(booking_id, timeout=self.settings.lock_timeout_seconds):
                booking = self.bookings.lock(booking_id)
                if booking is None:
                    raise BookingNotFoundError(f"Booking {booking_id} not found")

                result = transition(self.bookings.snapshot(booking), TransitionInput(event_type=event_type), self.policy)
                self._record_transition(booking, result, actor=actor, reason=reason)
                self._drain_pending(booking)
                self.db.commit()
                self.db.refresh(booking)
                return booking

        booking = self._with_retries(operation, f"{event_type.value}:{booking_id}")
        if booking is None:
            raise TransientPersistenceError(f"Could not apply {event_type.value} to booking {booking_id}")
        return booking

    # ==================
    # Dead letters
    # ==================

    def _dead_letter(
        self,
        event: NormalizedEvent,
        raw_body: Optional[bytes],
        headers: Optional[dict]
    ) -> ProcessingResult:
        reason = str(self._last_error)[:1000] if self._last_error else "transient failure"
        attempts = self.settings.transition_max_attempts
        try:
            entry = self.db.query(DeadLetterEvent).filter(
                DeadLetterEvent.provider == event.provider,
                DeadLetterEvent.event_id == event.event_id,
                DeadLetterEvent.status == DeadLetterStatus.PENDING.value
            ).first()
            if entry:
                entry.attempts = (entry.attempts or 0) + attempts
                entry.reason = reason
            else:
                entry = DeadLetterEvent(
                    provider=event.provider,
                    event_id=event.event_id,
                    event_type=event.raw_type,
                    raw_body=(raw_body or b"").decode("utf-8", errors="replace"),
                    headers=headers or {},
                    reason=reason,
                    attempts=attempts,
                    status=DeadLetterStatus.PENDING.value,
                )
                self.db.add(entry)
            self.db.commit()
        except (OperationalError, IntegrityError) as e:
            self.db.rollback()
            logger.error(f"Could not store dead letter for {event.provider}:{event.event_id}: {e}")
            raise TransientPersistenceError("Storage unavailable")

        logger.error(f"Dead-lettered {event.provider} event {event.event_id} after {attempts} attempts: {reason}")
        return self._result(event, DEAD_LETTERED, code=TransientPersistenceError.code, message=reason)

    def _resolve_dead_letters(self, event: NormalizedEvent) -> None:
        """A delivery applied after earlier attempts were dead-lettered."""
        try:
            updated = self.db.query(DeadLetterEvent).filter(
                DeadLetterEvent.provider == event.provider,
                DeadLetterEvent.event_id == event.event_id,
                DeadLetterEvent.status == DeadLetterStatus.PENDING.value
            ).update({
                DeadLetterEvent.status: DeadLetterStatus.RESOLVED.value,
                DeadLetterEvent.resolved_at: self.clock(),
            }, synchronize_session=False)
            self.db.commit()
        except OperationalError as e:
            self.db.rollback()
            logger.warning(f"Could not resolve dead letters for {event.provider}:{event.event_id}: {e}")
            return
        if updated:
            logger.info(f"Resolved {updated} dead letter(s) for {event.provider}:{event.event_id}")

    def replay_dead_letter(self, dead_letter_id: str) -> ProcessingResult:
        """
        Operator replay. The stored body was verified on arrival, so it is
        normalized and processed without a fresh signature check.
        """
        entry = self.db.query(DeadLetterEvent).filter(DeadLetterEvent.id == dead_letter_id).first()
        if entry is None:
            raise NotFoundError(f"Dead letter {dead_letter_id} not found")

        raw_body = entry.raw_body.encode()
        provider = entry.provider
        headers = entry.headers
        self.db.rollback()

        event = self.normalizer.normalize_body(provider, raw_body)
        result = self.process_event(event, raw_body=raw_body, headers=headers)

        entry = self.db.query(DeadLetterEvent).filter(DeadLetterEvent.id == dead_letter_id).first()
        if result.outcome != DEAD_LETTERED and entry is not None:
            if result.outcome in (EventOutcome.APPLIED.value, EventOutcome.DUPLICATE.value):
                entry.status = DeadLetterStatus.RESOLVED.value
                entry.resolved_at = self.clock()
            else:
                entry.status = DeadLetterStatus.REPLAYED.value
            entry.replay_outcome = result.outcome
            self.db.commit()
        return result

    # ==================
    # Helpers
    # ==================

    def _publish(self) -> None:
        notifications, self._notifications = self._notifications, []
        if self.event_bus is None:
            return
        for notification in notifications:
            self.event_bus.publish(notification)

    def _result(
        self,
        event: NormalizedEvent,
        outcome,
        booking: Optional[Booking] = None,
        booking_id: Optional[str] = None,
        prior_outcome: Optional[str] = None,
        code: Optional[str] = None,
        message: str = ""
    ) -> ProcessingResult:
        outcome_value = outcome.value if isinstance(outcome, EventOutcome) else outcome
        return ProcessingResult(
            outcome=outcome_value,
            provider=event.provider,
            event_id=event.event_id,
            event_type=event.event_type.value if event.event_type else event.raw_type,
            booking_id=booking.id if booking is not None else booking_id,
            state=booking.state if booking is not None else None,
            version=booking.version if booking is not None else None,
            prior_outcome=prior_outcome,
            code=code,
            message=message,
        )
