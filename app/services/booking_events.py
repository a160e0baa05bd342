"""
Booking-state-changed notifications for downstream consumers
(dashboards, notifications). Published only after the transition is
committed; a failing subscriber never affects reconciliation.
"""

import logging
import threading
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BookingStateChanged:
    booking_id: str
    from_state: str
    to_state: str
    version: int
    event_type: str
    provider: Optional[str] = None
    event_id: Optional[str] = None
    occurred_at: datetime = None

    def to_dict(self) -> dict:
        data = asdict(self)
        if self.occurred_at:
            data["occurred_at"] = self.occurred_at.isoformat()
        return data


Subscriber = Callable[[BookingStateChanged], None]


class BookingEventBus:
    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: Subscriber) -> Subscriber:
        with self._lock:
            self._subscribers.append(handler)
        return handler

    def unsubscribe(self, handler: Subscriber) -> None:
        with self._lock:
            if handler in self._subscribers:
                self._subscribers.remove(handler)

    def publish(self, event: BookingStateChanged) -> int:
        """Deliver to every subscriber. Returns the number that succeeded."""
        with self._lock:
            subscribers = list(self._subscribers)

        delivered = 0
        for handler in subscribers:
            try:
                handler(event)
                delivered += 1
            except Exception:
                logger.exception(
                    f"Booking event subscriber {getattr(handler, '__name__', handler)} failed "
                    f"for booking {event.booking_id}"
                )
        return delivered
