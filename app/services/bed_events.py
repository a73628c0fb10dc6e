"""
Bed change notifications.

Every Bed Store mutation is published here and fanned out to all active
subscribers (WebSocket bed boards, in-process observers). Delivery is
at-least-once best effort: a failing callback is retried and a final
failure is logged, never dropped silently. There is no backlog; a
subscriber that comes back must re-fetch the bed board.
"""

import logging
import threading
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from app.core.config import settings
from app.utils.timezone import utcnow

logger = logging.getLogger(__name__)

BED_ADMITTED = "bed.admitted"
BED_DISCHARGED = "bed.discharged"
BED_FORM_UPDATED = "bed.form_updated"
BED_TAT_UPDATED = "bed.tat_updated"
BED_UPDATED = "bed.updated"


def create_event_id() -> str:
    """Generate a unique event ID."""
    return f"evt_{uuid.uuid4().hex[:12]}"


class BedChangeEvent(BaseModel):
    """One committed mutation of one bed."""
    event_id: str = Field(default_factory=create_event_id)
    kind: str
    bed_id: int
    bed: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)


BedCallback = Callable[[BedChangeEvent], Any]


class Subscription:
    """Handle returned by `subscribe`; pass it back to `unsubscribe`."""

    def __init__(self, callback: BedCallback, name: str = "") -> None:
        self.id = uuid.uuid4().hex
        self.name = name or getattr(callback, "__name__", "subscriber")
        self.callback = callback
        self.active = True

    def __repr__(self) -> str:
        return f"<Subscription {self.name} {self.id[:8]} active={self.active}>"


class BedChangeNotifier:
    """
    Thread-safe publish/subscribe hub for bed changes.

    Publishing happens on the request thread after the store commit;
    callbacks must be quick and hand work off (see the WebSocket bridge).
    """

    def __init__(self, retry_attempts: Optional[int] = None):
        self._subscriptions: Dict[str, Subscription] = {}
        self._lock = threading.Lock()
        self._retry_attempts = max(
            1, retry_attempts or settings.NOTIFY_RETRY_ATTEMPTS)

    def subscribe(self, callback: BedCallback, name: str = "") -> Subscription:
        sub = Subscription(callback, name)
        with self._lock:
            self._subscriptions[sub.id] = sub
        logger.debug("subscribed %s", sub.name, extra={"event": "bed_subscribe"})
        return sub

    def unsubscribe(self, handle: Subscription) -> None:
        handle.active = False
        with self._lock:
            self._subscriptions.pop(handle.id, None)
        logger.debug("unsubscribed %s", handle.name,
                     extra={"event": "bed_unsubscribe"})

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event: BedChangeEvent) -> int:
        """
        Deliver `event` to every active subscriber.

        Returns:
            Number of subscribers that accepted the event.
        """
        with self._lock:
            targets: List[Subscription] = list(self._subscriptions.values())

        delivered = 0
        for sub in targets:
            if self._deliver(sub, event):
                delivered += 1
        return delivered

    def _deliver(self, sub: Subscription, event: BedChangeEvent) -> bool:
        last_exc: Optional[Exception] = None
        for attempt in range(1, self._retry_attempts + 1):
            if not sub.active:
                return False
            try:
                sub.callback(event)
                return True
            except Exception as exc:
                last_exc = exc
                logger.warning(
                    "delivery to %s failed (attempt %d/%d): %s",
                    sub.name, attempt, self._retry_attempts, exc,
                    extra={"event": "bed_notify_retry", "bed_id": event.bed_id},
                )
        logger.error(
            "dropping %s %s for %s after %d attempts",
            event.kind, event.event_id, sub.name, self._retry_attempts,
            exc_info=last_exc,
            extra={"event": "bed_notify_failed", "bed_id": event.bed_id},
        )
        return False


# Singleton instance
_notifier: Optional[BedChangeNotifier] = None
_notifier_lock = threading.Lock()


def get_bed_notifier() -> BedChangeNotifier:
    """Get the process-wide bed change notifier."""
    global _notifier
    with _notifier_lock:
        if _notifier is None:
            _notifier = BedChangeNotifier()
        return _notifier
