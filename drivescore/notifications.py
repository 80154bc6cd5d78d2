"""Trip lifecycle notifications: an observer registry with unsubscribe handles."""
import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class TripNotification(str, Enum):
    STARTED = "trip_started"
    UPDATED = "trip_updated"
    ENDED = "trip_ended"


class Subscription:
    """Handle returned by ``TripNotifier.subscribe``."""

    def __init__(self, notifier: "TripNotifier", kind: TripNotification, callback: Callable):
        self._notifier = notifier
        self.kind = kind
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._notifier._remove(self)
            self.active = False


class TripNotifier:
    """Fans out trip notifications; a failing subscriber never affects the others."""

    def __init__(self):
        self._subscriptions: Dict[TripNotification, List[Subscription]] = {
            kind: [] for kind in TripNotification
        }
        self._lock = threading.Lock()

    def subscribe(self, kind: TripNotification, callback: Callable[[Any], None]) -> Subscription:
        subscription = Subscription(self, kind, callback)
        with self._lock:
            self._subscriptions[kind].append(subscription)
        return subscription

    def subscribe_all(self, callback: Callable[[TripNotification, Any], None]) -> List[Subscription]:
        """Subscribe one ``callback(kind, payload)`` to every notification kind."""
        return [
            self.subscribe(kind, lambda payload, kind=kind: callback(kind, payload))
            for kind in TripNotification
        ]

    def on_trip_start(self, callback: Callable[[Any], None]) -> Subscription:
        return self.subscribe(TripNotification.STARTED, callback)

    def on_trip_update(self, callback: Callable[[Any], None]) -> Subscription:
        return self.subscribe(TripNotification.UPDATED, callback)

    def on_trip_end(self, callback: Callable[[Any], None]) -> Subscription:
        return self.subscribe(TripNotification.ENDED, callback)

    def subscriber_count(self, kind: TripNotification) -> int:
        with self._lock:
            return len(self._subscriptions[kind])

    def publish(self, kind: TripNotification, payload: Any) -> int:
        """Deliver ``payload`` to every subscriber of ``kind``; return how many succeeded."""
        with self._lock:
            subscribers = list(self._subscriptions[kind])

        delivered = 0
        for subscription in subscribers:
            try:
                subscription.callback(payload)
                delivered += 1
            except Exception:
                logger.exception(f"Error in {kind.value} subscriber")
        return delivered

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscriptions[subscription.kind]
            if subscription in subscribers:
                subscribers.remove(subscription)
