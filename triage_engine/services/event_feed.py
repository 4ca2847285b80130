"""
Alert event feed: fan-out of lifecycle events to subscribers.

Delivery is at-least-once from the subscriber's point of view; consumers
should be idempotent on (alert.id, alert.version). A failing subscriber is
logged and skipped so it can never break the publishing pipeline.
"""

import threading
from collections import deque
from collections.abc import Callable

import structlog

from triage_engine.domain.models import AlertEvent

logger = structlog.get_logger(__name__)

AlertEventHandler = Callable[[AlertEvent], None]


class AlertEventBus:
    """Synchronous publish/subscribe hub for AlertEvents with a bounded history."""

    def __init__(self, history_size: int = 1000) -> None:
        self.history: deque[AlertEvent] = deque(maxlen=history_size)
        self.logger = logger.bind(component="alert_event_bus")
        self._handlers: list[AlertEventHandler] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: AlertEventHandler) -> Callable[[], None]:
        """Register a handler. Returns a callable that unsubscribes it."""
        with self._lock:
            self._handlers.append(handler)
        self.logger.debug("subscriber_added", subscribers=len(self._handlers))

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return unsubscribe

    def publish(self, event: AlertEvent) -> None:
        with self._lock:
            self.history.append(event)
            handlers = list(self._handlers)

        self.logger.info(
            f"alert_{event.type}",
            alert_id=event.alert.id,
            patient_id=event.alert.patient_id,
            kind=event.alert.kind.value,
            severity=event.alert.severity.value,
            version=event.alert.version,
        )

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                self.logger.error(
                    "alert_event_delivery_failed",
                    error=str(e),
                    alert_id=event.alert.id,
                    event_type=event.type,
                )

    def recent(self, limit: int | None = None) -> list[AlertEvent]:
        events = list(self.history)
        return events[-limit:] if limit else events
