import logging
from typing import List, Protocol

from schemas import NotificationEvent

logger = logging.getLogger("library.notifications")


class NotificationSink(Protocol):
    def publish(self, event: NotificationEvent) -> None:
        ...


class LoggingNotificationSink:
    """Default sink: delivery happens elsewhere, we only record the event."""

    def publish(self, event: NotificationEvent) -> None:
        logger.info(
            "Notification %s for member %s (book %s)",
            event.type.value, event.member_id, event.book_id,
        )


class InMemoryNotificationSink:
    def __init__(self) -> None:
        self.events: List[NotificationEvent] = []

    def publish(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type) -> List[NotificationEvent]:
        return [e for e in self.events if e.type == event_type]


def deliver(sink: NotificationSink, event: NotificationEvent) -> bool:
    """Fire-and-forget publish. State is already committed, so a failing sink is logged, not raised."""
    try:
        sink.publish(event)
    except Exception:
        logger.exception("Failed to publish %s notification for member %s", event.type.value, event.member_id)
        return False
    return True
