"""
Outbound timecard events for the external notification collaborator.

Delivery and retry are not handled here; sinks receive events after the
mutation that produced them has committed.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol
from uuid import UUID
import enum
import logging

logger = logging.getLogger(__name__)


class NotificationEventType(str, enum.Enum):
    SHIFT_FORCE_STOPPED = "shift_force_stopped"
    TIMECARD_REJECTED = "timecard_rejected"
    TIMECARD_APPROVED = "timecard_approved"


@dataclass(frozen=True)
class NotificationEvent:
    record_id: UUID
    event_type: NotificationEventType
    actor: UUID
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "record_id": str(self.record_id),
            "event_type": self.event_type.value,
            "actor": str(self.actor),
            "timestamp": self.timestamp.isoformat(),
        }


class NotificationSink(Protocol):
    def publish(self, event: NotificationEvent) -> None:
        ...


class LoggingNotificationSink:
    """Default sink: writes each event to the application log."""

    def publish(self, event: NotificationEvent) -> None:
        logger.info(
            f"Timecard event {event.event_type.value} for {event.record_id}",
            extra={"notification": event.to_dict()},
        )


class InMemoryNotificationSink:
    """Collects events in memory (tests and local runs)."""

    def __init__(self):
        self.events: List[NotificationEvent] = []

    def publish(self, event: NotificationEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: NotificationEventType) -> List[NotificationEvent]:
        return [e for e in self.events if e.event_type == event_type]


default_sink: NotificationSink = LoggingNotificationSink()


def publish_safely(sink: Optional[NotificationSink], event: NotificationEvent) -> None:
    """Hand an event to a sink. A failing sink is logged and otherwise ignored."""
    sink = sink or default_sink
    try:
        sink.publish(event)
    except Exception:
        logger.error(
            f"Failed to publish {event.event_type.value} for timecard {event.record_id}",
            exc_info=True,
        )
