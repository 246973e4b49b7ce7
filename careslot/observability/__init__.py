"""Observability module for the scheduling audit trail."""

from careslot.observability.events import (
    AppointmentEvent,
    EventType,
    SchedulingEvent,
    WaitlistEvent,
)
from careslot.observability.logger import (
    SchedulingEventLogger,
    bind_request_id,
    get_event_logger,
    reset_request_id,
)

__all__ = [
    "AppointmentEvent",
    "EventType",
    "SchedulingEvent",
    "SchedulingEventLogger",
    "WaitlistEvent",
    "bind_request_id",
    "get_event_logger",
    "reset_request_id",
]
