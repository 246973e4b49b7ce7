"""Structured events for the scheduling audit trail."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    """Types of scheduling events."""

    APPOINTMENT_BOOKED = "appointment_booked"
    APPOINTMENT_CANCELLED = "appointment_cancelled"
    APPOINTMENT_COMPLETED = "appointment_completed"
    APPOINTMENT_NO_SHOW = "appointment_no_show"
    APPOINTMENT_RESCHEDULED = "appointment_rescheduled"
    WAITLIST_ADDED = "waitlist_added"
    WAITLIST_NOTIFIED = "waitlist_notified"
    WAITLIST_BOOKED = "waitlist_booked"
    WAITLIST_EXPIRED = "waitlist_expired"
    WAITLIST_PRIORITY_CHANGED = "waitlist_priority_changed"
    WAITLIST_REMOVED = "waitlist_removed"


class SchedulingEvent(BaseModel):
    """Base class for all scheduling events."""

    event_type: EventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    provider_id: str
    request_id: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class AppointmentEvent(SchedulingEvent):
    """Event for ledger changes."""

    appointment_id: str
    patient_id: str
    start: datetime
    end: datetime
    status: str
    waitlist_entry_id: Optional[str] = None
    reason: Optional[str] = None
    rescheduled_from: Optional[str] = None


class WaitlistEvent(SchedulingEvent):
    """Event for waitlist state changes."""

    entry_id: str
    patient_id: str
    priority: str
    status: str
    offered_start: Optional[datetime] = None
    offered_end: Optional[datetime] = None
