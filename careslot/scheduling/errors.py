"""Typed errors raised by the scheduling engine.

Every error carries a stable ``code`` so transports (HTTP, CLI) can map it
without string matching. ``SlotConflict`` is the only error expected in
normal operation under concurrency; callers should regenerate candidates
and retry rather than treat it as fatal.
"""

from typing import Optional


class SchedulingError(Exception):
    """Base class for all scheduling errors."""

    code = "scheduling_error"
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class InvalidRange(SchedulingError):
    """Malformed or unusable time range; rejected before any lock is taken."""

    code = "invalid_range"


class SlotConflict(SchedulingError):
    """The slot overlaps a scheduled appointment."""

    code = "slot_conflict"
    retryable = True

    def __init__(
        self,
        message: str,
        provider_id: Optional[str] = None,
        conflicting_ids: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message)
        self.provider_id = provider_id
        self.conflicting_ids = conflicting_ids or []


class NotFound(SchedulingError):
    """Referenced provider, appointment or waitlist entry does not exist."""

    code = "not_found"

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind} {identifier} not found")
        self.kind = kind
        self.identifier = identifier


class AppointmentNotScheduled(SchedulingError):
    """Appointment is not in the state required by the transition."""

    code = "appointment_not_scheduled"

    def __init__(self, appointment_id: str, status: str) -> None:
        super().__init__(f"Appointment {appointment_id} is {status}, not scheduled")
        self.appointment_id = appointment_id
        self.status = status


class AlreadyCancelled(AppointmentNotScheduled):
    code = "already_cancelled"

    def __init__(self, appointment_id: str) -> None:
        super().__init__(appointment_id, "cancelled")
        self.message = f"Appointment {appointment_id} is already cancelled"
        self.args = (self.message,)


class EntryNotWaiting(SchedulingError):
    """Waitlist entry is in a state that does not allow the transition."""

    code = "entry_not_waiting"

    def __init__(self, entry_id: str, status: str) -> None:
        super().__init__(f"Waitlist entry {entry_id} is {status}")
        self.entry_id = entry_id
        self.status = status


class StorageUnavailable(SchedulingError):
    """The repository backend failed. Never retried by the engine."""

    code = "storage_unavailable"
