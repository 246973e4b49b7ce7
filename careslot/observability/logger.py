"""JSON-Lines event log for scheduling activity."""

import json
import logging
import uuid
from contextvars import ContextVar, Token
from pathlib import Path
from typing import Any, Callable, Optional

from careslot.observability.events import (
    AppointmentEvent,
    EventType,
    SchedulingEvent,
    WaitlistEvent,
)
from careslot.scheduling.models import Appointment, WaitlistEntry

logger = logging.getLogger(__name__)

_request_id: ContextVar[Optional[str]] = ContextVar("careslot_request_id", default=None)


def bind_request_id(request_id: Optional[str]) -> Token:
    """Tag events logged in the current context with *request_id*."""
    return _request_id.set(request_id)


def reset_request_id(token: Token) -> None:
    _request_id.reset(token)


class SchedulingEventLogger:
    """Central logger for booking and waitlist events.

    Writes structured events to JSON Lines files for later audit. A failed
    write is logged and dropped; it never fails the scheduling operation
    that produced the event.
    """

    _instance: Optional["SchedulingEventLogger"] = None

    def __init__(
        self,
        log_dir: Optional[Path] = None,
        enabled: bool = True,
    ):
        """Initialize event logger.

        Args:
            log_dir: Directory for log files (default: data/events)
            enabled: Whether logging is enabled
        """
        self.enabled = enabled

        if log_dir is None:
            log_dir = Path("data/events")
        self.log_dir = log_dir
        if self.enabled:
            self.log_dir.mkdir(parents=True, exist_ok=True)

        self._log_files: dict[str, Path] = {
            "appointments": self.log_dir / "appointments.jsonl",
            "waitlist": self.log_dir / "waitlist.jsonl",
        }

        # Event callbacks for real-time monitoring
        self._callbacks: list[Callable[[SchedulingEvent], None]] = []

    @classmethod
    def get_instance(cls) -> "SchedulingEventLogger":
        """Get or create singleton instance from settings."""
        if cls._instance is None:
            from careslot.config import get_settings

            settings = get_settings()
            cls._instance = cls(
                log_dir=settings.event_log_dir,
                enabled=settings.event_log_enabled,
            )
        return cls._instance

    @staticmethod
    def generate_request_id() -> str:
        """Generate a short request ID."""
        return str(uuid.uuid4())[:8]

    def add_callback(self, callback: Callable[[SchedulingEvent], None]) -> None:
        """Add callback for real-time event monitoring."""
        self._callbacks.append(callback)

    def _write_event(self, event: SchedulingEvent, log_type: str) -> None:
        """Write event to appropriate log file."""
        if not self.enabled:
            return

        try:
            log_file = self._log_files.get(log_type)
            if log_file:
                with open(log_file, "a") as f:
                    f.write(event.model_dump_json() + "\n")

            for callback in self._callbacks:
                try:
                    callback(event)
                except Exception as e:
                    logger.warning(f"Event callback failed: {e}")

        except OSError as e:
            logger.warning(f"Failed to write scheduling event: {e}")

    def log_appointment(
        self,
        event_type: EventType,
        appointment: Appointment,
        reason: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> None:
        """Log a ledger change."""
        event = AppointmentEvent(
            event_type=event_type,
            provider_id=appointment.provider_id,
            appointment_id=appointment.id,
            patient_id=appointment.patient_id,
            start=appointment.start,
            end=appointment.end,
            status=appointment.status.value,
            waitlist_entry_id=appointment.waitlist_entry_id,
            reason=reason,
            rescheduled_from=appointment.rescheduled_from,
            request_id=request_id or _request_id.get(),
        )
        self._write_event(event, "appointments")

    def log_waitlist(
        self,
        event_type: EventType,
        entry: WaitlistEntry,
        request_id: Optional[str] = None,
        **metadata: Any,
    ) -> None:
        """Log a waitlist state change."""
        event = WaitlistEvent(
            event_type=event_type,
            provider_id=entry.provider_id,
            entry_id=entry.id,
            patient_id=entry.patient_id,
            priority=entry.priority.value,
            status=entry.status.value,
            offered_start=entry.offered_start,
            offered_end=entry.offered_end,
            request_id=request_id or _request_id.get(),
            metadata=metadata,
        )
        self._write_event(event, "waitlist")

    def get_recent_events(
        self,
        log_type: str,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Read recent events from a log file."""
        log_file = self._log_files.get(log_type)
        if not log_file or not log_file.exists():
            return []

        events = []
        with open(log_file) as f:
            for line in f:
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError:
                    continue

        return events[-limit:]


def get_event_logger() -> SchedulingEventLogger:
    """Get the global scheduling event logger instance."""
    return SchedulingEventLogger.get_instance()
