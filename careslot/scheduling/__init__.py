"""Availability, booking and waitlist engine for careslot."""

from careslot.scheduling.assigner import ProviderLocks, SlotAssigner
from careslot.scheduling.errors import (
    AlreadyCancelled,
    AppointmentNotScheduled,
    EntryNotWaiting,
    InvalidRange,
    NotFound,
    SchedulingError,
    SlotConflict,
    StorageUnavailable,
)
from careslot.scheduling.generator import SlotGenerator
from careslot.scheduling.matcher import SlotMatcher
from careslot.scheduling.models import (
    Appointment,
    AppointmentStatus,
    CancellationResult,
    CandidateSlot,
    Priority,
    Provider,
    SlotOffer,
    TimeBand,
    TimeBlock,
    WaitlistEntry,
    WaitlistPreferences,
    WaitlistStatus,
    Weekday,
    WeeklyAvailability,
    WorkingHours,
)
from careslot.scheduling.repository import (
    InMemorySchedulingRepository,
    SchedulingRepository,
)
from careslot.scheduling.service import SchedulingService

__all__ = [
    "AlreadyCancelled",
    "Appointment",
    "AppointmentNotScheduled",
    "AppointmentStatus",
    "CancellationResult",
    "CandidateSlot",
    "EntryNotWaiting",
    "InMemorySchedulingRepository",
    "InvalidRange",
    "NotFound",
    "Priority",
    "Provider",
    "ProviderLocks",
    "SchedulingError",
    "SchedulingRepository",
    "SchedulingService",
    "SlotAssigner",
    "SlotConflict",
    "SlotGenerator",
    "SlotMatcher",
    "SlotOffer",
    "StorageUnavailable",
    "TimeBand",
    "TimeBlock",
    "WaitlistEntry",
    "WaitlistPreferences",
    "WaitlistStatus",
    "Weekday",
    "WeeklyAvailability",
    "WorkingHours",
]
