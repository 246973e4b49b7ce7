"""Pydantic models for the scheduling engine.

All wall-clock values (working hours, slot and appointment times) are naive
datetimes in the provider's local time. Audit timestamps (``created_at``,
``notified_at``) are timezone-aware UTC.
"""

import uuid
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def overlaps(a_start, a_end, b_start, b_end) -> bool:
    """Half-open interval overlap: ``[a_start, a_end)`` vs ``[b_start, b_end)``."""
    return a_start < b_end and b_start < a_end


class Weekday(str, Enum):
    """Days of the week, Monday first to match ``date.weekday()``."""

    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"

    @property
    def index(self) -> int:
        return list(Weekday).index(self)

    @classmethod
    def from_date(cls, day: date) -> "Weekday":
        return list(cls)[day.weekday()]


WORKDAYS = (
    Weekday.MONDAY,
    Weekday.TUESDAY,
    Weekday.WEDNESDAY,
    Weekday.THURSDAY,
    Weekday.FRIDAY,
)


class AppointmentStatus(str, Enum):
    """Appointment lifecycle statuses."""

    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class Priority(str, Enum):
    """Waitlist priority, totally ordered urgent > high > medium > low."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.LOW: 0,
    Priority.MEDIUM: 1,
    Priority.HIGH: 2,
    Priority.URGENT: 3,
}


class WaitlistStatus(str, Enum):
    """Waitlist entry states: waiting -> notified -> booked, or -> expired."""

    WAITING = "waiting"
    NOTIFIED = "notified"
    BOOKED = "booked"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (WaitlistStatus.BOOKED, WaitlistStatus.EXPIRED)


class TimeBand(str, Enum):
    """Time-of-day preference, judged on a slot's local start hour."""

    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    ANY = "any"

    def contains_hour(self, hour: int) -> bool:
        if self is TimeBand.MORNING:
            return hour < 12
        if self is TimeBand.AFTERNOON:
            return 12 <= hour < 17
        if self is TimeBand.EVENING:
            return hour >= 17
        return True


class FollowUpUnit(str, Enum):
    """Unit for a follow-up interval counted from an appointment's end."""

    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"


# ----------------------------------------------------------------------
# Availability
# ----------------------------------------------------------------------


class WorkingHours(BaseModel):
    """One open interval on a weekday."""

    weekday: Weekday
    start: time
    end: time
    is_open: bool = True

    @model_validator(mode="after")
    def _check_order(self) -> "WorkingHours":
        if self.is_open and self.start >= self.end:
            raise ValueError(
                f"{self.weekday.value}: start {self.start} must be before end {self.end}"
            )
        return self


class TimeBlock(BaseModel):
    """A recurring weekly period inside working hours that cannot be booked."""

    weekday: Weekday
    start: time
    end: time
    reason: Optional[str] = None

    @model_validator(mode="after")
    def _check_order(self) -> "TimeBlock":
        if self.start >= self.end:
            raise ValueError(f"Block start {self.start} must be before end {self.end}")
        return self


class WeeklyAvailability(BaseModel):
    """A provider's recurring open hours, with optional blocked periods.

    A weekday may carry several open intervals (split shifts) as long as
    they do not overlap. Weekdays with no open interval are closed.
    """

    hours: list[WorkingHours] = Field(default_factory=list)
    blocks: list[TimeBlock] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_no_overlap(self) -> "WeeklyAvailability":
        for weekday in Weekday:
            intervals = self.open_intervals(weekday)
            for (_, prev_end), (next_start, _) in zip(intervals, intervals[1:]):
                if next_start < prev_end:
                    raise ValueError(f"Overlapping working hours on {weekday.value}")
        return self

    @classmethod
    def uniform(
        cls,
        start: time,
        end: time,
        weekdays: tuple[Weekday, ...] = WORKDAYS,
    ) -> "WeeklyAvailability":
        """Same open interval on every given weekday, closed on the rest."""
        return cls(
            hours=[WorkingHours(weekday=wd, start=start, end=end) for wd in weekdays]
        )

    def open_intervals(self, weekday: Weekday) -> list[tuple[time, time]]:
        return sorted(
            (h.start, h.end)
            for h in self.hours
            if h.weekday == weekday and h.is_open
        )

    def blocks_on(self, weekday: Weekday) -> list[TimeBlock]:
        return [b for b in self.blocks if b.weekday == weekday]

    def is_open_on(self, weekday: Weekday) -> bool:
        return bool(self.open_intervals(weekday))

    def covers(self, start: datetime, end: datetime) -> bool:
        """True if ``[start, end)`` lies inside one open interval of its day."""
        if start.date() != end.date():
            return False
        weekday = Weekday.from_date(start.date())
        return any(
            o_start <= start.time() and end.time() <= o_end
            for o_start, o_end in self.open_intervals(weekday)
        )

    def is_blocked(self, start: datetime, end: datetime) -> bool:
        """True if ``[start, end)`` overlaps a time block on its day."""
        weekday = Weekday.from_date(start.date())
        day = start.date()
        return any(
            overlaps(
                start,
                end,
                datetime.combine(day, b.start),
                datetime.combine(day, b.end),
            )
            for b in self.blocks_on(weekday)
        )


class Provider(BaseModel):
    """A provider and the weekly hours their calendar is generated from."""

    id: str
    name: str = ""
    timezone: str = "UTC"
    slot_granularity_minutes: Optional[int] = Field(default=None, gt=0)
    availability: WeeklyAvailability = Field(default_factory=WeeklyAvailability)

    @field_validator("timezone")
    @classmethod
    def _known_zone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {value!r}")
        return value

    def local_now(self, now: datetime) -> datetime:
        """Convert an aware instant to this provider's naive local time."""
        return now.astimezone(ZoneInfo(self.timezone)).replace(tzinfo=None)


# ----------------------------------------------------------------------
# Ledger
# ----------------------------------------------------------------------


class CandidateSlot(BaseModel):
    """A bookable window produced on demand; never persisted."""

    model_config = ConfigDict(frozen=True)

    provider_id: str
    start: datetime
    end: datetime

    @property
    def weekday(self) -> Weekday:
        return Weekday.from_date(self.start.date())

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return overlaps(self.start, self.end, start, end)


class Appointment(BaseModel):
    """An appointment on a provider's calendar."""

    id: str = Field(default_factory=_new_id)
    provider_id: str
    patient_id: str
    start: datetime
    end: datetime
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    waitlist_entry_id: Optional[str] = None
    cancel_reason: Optional[str] = None
    rescheduled_from: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _check_duration(self) -> "Appointment":
        if self.end <= self.start:
            raise ValueError("Appointment end must be after start")
        return self

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)

    @property
    def occupies_ledger(self) -> bool:
        return self.status == AppointmentStatus.SCHEDULED

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return overlaps(self.start, self.end, start, end)


# ----------------------------------------------------------------------
# Waitlist
# ----------------------------------------------------------------------


class WaitlistPreferences(BaseModel):
    """Optional constraints a waiting patient puts on offered slots."""

    preferred_weekdays: Optional[set[Weekday]] = None
    preferred_time_band: Optional[TimeBand] = None


class WaitlistEntry(BaseModel):
    """A patient's standing request for the next suitable opening."""

    id: str = Field(default_factory=_new_id)
    provider_id: str
    patient_id: str
    priority: Priority = Priority.MEDIUM
    status: WaitlistStatus = WaitlistStatus.WAITING
    preferred_weekdays: Optional[set[Weekday]] = None
    preferred_time_band: Optional[TimeBand] = None
    duration_minutes: int = Field(default=30, gt=0)
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    notified_at: Optional[datetime] = None
    offered_start: Optional[datetime] = None
    offered_end: Optional[datetime] = None

    @model_validator(mode="after")
    def _check_notified_at(self) -> "WaitlistEntry":
        if self.status == WaitlistStatus.NOTIFIED and self.notified_at is None:
            raise ValueError("Notified waitlist entries need notified_at")
        if self.status == WaitlistStatus.WAITING and self.notified_at is not None:
            raise ValueError("Waiting waitlist entries cannot carry notified_at")
        return self

    def queue_key(self) -> tuple[int, datetime]:
        """Sort key: highest priority first, then oldest first."""
        return (-self.priority.rank, self.created_at)

    def holds_offer_for(self, start: datetime, end: datetime) -> bool:
        """True if this entry was notified about a slot overlapping ``[start, end)``."""
        return (
            self.status == WaitlistStatus.NOTIFIED
            and self.offered_start is not None
            and self.offered_end is not None
            and overlaps(self.offered_start, self.offered_end, start, end)
        )


class SlotOffer(BaseModel):
    """Outcome of offering a freed slot to the waitlist."""

    provider_id: str
    start: datetime
    end: datetime
    entry: Optional[WaitlistEntry] = None
    already_offered: bool = False

    @property
    def notified(self) -> bool:
        return self.entry is not None and not self.already_offered


class CancellationResult(BaseModel):
    """A cancelled appointment and the waitlist offer its slot produced."""

    appointment: Appointment
    offer: SlotOffer


class RescheduleResult(BaseModel):
    """The replacement booking, the appointment it replaced, and any offer
    made for the slot the move freed up."""

    appointment: Appointment
    previous: Appointment
    offer: Optional[SlotOffer] = None


class FollowUpSuggestion(BaseModel):
    appointment_id: str
    suggested_date: date
    slots: list[CandidateSlot] = Field(default_factory=list)
