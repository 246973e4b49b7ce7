"""Candidate slot generation from weekly working hours."""

from collections.abc import Iterable, Iterator
from datetime import date, datetime, timedelta
from typing import Optional

from careslot.scheduling.errors import InvalidRange
from careslot.scheduling.models import (
    Appointment,
    CandidateSlot,
    Provider,
    Weekday,
)


def validate_generation_args(
    date_from: date,
    date_to: date,
    granularity_minutes: int,
    duration_minutes: int,
) -> None:
    """Reject malformed generation requests before touching storage."""
    if duration_minutes <= 0:
        raise InvalidRange(f"Duration must be positive, got {duration_minutes} min")
    if granularity_minutes <= 0:
        raise InvalidRange(f"Granularity must be positive, got {granularity_minutes} min")
    if date_from > date_to:
        raise InvalidRange(f"Date range starts after it ends: {date_from} > {date_to}")


class SlotGenerator:
    """Expands a provider's weekly availability into bookable candidates.

    ``generate`` is a pure function of its arguments: the booked
    appointments are a snapshot taken by the caller, so the output is a
    best-effort view that ``SlotAssigner`` re-validates before booking.
    """

    def generate(
        self,
        provider: Provider,
        date_from: date,
        date_to: date,
        granularity_minutes: int,
        duration_minutes: int,
        booked: Iterable[Appointment] = (),
        now: Optional[datetime] = None,
    ) -> Iterator[CandidateSlot]:
        """Yield free slots across ``[date_from, date_to]`` in start order.

        *now* is provider-local; dates before it yield nothing and slots on
        its date that have already started are skipped.
        """
        validate_generation_args(date_from, date_to, granularity_minutes, duration_minutes)
        return self._iter_slots(
            provider, date_from, date_to, granularity_minutes, duration_minutes, booked, now
        )

    def _iter_slots(
        self,
        provider: Provider,
        date_from: date,
        date_to: date,
        granularity_minutes: int,
        duration_minutes: int,
        booked: Iterable[Appointment],
        now: Optional[datetime],
    ) -> Iterator[CandidateSlot]:
        step = timedelta(minutes=granularity_minutes)
        length = timedelta(minutes=duration_minutes)
        busy = sorted(
            (a.start, a.end)
            for a in booked
            if a.occupies_ledger and a.provider_id == provider.id
        )

        current = date_from
        if now is not None and current < now.date():
            current = now.date()

        while current <= date_to:
            for slot_start in self._day_starts(provider, current, step, length):
                slot_end = slot_start + length
                if now is not None and slot_start < now:
                    continue
                if _collides(busy, slot_start, slot_end):
                    continue
                if provider.availability.is_blocked(slot_start, slot_end):
                    continue
                yield CandidateSlot(provider_id=provider.id, start=slot_start, end=slot_end)
            current += timedelta(days=1)

    def generate_day(
        self,
        provider: Provider,
        day: date,
        granularity_minutes: int,
        duration_minutes: int,
        booked: Iterable[Appointment] = (),
        now: Optional[datetime] = None,
    ) -> list[CandidateSlot]:
        """Generate all free slots for a single day."""
        return list(
            self.generate(
                provider, day, day, granularity_minutes, duration_minutes, booked, now
            )
        )

    @staticmethod
    def _day_starts(
        provider: Provider,
        day: date,
        step: timedelta,
        length: timedelta,
    ) -> Iterator[datetime]:
        weekday = Weekday.from_date(day)
        for open_start, open_end in provider.availability.open_intervals(weekday):
            current = datetime.combine(day, open_start)
            window_end = datetime.combine(day, open_end)
            # Remainders shorter than the appointment are dropped.
            while current + length <= window_end:
                yield current
                current += step


def _collides(
    busy: list[tuple[datetime, datetime]],
    start: datetime,
    end: datetime,
) -> bool:
    for busy_start, busy_end in busy:
        if busy_start >= end:
            break
        if start < busy_end:
            return True
    return False
