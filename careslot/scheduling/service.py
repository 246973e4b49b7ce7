"""Scheduling operations exposed to the booking, calendar and waitlist screens."""

import calendar
import logging
from collections.abc import Callable
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional

from careslot.config import Settings, get_settings
from careslot.observability.events import EventType
from careslot.scheduling.assigner import SlotAssigner
from careslot.scheduling.errors import (
    AlreadyCancelled,
    EntryNotWaiting,
    InvalidRange,
    NotFound,
)
from careslot.scheduling.generator import SlotGenerator
from careslot.scheduling.matcher import SlotMatcher
from careslot.scheduling.models import (
    Appointment,
    AppointmentStatus,
    CancellationResult,
    CandidateSlot,
    FollowUpSuggestion,
    FollowUpUnit,
    Priority,
    Provider,
    RescheduleResult,
    SlotOffer,
    WaitlistEntry,
    WaitlistPreferences,
    WaitlistStatus,
    WeeklyAvailability,
)
from careslot.scheduling.repository import (
    BOOKABLE_STATUSES,
    RESCHEDULED_REASON,
    SchedulingRepository,
    status_mismatch,
)

logger = logging.getLogger(__name__)

_OPEN_STATUSES = (WaitlistStatus.WAITING, WaitlistStatus.NOTIFIED)

# A missed visit can be rebooked as well as a scheduled one.
_RESCHEDULABLE = (AppointmentStatus.SCHEDULED, AppointmentStatus.NO_SHOW)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _day_bounds(date_from: date, date_to: date) -> tuple[datetime, datetime]:
    return (
        datetime.combine(date_from, time.min),
        datetime.combine(date_to + timedelta(days=1), time.min),
    )


def _check_slot(start: datetime, end: datetime) -> None:
    """Slots are naive provider-local times with start before end."""
    for value in (start, end):
        if value.tzinfo is not None:
            raise InvalidRange(
                f"Slot time {value.isoformat()} carries a UTC offset; "
                f"send provider-local time without one"
            )
    if start >= end:
        raise InvalidRange(f"Slot start {start} is not before end {end}")


def _add_months(day: date, months: int) -> date:
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    return day.replace(year=year, month=month, day=min(day.day, calendar.monthrange(year, month)[1]))


class SchedulingService:
    """Availability, booking and waitlist operations for one provider at a time.

    Validation errors are raised before any lock is taken. Typed errors from
    ``careslot.scheduling.errors`` propagate to the caller unchanged.
    """

    def __init__(
        self,
        repository: SchedulingRepository,
        settings: Optional[Settings] = None,
        event_logger: Optional[Any] = None,
        clock: Optional[Callable[[], datetime]] = None,
        generator: Optional[SlotGenerator] = None,
        matcher: Optional[SlotMatcher] = None,
        assigner: Optional[SlotAssigner] = None,
    ) -> None:
        self.repository = repository
        self.settings = settings or get_settings()
        self.event_logger = event_logger
        self.generator = generator or SlotGenerator()
        self.matcher = matcher or SlotMatcher()
        self.assigner = assigner or SlotAssigner(repository, self.matcher)
        self._clock = clock or _utcnow

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    async def register_provider(self, provider: Provider) -> Provider:
        saved = await self.repository.save_provider(provider)
        logger.info("Registered provider %s", provider.id)
        return saved

    async def get_provider(self, provider_id: str) -> Provider:
        provider = await self.repository.get_provider(provider_id)
        if provider is None:
            raise NotFound("Provider", provider_id)
        return provider

    async def set_weekly_availability(
        self, provider_id: str, availability: WeeklyAvailability
    ) -> Provider:
        provider = await self.get_provider(provider_id)
        updated = provider.model_copy(update={"availability": availability})
        return await self.repository.save_provider(updated)

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    async def get_available_slots(
        self,
        provider_id: str,
        date_from: date,
        date_to: date,
        duration_minutes: int,
        granularity_minutes: Optional[int] = None,
    ) -> list[CandidateSlot]:
        """Free slots for *provider_id* across ``[date_from, date_to]``, in start order."""
        if duration_minutes <= 0:
            raise InvalidRange(f"Duration must be positive, got {duration_minutes} min")
        if granularity_minutes is not None and granularity_minutes <= 0:
            raise InvalidRange(f"Granularity must be positive, got {granularity_minutes} min")
        if date_from > date_to:
            raise InvalidRange(f"Date range starts after it ends: {date_from} > {date_to}")

        provider = await self.get_provider(provider_id)
        local_now = provider.local_now(self._clock())
        if date_to < local_now.date():
            raise InvalidRange(f"Date range {date_from}..{date_to} is entirely in the past")

        granularity = (
            granularity_minutes
            or provider.slot_granularity_minutes
            or self.settings.default_slot_granularity_minutes
        )
        range_start, range_end = _day_bounds(date_from, date_to)
        booked = await self.repository.find_scheduled_appointments(
            provider_id, range_start, range_end
        )
        return list(
            self.generator.generate(
                provider,
                date_from,
                date_to,
                granularity,
                duration_minutes,
                booked=booked,
                now=local_now,
            )
        )

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    async def book_slot(
        self,
        provider_id: str,
        patient_id: str,
        slot_start: datetime,
        slot_end: datetime,
    ) -> Appointment:
        """Book a slot directly. Raises ``SlotConflict`` if it was taken meanwhile."""
        _check_slot(slot_start, slot_end)
        provider = await self.get_provider(provider_id)
        self._check_bookable(provider, slot_start, slot_end)

        appointment = await self.assigner.assign(provider_id, slot_start, slot_end, patient_id)
        self._log_appointment(EventType.APPOINTMENT_BOOKED, appointment)
        return appointment

    async def get_appointment(self, appointment_id: str) -> Appointment:
        appointment = await self.repository.get_appointment(appointment_id)
        if appointment is None:
            raise NotFound("Appointment", appointment_id)
        return appointment

    async def list_appointments(
        self,
        provider_id: str,
        date_from: date,
        date_to: date,
        status: Optional[AppointmentStatus] = None,
    ) -> list[Appointment]:
        if date_from > date_to:
            raise InvalidRange(f"Date range starts after it ends: {date_from} > {date_to}")
        range_start, range_end = _day_bounds(date_from, date_to)
        return await self.repository.find_appointments(provider_id, range_start, range_end, status)

    async def cancel_appointment(
        self,
        appointment_id: str,
        reason: Optional[str] = None,
    ) -> CancellationResult:
        """Cancel a scheduled appointment and offer its slot to the waitlist.

        A second cancel raises ``AlreadyCancelled`` and notifies nobody.
        """
        appointment = await self.get_appointment(appointment_id)
        if appointment.status == AppointmentStatus.CANCELLED:
            raise AlreadyCancelled(appointment_id)

        cancelled = await self.assigner.transition(
            appointment, AppointmentStatus.CANCELLED, reason
        )
        self._log_appointment(EventType.APPOINTMENT_CANCELLED, cancelled, reason=reason)

        provider = await self.get_provider(cancelled.provider_id)
        offer = await self._offer_freed(provider, cancelled)
        return CancellationResult(appointment=cancelled, offer=offer)

    async def reschedule_appointment(
        self,
        appointment_id: str,
        new_start: datetime,
        new_end: datetime,
    ) -> RescheduleResult:
        """Move an appointment to a new slot with the same provider.

        Scheduled appointments are cancelled and replaced in one ledger
        write, and the slot they free is offered to the waitlist. A no-show
        keeps its status and gains a replacement booking. The new slot may
        overlap the appointment being moved.
        """
        _check_slot(new_start, new_end)
        appointment = await self.get_appointment(appointment_id)
        if appointment.status not in _RESCHEDULABLE:
            raise status_mismatch(appointment.id, appointment.status)
        provider = await self.get_provider(appointment.provider_id)
        self._check_bookable(provider, new_start, new_end)

        previous, replacement = await self.assigner.reschedule(appointment, new_start, new_end)
        self._log_appointment(EventType.APPOINTMENT_RESCHEDULED, replacement)

        offer = None
        if previous.status == AppointmentStatus.CANCELLED:
            self._log_appointment(
                EventType.APPOINTMENT_CANCELLED, previous, reason=RESCHEDULED_REASON
            )
            offer = await self._offer_freed(provider, previous)
        return RescheduleResult(appointment=replacement, previous=previous, offer=offer)

    async def suggest_reschedule_slots(
        self,
        appointment_id: str,
        limit: int = 5,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[CandidateSlot]:
        """First *limit* free slots of the appointment's length, from tomorrow on."""
        if limit <= 0:
            raise InvalidRange(f"Limit must be positive, got {limit}")
        appointment = await self.get_appointment(appointment_id)
        if appointment.status not in _RESCHEDULABLE:
            raise status_mismatch(appointment.id, appointment.status)
        if date_from is None or date_to is None:
            provider = await self.get_provider(appointment.provider_id)
            tomorrow = provider.local_now(self._clock()).date() + timedelta(days=1)
            date_from = date_from or tomorrow
            date_to = date_to or date_from + timedelta(
                days=self.settings.waitlist_lookahead_days - 1
            )
        slots = await self.get_available_slots(
            appointment.provider_id, date_from, date_to, appointment.duration_minutes
        )
        return slots[:limit]

    async def suggest_follow_up_slots(
        self,
        appointment_id: str,
        interval: int = 2,
        unit: FollowUpUnit = FollowUpUnit.WEEKS,
        duration_minutes: Optional[int] = None,
    ) -> FollowUpSuggestion:
        """Free slots on the day *interval* *unit* after the appointment ends."""
        if interval <= 0:
            raise InvalidRange(f"Follow-up interval must be positive, got {interval}")
        appointment = await self.get_appointment(appointment_id)
        base = appointment.end.date()
        if unit is FollowUpUnit.DAYS:
            suggested = base + timedelta(days=interval)
        elif unit is FollowUpUnit.WEEKS:
            suggested = base + timedelta(weeks=interval)
        else:
            suggested = _add_months(base, interval)

        slots = await self.get_available_slots(
            appointment.provider_id,
            suggested,
            suggested,
            duration_minutes or appointment.duration_minutes,
        )
        return FollowUpSuggestion(
            appointment_id=appointment.id, suggested_date=suggested, slots=slots
        )

    async def complete_appointment(self, appointment_id: str) -> Appointment:
        appointment = await self.get_appointment(appointment_id)
        completed = await self.assigner.transition(appointment, AppointmentStatus.COMPLETED)
        self._log_appointment(EventType.APPOINTMENT_COMPLETED, completed)
        return completed

    async def mark_no_show(self, appointment_id: str) -> Appointment:
        appointment = await self.get_appointment(appointment_id)
        missed = await self.assigner.transition(appointment, AppointmentStatus.NO_SHOW)
        self._log_appointment(EventType.APPOINTMENT_NO_SHOW, missed)
        return missed

    # ------------------------------------------------------------------
    # Waitlist
    # ------------------------------------------------------------------

    async def add_to_waitlist(
        self,
        provider_id: str,
        patient_id: str,
        priority: Priority = Priority.MEDIUM,
        preferences: Optional[WaitlistPreferences] = None,
        duration_minutes: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> WaitlistEntry:
        await self.get_provider(provider_id)
        preferences = preferences or WaitlistPreferences()
        now = self._clock()
        entry = WaitlistEntry(
            provider_id=provider_id,
            patient_id=patient_id,
            priority=priority,
            preferred_weekdays=preferences.preferred_weekdays or None,
            preferred_time_band=preferences.preferred_time_band,
            duration_minutes=duration_minutes or self.settings.default_appointment_minutes,
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        entry = await self.repository.insert_waitlist_entry(entry)
        logger.info(
            "Waitlisted patient %s for provider %s (%s)",
            patient_id, provider_id, priority.value,
        )
        self._log_waitlist(EventType.WAITLIST_ADDED, entry)
        return entry

    async def get_waitlist_entry(self, entry_id: str) -> WaitlistEntry:
        entry = await self.repository.get_waitlist_entry(entry_id)
        if entry is None:
            raise NotFound("Waitlist entry", entry_id)
        return entry

    async def list_waitlist(
        self,
        provider_id: str,
        status: Optional[WaitlistStatus] = None,
        priority: Optional[Priority] = None,
    ) -> list[WaitlistEntry]:
        """Entries in queue order: highest priority first, then oldest."""
        statuses = (status,) if status is not None else None
        entries = await self.repository.find_waitlist_entries(provider_id, statuses)
        if priority is not None:
            entries = [e for e in entries if e.priority == priority]
        return sorted(entries, key=lambda e: e.queue_key())

    async def get_matching_slots_for_waitlist_entry(
        self,
        entry_id: str,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[CandidateSlot]:
        """Free slots that satisfy the entry's weekday and time-band preferences."""
        entry, slots = await self._entry_slots(entry_id, date_from, date_to)
        return self.matcher.filter_slots(slots, entry)

    async def get_all_slots_ignoring_preferences(
        self,
        entry_id: str,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[CandidateSlot]:
        """Explicit relaxation: every free slot of the entry's length."""
        _, slots = await self._entry_slots(entry_id, date_from, date_to)
        return slots

    async def assign_waitlist_entry_to_slot(
        self,
        entry_id: str,
        slot_start: datetime,
        slot_end: datetime,
    ) -> Appointment:
        """Book a slot for a waiting or notified entry and mark it booked."""
        _check_slot(slot_start, slot_end)
        entry = await self.get_waitlist_entry(entry_id)
        if entry.status not in BOOKABLE_STATUSES:
            raise EntryNotWaiting(entry.id, entry.status.value)
        provider = await self.get_provider(entry.provider_id)
        self._check_bookable(provider, slot_start, slot_end)

        appointment = await self.assigner.assign(
            entry.provider_id,
            slot_start,
            slot_end,
            entry.patient_id,
            waitlist_entry_id=entry.id,
        )
        self._log_appointment(EventType.APPOINTMENT_BOOKED, appointment)
        self._log_waitlist(
            EventType.WAITLIST_BOOKED,
            entry.model_copy(update={"status": WaitlistStatus.BOOKED}),
            appointment_id=appointment.id,
        )
        return appointment

    async def set_waitlist_priority(self, entry_id: str, new_priority: Priority) -> WaitlistEntry:
        """Staff override of an open entry's priority."""
        entry = await self.get_waitlist_entry(entry_id)
        updated = await self.assigner.update_entry(
            entry, _OPEN_STATUSES, priority=new_priority, updated_at=self._clock()
        )
        self._log_waitlist(
            EventType.WAITLIST_PRIORITY_CHANGED, updated, previous=entry.priority.value
        )
        return updated

    async def notify_waitlist_for_slot(
        self,
        provider_id: str,
        start: datetime,
        end: datetime,
    ) -> SlotOffer:
        """Offer ``[start, end)`` to the best matching waiting entry. Idempotent.

        The slot must lie inside the provider's working hours and outside
        any blocked period. A slot that is booked or already started yields
        an offer with no entry.
        """
        _check_slot(start, end)
        provider = await self.get_provider(provider_id)
        self._check_open(provider, start, end)
        return await self._offer_slot(provider, start, end)

    async def notify_waitlist_entry(self, entry_id: str) -> WaitlistEntry:
        """Notify one waiting entry directly, without tying it to a slot."""
        entry = await self.get_waitlist_entry(entry_id)
        now = self._clock()
        notified = await self.assigner.update_entry(
            entry,
            (WaitlistStatus.WAITING,),
            status=WaitlistStatus.NOTIFIED,
            notified_at=now,
            updated_at=now,
        )
        self._log_waitlist(EventType.WAITLIST_NOTIFIED, notified)
        return notified

    async def expire_waitlist_entry(self, entry_id: str) -> WaitlistEntry:
        entry = await self.get_waitlist_entry(entry_id)
        expired = await self.assigner.update_entry(
            entry,
            _OPEN_STATUSES,
            status=WaitlistStatus.EXPIRED,
            updated_at=self._clock(),
        )
        self._log_waitlist(EventType.WAITLIST_EXPIRED, expired)
        return expired

    async def expire_lapsed_offers(
        self,
        provider_id: str,
        offer_ttl: Optional[timedelta] = None,
    ) -> list[WaitlistEntry]:
        """Expire notified entries older than *offer_ttl*.

        Without an explicit TTL the configured ``waitlist_offer_ttl_minutes``
        applies; if that is unset, offers never lapse and nothing changes.
        """
        if offer_ttl is None:
            if not self.settings.offer_lapsing_enabled:
                return []
            offer_ttl = timedelta(minutes=self.settings.waitlist_offer_ttl_minutes)
        if offer_ttl <= timedelta(0):
            raise InvalidRange(f"Offer TTL must be positive, got {offer_ttl}")

        await self.get_provider(provider_id)
        expired = await self.assigner.expire_lapsed(provider_id, offer_ttl, self._clock())
        for entry in expired:
            self._log_waitlist(EventType.WAITLIST_EXPIRED, entry, lapsed=True)
        return expired

    async def remove_waitlist_entry(self, entry_id: str) -> None:
        entry = await self.get_waitlist_entry(entry_id)
        async with self.assigner.lock_for(entry.provider_id):
            removed = await self.repository.delete_waitlist_entry(entry_id)
        if not removed:
            raise NotFound("Waitlist entry", entry_id)
        logger.info("Removed waitlist entry %s", entry_id)
        self._log_waitlist(EventType.WAITLIST_REMOVED, entry)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_bookable(self, provider: Provider, start: datetime, end: datetime) -> None:
        local_now = provider.local_now(self._clock())
        if start < local_now:
            raise InvalidRange(f"Slot {start} is in the past")
        self._check_open(provider, start, end)

    @staticmethod
    def _check_open(provider: Provider, start: datetime, end: datetime) -> None:
        if not provider.availability.covers(start, end):
            raise InvalidRange(
                f"Slot {start:%Y-%m-%d %H:%M}-{end:%H:%M} is outside working hours"
            )
        if provider.availability.is_blocked(start, end):
            raise InvalidRange(
                f"Slot {start:%Y-%m-%d %H:%M}-{end:%H:%M} falls in a blocked period"
            )

    async def _offer_slot(self, provider: Provider, start: datetime, end: datetime) -> SlotOffer:
        now = self._clock()
        offer = await self.assigner.offer_freed_slot(
            provider.id, start, end, now=now, local_now=provider.local_now(now)
        )
        if offer.notified:
            self._log_waitlist(EventType.WAITLIST_NOTIFIED, offer.entry)
        return offer

    async def _offer_freed(self, provider: Provider, appointment: Appointment) -> SlotOffer:
        # Only slots still inside current hours are offered.
        start, end = appointment.start, appointment.end
        availability = provider.availability
        if not availability.covers(start, end) or availability.is_blocked(start, end):
            return SlotOffer(provider_id=provider.id, start=start, end=end)
        return await self._offer_slot(provider, start, end)

    async def _entry_slots(
        self,
        entry_id: str,
        date_from: Optional[date],
        date_to: Optional[date],
    ) -> tuple[WaitlistEntry, list[CandidateSlot]]:
        entry = await self.get_waitlist_entry(entry_id)
        if entry.status.is_terminal:
            raise EntryNotWaiting(entry.id, entry.status.value)
        if date_from is None or date_to is None:
            provider = await self.get_provider(entry.provider_id)
            today = provider.local_now(self._clock()).date()
            date_from = date_from or today
            date_to = date_to or date_from + timedelta(
                days=self.settings.waitlist_lookahead_days - 1
            )
        slots = await self.get_available_slots(
            entry.provider_id, date_from, date_to, entry.duration_minutes
        )
        return entry, slots

    def _log_appointment(
        self,
        event_type: EventType,
        appointment: Appointment,
        reason: Optional[str] = None,
    ) -> None:
        if self.event_logger is not None:
            self.event_logger.log_appointment(event_type, appointment, reason=reason)

    def _log_waitlist(self, event_type: EventType, entry: WaitlistEntry, **metadata) -> None:
        if self.event_logger is not None:
            self.event_logger.log_waitlist(event_type, entry, **metadata)
