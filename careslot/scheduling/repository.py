"""Storage interface consumed by the scheduling engine, plus an in-memory store."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional

from careslot.scheduling.errors import (
    AlreadyCancelled,
    AppointmentNotScheduled,
    EntryNotWaiting,
    NotFound,
    SlotConflict,
)
from careslot.scheduling.models import (
    Appointment,
    AppointmentStatus,
    Provider,
    WaitlistEntry,
    WaitlistStatus,
)

# Waitlist states an entry may be booked from.
BOOKABLE_STATUSES = (WaitlistStatus.WAITING, WaitlistStatus.NOTIFIED)

RESCHEDULED_REASON = "rescheduled"


def status_mismatch(appointment_id: str, current: AppointmentStatus) -> AppointmentNotScheduled:
    if current == AppointmentStatus.CANCELLED:
        return AlreadyCancelled(appointment_id)
    return AppointmentNotScheduled(appointment_id, current.value)


class SchedulingRepository(ABC):
    """Persistence boundary for providers, the booking ledger and the waitlist.

    Ledger writes are conditional: ``insert_appointment`` and
    ``reschedule_appointment`` fail with ``SlotConflict`` if an overlapping
    scheduled row exists, and ``update_appointment_status`` /
    ``update_waitlist_entry`` are compare-and-swap on the current status. Backend failures surface as
    ``StorageUnavailable``.
    """

    # Providers

    @abstractmethod
    async def get_provider(self, provider_id: str) -> Optional[Provider]: ...

    @abstractmethod
    async def save_provider(self, provider: Provider) -> Provider: ...

    # Ledger

    @abstractmethod
    async def find_scheduled_appointments(
        self, provider_id: str, start: datetime, end: datetime
    ) -> list[Appointment]:
        """Scheduled appointments overlapping ``[start, end)``, ordered by start."""

    @abstractmethod
    async def find_appointments(
        self,
        provider_id: str,
        start: datetime,
        end: datetime,
        status: Optional[AppointmentStatus] = None,
    ) -> list[Appointment]: ...

    @abstractmethod
    async def get_appointment(self, appointment_id: str) -> Optional[Appointment]: ...

    @abstractmethod
    async def insert_appointment(
        self,
        appointment: Appointment,
        waitlist_entry_id: Optional[str] = None,
    ) -> Appointment:
        """Insert a scheduled appointment if its slot is still free.

        With *waitlist_entry_id*, the entry moves to ``booked`` in the same
        transaction; it must be in one of ``BOOKABLE_STATUSES``.
        """

    @abstractmethod
    async def update_appointment_status(
        self,
        appointment_id: str,
        expected: AppointmentStatus,
        new: AppointmentStatus,
        reason: Optional[str] = None,
    ) -> Appointment: ...

    @abstractmethod
    async def reschedule_appointment(
        self,
        appointment_id: str,
        expected: AppointmentStatus,
        replacement: Appointment,
    ) -> tuple[Appointment, Appointment]:
        """Swap *appointment_id* for *replacement* in one transaction.

        The stored appointment must still be *expected*. A scheduled one is
        cancelled with reason ``rescheduled`` so its slot frees up; any other
        status is left as is. The replacement may overlap only the
        appointment it replaces. Returns ``(previous, replacement)``.
        """

    # Waitlist

    @abstractmethod
    async def insert_waitlist_entry(self, entry: WaitlistEntry) -> WaitlistEntry: ...

    @abstractmethod
    async def get_waitlist_entry(self, entry_id: str) -> Optional[WaitlistEntry]: ...

    @abstractmethod
    async def find_waitlist_entries(
        self,
        provider_id: str,
        statuses: Optional[tuple[WaitlistStatus, ...]] = None,
    ) -> list[WaitlistEntry]: ...

    async def find_waiting_entries(self, provider_id: str) -> list[WaitlistEntry]:
        return await self.find_waitlist_entries(provider_id, (WaitlistStatus.WAITING,))

    @abstractmethod
    async def update_waitlist_entry(
        self,
        entry: WaitlistEntry,
        expected_status: WaitlistStatus,
    ) -> WaitlistEntry:
        """Write *entry* only if the stored status still equals *expected_status*."""

    @abstractmethod
    async def delete_waitlist_entry(self, entry_id: str) -> bool: ...


class InMemorySchedulingRepository(SchedulingRepository):
    """Dict-backed store for tests, demos and single-process deployments.

    Each method runs without yielding to the event loop, so every
    check-then-write below is atomic with respect to other coroutines.
    """

    def __init__(self) -> None:
        self.providers: dict[str, Provider] = {}
        self.appointments: dict[str, Appointment] = {}
        self.waitlist: dict[str, WaitlistEntry] = {}

    async def get_provider(self, provider_id: str) -> Optional[Provider]:
        provider = self.providers.get(provider_id)
        return provider.model_copy(deep=True) if provider else None

    async def save_provider(self, provider: Provider) -> Provider:
        self.providers[provider.id] = provider.model_copy(deep=True)
        return provider

    async def find_scheduled_appointments(
        self, provider_id: str, start: datetime, end: datetime
    ) -> list[Appointment]:
        return self._overlapping(provider_id, start, end, AppointmentStatus.SCHEDULED)

    async def find_appointments(
        self,
        provider_id: str,
        start: datetime,
        end: datetime,
        status: Optional[AppointmentStatus] = None,
    ) -> list[Appointment]:
        return self._overlapping(provider_id, start, end, status)

    async def get_appointment(self, appointment_id: str) -> Optional[Appointment]:
        appt = self.appointments.get(appointment_id)
        return appt.model_copy() if appt else None

    async def insert_appointment(
        self,
        appointment: Appointment,
        waitlist_entry_id: Optional[str] = None,
    ) -> Appointment:
        conflicts = self._overlapping(
            appointment.provider_id,
            appointment.start,
            appointment.end,
            AppointmentStatus.SCHEDULED,
        )
        if conflicts:
            raise SlotConflict(
                f"Slot {appointment.start:%Y-%m-%d %H:%M}-{appointment.end:%H:%M} "
                f"is no longer available",
                provider_id=appointment.provider_id,
                conflicting_ids=[c.id for c in conflicts],
            )

        entry = None
        if waitlist_entry_id is not None:
            entry = self.waitlist.get(waitlist_entry_id)
            if entry is None:
                raise NotFound("Waitlist entry", waitlist_entry_id)
            if entry.status not in BOOKABLE_STATUSES:
                raise EntryNotWaiting(entry.id, entry.status.value)

        self.appointments[appointment.id] = appointment.model_copy()
        if entry is not None:
            self.waitlist[entry.id] = entry.model_copy(
                update={"status": WaitlistStatus.BOOKED, "updated_at": _utcnow()}
            )
        return appointment

    async def update_appointment_status(
        self,
        appointment_id: str,
        expected: AppointmentStatus,
        new: AppointmentStatus,
        reason: Optional[str] = None,
    ) -> Appointment:
        appt = self.appointments.get(appointment_id)
        if appt is None:
            raise NotFound("Appointment", appointment_id)
        if appt.status != expected:
            raise status_mismatch(appointment_id, appt.status)
        updated = appt.model_copy(
            update={
                "status": new,
                "cancel_reason": reason if reason is not None else appt.cancel_reason,
                "updated_at": _utcnow(),
            }
        )
        self.appointments[appointment_id] = updated
        return updated.model_copy()

    async def reschedule_appointment(
        self,
        appointment_id: str,
        expected: AppointmentStatus,
        replacement: Appointment,
    ) -> tuple[Appointment, Appointment]:
        previous = self.appointments.get(appointment_id)
        if previous is None:
            raise NotFound("Appointment", appointment_id)
        if previous.status != expected:
            raise status_mismatch(appointment_id, previous.status)

        conflicts = [
            c
            for c in self._overlapping(
                replacement.provider_id,
                replacement.start,
                replacement.end,
                AppointmentStatus.SCHEDULED,
            )
            if c.id != appointment_id
        ]
        if conflicts:
            raise SlotConflict(
                f"Slot {replacement.start:%Y-%m-%d %H:%M}-{replacement.end:%H:%M} "
                f"is no longer available",
                provider_id=replacement.provider_id,
                conflicting_ids=[c.id for c in conflicts],
            )

        if previous.status == AppointmentStatus.SCHEDULED:
            previous = previous.model_copy(
                update={
                    "status": AppointmentStatus.CANCELLED,
                    "cancel_reason": RESCHEDULED_REASON,
                    "updated_at": _utcnow(),
                }
            )
            self.appointments[appointment_id] = previous
        self.appointments[replacement.id] = replacement.model_copy()
        return previous.model_copy(), replacement

    async def insert_waitlist_entry(self, entry: WaitlistEntry) -> WaitlistEntry:
        self.waitlist[entry.id] = entry.model_copy(deep=True)
        return entry

    async def get_waitlist_entry(self, entry_id: str) -> Optional[WaitlistEntry]:
        entry = self.waitlist.get(entry_id)
        return entry.model_copy(deep=True) if entry else None

    async def find_waitlist_entries(
        self,
        provider_id: str,
        statuses: Optional[tuple[WaitlistStatus, ...]] = None,
    ) -> list[WaitlistEntry]:
        entries = [
            e.model_copy(deep=True)
            for e in self.waitlist.values()
            if e.provider_id == provider_id and (statuses is None or e.status in statuses)
        ]
        return sorted(entries, key=lambda e: e.created_at)

    async def update_waitlist_entry(
        self,
        entry: WaitlistEntry,
        expected_status: WaitlistStatus,
    ) -> WaitlistEntry:
        stored = self.waitlist.get(entry.id)
        if stored is None:
            raise NotFound("Waitlist entry", entry.id)
        if stored.status != expected_status:
            raise EntryNotWaiting(entry.id, stored.status.value)
        self.waitlist[entry.id] = entry.model_copy(deep=True)
        return entry

    async def delete_waitlist_entry(self, entry_id: str) -> bool:
        return self.waitlist.pop(entry_id, None) is not None

    def _overlapping(
        self,
        provider_id: str,
        start: datetime,
        end: datetime,
        status: Optional[AppointmentStatus],
    ) -> list[Appointment]:
        found = [
            a.model_copy()
            for a in self.appointments.values()
            if a.provider_id == provider_id
            and (status is None or a.status == status)
            and a.overlaps(start, end)
        ]
        return sorted(found, key=lambda a: a.start)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
