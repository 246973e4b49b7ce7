"""Atomic slot reservation and priority-aware waitlist offers.

Every write to a provider's ledger or waitlist runs under that provider's
lock. Distinct providers never share a lock.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from careslot.scheduling.errors import EntryNotWaiting, InvalidRange, SlotConflict
from careslot.scheduling.matcher import SlotMatcher
from careslot.scheduling.models import (
    Appointment,
    AppointmentStatus,
    CandidateSlot,
    SlotOffer,
    WaitlistEntry,
    WaitlistStatus,
)
from careslot.scheduling.repository import SchedulingRepository

logger = logging.getLogger(__name__)


class ProviderLocks:
    """One ``asyncio.Lock`` per provider id, created on first use."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def for_provider(self, provider_id: str) -> asyncio.Lock:
        lock = self._locks.get(provider_id)
        if lock is None:
            lock = self._locks[provider_id] = asyncio.Lock()
        return lock

    def __len__(self) -> int:
        return len(self._locks)


class SlotAssigner:
    """The single choke point for reserving slots.

    Candidates handed in by callers come from a snapshot that may be stale,
    so ``assign`` re-checks the ledger under the provider lock before
    writing. The lock covers only the check and the repository write.
    """

    def __init__(
        self,
        repository: SchedulingRepository,
        matcher: Optional[SlotMatcher] = None,
        locks: Optional[ProviderLocks] = None,
    ) -> None:
        self.repository = repository
        self.matcher = matcher or SlotMatcher()
        self.locks = locks or ProviderLocks()

    def lock_for(self, provider_id: str) -> asyncio.Lock:
        return self.locks.for_provider(provider_id)

    # ------------------------------------------------------------------
    # Ledger writes
    # ------------------------------------------------------------------

    async def assign(
        self,
        provider_id: str,
        slot_start: datetime,
        slot_end: datetime,
        patient_id: str,
        waitlist_entry_id: Optional[str] = None,
    ) -> Appointment:
        """Reserve ``[slot_start, slot_end)`` or raise ``SlotConflict``.

        With *waitlist_entry_id* the entry moves to ``booked`` in the same
        repository transaction as the appointment insert.
        """
        if slot_start >= slot_end:
            raise InvalidRange(f"Slot start {slot_start} is not before end {slot_end}")

        appointment = Appointment(
            provider_id=provider_id,
            patient_id=patient_id,
            start=slot_start,
            end=slot_end,
            waitlist_entry_id=waitlist_entry_id,
        )

        async with self.lock_for(provider_id):
            existing = await self.repository.find_scheduled_appointments(
                provider_id, slot_start, slot_end
            )
            if existing:
                raise SlotConflict(
                    f"Slot {slot_start:%Y-%m-%d %H:%M}-{slot_end:%H:%M} is already booked",
                    provider_id=provider_id,
                    conflicting_ids=[a.id for a in existing],
                )
            booked = await self.repository.insert_appointment(appointment, waitlist_entry_id)

        logger.info(
            "Booked %s for patient %s with provider %s at %s",
            booked.id, patient_id, provider_id, slot_start.isoformat(),
        )
        return booked

    async def transition(
        self,
        appointment: Appointment,
        new_status: AppointmentStatus,
        reason: Optional[str] = None,
    ) -> Appointment:
        """Move a scheduled appointment to *new_status* (compare-and-swap)."""
        async with self.lock_for(appointment.provider_id):
            updated = await self.repository.update_appointment_status(
                appointment.id, AppointmentStatus.SCHEDULED, new_status, reason
            )
        logger.info("Appointment %s is now %s", appointment.id, new_status.value)
        return updated

    async def reschedule(
        self,
        appointment: Appointment,
        slot_start: datetime,
        slot_end: datetime,
    ) -> tuple[Appointment, Appointment]:
        """Move *appointment* to ``[slot_start, slot_end)`` in one ledger write.

        A scheduled appointment is cancelled as part of the swap; a no-show
        stays on record and only gains a replacement. Returns
        ``(previous, replacement)``.
        """
        if slot_start >= slot_end:
            raise InvalidRange(f"Slot start {slot_start} is not before end {slot_end}")

        replacement = Appointment(
            provider_id=appointment.provider_id,
            patient_id=appointment.patient_id,
            start=slot_start,
            end=slot_end,
            rescheduled_from=appointment.id,
        )
        async with self.lock_for(appointment.provider_id):
            existing = [
                a
                for a in await self.repository.find_scheduled_appointments(
                    appointment.provider_id, slot_start, slot_end
                )
                if a.id != appointment.id
            ]
            if existing:
                raise SlotConflict(
                    f"Slot {slot_start:%Y-%m-%d %H:%M}-{slot_end:%H:%M} is already booked",
                    provider_id=appointment.provider_id,
                    conflicting_ids=[a.id for a in existing],
                )
            previous, replacement = await self.repository.reschedule_appointment(
                appointment.id, appointment.status, replacement
            )

        logger.info(
            "Rescheduled %s to %s (%s)",
            appointment.id, replacement.id, slot_start.isoformat(),
        )
        return previous, replacement

    # ------------------------------------------------------------------
    # Waitlist offers
    # ------------------------------------------------------------------

    async def offer_freed_slot(
        self,
        provider_id: str,
        start: datetime,
        end: datetime,
        now: datetime,
        local_now: datetime,
    ) -> SlotOffer:
        """Notify the best waiting entry about a freed ``[start, end)``.

        Best means highest priority, then earliest ``created_at``. Re-running
        for the same slot returns the entry already holding the offer
        without notifying anyone else. Slots that have already started, or
        that are booked again by the time the lock is held, are not offered.
        """
        offer = SlotOffer(provider_id=provider_id, start=start, end=end)
        if start <= local_now:
            return offer

        slot = CandidateSlot(provider_id=provider_id, start=start, end=end)
        async with self.lock_for(provider_id):
            if await self.repository.find_scheduled_appointments(provider_id, start, end):
                return offer

            entries = await self.repository.find_waitlist_entries(
                provider_id, (WaitlistStatus.WAITING, WaitlistStatus.NOTIFIED)
            )
            holder = next((e for e in entries if e.holds_offer_for(start, end)), None)
            if holder is not None:
                return offer.model_copy(update={"entry": holder, "already_offered": True})

            eligible = [
                e for e in entries
                if e.status == WaitlistStatus.WAITING and self.matcher.matches(slot, e)
            ]
            if not eligible:
                return offer

            chosen = min(eligible, key=lambda e: e.queue_key())
            notified = chosen.model_copy(
                update={
                    "status": WaitlistStatus.NOTIFIED,
                    "notified_at": now,
                    "offered_start": start,
                    "offered_end": end,
                    "updated_at": now,
                }
            )
            notified = await self.repository.update_waitlist_entry(
                notified, WaitlistStatus.WAITING
            )

        logger.info(
            "Offered %s-%s with provider %s to waitlist entry %s (%s)",
            start.isoformat(), end.isoformat(), provider_id,
            notified.id, notified.priority.value,
        )
        return offer.model_copy(update={"entry": notified})

    async def update_entry(
        self,
        entry: WaitlistEntry,
        allowed: tuple[WaitlistStatus, ...],
        **changes,
    ) -> WaitlistEntry:
        """Apply *changes* to an entry whose current status is in *allowed*."""
        if entry.status not in allowed:
            raise EntryNotWaiting(entry.id, entry.status.value)
        async with self.lock_for(entry.provider_id):
            updated = entry.model_copy(update=changes)
            return await self.repository.update_waitlist_entry(updated, entry.status)

    async def expire_lapsed(
        self,
        provider_id: str,
        offer_ttl: timedelta,
        now: datetime,
    ) -> list[WaitlistEntry]:
        """Expire notified entries whose offer is older than *offer_ttl*."""
        expired: list[WaitlistEntry] = []
        async with self.lock_for(provider_id):
            notified = await self.repository.find_waitlist_entries(
                provider_id, (WaitlistStatus.NOTIFIED,)
            )
            for entry in notified:
                if entry.notified_at is None or entry.notified_at + offer_ttl > now:
                    continue
                lapsed = entry.model_copy(
                    update={"status": WaitlistStatus.EXPIRED, "updated_at": now}
                )
                expired.append(
                    await self.repository.update_waitlist_entry(lapsed, WaitlistStatus.NOTIFIED)
                )
        if expired:
            logger.info("Expired %d lapsed offers for provider %s", len(expired), provider_id)
        return expired
