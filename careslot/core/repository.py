"""SQLAlchemy implementation of the scheduling repository."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from careslot.core.models import AppointmentDB, ProviderDB, WaitlistEntryDB
from careslot.scheduling.errors import (
    EntryNotWaiting,
    NotFound,
    SlotConflict,
    StorageUnavailable,
)
from careslot.scheduling.models import (
    Appointment,
    AppointmentStatus,
    Priority,
    Provider,
    TimeBand,
    WaitlistEntry,
    WaitlistStatus,
    Weekday,
    WeeklyAvailability,
)
from careslot.scheduling.repository import (
    BOOKABLE_STATUSES,
    RESCHEDULED_REASON,
    SchedulingRepository,
    status_mismatch,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive values even for timezone-aware columns.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_provider(row: ProviderDB) -> Provider:
    return Provider(
        id=row.id,
        name=row.name,
        timezone=row.timezone,
        slot_granularity_minutes=row.slot_granularity_minutes,
        availability=WeeklyAvailability.model_validate(row.availability or {}),
    )


def _to_appointment(row: AppointmentDB) -> Appointment:
    return Appointment(
        id=row.id,
        provider_id=row.provider_id,
        patient_id=row.patient_id,
        start=row.start,
        end=row.end,
        status=AppointmentStatus(row.status),
        waitlist_entry_id=row.waitlist_entry_id,
        cancel_reason=row.cancel_reason,
        rescheduled_from=row.rescheduled_from,
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


def _appointment_row(appointment: Appointment) -> AppointmentDB:
    return AppointmentDB(
        id=appointment.id,
        provider_id=appointment.provider_id,
        patient_id=appointment.patient_id,
        start=appointment.start,
        end=appointment.end,
        status=appointment.status.value,
        waitlist_entry_id=appointment.waitlist_entry_id,
        cancel_reason=appointment.cancel_reason,
        rescheduled_from=appointment.rescheduled_from,
        created_at=appointment.created_at,
        updated_at=appointment.updated_at,
    )


def _to_entry(row: WaitlistEntryDB) -> WaitlistEntry:
    return WaitlistEntry(
        id=row.id,
        provider_id=row.provider_id,
        patient_id=row.patient_id,
        priority=Priority(row.priority),
        status=WaitlistStatus(row.status),
        preferred_weekdays=(
            {Weekday(d) for d in row.preferred_weekdays} if row.preferred_weekdays else None
        ),
        preferred_time_band=TimeBand(row.preferred_time_band) if row.preferred_time_band else None,
        duration_minutes=row.duration_minutes,
        notes=row.notes,
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
        notified_at=_as_utc(row.notified_at),
        offered_start=row.offered_start,
        offered_end=row.offered_end,
    )


def _entry_columns(entry: WaitlistEntry) -> dict:
    return {
        "provider_id": entry.provider_id,
        "patient_id": entry.patient_id,
        "priority": entry.priority.value,
        "status": entry.status.value,
        "preferred_weekdays": (
            sorted(d.value for d in entry.preferred_weekdays)
            if entry.preferred_weekdays
            else None
        ),
        "preferred_time_band": (
            entry.preferred_time_band.value if entry.preferred_time_band else None
        ),
        "duration_minutes": entry.duration_minutes,
        "notes": entry.notes,
        "created_at": entry.created_at,
        "updated_at": entry.updated_at,
        "notified_at": entry.notified_at,
        "offered_start": entry.offered_start,
        "offered_end": entry.offered_end,
    }


class SqlSchedulingRepository(SchedulingRepository):
    """Scheduling store backed by any SQLAlchemy async engine.

    Each method runs in its own transaction. ``insert_appointment`` and
    ``reschedule_appointment`` lock the provider row (``SELECT ... FOR UPDATE`` where the backend supports
    it) before its overlap check, so concurrent processes booking the same
    provider serialize on the database as well as on the in-process lock.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    yield session
        except (OperationalError, InterfaceError) as exc:
            raise StorageUnavailable(f"Scheduling store unavailable: {exc}") from exc

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    async def get_provider(self, provider_id: str) -> Optional[Provider]:
        async with self._transaction() as session:
            row = await session.get(ProviderDB, provider_id)
            return _to_provider(row) if row else None

    async def save_provider(self, provider: Provider) -> Provider:
        async with self._transaction() as session:
            row = await session.get(ProviderDB, provider.id)
            if row is None:
                row = ProviderDB(id=provider.id)
                session.add(row)
            row.name = provider.name
            row.timezone = provider.timezone
            row.slot_granularity_minutes = provider.slot_granularity_minutes
            row.availability = provider.availability.model_dump(mode="json")
        return provider

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    async def find_scheduled_appointments(
        self, provider_id: str, start: datetime, end: datetime
    ) -> list[Appointment]:
        return await self.find_appointments(
            provider_id, start, end, AppointmentStatus.SCHEDULED
        )

    async def find_appointments(
        self,
        provider_id: str,
        start: datetime,
        end: datetime,
        status: Optional[AppointmentStatus] = None,
    ) -> list[Appointment]:
        async with self._transaction() as session:
            rows = await self._overlapping(session, provider_id, start, end, status)
            return [_to_appointment(r) for r in rows]

    async def get_appointment(self, appointment_id: str) -> Optional[Appointment]:
        async with self._transaction() as session:
            row = await session.get(AppointmentDB, appointment_id)
            return _to_appointment(row) if row else None

    async def insert_appointment(
        self,
        appointment: Appointment,
        waitlist_entry_id: Optional[str] = None,
    ) -> Appointment:
        async with self._transaction() as session:
            await self._lock_provider(session, appointment.provider_id)
            await self._ensure_free(session, appointment)

            if waitlist_entry_id is not None:
                result = await session.execute(
                    update(WaitlistEntryDB)
                    .where(
                        WaitlistEntryDB.id == waitlist_entry_id,
                        WaitlistEntryDB.status.in_([s.value for s in BOOKABLE_STATUSES]),
                    )
                    .values(status=WaitlistStatus.BOOKED.value, updated_at=_utcnow())
                )
                if result.rowcount == 0:
                    entry = await session.get(WaitlistEntryDB, waitlist_entry_id)
                    if entry is None:
                        raise NotFound("Waitlist entry", waitlist_entry_id)
                    raise EntryNotWaiting(waitlist_entry_id, entry.status)

            session.add(_appointment_row(appointment))
        return appointment

    async def reschedule_appointment(
        self,
        appointment_id: str,
        expected: AppointmentStatus,
        replacement: Appointment,
    ) -> tuple[Appointment, Appointment]:
        async with self._transaction() as session:
            await self._lock_provider(session, replacement.provider_id)
            row = await session.get(AppointmentDB, appointment_id, populate_existing=True)
            if row is None:
                raise NotFound("Appointment", appointment_id)
            if row.status != expected.value:
                raise status_mismatch(appointment_id, AppointmentStatus(row.status))

            await self._ensure_free(session, replacement, ignore_id=appointment_id)

            if row.status == AppointmentStatus.SCHEDULED.value:
                row.status = AppointmentStatus.CANCELLED.value
                row.cancel_reason = RESCHEDULED_REASON
                row.updated_at = _utcnow()
            session.add(_appointment_row(replacement))
            await session.flush()
            return _to_appointment(row), replacement

    async def update_appointment_status(
        self,
        appointment_id: str,
        expected: AppointmentStatus,
        new: AppointmentStatus,
        reason: Optional[str] = None,
    ) -> Appointment:
        async with self._transaction() as session:
            values: dict = {"status": new.value, "updated_at": _utcnow()}
            if reason is not None:
                values["cancel_reason"] = reason
            result = await session.execute(
                update(AppointmentDB)
                .where(
                    AppointmentDB.id == appointment_id,
                    AppointmentDB.status == expected.value,
                )
                .values(**values)
            )
            row = await session.get(AppointmentDB, appointment_id, populate_existing=True)
            if row is None:
                raise NotFound("Appointment", appointment_id)
            if result.rowcount == 0:
                raise status_mismatch(appointment_id, AppointmentStatus(row.status))
            return _to_appointment(row)

    # ------------------------------------------------------------------
    # Waitlist
    # ------------------------------------------------------------------

    async def insert_waitlist_entry(self, entry: WaitlistEntry) -> WaitlistEntry:
        async with self._transaction() as session:
            session.add(WaitlistEntryDB(id=entry.id, **_entry_columns(entry)))
        return entry

    async def get_waitlist_entry(self, entry_id: str) -> Optional[WaitlistEntry]:
        async with self._transaction() as session:
            row = await session.get(WaitlistEntryDB, entry_id)
            return _to_entry(row) if row else None

    async def find_waitlist_entries(
        self,
        provider_id: str,
        statuses: Optional[tuple[WaitlistStatus, ...]] = None,
    ) -> list[WaitlistEntry]:
        stmt = select(WaitlistEntryDB).where(WaitlistEntryDB.provider_id == provider_id)
        if statuses is not None:
            stmt = stmt.where(WaitlistEntryDB.status.in_([s.value for s in statuses]))
        stmt = stmt.order_by(WaitlistEntryDB.created_at)
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return [_to_entry(r) for r in result.scalars().all()]

    async def update_waitlist_entry(
        self,
        entry: WaitlistEntry,
        expected_status: WaitlistStatus,
    ) -> WaitlistEntry:
        async with self._transaction() as session:
            result = await session.execute(
                update(WaitlistEntryDB)
                .where(
                    WaitlistEntryDB.id == entry.id,
                    WaitlistEntryDB.status == expected_status.value,
                )
                .values(**_entry_columns(entry))
            )
            if result.rowcount == 0:
                row = await session.get(WaitlistEntryDB, entry.id)
                if row is None:
                    raise NotFound("Waitlist entry", entry.id)
                raise EntryNotWaiting(entry.id, row.status)
        return entry

    async def delete_waitlist_entry(self, entry_id: str) -> bool:
        async with self._transaction() as session:
            result = await session.execute(
                delete(WaitlistEntryDB).where(WaitlistEntryDB.id == entry_id)
            )
            return result.rowcount > 0

    @staticmethod
    async def _lock_provider(session: AsyncSession, provider_id: str) -> None:
        await session.execute(
            select(ProviderDB.id).where(ProviderDB.id == provider_id).with_for_update()
        )

    async def _ensure_free(
        self,
        session: AsyncSession,
        appointment: Appointment,
        ignore_id: Optional[str] = None,
    ) -> None:
        conflicts = [
            row
            for row in await self._overlapping(
                session,
                appointment.provider_id,
                appointment.start,
                appointment.end,
                AppointmentStatus.SCHEDULED,
            )
            if row.id != ignore_id
        ]
        if conflicts:
            raise SlotConflict(
                f"Slot {appointment.start:%Y-%m-%d %H:%M}-{appointment.end:%H:%M} "
                f"is no longer available",
                provider_id=appointment.provider_id,
                conflicting_ids=[c.id for c in conflicts],
            )

    @staticmethod
    async def _overlapping(
        session: AsyncSession,
        provider_id: str,
        start: datetime,
        end: datetime,
        status: Optional[AppointmentStatus],
    ) -> list[AppointmentDB]:
        stmt = select(AppointmentDB).where(
            AppointmentDB.provider_id == provider_id,
            AppointmentDB.start < end,
            AppointmentDB.end > start,
        )
        if status is not None:
            stmt = stmt.where(AppointmentDB.status == status.value)
        result = await session.execute(stmt.order_by(AppointmentDB.start))
        return list(result.scalars().all())
