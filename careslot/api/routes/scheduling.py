"""Scheduling API endpoints: availability, bookings and the waitlist."""

from datetime import date, datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel, Field

from careslot.api.dependencies import get_scheduling_service
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
    TimeBand,
    WaitlistEntry,
    WaitlistPreferences,
    WaitlistStatus,
    Weekday,
    WeeklyAvailability,
)
from careslot.scheduling.service import SchedulingService

router = APIRouter(prefix="/scheduling")


# ---------------------------------------------------------------------------
# Pydantic request schemas
# ---------------------------------------------------------------------------

class BookingCreate(BaseModel):
    provider_id: str
    patient_id: str
    start: datetime
    end: datetime


class SlotRequest(BaseModel):
    start: datetime
    end: datetime


class CancelRequest(BaseModel):
    reason: str | None = None


class WaitlistCreate(BaseModel):
    provider_id: str
    patient_id: str
    priority: Priority = Priority.MEDIUM
    preferred_weekdays: set[Weekday] | None = None
    preferred_time_band: TimeBand | None = None
    duration_minutes: int | None = Field(default=None, gt=0)
    notes: str | None = None


class PriorityUpdate(BaseModel):
    priority: Priority


class ExpireLapsedRequest(BaseModel):
    offer_ttl_minutes: int | None = Field(default=None, gt=0)


# ---------------------------------------------------------------------------
# Providers and availability
# ---------------------------------------------------------------------------

@router.post("/providers", response_model=Provider, status_code=201)
async def register_provider(
    body: Provider,
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Create or replace a provider and their weekly hours."""
    return await service.register_provider(body)


@router.get("/providers/{provider_id}", response_model=Provider)
async def get_provider(
    provider_id: str,
    service: SchedulingService = Depends(get_scheduling_service),
):
    return await service.get_provider(provider_id)


@router.put("/providers/{provider_id}/availability", response_model=Provider)
async def set_weekly_availability(
    provider_id: str,
    body: WeeklyAvailability,
    service: SchedulingService = Depends(get_scheduling_service),
):
    return await service.set_weekly_availability(provider_id, body)


@router.get("/providers/{provider_id}/slots", response_model=list[CandidateSlot])
async def get_available_slots(
    provider_id: str,
    date_from: date = Query(...),
    date_to: date = Query(...),
    duration_minutes: int = Query(30),
    granularity_minutes: Optional[int] = Query(None),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Free slots for the booking calendar, in start order."""
    return await service.get_available_slots(
        provider_id, date_from, date_to, duration_minutes, granularity_minutes
    )


@router.post("/providers/{provider_id}/waitlist/notify", response_model=SlotOffer)
async def notify_waitlist_for_slot(
    provider_id: str,
    body: SlotRequest,
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Offer a freed slot to the best matching waiting patient."""
    return await service.notify_waitlist_for_slot(provider_id, body.start, body.end)


@router.post(
    "/providers/{provider_id}/waitlist/expire-lapsed",
    response_model=list[WaitlistEntry],
)
async def expire_lapsed_offers(
    provider_id: str,
    body: ExpireLapsedRequest,
    service: SchedulingService = Depends(get_scheduling_service),
):
    ttl = timedelta(minutes=body.offer_ttl_minutes) if body.offer_ttl_minutes else None
    return await service.expire_lapsed_offers(provider_id, ttl)


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------

@router.post("/appointments", response_model=Appointment, status_code=201)
async def book_slot(
    body: BookingCreate,
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Book a slot. 409 if another booking took it first."""
    return await service.book_slot(body.provider_id, body.patient_id, body.start, body.end)


@router.get("/appointments", response_model=list[Appointment])
async def list_appointments(
    provider_id: str = Query(...),
    date_from: date = Query(...),
    date_to: date = Query(...),
    status: Optional[AppointmentStatus] = Query(None),
    service: SchedulingService = Depends(get_scheduling_service),
):
    return await service.list_appointments(provider_id, date_from, date_to, status)


@router.get("/appointments/{appointment_id}", response_model=Appointment)
async def get_appointment(
    appointment_id: str,
    service: SchedulingService = Depends(get_scheduling_service),
):
    return await service.get_appointment(appointment_id)


@router.post("/appointments/{appointment_id}/cancel", response_model=CancellationResult)
async def cancel_appointment(
    appointment_id: str,
    body: CancelRequest | None = None,
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Cancel and offer the freed slot to the waitlist."""
    reason = body.reason if body else None
    return await service.cancel_appointment(appointment_id, reason)


@router.post("/appointments/{appointment_id}/complete", response_model=Appointment)
async def complete_appointment(
    appointment_id: str,
    service: SchedulingService = Depends(get_scheduling_service),
):
    return await service.complete_appointment(appointment_id)


@router.post("/appointments/{appointment_id}/no-show", response_model=Appointment)
async def mark_no_show(
    appointment_id: str,
    service: SchedulingService = Depends(get_scheduling_service),
):
    return await service.mark_no_show(appointment_id)


@router.post("/appointments/{appointment_id}/reschedule", response_model=RescheduleResult)
async def reschedule_appointment(
    appointment_id: str,
    body: SlotRequest,
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Move a scheduled or missed appointment to a new slot."""
    return await service.reschedule_appointment(appointment_id, body.start, body.end)


@router.get(
    "/appointments/{appointment_id}/reschedule-slots",
    response_model=list[CandidateSlot],
)
async def suggest_reschedule_slots(
    appointment_id: str,
    limit: int = Query(5, gt=0),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    service: SchedulingService = Depends(get_scheduling_service),
):
    return await service.suggest_reschedule_slots(appointment_id, limit, date_from, date_to)


@router.get("/appointments/{appointment_id}/follow-up", response_model=FollowUpSuggestion)
async def suggest_follow_up_slots(
    appointment_id: str,
    interval: int = Query(2, gt=0),
    unit: FollowUpUnit = Query(FollowUpUnit.WEEKS),
    duration_minutes: Optional[int] = Query(None, gt=0),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Free slots on the suggested follow-up day."""
    return await service.suggest_follow_up_slots(
        appointment_id, interval, unit, duration_minutes
    )


# ---------------------------------------------------------------------------
# Waitlist
# ---------------------------------------------------------------------------

@router.post("/waitlist", response_model=WaitlistEntry, status_code=201)
async def add_to_waitlist(
    body: WaitlistCreate,
    service: SchedulingService = Depends(get_scheduling_service),
):
    preferences = WaitlistPreferences(
        preferred_weekdays=body.preferred_weekdays,
        preferred_time_band=body.preferred_time_band,
    )
    return await service.add_to_waitlist(
        body.provider_id,
        body.patient_id,
        priority=body.priority,
        preferences=preferences,
        duration_minutes=body.duration_minutes,
        notes=body.notes,
    )


@router.get("/waitlist", response_model=list[WaitlistEntry])
async def list_waitlist(
    provider_id: str = Query(...),
    status: Optional[WaitlistStatus] = Query(None),
    priority: Optional[Priority] = Query(None),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Waitlist in queue order (priority, then oldest first)."""
    return await service.list_waitlist(provider_id, status, priority)


@router.get("/waitlist/{entry_id}", response_model=WaitlistEntry)
async def get_waitlist_entry(
    entry_id: str,
    service: SchedulingService = Depends(get_scheduling_service),
):
    return await service.get_waitlist_entry(entry_id)


@router.get("/waitlist/{entry_id}/slots", response_model=list[CandidateSlot])
async def get_waitlist_entry_slots(
    entry_id: str,
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    ignore_preferences: bool = Query(False),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Slots matching the entry's preferences, or all slots when relaxed."""
    if ignore_preferences:
        return await service.get_all_slots_ignoring_preferences(entry_id, date_from, date_to)
    return await service.get_matching_slots_for_waitlist_entry(entry_id, date_from, date_to)


@router.post("/waitlist/{entry_id}/assign", response_model=Appointment, status_code=201)
async def assign_waitlist_entry_to_slot(
    entry_id: str,
    body: SlotRequest,
    service: SchedulingService = Depends(get_scheduling_service),
):
    return await service.assign_waitlist_entry_to_slot(entry_id, body.start, body.end)


@router.patch("/waitlist/{entry_id}/priority", response_model=WaitlistEntry)
async def set_waitlist_priority(
    entry_id: str,
    body: PriorityUpdate,
    service: SchedulingService = Depends(get_scheduling_service),
):
    return await service.set_waitlist_priority(entry_id, body.priority)


@router.post("/waitlist/{entry_id}/notify", response_model=WaitlistEntry)
async def notify_waitlist_entry(
    entry_id: str,
    service: SchedulingService = Depends(get_scheduling_service),
):
    return await service.notify_waitlist_entry(entry_id)


@router.post("/waitlist/{entry_id}/expire", response_model=WaitlistEntry)
async def expire_waitlist_entry(
    entry_id: str,
    service: SchedulingService = Depends(get_scheduling_service),
):
    return await service.expire_waitlist_entry(entry_id)


@router.delete("/waitlist/{entry_id}", status_code=204)
async def remove_waitlist_entry(
    entry_id: str,
    service: SchedulingService = Depends(get_scheduling_service),
):
    await service.remove_waitlist_entry(entry_id)
    return Response(status_code=204)
