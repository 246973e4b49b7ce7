"""CLI commands for careslot."""

import asyncio
from datetime import datetime, time, timedelta
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from careslot.config import get_settings
from careslot.scheduling.errors import SchedulingError, StorageUnavailable
from careslot.scheduling.models import (
    FollowUpUnit,
    Priority,
    Provider,
    TimeBand,
    TimeBlock,
    WaitlistPreferences,
    WaitlistStatus,
    Weekday,
    WeeklyAvailability,
    WORKDAYS,
)

app = typer.Typer(
    name="careslot",
    help="Appointment availability, booking and waitlist management",
    add_completion=False,
)
console = Console()

DATE_FORMATS = ["%Y-%m-%d"]
DATETIME_FORMATS = ["%Y-%m-%dT%H:%M", "%Y-%m-%d %H:%M"]


def get_service():
    """Get a scheduling service bound to the configured database."""
    from careslot.core.database import get_session_factory
    from careslot.core.repository import SqlSchedulingRepository
    from careslot.observability import get_event_logger
    from careslot.scheduling.service import SchedulingService

    return SchedulingService(
        SqlSchedulingRepository(get_session_factory()),
        event_logger=get_event_logger(),
    )


def _run(coro):
    """Run a service call, turning scheduling errors into a clean exit."""
    try:
        return asyncio.run(coro)
    except StorageUnavailable as e:
        console.print(f"[red]{e.message}[/red]")
        console.print("[dim]Run `careslot init-db` if the tables do not exist yet.[/dim]")
        raise typer.Exit(1)
    except SchedulingError as e:
        console.print(f"[red]{e.code}: {e.message}[/red]")
        raise typer.Exit(1)


def _parse_time(value: str) -> time:
    try:
        return time.fromisoformat(value)
    except ValueError:
        console.print(f"[red]Invalid time: {value}. Use HH:MM[/red]")
        raise typer.Exit(1)


def _parse_weekdays(value: Optional[str]) -> Optional[set[Weekday]]:
    if not value:
        return None
    try:
        return {Weekday(day.strip().lower()) for day in value.split(",")}
    except ValueError:
        console.print(f"[red]Invalid weekdays: {value}[/red]")
        raise typer.Exit(1)


def _slot_table(title: str, slots) -> Table:
    table = Table(title=title)
    table.add_column("Day")
    table.add_column("Start")
    table.add_column("End")
    for slot in slots:
        table.add_row(
            f"{slot.start:%a %Y-%m-%d}",
            f"{slot.start:%H:%M}",
            f"{slot.end:%H:%M}",
        )
    return table


@app.command()
def version():
    """Show version information."""
    from careslot import __version__

    console.print(f"careslot v{__version__}")


@app.command()
def init_db():
    """Create the scheduling tables."""
    from careslot.core.database import init_db as create_tables

    asyncio.run(create_tables())
    console.print(f"[green]Database ready:[/green] {get_settings().database_url}")


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

@app.command()
def set_hours(
    provider_id: str = typer.Argument(..., help="Provider ID"),
    start: str = typer.Option("09:00", "--start", help="Opening time (HH:MM)"),
    end: str = typer.Option("17:00", "--end", help="Closing time (HH:MM)"),
    days: Optional[str] = typer.Option(
        None, "--days", "-d", help="Comma-separated weekdays (default: monday-friday)"
    ),
    name: str = typer.Option("", "--name", "-n", help="Provider display name"),
    timezone: str = typer.Option("UTC", "--tz", help="IANA timezone"),
    granularity: Optional[int] = typer.Option(
        None, "--granularity", "-g", help="Minutes between slot starts"
    ),
):
    """Register a provider with the same hours on each working day."""
    weekdays = _parse_weekdays(days) or set(WORKDAYS)
    try:
        availability = WeeklyAvailability.uniform(
            _parse_time(start),
            _parse_time(end),
            weekdays=tuple(sorted(weekdays, key=lambda d: d.index)),
        )
        provider = Provider(
            id=provider_id,
            name=name,
            timezone=timezone,
            slot_granularity_minutes=granularity,
            availability=availability,
        )
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    service = get_service()
    _run(service.register_provider(provider))
    console.print(
        f"[green]Saved hours for {provider_id}:[/green] {start}-{end} on "
        + ", ".join(d.value for d in sorted(weekdays, key=lambda d: d.index))
    )


@app.command()
def block(
    provider_id: str = typer.Argument(..., help="Provider ID"),
    day: str = typer.Option(..., "--day", "-d", help="Weekday"),
    start: str = typer.Option(..., "--start", help="Block start (HH:MM)"),
    end: str = typer.Option(..., "--end", help="Block end (HH:MM)"),
    reason: Optional[str] = typer.Option(None, "--reason", "-r", help="Why the time is blocked"),
):
    """Block a recurring weekly period (lunch, admin time)."""
    weekday = next(iter(_parse_weekdays(day)))
    try:
        time_block = TimeBlock(
            weekday=weekday, start=_parse_time(start), end=_parse_time(end), reason=reason
        )
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    async def add_block():
        provider = await service.get_provider(provider_id)
        availability = provider.availability.model_copy(
            update={"blocks": [*provider.availability.blocks, time_block]}
        )
        return await service.set_weekly_availability(provider_id, availability)

    service = get_service()
    _run(add_block())
    console.print(f"[green]Blocked {weekday.value} {start}-{end} for {provider_id}[/green]")


@app.command()
def slots(
    provider_id: str = typer.Argument(..., help="Provider ID"),
    date_from: datetime = typer.Option(..., "--from", formats=DATE_FORMATS, help="First day"),
    date_to: datetime = typer.Option(..., "--to", formats=DATE_FORMATS, help="Last day"),
    duration: int = typer.Option(30, "--duration", help="Appointment length in minutes"),
    granularity: Optional[int] = typer.Option(
        None, "--granularity", "-g", help="Minutes between slot starts"
    ),
):
    """List free slots for a provider."""
    service = get_service()
    found = _run(
        service.get_available_slots(
            provider_id, date_from.date(), date_to.date(), duration, granularity
        )
    )
    if not found:
        console.print("[yellow]No free slots in that range.[/yellow]")
        return
    console.print(_slot_table(f"Free slots for {provider_id} ({len(found)})", found))


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------

@app.command()
def book(
    provider_id: str = typer.Argument(..., help="Provider ID"),
    patient_id: str = typer.Argument(..., help="Patient ID"),
    start: datetime = typer.Option(..., "--start", "-s", formats=DATETIME_FORMATS),
    duration: int = typer.Option(30, "--duration", help="Appointment length in minutes"),
):
    """Book a slot directly."""
    service = get_service()
    appointment = _run(
        service.book_slot(provider_id, patient_id, start, start + timedelta(minutes=duration))
    )
    console.print(f"[green]Booked[/green] {appointment.id} at {appointment.start:%Y-%m-%d %H:%M}")


@app.command()
def appointments(
    provider_id: str = typer.Argument(..., help="Provider ID"),
    date_from: datetime = typer.Option(..., "--from", formats=DATE_FORMATS, help="First day"),
    date_to: datetime = typer.Option(..., "--to", formats=DATE_FORMATS, help="Last day"),
):
    """List a provider's appointments."""
    service = get_service()
    found = _run(service.list_appointments(provider_id, date_from.date(), date_to.date()))

    table = Table(title=f"Appointments for {provider_id}")
    table.add_column("ID")
    table.add_column("Patient")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Status")
    for appt in found:
        table.add_row(
            appt.id[:8],
            appt.patient_id,
            f"{appt.start:%Y-%m-%d %H:%M}",
            f"{appt.end:%H:%M}",
            appt.status.value,
        )
    console.print(table)


@app.command()
def cancel(
    appointment_id: str = typer.Argument(..., help="Appointment ID"),
    reason: Optional[str] = typer.Option(None, "--reason", "-r", help="Cancellation reason"),
):
    """Cancel an appointment and offer the slot to the waitlist."""
    service = get_service()
    result = _run(service.cancel_appointment(appointment_id, reason))
    console.print(f"[green]Cancelled[/green] {result.appointment.id}")
    if result.offer.entry is not None:
        console.print(
            f"Slot offered to patient {result.offer.entry.patient_id} "
            f"({result.offer.entry.priority.value})"
        )
    else:
        console.print("[dim]No matching waitlist entry.[/dim]")


@app.command()
def complete(appointment_id: str = typer.Argument(..., help="Appointment ID")):
    """Mark an appointment as completed."""
    service = get_service()
    appointment = _run(service.complete_appointment(appointment_id))
    console.print(f"[green]Completed[/green] {appointment.id}")


@app.command()
def no_show(appointment_id: str = typer.Argument(..., help="Appointment ID")):
    """Mark an appointment as a no-show."""
    service = get_service()
    appointment = _run(service.mark_no_show(appointment_id))
    console.print(f"[yellow]No-show[/yellow] {appointment.id}")


@app.command()
def reschedule(
    appointment_id: str = typer.Argument(..., help="Appointment ID"),
    start: datetime = typer.Option(..., "--start", "-s", formats=DATETIME_FORMATS),
    duration: int = typer.Option(30, "--duration", help="Appointment length in minutes"),
):
    """Move an appointment and offer the old slot to the waitlist."""
    service = get_service()
    result = _run(
        service.reschedule_appointment(
            appointment_id, start, start + timedelta(minutes=duration)
        )
    )
    console.print(
        f"[green]Rescheduled[/green] {result.previous.id} -> {result.appointment.id} "
        f"at {result.appointment.start:%Y-%m-%d %H:%M}"
    )
    if result.offer is not None and result.offer.entry is not None:
        console.print(
            f"Old slot offered to patient {result.offer.entry.patient_id} "
            f"({result.offer.entry.priority.value})"
        )


@app.command()
def reschedule_slots(
    appointment_id: str = typer.Argument(..., help="Appointment ID"),
    limit: int = typer.Option(5, "--limit", "-n", help="How many slots to suggest"),
):
    """Suggest free slots an appointment could move to."""
    service = get_service()
    found = _run(service.suggest_reschedule_slots(appointment_id, limit=limit))
    if not found:
        console.print("[yellow]No free slots in the lookahead window.[/yellow]")
        return
    console.print(_slot_table(f"Reschedule options for {appointment_id[:8]}", found))


@app.command()
def follow_up(
    appointment_id: str = typer.Argument(..., help="Appointment ID"),
    interval: int = typer.Option(2, "--interval", "-i", help="How many units after the visit"),
    unit: FollowUpUnit = typer.Option(FollowUpUnit.WEEKS, "--unit", "-u"),
    duration: Optional[int] = typer.Option(None, "--duration", help="Appointment length"),
):
    """Suggest follow-up slots a fixed interval after an appointment."""
    service = get_service()
    suggestion = _run(
        service.suggest_follow_up_slots(
            appointment_id, interval=interval, unit=unit, duration_minutes=duration
        )
    )
    if not suggestion.slots:
        console.print(f"[yellow]No free slots on {suggestion.suggested_date}.[/yellow]")
        return
    console.print(_slot_table(f"Follow-up on {suggestion.suggested_date}", suggestion.slots))


# ---------------------------------------------------------------------------
# Waitlist
# ---------------------------------------------------------------------------

@app.command()
def waitlist_add(
    provider_id: str = typer.Argument(..., help="Provider ID"),
    patient_id: str = typer.Argument(..., help="Patient ID"),
    priority: Priority = typer.Option(Priority.MEDIUM, "--priority", "-p"),
    days: Optional[str] = typer.Option(None, "--days", "-d", help="Preferred weekdays"),
    band: Optional[TimeBand] = typer.Option(None, "--band", "-b", help="Preferred time of day"),
    duration: Optional[int] = typer.Option(None, "--duration", help="Appointment length"),
    notes: Optional[str] = typer.Option(None, "--notes", help="Staff notes"),
):
    """Add a patient to a provider's waitlist."""
    service = get_service()
    preferences = WaitlistPreferences(
        preferred_weekdays=_parse_weekdays(days),
        preferred_time_band=band,
    )
    entry = _run(
        service.add_to_waitlist(
            provider_id,
            patient_id,
            priority=priority,
            preferences=preferences,
            duration_minutes=duration,
            notes=notes,
        )
    )
    console.print(f"[green]Waitlisted[/green] {entry.id} ({entry.priority.value})")


@app.command()
def waitlist(
    provider_id: str = typer.Argument(..., help="Provider ID"),
    status: Optional[WaitlistStatus] = typer.Option(None, "--status", "-s"),
    priority: Optional[Priority] = typer.Option(None, "--priority", "-p"),
):
    """Show a provider's waitlist in queue order."""
    service = get_service()
    entries = _run(service.list_waitlist(provider_id, status, priority))

    table = Table(title=f"Waitlist for {provider_id}")
    table.add_column("ID")
    table.add_column("Patient")
    table.add_column("Priority")
    table.add_column("Status")
    table.add_column("Days")
    table.add_column("Band")
    table.add_column("Added")
    for entry in entries:
        days = ", ".join(
            d.value[:3] for d in sorted(entry.preferred_weekdays or (), key=lambda d: d.index)
        )
        table.add_row(
            entry.id[:8],
            entry.patient_id,
            entry.priority.value,
            entry.status.value,
            days or "any",
            entry.preferred_time_band.value if entry.preferred_time_band else "any",
            f"{entry.created_at:%Y-%m-%d %H:%M}",
        )
    console.print(table)


@app.command()
def waitlist_slots(
    entry_id: str = typer.Argument(..., help="Waitlist entry ID"),
    show_all: bool = typer.Option(False, "--all", help="Ignore the patient's preferences"),
):
    """Show slots a waitlisted patient could be offered."""
    service = get_service()
    if show_all:
        found = _run(service.get_all_slots_ignoring_preferences(entry_id))
    else:
        found = _run(service.get_matching_slots_for_waitlist_entry(entry_id))
    if not found:
        console.print("[yellow]No slots found.[/yellow]")
        return
    console.print(_slot_table(f"Slots for entry {entry_id[:8]}", found))


@app.command()
def assign(
    entry_id: str = typer.Argument(..., help="Waitlist entry ID"),
    start: datetime = typer.Option(..., "--start", "-s", formats=DATETIME_FORMATS),
    duration: Optional[int] = typer.Option(
        None, "--duration", help="Appointment length (default: the entry's)"
    ),
):
    """Book a slot for a waitlisted patient."""

    async def assign_entry():
        entry = await service.get_waitlist_entry(entry_id)
        length = timedelta(minutes=duration or entry.duration_minutes)
        return await service.assign_waitlist_entry_to_slot(entry_id, start, start + length)

    service = get_service()
    appointment = _run(assign_entry())
    console.print(
        f"[green]Booked[/green] {appointment.id} for patient {appointment.patient_id} "
        f"at {appointment.start:%Y-%m-%d %H:%M}"
    )


@app.command()
def priority(
    entry_id: str = typer.Argument(..., help="Waitlist entry ID"),
    new_priority: Priority = typer.Argument(..., help="low, medium, high or urgent"),
):
    """Change a waitlist entry's priority."""
    service = get_service()
    entry = _run(service.set_waitlist_priority(entry_id, new_priority))
    console.print(f"[green]{entry.id[:8]} is now {entry.priority.value}[/green]")


@app.command()
def expire_lapsed(
    provider_id: str = typer.Argument(..., help="Provider ID"),
    ttl: Optional[int] = typer.Option(
        None, "--ttl", help="Offer lifetime in minutes (default: from settings)"
    ),
):
    """Expire waitlist offers nobody acted on."""
    service = get_service()
    offer_ttl = timedelta(minutes=ttl) if ttl else None
    expired = _run(service.expire_lapsed_offers(provider_id, offer_ttl))
    console.print(f"Expired {len(expired)} lapsed offers")


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", "-h", help="Host to bind"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to bind"),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload"),
):
    """Start the REST API server."""
    import uvicorn

    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port

    console.print(f"Starting careslot API server on {host}:{port}")
    uvicorn.run(
        "careslot.api.app:create_app",
        host=host,
        port=port,
        reload=reload,
        factory=True,
    )
