"""SQLAlchemy 2.0 async models for the scheduling store."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import JSON


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class ProviderDB(Base):
    __tablename__ = "providers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), default="")
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    slot_granularity_minutes: Mapped[int | None] = mapped_column(Integer)
    # {"hours": [...], "blocks": [...]} as produced by WeeklyAvailability
    availability: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class AppointmentDB(Base):
    __tablename__ = "appointments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    provider_id: Mapped[str] = mapped_column(String(64), ForeignKey("providers.id", ondelete="CASCADE"), nullable=False)
    patient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    # Provider-local wall-clock times
    start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="scheduled")
    waitlist_entry_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("waitlist_entries.id", ondelete="SET NULL"))
    cancel_reason: Mapped[str | None] = mapped_column(Text)
    rescheduled_from: Mapped[str | None] = mapped_column(String(36), ForeignKey("appointments.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_appointments_provider_start", "provider_id", "start"),
        Index("ix_appointments_patient_id", "patient_id"),
        Index("ix_appointments_status", "status"),
    )


class WaitlistEntryDB(Base):
    __tablename__ = "waitlist_entries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    provider_id: Mapped[str] = mapped_column(String(64), ForeignKey("providers.id", ondelete="CASCADE"), nullable=False)
    patient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    priority: Mapped[str] = mapped_column(String(10), default="medium")
    status: Mapped[str] = mapped_column(String(20), default="waiting")
    preferred_weekdays: Mapped[list | None] = mapped_column(JSON)
    preferred_time_band: Mapped[str | None] = mapped_column(String(20))
    duration_minutes: Mapped[int] = mapped_column(Integer, default=30)
    notes: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    notified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    offered_start: Mapped[datetime | None] = mapped_column(DateTime)
    offered_end: Mapped[datetime | None] = mapped_column(DateTime)

    __table_args__ = (
        Index("ix_waitlist_provider_status", "provider_id", "status"),
        Index("ix_waitlist_patient_id", "patient_id"),
    )
