"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - Reminder ids are uuid strings generated in Python, no sequences.
  - Booking / quote ids are integers (users type "cancelar #12").
  - SQLite returns naive datetimes; `as_utc` re-attaches UTC on read.
"""
from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Date, DateTime, Text, Numeric,
    Index, JSON,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from models.schemas import (
    Session, FlowName, ReminderJob, ReminderStatus, Customer,
    Booking, BookingStatus, AppointmentType, Quote, QuoteStatus,
    EmergencyTicket, TicketStatus,
)


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Reminders — the durable job registry
# ──────────────────────────────────────────────────────────────

class ReminderRow(Base):
    __tablename__ = "reminders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    recipient: Mapped[str] = mapped_column(String(64), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    scheduled_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(32), default=ReminderStatus.PENDING.value)
    kind: Mapped[str] = mapped_column(String(32), default="reminder")
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str] = mapped_column(Text, default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_reminders_status", "status"),
        Index("ix_reminders_recipient", "recipient"),
    )

    def to_model(self) -> ReminderJob:
        return ReminderJob(
            id=self.id, recipient=self.recipient, message=self.message,
            scheduled_time=as_utc(self.scheduled_time),
            status=ReminderStatus(self.status), kind=self.kind,
            attempts=self.attempts or 0,
            next_attempt_at=as_utc(self.next_attempt_at),
            last_error=self.last_error or "",
            created_at=as_utc(self.created_at), updated_at=as_utc(self.updated_at),
        )

    @classmethod
    def from_model(cls, job: ReminderJob) -> ReminderRow:
        return cls(
            id=job.id, recipient=job.recipient, message=job.message,
            scheduled_time=job.scheduled_time, status=job.status.value,
            kind=job.kind, attempts=job.attempts,
            next_attempt_at=job.next_attempt_at, last_error=job.last_error,
            created_at=job.created_at, updated_at=job.updated_at,
        )


# ──────────────────────────────────────────────────────────────
#  Sessions (optional durable conversation state)
# ──────────────────────────────────────────────────────────────

class SessionRow(Base):
    __tablename__ = "sessions"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    current_flow: Mapped[str] = mapped_column(String(32), nullable=False)
    stage: Mapped[str] = mapped_column(String(64), nullable=False)
    data: Mapped[Any] = mapped_column(JSON, default=dict)
    last_activity: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def to_model(self) -> Session:
        return Session(
            user_id=self.user_id, current_flow=FlowName(self.current_flow),
            stage=self.stage, data=self.data or {},
            last_activity=as_utc(self.last_activity), created_at=as_utc(self.created_at),
        )


# ──────────────────────────────────────────────────────────────
#  Customers
# ──────────────────────────────────────────────────────────────

class CustomerRow(Base):
    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    phone: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(256), default="")
    email: Mapped[str] = mapped_column(String(256), default="")
    address: Mapped[str] = mapped_column(String(512), default="")
    total_services: Mapped[int] = mapped_column(Integer, default=0)
    last_contact: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def to_model(self) -> Customer:
        return Customer(
            id=self.id, phone=self.phone, name=self.name or "",
            email=self.email or "", address=self.address or "",
            total_services=self.total_services or 0,
            last_contact=as_utc(self.last_contact), created_at=as_utc(self.created_at),
        )


# ──────────────────────────────────────────────────────────────
#  Bookings
# ──────────────────────────────────────────────────────────────

class BookingRow(Base):
    __tablename__ = "bookings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    customer_name: Mapped[str] = mapped_column(String(256), default="")
    service: Mapped[str] = mapped_column(String(128), nullable=False)
    appointment_type: Mapped[str] = mapped_column(String(32), nullable=False)
    address: Mapped[str] = mapped_column(String(512), default="")
    day: Mapped[date] = mapped_column(Date, nullable=False)
    period: Mapped[str] = mapped_column(String(16), nullable=False)
    start_time: Mapped[str] = mapped_column(String(5), nullable=False)
    end_time: Mapped[str] = mapped_column(String(5), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=BookingStatus.SCHEDULED.value)
    reminder_ids: Mapped[Any] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_bookings_slot", "day", "status"),
    )

    def to_model(self) -> Booking:
        return Booking(
            id=self.id, user_id=self.user_id, customer_name=self.customer_name or "",
            service=self.service, appointment_type=AppointmentType(self.appointment_type),
            address=self.address or "", day=self.day, period=self.period,
            start_time=self.start_time, end_time=self.end_time,
            status=BookingStatus(self.status), reminder_ids=self.reminder_ids or [],
            created_at=as_utc(self.created_at),
        )


# ──────────────────────────────────────────────────────────────
#  Quotes
# ──────────────────────────────────────────────────────────────

class QuoteRow(Base):
    __tablename__ = "quotes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    customer_name: Mapped[str] = mapped_column(String(256), default="")
    email: Mapped[str] = mapped_column(String(256), default="")
    service_id: Mapped[int] = mapped_column(Integer, nullable=False)
    service_name: Mapped[str] = mapped_column(String(128), nullable=False)
    urgency: Mapped[str] = mapped_column(String(16), default="normal")
    answers: Mapped[Any] = mapped_column(JSON, default=list)
    base_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    urgency_factor: Mapped[Decimal] = mapped_column(Numeric(4, 2), default=Decimal("1.00"))
    estimate: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=QuoteStatus.DRAFT.value)
    rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    feedback: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def to_model(self) -> Quote:
        return Quote(
            id=self.id, user_id=self.user_id, customer_name=self.customer_name or "",
            email=self.email or "", service_id=self.service_id,
            service_name=self.service_name, urgency=self.urgency,
            answers=self.answers or [], base_price=self.base_price,
            urgency_factor=self.urgency_factor, estimate=self.estimate,
            status=QuoteStatus(self.status), rating=self.rating,
            feedback=self.feedback or "", created_at=as_utc(self.created_at),
        )


# ──────────────────────────────────────────────────────────────
#  Emergency tickets
# ──────────────────────────────────────────────────────────────

class TicketRow(Base):
    __tablename__ = "emergency_tickets"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    emergency_type: Mapped[str] = mapped_column(String(64), nullable=False)
    team: Mapped[str] = mapped_column(String(64), nullable=False)
    priority: Mapped[str] = mapped_column(String(16), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    phone: Mapped[str] = mapped_column(String(32), default="")
    name: Mapped[str] = mapped_column(String(256), default="")
    status: Mapped[str] = mapped_column(String(16), default=TicketStatus.OPEN.value)
    escalation_id: Mapped[str] = mapped_column(String(64), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def to_model(self) -> EmergencyTicket:
        return EmergencyTicket(
            id=self.id, user_id=self.user_id, emergency_type=self.emergency_type,
            team=self.team, priority=self.priority, description=self.description or "",
            phone=self.phone or "", name=self.name or "",
            status=TicketStatus(self.status), escalation_id=self.escalation_id or "",
            created_at=as_utc(self.created_at),
        )
