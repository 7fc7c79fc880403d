"""
SQL stores — Portable SQLAlchemy queries for PostgreSQL, MySQL, SQLite.

Status changes on reminders are conditional UPDATEs
(`... WHERE id = :id AND status = 'pending'`), so the rowcount tells the
caller whether it won the transition.
"""
from __future__ import annotations

import structlog
from datetime import date, datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update, delete, func, and_

from database.models import (
    ReminderRow, SessionRow, CustomerRow, BookingRow, QuoteRow, TicketRow,
)
from database.session import Database
from database.store_base import (
    BaseReminderStore, BaseSessionBackend, BaseBookingStore, BaseRecordStore,
    SlotUnavailableError,
)
from models.schemas import (
    Session, ReminderJob, ReminderStatus, Customer, Booking, BookingStatus,
    Quote, EmergencyTicket, TicketStatus,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Reminders
# ──────────────────────────────────────────────────────────────

class SqlReminderStore(BaseReminderStore):

    def __init__(self, db: Database):
        self.db = db

    async def insert(self, job: ReminderJob) -> ReminderJob:
        async with self.db.session() as s:
            s.add(ReminderRow.from_model(job))
        return job

    async def get(self, job_id: str) -> Optional[ReminderJob]:
        async with self.db.session() as s:
            row = await s.get(ReminderRow, job_id)
            return row.to_model() if row else None

    async def list_pending(self) -> list[ReminderJob]:
        async with self.db.session() as s:
            stmt = (select(ReminderRow)
                    .where(ReminderRow.status == ReminderStatus.PENDING.value)
                    .order_by(ReminderRow.scheduled_time))
            result = await s.execute(stmt)
            return [row.to_model() for row in result.scalars()]

    async def list_for_recipient(self, recipient: str) -> list[ReminderJob]:
        async with self.db.session() as s:
            stmt = (select(ReminderRow)
                    .where(ReminderRow.recipient == recipient)
                    .order_by(ReminderRow.scheduled_time.desc()))
            result = await s.execute(stmt)
            return [row.to_model() for row in result.scalars()]

    async def transition(self, job_id: str, status: ReminderStatus, **fields: Any) -> bool:
        async with self.db.session() as s:
            stmt = (update(ReminderRow)
                    .where(and_(ReminderRow.id == job_id,
                                ReminderRow.status == ReminderStatus.PENDING.value))
                    .values(status=status.value, updated_at=_utcnow(), **fields))
            result = await s.execute(stmt)
            return result.rowcount > 0

    async def record_retry(self, job_id: str, attempts: int,
                           next_attempt_at: datetime, last_error: str) -> bool:
        async with self.db.session() as s:
            stmt = (update(ReminderRow)
                    .where(and_(ReminderRow.id == job_id,
                                ReminderRow.status == ReminderStatus.PENDING.value))
                    .values(attempts=attempts, next_attempt_at=next_attempt_at,
                            last_error=last_error, updated_at=_utcnow()))
            result = await s.execute(stmt)
            return result.rowcount > 0

    async def count_by_status(self) -> dict[str, int]:
        async with self.db.session() as s:
            stmt = select(ReminderRow.status, func.count()).group_by(ReminderRow.status)
            result = await s.execute(stmt)
            return {status: count for status, count in result.all()}


# ──────────────────────────────────────────────────────────────
#  Sessions
# ──────────────────────────────────────────────────────────────

class SqlSessionBackend(BaseSessionBackend):

    def __init__(self, db: Database):
        self.db = db

    async def save(self, session: Session) -> None:
        async with self.db.session() as s:
            row = await s.get(SessionRow, session.user_id)
            if row is None:
                row = SessionRow(user_id=session.user_id, created_at=session.created_at)
                s.add(row)
            row.current_flow = session.current_flow.value
            row.stage = session.stage
            row.data = session.model_dump(mode="json")["data"]
            row.last_activity = session.last_activity

    async def delete(self, user_id: str) -> None:
        async with self.db.session() as s:
            await s.execute(delete(SessionRow).where(SessionRow.user_id == user_id))

    async def load_all(self) -> list[Session]:
        async with self.db.session() as s:
            result = await s.execute(select(SessionRow))
            return [row.to_model() for row in result.scalars()]


# ──────────────────────────────────────────────────────────────
#  Bookings
# ──────────────────────────────────────────────────────────────

def _overlap_clause(day: date, start_time: str, end_time: str):
    return and_(
        BookingRow.day == day,
        BookingRow.status != BookingStatus.CANCELLED.value,
        BookingRow.start_time < end_time,
        BookingRow.end_time > start_time,
    )


class SqlBookingStore(BaseBookingStore):

    def __init__(self, db: Database):
        super().__init__()
        self.db = db

    async def _count_and_insert(self, booking: Booking, capacity: int) -> Booking:
        # count and insert share one transaction
        async with self.db.session() as s:
            stmt = select(func.count()).select_from(BookingRow).where(
                _overlap_clause(booking.day, booking.start_time, booking.end_time)
            )
            existing = (await s.execute(stmt)).scalar_one()
            if existing >= capacity:
                raise SlotUnavailableError(booking.day, booking.start_time, booking.end_time,
                                           existing, capacity)
            row = BookingRow(
                user_id=booking.user_id, customer_name=booking.customer_name,
                service=booking.service, appointment_type=booking.appointment_type.value,
                address=booking.address, day=booking.day, period=booking.period,
                start_time=booking.start_time, end_time=booking.end_time,
                status=booking.status.value, reminder_ids=list(booking.reminder_ids),
                created_at=booking.created_at,
            )
            s.add(row)
            await s.flush()
            stored = row.to_model()
        logger.info("booking_created", booking_id=stored.id, day=stored.day.isoformat(),
                    period=stored.period, slot_usage=existing + 1, capacity=capacity)
        return stored

    async def count_overlapping(self, day: date, start_time: str, end_time: str) -> int:
        async with self.db.session() as s:
            stmt = select(func.count()).select_from(BookingRow).where(
                _overlap_clause(day, start_time, end_time)
            )
            return (await s.execute(stmt)).scalar_one()

    async def get(self, booking_id: int) -> Optional[Booking]:
        async with self.db.session() as s:
            row = await s.get(BookingRow, booking_id)
            return row.to_model() if row else None

    async def list_for_user(self, user_id: str, active_only: bool = True) -> list[Booking]:
        async with self.db.session() as s:
            stmt = select(BookingRow).where(BookingRow.user_id == user_id)
            if active_only:
                stmt = stmt.where(BookingRow.status == BookingStatus.SCHEDULED.value)
            stmt = stmt.order_by(BookingRow.day, BookingRow.start_time)
            result = await s.execute(stmt)
            return [row.to_model() for row in result.scalars()]

    async def set_status(self, booking_id: int, status: BookingStatus) -> Optional[Booking]:
        async with self.db.session() as s:
            row = await s.get(BookingRow, booking_id)
            if row is None:
                return None
            row.status = status.value
            return row.to_model()

    async def set_reminders(self, booking_id: int, reminder_ids: list[str]) -> None:
        async with self.db.session() as s:
            row = await s.get(BookingRow, booking_id)
            if row is not None:
                row.reminder_ids = list(reminder_ids)


# ──────────────────────────────────────────────────────────────
#  Business records
# ──────────────────────────────────────────────────────────────

class SqlRecordStore(BaseRecordStore):

    def __init__(self, db: Database):
        self.db = db

    # ── Customers ─────────────────────────────────────────

    async def get_customer_by_phone(self, phone: str) -> Optional[Customer]:
        async with self.db.session() as s:
            result = await s.execute(select(CustomerRow).where(CustomerRow.phone == phone))
            row = result.scalar_one_or_none()
            return row.to_model() if row else None

    async def upsert_customer(self, phone: str, **fields: Any) -> Customer:
        async with self.db.session() as s:
            result = await s.execute(select(CustomerRow).where(CustomerRow.phone == phone))
            row = result.scalar_one_or_none()
            if row is None:
                row = CustomerRow(phone=phone)
                s.add(row)
                logger.info("customer_created", phone=phone)
            for key, value in fields.items():
                if value not in (None, ""):
                    setattr(row, key, value)
            row.last_contact = _utcnow()
            await s.flush()
            return row.to_model()

    # ── Quotes ────────────────────────────────────────────

    async def create_quote(self, quote: Quote) -> Quote:
        async with self.db.session() as s:
            row = QuoteRow(
                user_id=quote.user_id, customer_name=quote.customer_name,
                email=quote.email, service_id=quote.service_id,
                service_name=quote.service_name, urgency=quote.urgency,
                answers=list(quote.answers), base_price=quote.base_price,
                urgency_factor=quote.urgency_factor, estimate=quote.estimate,
                status=quote.status.value, created_at=quote.created_at,
            )
            s.add(row)
            await s.flush()
            return row.to_model()

    async def get_quote(self, quote_id: int) -> Optional[Quote]:
        async with self.db.session() as s:
            row = await s.get(QuoteRow, quote_id)
            return row.to_model() if row else None

    async def update_quote(self, quote_id: int, **fields: Any) -> Optional[Quote]:
        async with self.db.session() as s:
            row = await s.get(QuoteRow, quote_id)
            if row is None:
                return None
            for key, value in fields.items():
                if hasattr(value, "value"):
                    value = value.value
                setattr(row, key, value)
            await s.flush()
            return row.to_model()

    # ── Emergency tickets ─────────────────────────────────

    async def create_ticket(self, ticket: EmergencyTicket) -> EmergencyTicket:
        async with self.db.session() as s:
            s.add(TicketRow(
                id=ticket.id, user_id=ticket.user_id,
                emergency_type=ticket.emergency_type, team=ticket.team,
                priority=ticket.priority, description=ticket.description,
                phone=ticket.phone, name=ticket.name,
                status=ticket.status.value, escalation_id=ticket.escalation_id,
                created_at=ticket.created_at,
            ))
        return ticket

    async def get_ticket(self, ticket_id: str) -> Optional[EmergencyTicket]:
        async with self.db.session() as s:
            row = await s.get(TicketRow, ticket_id)
            return row.to_model() if row else None

    async def set_ticket_status(self, ticket_id: str, status: TicketStatus) -> None:
        async with self.db.session() as s:
            await s.execute(
                update(TicketRow).where(TicketRow.id == ticket_id).values(status=status.value)
            )
