"""
In-memory stores — Dict-backed stores for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with the SQL stores
  - Safe under asyncio (single event loop, no awaits inside mutations)
  - All data lost on process restart

Returned models are copies, so callers never mutate stored state by accident.
"""
from __future__ import annotations

import itertools
import structlog
from datetime import date, datetime, timezone
from typing import Any, Optional

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

class InMemoryReminderStore(BaseReminderStore):

    def __init__(self):
        self._jobs: dict[str, ReminderJob] = {}
        logger.info("inmemory_store_initialized", store="reminders")

    async def insert(self, job: ReminderJob) -> ReminderJob:
        self._jobs[job.id] = job.model_copy(deep=True)
        return job

    async def get(self, job_id: str) -> Optional[ReminderJob]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def list_pending(self) -> list[ReminderJob]:
        return [j.model_copy(deep=True) for j in self._jobs.values()
                if j.status == ReminderStatus.PENDING]

    async def list_for_recipient(self, recipient: str) -> list[ReminderJob]:
        jobs = [j.model_copy(deep=True) for j in self._jobs.values() if j.recipient == recipient]
        return sorted(jobs, key=lambda j: j.scheduled_time, reverse=True)

    async def transition(self, job_id: str, status: ReminderStatus, **fields: Any) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.status.is_terminal:
            return False
        job.status = status
        for key, value in fields.items():
            setattr(job, key, value)
        job.updated_at = _utcnow()
        return True

    async def record_retry(self, job_id: str, attempts: int,
                           next_attempt_at: datetime, last_error: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.status.is_terminal:
            return False
        job.attempts = attempts
        job.next_attempt_at = next_attempt_at
        job.last_error = last_error
        job.updated_at = _utcnow()
        return True

    async def count_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for job in self._jobs.values():
            counts[job.status.value] = counts.get(job.status.value, 0) + 1
        return counts


# ──────────────────────────────────────────────────────────────
#  Sessions
# ──────────────────────────────────────────────────────────────

class InMemorySessionBackend(BaseSessionBackend):
    """Mirror that survives SessionStore re-creation (not process restarts)."""

    def __init__(self):
        self._rows: dict[str, Session] = {}

    async def save(self, session: Session) -> None:
        self._rows[session.user_id] = session.model_copy(deep=True)

    async def delete(self, user_id: str) -> None:
        self._rows.pop(user_id, None)

    async def load_all(self) -> list[Session]:
        return [s.model_copy(deep=True) for s in self._rows.values()]


# ──────────────────────────────────────────────────────────────
#  Bookings
# ──────────────────────────────────────────────────────────────

class InMemoryBookingStore(BaseBookingStore):

    def __init__(self):
        super().__init__()
        self._bookings: dict[int, Booking] = {}
        self._ids = itertools.count(1)

    async def _count_and_insert(self, booking: Booking, capacity: int) -> Booking:
        existing = self._overlapping(booking.day, booking.start_time, booking.end_time)
        if existing >= capacity:
            raise SlotUnavailableError(booking.day, booking.start_time, booking.end_time,
                                       existing, capacity)
        stored = booking.model_copy(deep=True, update={"id": next(self._ids)})
        self._bookings[stored.id] = stored
        logger.info("booking_created", booking_id=stored.id, day=stored.day.isoformat(),
                    period=stored.period, slot_usage=existing + 1, capacity=capacity)
        return stored.model_copy(deep=True)

    def _overlapping(self, day: date, start_time: str, end_time: str) -> int:
        return sum(
            1 for b in self._bookings.values()
            if b.status != BookingStatus.CANCELLED and b.overlaps(day, start_time, end_time)
        )

    async def count_overlapping(self, day: date, start_time: str, end_time: str) -> int:
        return self._overlapping(day, start_time, end_time)

    async def get(self, booking_id: int) -> Optional[Booking]:
        booking = self._bookings.get(booking_id)
        return booking.model_copy(deep=True) if booking else None

    async def list_for_user(self, user_id: str, active_only: bool = True) -> list[Booking]:
        bookings = [
            b.model_copy(deep=True) for b in self._bookings.values()
            if b.user_id == user_id
            and (not active_only or b.status == BookingStatus.SCHEDULED)
        ]
        return sorted(bookings, key=lambda b: (b.day, b.start_time))

    async def set_status(self, booking_id: int, status: BookingStatus) -> Optional[Booking]:
        booking = self._bookings.get(booking_id)
        if booking is None:
            return None
        booking.status = status
        return booking.model_copy(deep=True)

    async def set_reminders(self, booking_id: int, reminder_ids: list[str]) -> None:
        booking = self._bookings.get(booking_id)
        if booking is not None:
            booking.reminder_ids = list(reminder_ids)


# ──────────────────────────────────────────────────────────────
#  Business records
# ──────────────────────────────────────────────────────────────

class InMemoryRecordStore(BaseRecordStore):

    def __init__(self):
        self._customers: dict[str, Customer] = {}          # phone → customer
        self._quotes: dict[int, Quote] = {}
        self._tickets: dict[str, EmergencyTicket] = {}
        self._quote_ids = itertools.count(1)

    # ── Customers ─────────────────────────────────────────

    async def get_customer_by_phone(self, phone: str) -> Optional[Customer]:
        customer = self._customers.get(phone)
        return customer.model_copy(deep=True) if customer else None

    async def upsert_customer(self, phone: str, **fields: Any) -> Customer:
        customer = self._customers.get(phone)
        if customer is None:
            customer = Customer(phone=phone)
            self._customers[phone] = customer
            logger.info("customer_created", phone=phone)
        for key, value in fields.items():
            if value not in (None, ""):
                setattr(customer, key, value)
        customer.last_contact = _utcnow()
        return customer.model_copy(deep=True)

    # ── Quotes ────────────────────────────────────────────

    async def create_quote(self, quote: Quote) -> Quote:
        stored = quote.model_copy(deep=True, update={"id": next(self._quote_ids)})
        self._quotes[stored.id] = stored
        return stored.model_copy(deep=True)

    async def get_quote(self, quote_id: int) -> Optional[Quote]:
        quote = self._quotes.get(quote_id)
        return quote.model_copy(deep=True) if quote else None

    async def update_quote(self, quote_id: int, **fields: Any) -> Optional[Quote]:
        quote = self._quotes.get(quote_id)
        if quote is None:
            return None
        for key, value in fields.items():
            setattr(quote, key, value)
        return quote.model_copy(deep=True)

    # ── Emergency tickets ─────────────────────────────────

    async def create_ticket(self, ticket: EmergencyTicket) -> EmergencyTicket:
        self._tickets[ticket.id] = ticket.model_copy(deep=True)
        return ticket

    async def get_ticket(self, ticket_id: str) -> Optional[EmergencyTicket]:
        ticket = self._tickets.get(ticket_id)
        return ticket.model_copy(deep=True) if ticket else None

    async def set_ticket_status(self, ticket_id: str, status: TicketStatus) -> None:
        ticket = self._tickets.get(ticket_id)
        if ticket is not None:
            ticket.status = status
