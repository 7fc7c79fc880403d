"""
Abstract stores — Interfaces for all storage backends.

Implementations:
  - Sql*Store       (PostgreSQL / MySQL / SQLite via SQLAlchemy), database/store.py
  - InMemory*Store  (dict-based, single-process, no persistence), database/store_memory.py

Stores are constructed explicitly (see database/store_factory.py) and injected
into the session store, the flows and the reminder scheduler; nothing here is
a module-level singleton.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Optional

from models.schemas import (
    Session, ReminderJob, ReminderStatus, Customer, Booking, BookingStatus,
    Quote, EmergencyTicket, TicketStatus,
)
from utils.locks import KeyedLocks


class SlotUnavailableError(Exception):
    """Raised when a booking would exceed the capacity of its slot."""

    def __init__(self, day: date, start_time: str, end_time: str, existing: int, capacity: int):
        self.day = day
        self.start_time = start_time
        self.end_time = end_time
        self.existing = existing
        self.capacity = capacity
        super().__init__(
            f"Slot {day.isoformat()} {start_time}-{end_time} is full ({existing}/{capacity})"
        )


# ──────────────────────────────────────────────────────────────
#  Reminders
# ──────────────────────────────────────────────────────────────

class BaseReminderStore(ABC):
    """
    Durable registry of reminder jobs.

    Status changes go through `transition`, which only moves a job out of
    PENDING. That conditional update is what keeps status monotonic when a
    cancellation races a dispatch.
    """

    @abstractmethod
    async def insert(self, job: ReminderJob) -> ReminderJob:
        ...

    @abstractmethod
    async def get(self, job_id: str) -> Optional[ReminderJob]:
        ...

    @abstractmethod
    async def list_pending(self) -> list[ReminderJob]:
        ...

    @abstractmethod
    async def list_for_recipient(self, recipient: str) -> list[ReminderJob]:
        """All jobs for a recipient, any status, most recent scheduled_time first."""
        ...

    @abstractmethod
    async def transition(self, job_id: str, status: ReminderStatus, **fields: Any) -> bool:
        """Move a PENDING job to `status`. Returns False if it was not pending."""
        ...

    @abstractmethod
    async def record_retry(self, job_id: str, attempts: int,
                           next_attempt_at: datetime, last_error: str) -> bool:
        """Persist a failed attempt on a job that stays PENDING."""
        ...

    @abstractmethod
    async def count_by_status(self) -> dict[str, int]:
        ...


# ──────────────────────────────────────────────────────────────
#  Sessions (durable mirror of the in-memory session store)
# ──────────────────────────────────────────────────────────────

class BaseSessionBackend(ABC):

    @abstractmethod
    async def save(self, session: Session) -> None:
        ...

    @abstractmethod
    async def delete(self, user_id: str) -> None:
        ...

    @abstractmethod
    async def load_all(self) -> list[Session]:
        ...


# ──────────────────────────────────────────────────────────────
#  Bookings
# ──────────────────────────────────────────────────────────────

class BaseBookingStore(ABC):
    """
    Booking persistence with capacity-checked inserts.

    `book` serializes every check-then-insert for the same day behind one
    asyncio lock, and backends run the count and the insert in a single
    transaction, so concurrent requests cannot both pass the capacity check.
    Periods never straddle midnight, so the day is a safe lock key for any
    overlapping window.
    """

    def __init__(self):
        self._slot_locks = KeyedLocks()

    async def book(self, booking: Booking, capacity: int) -> Booking:
        """Insert `booking` unless `capacity` overlapping bookings already exist."""
        async with self._slot_locks.lock(booking.day):
            return await self._count_and_insert(booking, capacity)

    @abstractmethod
    async def _count_and_insert(self, booking: Booking, capacity: int) -> Booking:
        """Raise SlotUnavailableError when full, otherwise insert and return with id."""
        ...

    @abstractmethod
    async def count_overlapping(self, day: date, start_time: str, end_time: str) -> int:
        """Non-cancelled bookings on `day` whose window overlaps start..end."""
        ...

    @abstractmethod
    async def get(self, booking_id: int) -> Optional[Booking]:
        ...

    @abstractmethod
    async def list_for_user(self, user_id: str, active_only: bool = True) -> list[Booking]:
        ...

    @abstractmethod
    async def set_status(self, booking_id: int, status: BookingStatus) -> Optional[Booking]:
        ...

    @abstractmethod
    async def set_reminders(self, booking_id: int, reminder_ids: list[str]) -> None:
        ...


# ──────────────────────────────────────────────────────────────
#  Business records — customers, quotes, emergency tickets
# ──────────────────────────────────────────────────────────────

class BaseRecordStore(ABC):

    # ── Customers ─────────────────────────────────────────────

    @abstractmethod
    async def get_customer_by_phone(self, phone: str) -> Optional[Customer]:
        ...

    @abstractmethod
    async def upsert_customer(self, phone: str, **fields: Any) -> Customer:
        """Create the customer for `phone` or update the given non-empty fields."""
        ...

    # ── Quotes ────────────────────────────────────────────────

    @abstractmethod
    async def create_quote(self, quote: Quote) -> Quote:
        ...

    @abstractmethod
    async def get_quote(self, quote_id: int) -> Optional[Quote]:
        ...

    @abstractmethod
    async def update_quote(self, quote_id: int, **fields: Any) -> Optional[Quote]:
        ...

    # ── Emergency tickets ─────────────────────────────────────

    @abstractmethod
    async def create_ticket(self, ticket: EmergencyTicket) -> EmergencyTicket:
        ...

    @abstractmethod
    async def get_ticket(self, ticket_id: str) -> Optional[EmergencyTicket]:
        ...

    @abstractmethod
    async def set_ticket_status(self, ticket_id: str, status: TicketStatus) -> None:
        ...
