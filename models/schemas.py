"""
Core data models for the field-service assistant.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class FlowName(str, Enum):
    WELCOME = "welcome"
    QUOTE = "quote"
    SCHEDULING = "scheduling"
    FAQ = "faq"
    EMERGENCY = "emergency"
    HUMAN_HANDOFF = "human_handoff"


# Stage each flow starts in; flows declare the rest of their stages.
INITIAL_STAGES: dict[FlowName, str] = {
    FlowName.WELCOME: "menu",
    FlowName.QUOTE: "service_selection",
    FlowName.SCHEDULING: "service_selection",
    FlowName.FAQ: "category_selection",
    FlowName.EMERGENCY: "type_selection",
    FlowName.HUMAN_HANDOFF: "waiting_agent",
}


class ReminderStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"
    MISSED = "missed"              # already due when recovered, with overdue_policy=missed
    DEAD_LETTER = "dead_letter"    # retries exhausted

    @property
    def is_terminal(self) -> bool:
        return self is not ReminderStatus.PENDING


class BookingStatus(str, Enum):
    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class AppointmentType(str, Enum):
    PRESENCIAL = "presencial"
    REMOTO = "remoto"
    LOJA = "loja"


class QuoteStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    CANCELLED = "cancelled"


class TicketStatus(str, Enum):
    OPEN = "open"
    CANCELLED = "cancelled"


# ──────────────────────────────────────────────────────────────
#  Session — one user's conversation state
# ──────────────────────────────────────────────────────────────

class Session(BaseModel):
    """Per-user conversation state: which flow, which stage, collected data."""
    user_id: str
    current_flow: FlowName
    stage: str
    data: dict[str, Any] = {}
    last_activity: datetime = Field(default_factory=_utcnow)
    created_at: datetime = Field(default_factory=_utcnow)

    def idle_seconds(self, now: datetime) -> float:
        return (now - self.last_activity).total_seconds()

    def is_expired(self, now: datetime, max_idle_seconds: float) -> bool:
        return self.idle_seconds(now) > max_idle_seconds


# ──────────────────────────────────────────────────────────────
#  Reminder Job — durable deferred notification
# ──────────────────────────────────────────────────────────────

class ReminderJob(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    recipient: str
    message: str
    scheduled_time: datetime
    status: ReminderStatus = ReminderStatus.PENDING
    kind: str = "reminder"                    # reminder | appointment | follow_up | escalation
    attempts: int = 0
    next_attempt_at: Optional[datetime] = None   # set while a retry is pending
    last_error: str = ""
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def fire_at(self) -> datetime:
        """Absolute time the job should fire next."""
        return self.next_attempt_at or self.scheduled_time


# ──────────────────────────────────────────────────────────────
#  Business records
# ──────────────────────────────────────────────────────────────

class Customer(BaseModel):
    id: str = Field(default_factory=_new_id)
    phone: str
    name: str = ""
    email: str = ""
    address: str = ""
    total_services: int = 0
    last_contact: datetime = Field(default_factory=_utcnow)
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def first_name(self) -> str:
        return self.name.split(" ")[0] if self.name else ""


class Booking(BaseModel):
    """A scheduled service visit occupying one slot (date + period window)."""
    id: int = 0                               # assigned by the store, shown to users as #N
    user_id: str
    customer_name: str = ""
    service: str
    appointment_type: AppointmentType
    address: str = ""
    day: date
    period: str                               # Manhã | Tarde | Noite
    start_time: str                           # "HH:MM"
    end_time: str
    status: BookingStatus = BookingStatus.SCHEDULED
    reminder_ids: list[str] = []
    created_at: datetime = Field(default_factory=_utcnow)

    def overlaps(self, day: date, start_time: str, end_time: str) -> bool:
        return self.day == day and self.start_time < end_time and self.end_time > start_time


class Quote(BaseModel):
    id: int = 0
    user_id: str
    customer_name: str = ""
    email: str = ""
    service_id: int
    service_name: str
    urgency: str = "normal"
    answers: list[str] = []
    base_price: Decimal
    urgency_factor: Decimal = Decimal("1.00")
    estimate: Decimal
    status: QuoteStatus = QuoteStatus.DRAFT
    rating: Optional[int] = None
    feedback: str = ""
    created_at: datetime = Field(default_factory=_utcnow)


class EmergencyTicket(BaseModel):
    id: str = Field(default_factory=lambda: f"EMG-{uuid.uuid4().hex[:8].upper()}")
    user_id: str
    emergency_type: str
    team: str
    priority: str
    description: str
    phone: str = ""
    name: str = ""
    status: TicketStatus = TicketStatus.OPEN
    escalation_id: str = ""                   # pending escalation reminder, if any
    created_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Inbound message
# ──────────────────────────────────────────────────────────────

class InboundMessage(BaseModel):
    sender: str
    content: str
    metadata: dict[str, Any] = {}
    received_at: datetime = Field(default_factory=_utcnow)
