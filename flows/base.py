"""
Flow base — Shared shape of every conversation flow.

A flow is a finite-state machine over `Session.stage`:

    start(user_id, text)      → creates the session at the initial stage, sends the first prompt
    handle(session, text)     → dispatches on session.stage to the stage handler
    command(user_id, text)    → optional stateless commands ("meus agendamentos")
    cancel(session)           → user asked to stop ("cancelar" / "sair")

Handlers never raise for bad input: they return `self.reprompt(...)`, which
keeps the stage and lets the router decide whether the text was really meant
for another flow. Anything else that goes wrong propagates to the
orchestrator's error boundary.
"""
from __future__ import annotations

import abc
import structlog
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional
from zoneinfo import ZoneInfo

from channels.base import Messenger, Notifier, normalize_address
from config.settings import Settings
from context.session_store import SessionStore
from database.store_factory import Stores
from job_queue.scheduler import ReminderScheduler
from models.schemas import Customer, FlowName, Session
from utils.dates import BusinessCalendar, WEEKDAYS
from utils.text import contains_keyword, fold

logger = structlog.get_logger()

StageHandler = Callable[[Session, str], Awaitable["FlowResult"]]


@dataclass
class FlowResult:
    """
    Outcome of one turn inside a flow.

    handled=False means the text did not fit the current stage; `reprompt`
    is what the flow would answer if no other flow claims the text.
    """
    handled: bool = True
    transfer_to: Optional[FlowName] = None
    reprompt: str = ""


@dataclass
class FlowContext:
    """Everything a flow needs, built once at start-up and shared by all flows."""
    sessions: SessionStore
    messenger: Messenger
    notifier: Notifier
    scheduler: ReminderScheduler
    stores: Stores
    settings: Settings
    calendar: BusinessCalendar
    knowledge: Any = None                         # flows.knowledge.KnowledgeBase
    clock: Optional[Callable[[], datetime]] = None

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.settings.timezone)

    def local_now(self) -> datetime:
        """Current time in the business timezone."""
        if self.clock is not None:
            now = self.clock()
        else:
            now = self.sessions.now()
        if now.tzinfo is None:
            return now.replace(tzinfo=self.tz)
        return now.astimezone(self.tz)

    def in_business_hours(self) -> bool:
        business = self.settings.business
        return self.calendar.is_business_hours(self.local_now(), business.open_hour,
                                               business.close_hour)

    def business_hours_text(self) -> str:
        business = self.settings.business
        days = sorted(business.work_days)
        span = f"{WEEKDAYS[days[0]]} a {WEEKDAYS[days[-1]]}" if days else ""
        return f"{span}: {business.open_hour:02d}h às {business.close_hour:02d}h"


class BaseFlow(abc.ABC):
    """Common plumbing for the six flows."""

    name: FlowName
    triggers: tuple[str, ...] = ()

    def __init__(self, ctx: FlowContext):
        self.ctx = ctx
        self._handlers: dict[str, StageHandler] = {
            (stage.value if isinstance(stage, Enum) else stage): handler
            for stage, handler in self.stage_handlers().items()
        }

    # ── Contract ──────────────────────────────────────────────

    @abc.abstractmethod
    def stage_handlers(self) -> dict[Any, StageHandler]:
        ...

    @abc.abstractmethod
    async def start(self, user_id: str, text: str = "") -> FlowResult:
        ...

    def matches(self, text: str) -> bool:
        return contains_keyword(text, self.triggers)

    async def handle(self, session: Session, text: str) -> FlowResult:
        handler = self._handlers.get(session.stage)
        if handler is None:
            logger.warning("unknown_stage", flow=self.name.value, stage=session.stage,
                           user_id=session.user_id)
            return await self.start(session.user_id, text)
        return await handler(session, text.strip())

    async def command(self, user_id: str, text: str) -> bool:
        """Stateless commands available outside the flow. Returns True when handled."""
        return False

    async def cancel(self, session: Session) -> None:
        await self.finish(session.user_id)
        await self.reply(session.user_id,
                         "Atendimento encerrado. Se precisar de algo mais, é só enviar uma mensagem! 👋")

    # ── Helpers ───────────────────────────────────────────────

    async def reply(self, user_id: str, text: str) -> None:
        await self.ctx.messenger.send(user_id, text)

    async def begin(self, user_id: str, stage: Optional[str] = None,
                    data: Optional[dict[str, Any]] = None) -> Session:
        return await self.ctx.sessions.create(user_id, self.name, stage=stage, data=data)

    async def advance(self, user_id: str, stage: Any = None, **data: Any) -> Optional[Session]:
        fields: dict[str, Any] = {}
        if stage is not None:
            fields["stage"] = stage.value if isinstance(stage, Enum) else stage
        if data:
            fields["data"] = data
        return await self.ctx.sessions.update(user_id, **fields)

    async def finish(self, user_id: str) -> None:
        await self.ctx.sessions.delete(user_id)

    def reprompt(self, text: str) -> FlowResult:
        return FlowResult(handled=False, reprompt=text)

    def transfer(self, flow: FlowName) -> FlowResult:
        return FlowResult(handled=True, transfer_to=flow)

    async def customer_for(self, user_id: str) -> Optional[Customer]:
        return await self.ctx.stores.records.get_customer_by_phone(normalize_address(user_id))


# ── Answer parsing ────────────────────────────────────────────

_YES = {"sim", "s", "yes", "confirmo", "confirmar", "ok", "1"}
_NO = {"nao", "n", "no", "2"}


def is_yes(text: str) -> bool:
    return fold(text).strip(" .!") in _YES


def is_no(text: str) -> bool:
    return fold(text).strip(" .!") in _NO


def menu_choice(text: str, options: int) -> Optional[int]:
    """'3' / '3️⃣' / ' 3 ' → 3 when within 1..options."""
    digits = "".join(c for c in text if c in "0123456789")
    stripped = text.strip()
    if not digits or len(digits) > 2 or not stripped or stripped[0] not in "0123456789":
        return None
    value = int(digits)
    return value if 1 <= value <= options else None
