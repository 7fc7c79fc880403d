"""
Orchestrator — The central coordinator for every inbound message.

Architecture:
  Inbound:  gateway/API → sender filter (groups, broadcasts, status)
            → per-user turn lock → rate limit
            → universal commands (menu / voltar / cancelar / sair)
            → flow commands ("meus agendamentos", "cancelar #N", "cancelar EMG-…")
            → FlowRouter → flow stage handler → replies through the Messenger

  Deferred: flows arm reminders on the ReminderScheduler, which delivers
            them through the same Messenger independently of any turn.

Everything that goes wrong inside a flow stops at the flow boundary: the
error is logged, the user gets a generic apology and their session is
dropped so the next message starts clean.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Callable, Optional

from channels.base import (
    ChannelError, Messenger, Notifier, TokenBucketRateLimiter, create_messenger, normalize_address,
)
from config.settings import Settings, get_settings
from context.session_store import SessionStore
from core.router import FlowRouter, RouteOutcome
from database.session import Database
from database.store_factory import Stores, create_stores
from flows import build_flows
from flows.base import BaseFlow, FlowContext
from flows.knowledge import KnowledgeBase
from flows.scheduling import SchedulingFlow
from job_queue.scheduler import ReminderScheduler
from models.schemas import Booking, FlowName, InboundMessage
from utils.dates import BusinessCalendar
from utils.locks import KeyedLocks
from utils.text import fold

logger = structlog.get_logger()

IGNORED_SENDER_MARKERS = ("@g.us", "status@broadcast", "@broadcast")
CHAT_SUFFIXES = ("@c.us", "@s.whatsapp.net")

MENU_COMMANDS = {"menu", "voltar", "inicio"}
CANCEL_COMMANDS = {"cancelar", "sair"}

ERROR_REPLY = "Desculpe, ocorreu um erro ao processar sua solicitação. Por favor, tente novamente."
THROTTLE_REPLY = ("Você enviou muitas mensagens em pouco tempo. Por favor, aguarde um instante "
                  "antes de continuar.")
NOTHING_TO_CANCEL = ("Você não possui nenhum atendimento em andamento. Envie *menu* para ver as "
                     "opções disponíveis.")


def user_key(sender: str) -> str:
    """'5581999990000@c.us' → '5581999990000'; plain numbers are reduced to digits."""
    sender = sender.strip()
    for suffix in CHAT_SUFFIXES:
        if sender.endswith(suffix):
            sender = sender[: -len(suffix)]
            break
    return normalize_address(sender)


def is_ignored_sender(sender: str) -> bool:
    return any(marker in sender for marker in IGNORED_SENDER_MARKERS)


class Orchestrator:
    """
    Wires the flows, the router and the shared services together.

    Usage:
        orchestrator = create_orchestrator(settings)
        await orchestrator.start()
        await orchestrator.handle_inbound_message("5581999990000", "oi")
        await orchestrator.stop()
    """

    def __init__(self, ctx: FlowContext, flows: Optional[dict[FlowName, BaseFlow]] = None,
                 database: Optional[Database] = None):
        self.ctx = ctx
        self.flows = flows or build_flows(ctx)
        self.router = FlowRouter(self.flows, ctx.sessions)
        self.database = database

        self._turn_locks = KeyedLocks()
        self._buckets: dict[str, TokenBucketRateLimiter] = {}
        self._throttled: set[str] = set()
        self._started = False
        ctx.sessions.add_sweep_hook(self._prune_rate_limits)

    @property
    def settings(self) -> Settings:
        return self.ctx.settings

    @property
    def sessions(self) -> SessionStore:
        return self.ctx.sessions

    @property
    def scheduler(self) -> ReminderScheduler:
        return self.ctx.scheduler

    # ══════════════════════════════════════════════════════════
    #  LIFECYCLE
    # ══════════════════════════════════════════════════════════

    async def start(self) -> None:
        if self._started:
            return
        if self.database is not None:
            await self.database.init()
        await self.sessions.recover()
        await self.sessions.start()
        await self.scheduler.initialize(self.ctx.messenger)
        self._started = True
        logger.info("orchestrator_started", flows=[f.value for f in self.flows])

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.sessions.stop()
        await self.ctx.messenger.close()
        if self.database is not None:
            await self.database.close()
        self._started = False
        logger.info("orchestrator_stopped")

    # ══════════════════════════════════════════════════════════
    #  INBOUND — Message received from a user
    # ══════════════════════════════════════════════════════════

    async def handle_inbound_message(self, sender: str, content: str,
                                     metadata: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """
        Main entry point for every inbound message.

        Returns a small summary of what happened (used by the API and tests).
        """
        message = InboundMessage(sender=sender, content=content or "", metadata=metadata or {})

        if is_ignored_sender(message.sender):
            logger.info("inbound_ignored", sender=message.sender, reason="group_or_broadcast")
            return {"status": "ignored", "reason": "group_or_broadcast"}

        user_id = user_key(message.sender)
        text = message.content.strip()
        if not user_id or not text:
            logger.info("inbound_ignored", sender=message.sender, reason="empty")
            return {"status": "ignored", "reason": "empty"}

        async with self._turn_locks.lock(user_id):
            logger.info("inbound_message", user_id=user_id, content=text[:100])

            if not self._within_rate_limit(user_id):
                if user_id not in self._throttled:
                    self._throttled.add(user_id)
                    await self._safe_send(user_id, THROTTLE_REPLY)
                logger.warning("inbound_rate_limited", user_id=user_id)
                return {"status": "throttled", "user_id": user_id}

            try:
                result = await self._dispatch(user_id, text)
            except Exception as e:
                logger.error("flow_error", user_id=user_id, error=str(e), exc_info=True)
                await self.sessions.delete(user_id)
                await self._safe_send(user_id, ERROR_REPLY)
                return {"status": "error", "user_id": user_id}

        session = await self.sessions.get(user_id)
        return {
            "status": "processed",
            "user_id": user_id,
            **result,
            "stage": session.stage if session else None,
        }

    async def _dispatch(self, user_id: str, text: str) -> dict[str, Any]:
        command = fold(text).strip(" .!?")

        if command in MENU_COMMANDS:
            outcome = await self.router.start(user_id, FlowName.WELCOME, text)
            return self._summary(outcome, command="menu")

        for flow in self.flows.values():
            if await flow.command(user_id, text):
                logger.info("flow_command", user_id=user_id, flow=flow.name.value)
                return {"flow": flow.name.value, "command": flow.name.value}

        if command in CANCEL_COMMANDS:
            session = await self.sessions.get(user_id)
            if session is None:
                await self.ctx.messenger.send(user_id, NOTHING_TO_CANCEL)
                return {"flow": None, "command": "cancel"}
            await self.flows[session.current_flow].cancel(session)
            logger.info("flow_cancelled", user_id=user_id, flow=session.current_flow.value,
                        stage=session.stage)
            return {"flow": session.current_flow.value, "command": "cancel"}

        outcome = await self.router.route(user_id, text)
        return self._summary(outcome)

    @staticmethod
    def _summary(outcome: RouteOutcome, command: Optional[str] = None) -> dict[str, Any]:
        summary: dict[str, Any] = {
            "flow": outcome.flow.value,
            "started": outcome.started,
            "reprompted": outcome.reprompted,
            "transfers": [t.value for t in outcome.transfers],
        }
        if command:
            summary["command"] = command
        return summary

    # ══════════════════════════════════════════════════════════
    #  SERVICE COMPLETION — reported by the field team
    # ══════════════════════════════════════════════════════════

    async def register_service_completion(self, user_id: str,
                                          service_name: str = "") -> Optional[Booking]:
        user_id = user_key(user_id)
        flow: SchedulingFlow = self.flows[FlowName.SCHEDULING]  # type: ignore[assignment]
        async with self._turn_locks.lock(user_id):
            return await flow.register_service_completion(user_id, service_name)

    # ══════════════════════════════════════════════════════════
    #  Helpers
    # ══════════════════════════════════════════════════════════

    def _within_rate_limit(self, user_id: str) -> bool:
        """Per-user token bucket: `max_messages` burst, refilled over `window_seconds`."""
        bucket = self._buckets.get(user_id)
        if bucket is None:
            limit = self.settings.rate_limit
            bucket = self._buckets[user_id] = TokenBucketRateLimiter(
                rate=limit.max_messages / limit.window_seconds, burst=limit.max_messages,
                clock=lambda: self.sessions.now().timestamp(),
            )
        if not bucket.try_acquire():
            return False
        self._throttled.discard(user_id)
        return True

    def _prune_rate_limits(self) -> None:
        """Forget buckets that refilled completely; those users are idle."""
        for user_id in [u for u, bucket in self._buckets.items() if bucket.is_full]:
            del self._buckets[user_id]
            self._throttled.discard(user_id)

    async def _safe_send(self, user_id: str, text: str) -> None:
        try:
            await self.ctx.messenger.send(user_id, text)
        except ChannelError as e:
            logger.error("reply_failed", user_id=user_id, error=str(e))

    async def stats(self) -> dict[str, Any]:
        return {
            "sessions": self.sessions.stats(),
            "reminders": await self.scheduler.stats(),
            "throttled_users": len(self._throttled),
        }


# ══════════════════════════════════════════════════════════════
#  Factory
# ══════════════════════════════════════════════════════════════

def create_orchestrator(
    settings: Optional[Settings] = None,
    messenger: Optional[Messenger] = None,
    stores: Optional[Stores] = None,
    knowledge: Optional[KnowledgeBase] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> Orchestrator:
    """Build every collaborator from settings; any of them can be injected instead."""
    settings = settings or get_settings()
    database: Optional[Database] = None

    if stores is None:
        if "sql" in (settings.database.store_backend, settings.session.backend):
            database = Database(settings.database.url, echo=settings.debug)
        stores = create_stores(settings.database.store_backend, database=database,
                               session_backend=settings.session.backend)

    messenger = messenger or create_messenger(settings.messaging)
    notifier = Notifier(messenger, settings.business)
    sessions = SessionStore(
        max_idle_seconds=settings.session.max_idle_seconds,
        sweep_interval_seconds=settings.session.sweep_interval_seconds,
        backend=stores.session_backend,
        clock=clock,
    )
    scheduler = ReminderScheduler(stores.reminders, dispatcher=messenger,
                                  config=settings.scheduler, notifier=notifier, clock=clock)
    ctx = FlowContext(
        sessions=sessions,
        messenger=messenger,
        notifier=notifier,
        scheduler=scheduler,
        stores=stores,
        settings=settings,
        calendar=BusinessCalendar(settings.scheduling.holidays, settings.business.work_days),
        knowledge=knowledge or KnowledgeBase.from_yaml(settings.faq_path or None),
        clock=clock,
    )
    return Orchestrator(ctx, database=database)
