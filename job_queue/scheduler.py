"""
Reminder Scheduler — Durable one-shot reminders driven by a single dispatch loop.

Every reminder is a row in the reminder store first and an in-memory heap
entry second. The heap only decides *when* to look at a job; the store's
conditional status update decides *whether* it may still fire, so a job
cancelled while its entry sits in the heap is simply skipped.

Topology:
  create_reminder ──persist──▶ store (pending) ──arm──▶ heap (fire_at, seq, id)
                                                          │
                                      dispatch loop ◀─────┘  sleeps until the
                                            │                earliest entry or
                                            ▼                a wake-up event
                                     dispatcher.send
                              ┌─────────────┼──────────────┐
                            sent      retry (backoff)   dead_letter / failed
                                            │
                                            └── re-armed at next_attempt_at

Recovery: `initialize()` loads every pending job and arms it at its original
absolute time (`next_attempt_at` for a pending retry). Jobs already due at
recovery follow `overdue_policy`: "fire" arms them immediately, "missed"
marks them missed.

A crash between a successful send and the status update leaves the job
pending, so it is sent again after restart.
"""
from __future__ import annotations

import asyncio
import heapq
import itertools
import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from channels.base import Messenger, Notifier, normalize_address
from config.settings import SchedulerConfig
from database.store_base import BaseReminderStore
from models.schemas import ReminderJob, ReminderStatus

logger = structlog.get_logger()

Clock = Callable[[], datetime]


class ReminderValidationError(ValueError):
    """Raised when a reminder cannot be created (bad recipient, message or time)."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ReminderScheduler:
    """
    Usage:
        scheduler = ReminderScheduler(stores.reminders, config=settings.scheduler)
        await scheduler.initialize(messenger)        # recover + start the loop
        job_id = await scheduler.create_reminder(user, "Sua visita é amanhã", when)
        await scheduler.cancel_reminder(job_id)
        await scheduler.stop()
    """

    def __init__(
        self,
        store: BaseReminderStore,
        dispatcher: Optional[Messenger] = None,
        config: Optional[SchedulerConfig] = None,
        notifier: Optional[Notifier] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.config = config or SchedulerConfig()
        self.notifier = notifier
        self._clock = clock or _utcnow

        self._heap: list[tuple[float, int, str]] = []
        self._armed: dict[str, int] = {}          # job id → seq of its live heap entry
        self._seq = itertools.count()
        self._wakeup = asyncio.Event()
        self._semaphore = asyncio.Semaphore(max(1, int(self.config.concurrency)))
        self._inflight: set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None
        self._running = False

    def now(self) -> datetime:
        return _aware(self._clock())

    # ──────────────────────────────────────────────────────────────
    #  Lifecycle
    # ──────────────────────────────────────────────────────────────

    async def initialize(self, dispatcher: Optional[Messenger] = None,
                         start_loop: bool = True) -> int:
        """Arm every pending job from the store. Returns the number armed."""
        if dispatcher is not None:
            self.dispatcher = dispatcher

        now = self.now()
        armed = missed = 0
        for job in await self.store.list_pending():
            fire_at = _aware(job.fire_at)
            if fire_at <= now and self.config.overdue_policy == "missed":
                if await self.store.transition(job.id, ReminderStatus.MISSED,
                                               last_error="overdue at recovery"):
                    missed += 1
                    logger.warning("reminder_missed", job_id=job.id,
                                   scheduled_time=job.scheduled_time.isoformat())
                continue
            self._arm(job.id, max(fire_at, now))
            armed += 1

        logger.info("reminder_scheduler_initialized", armed=armed, missed=missed,
                    overdue_policy=self.config.overdue_policy)
        if start_loop:
            await self.start()
        return armed

    async def start(self) -> None:
        if self._loop_task and not self._loop_task.done():
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the loop and wait for in-flight dispatches to finish."""
        self._running = False
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        logger.info("reminder_scheduler_stopped", armed=len(self._armed))

    # ──────────────────────────────────────────────────────────────
    #  Public operations
    # ──────────────────────────────────────────────────────────────

    async def create_reminder(self, recipient: str, message: str, scheduled_at: datetime,
                              kind: str = "reminder") -> str:
        if not recipient or not recipient.strip():
            raise ReminderValidationError("Recipient is required")
        if not message or not message.strip():
            raise ReminderValidationError("Message is required")
        if not isinstance(scheduled_at, datetime):
            raise ReminderValidationError("scheduled_at must be a datetime")

        recipient = normalize_address(recipient)
        if not recipient:
            raise ReminderValidationError("Recipient has no usable address")
        scheduled_at = _aware(scheduled_at)
        if scheduled_at <= self.now():
            raise ReminderValidationError("scheduled_at must be in the future")

        job = ReminderJob(recipient=recipient, message=message,
                          scheduled_time=scheduled_at, kind=kind)
        await self.store.insert(job)
        self._arm(job.id, scheduled_at)
        logger.info("reminder_created", job_id=job.id, recipient=recipient, kind=kind,
                    scheduled_time=scheduled_at.isoformat())
        return job.id

    async def cancel_reminder(self, job_id: str) -> bool:
        """Cancel a pending job. Returns False (and changes nothing) if it already ended."""
        self._armed.pop(job_id, None)
        changed = await self.store.transition(job_id, ReminderStatus.CANCELLED)
        logger.info("reminder_cancel", job_id=job_id, cancelled=changed)
        return changed

    async def get_reminders_for_recipient(self, recipient: str) -> list[ReminderJob]:
        return await self.store.list_for_recipient(normalize_address(recipient))

    async def create_follow_up_reminders(self, recipient: str, service_name: str) -> list[str]:
        """Post-service check-ins one day and one week after now."""
        now = self.now()
        return [
            await self.create_reminder(
                recipient,
                f"Olá! Como está o seu equipamento após o serviço de {service_name}? "
                f"Estamos à disposição para qualquer dúvida.",
                now + timedelta(hours=24), kind="follow_up",
            ),
            await self.create_reminder(
                recipient,
                f"Olá! Já faz uma semana desde o serviço de {service_name}. "
                f"Está tudo funcionando bem? Ficaríamos felizes em receber seu feedback.",
                now + timedelta(days=7), kind="follow_up",
            ),
        ]

    async def run_due(self, now: Optional[datetime] = None) -> int:
        """Fire every armed job due at `now` and wait for the results."""
        due = self._pop_due(_aware(now) if now else self.now())
        if due:
            await asyncio.gather(*(self._fire(job_id) for job_id in due))
        return len(due)

    async def stats(self) -> dict[str, Any]:
        next_fire = self._peek_fire_time()
        return {
            "running": self._running,
            "armed": len(self._armed),
            "inflight": len(self._inflight),
            "next_fire_at": next_fire.isoformat() if next_fire else None,
            "by_status": await self.store.count_by_status(),
        }

    # ──────────────────────────────────────────────────────────────
    #  Heap
    # ──────────────────────────────────────────────────────────────

    def _arm(self, job_id: str, fire_at: datetime) -> None:
        seq = next(self._seq)
        self._armed[job_id] = seq
        heapq.heappush(self._heap, (fire_at.timestamp(), seq, job_id))
        self._wakeup.set()

    def _discard_stale(self) -> None:
        while self._heap and self._armed.get(self._heap[0][2]) != self._heap[0][1]:
            heapq.heappop(self._heap)

    def _peek_fire_time(self) -> Optional[datetime]:
        self._discard_stale()
        if not self._heap:
            return None
        return datetime.fromtimestamp(self._heap[0][0], tz=timezone.utc)

    def _pop_due(self, now: datetime) -> list[str]:
        due = []
        cutoff = now.timestamp()
        while True:
            self._discard_stale()
            if not self._heap or self._heap[0][0] > cutoff:
                return due
            _, _, job_id = heapq.heappop(self._heap)
            del self._armed[job_id]
            due.append(job_id)

    # ──────────────────────────────────────────────────────────────
    #  Dispatch loop
    # ──────────────────────────────────────────────────────────────

    async def _run(self) -> None:
        logger.info("reminder_loop_started", armed=len(self._armed))
        while self._running:
            self._wakeup.clear()
            try:
                for job_id in self._pop_due(self.now()):
                    task = asyncio.create_task(self._fire(job_id))
                    self._inflight.add(task)
                    task.add_done_callback(self._fire_done)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("reminder_loop_error", error=str(e))

            next_fire = self._peek_fire_time()
            timeout = None
            if next_fire is not None:
                timeout = max(0.0, (next_fire - self.now()).total_seconds())
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass

    def _fire_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("reminder_task_failed", error=str(task.exception()))

    async def _fire(self, job_id: str) -> None:
        """Deliver one job; store errors leave it pending and re-armed after the base backoff."""
        try:
            await self._deliver(job_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            delay = self.config.retry_backoff_base
            logger.error("reminder_fire_error", job_id=job_id, error=str(e),
                         retry_in_seconds=delay)
            if job_id not in self._armed:
                self._arm(job_id, self.now() + timedelta(seconds=delay))

    async def _deliver(self, job_id: str) -> None:
        async with self._semaphore:
            job = await self.store.get(job_id)
            if job is None or job.status.is_terminal:
                logger.info("reminder_skipped", job_id=job_id,
                            status=job.status.value if job else "missing")
                return

            try:
                if self.dispatcher is None:
                    raise RuntimeError("No dispatcher configured")
                await self.dispatcher.send(job.recipient, f"{self.config.reminder_prefix}{job.message}")
            except Exception as e:
                await self._handle_failure(job, e)
                return

            if await self.store.transition(job.id, ReminderStatus.SENT,
                                           attempts=job.attempts + 1,
                                           next_attempt_at=None, last_error=""):
                logger.info("reminder_sent", job_id=job.id, recipient=job.recipient,
                            attempts=job.attempts + 1)
            else:
                logger.warning("reminder_sent_after_cancel", job_id=job.id)

    async def _handle_failure(self, job: ReminderJob, error: Exception) -> None:
        attempts = job.attempts + 1
        max_attempts = max(1, int(self.config.max_attempts))

        if attempts < max_attempts:
            delay = min(self.config.retry_backoff_base * 2 ** (attempts - 1),
                        self.config.retry_backoff_max)
            next_attempt_at = self.now() + timedelta(seconds=delay)
            if await self.store.record_retry(job.id, attempts, next_attempt_at, str(error)):
                self._arm(job.id, next_attempt_at)
                logger.warning("reminder_retry_scheduled", job_id=job.id, attempts=attempts,
                               delay_seconds=delay, error=str(error))
            return

        status = ReminderStatus.FAILED if max_attempts == 1 else ReminderStatus.DEAD_LETTER
        changed = await self.store.transition(job.id, status, attempts=attempts,
                                              next_attempt_at=None, last_error=str(error))
        if not changed:
            return
        if status == ReminderStatus.FAILED:
            logger.error("reminder_failed", job_id=job.id, error=str(error))
            return

        logger.error("reminder_dead_lettered", job_id=job.id, attempts=attempts,
                     error=str(error))
        if self.config.dead_letter_alert and self.notifier is not None:
            await self.notifier.notify_admin(
                f"⚠️ Lembrete não entregue após {attempts} tentativas\n"
                f"Destinatário: {job.recipient}\n"
                f"Mensagem: {job.message[:200]}\n"
                f"Erro: {error}"
            )
