"""
Session Store — Per-user conversation state with idle expiry.

Every session carries `last_activity`. A session idle for longer than
`max_idle_seconds` is treated as absent by every read, whether or not the
periodic sweep has removed it yet:

  get / has / update      → lazy expiry (expired entry is removed on access)
  sweep (every N seconds) → eager expiry over a snapshot of the keys

Mutations on one user id are serialized with a per-key asyncio lock, so a
read-modify-write never interleaves with another write for the same user.

Optional durability: pass a BaseSessionBackend and every create / update /
delete is written through; `recover()` reloads live sessions at start-up.

Usage:
    sessions = SessionStore(max_idle_seconds=7200)
    await sessions.start()                       # periodic sweep task
    s = await sessions.create("5581999990000", FlowName.QUOTE)
    s = await sessions.update(s.user_id, stage="urgency_selection", data={"service": 1})
    await sessions.stop()
"""
from __future__ import annotations

import asyncio
import structlog
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from database.store_base import BaseSessionBackend
from models.schemas import Session, FlowName, INITIAL_STAGES
from utils.locks import KeyedLocks

logger = structlog.get_logger()

Clock = Callable[[], datetime]

_UPDATABLE = {"current_flow", "stage", "data"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStore:

    def __init__(
        self,
        max_idle_seconds: float = 7200,
        sweep_interval_seconds: float = 1800,
        backend: Optional[BaseSessionBackend] = None,
        clock: Optional[Clock] = None,
    ):
        self.max_idle_seconds = max_idle_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.backend = backend
        self._clock = clock or _utcnow
        self._sessions: dict[str, Session] = {}
        self._locks = KeyedLocks()
        self._sweep_task: Optional[asyncio.Task] = None
        self._sweep_hooks: list[Callable[[], Any]] = []

    def now(self) -> datetime:
        return self._clock()

    def add_sweep_hook(self, hook: Callable[[], Any]) -> None:
        """Run `hook` after every sweep; used to prune per-user state kept elsewhere."""
        self._sweep_hooks.append(hook)

    # ──────────────────────────────────────────────────────────────
    #  Lifecycle
    # ──────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the periodic sweep task."""
        if self._sweep_task and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("session_sweeper_started", interval=self.sweep_interval_seconds,
                    max_idle=self.max_idle_seconds)

    async def stop(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        logger.info("session_sweeper_stopped", active=len(self._sessions))

    async def recover(self) -> int:
        """Reload persisted sessions; expired rows are deleted instead."""
        if self.backend is None:
            return 0
        now = self.now()
        loaded = 0
        for session in await self.backend.load_all():
            if session.is_expired(now, self.max_idle_seconds):
                await self.backend.delete(session.user_id)
                continue
            self._sessions[session.user_id] = session
            loaded += 1
        logger.info("sessions_recovered", count=loaded)
        return loaded

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("session_sweep_error", error=str(e))

    # ──────────────────────────────────────────────────────────────
    #  Operations
    # ──────────────────────────────────────────────────────────────

    async def create(self, user_id: str, flow: FlowName, stage: Optional[str] = None,
                     data: Optional[dict[str, Any]] = None) -> Session:
        """Start a fresh session for `user_id`, replacing any existing one."""
        async with self._locks.lock(user_id):
            now = self.now()
            session = Session(
                user_id=user_id, current_flow=flow,
                stage=stage or INITIAL_STAGES[flow],
                data=dict(data or {}),
                last_activity=now, created_at=now,
            )
            self._sessions[user_id] = session
            await self._persist(session)
            logger.info("session_created", user_id=user_id, flow=flow.value, stage=session.stage)
            return session.model_copy(deep=True)

    async def get(self, user_id: str) -> Optional[Session]:
        """Return a live session (refreshing its activity) or None."""
        async with self._locks.lock(user_id):
            session = await self._live(user_id)
            if session is None:
                return None
            session.last_activity = self.now()
            await self._persist(session)
            return session.model_copy(deep=True)

    async def has(self, user_id: str) -> bool:
        async with self._locks.lock(user_id):
            return await self._live(user_id) is not None

    async def update(self, user_id: str, **fields: Any) -> Optional[Session]:
        """
        Merge `fields` into a live session.

        `data` is merged key by key. Switching `current_flow` without an
        explicit `stage` moves to the new flow's initial stage and starts
        from empty data. Returns None (and creates nothing) when the user
        has no live session.
        """
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update session fields: {sorted(unknown)}")

        async with self._locks.lock(user_id):
            session = await self._live(user_id)
            if session is None:
                return None

            flow = fields.get("current_flow")
            if flow is not None and FlowName(flow) != session.current_flow:
                session.current_flow = FlowName(flow)
                session.stage = fields.get("stage") or INITIAL_STAGES[session.current_flow]
                session.data = {}
            elif fields.get("stage"):
                session.stage = fields["stage"]

            if fields.get("data"):
                session.data.update(fields["data"])

            session.last_activity = self.now()
            await self._persist(session)
            return session.model_copy(deep=True)

    async def delete(self, user_id: str) -> bool:
        async with self._locks.lock(user_id):
            removed = self._sessions.pop(user_id, None) is not None
            if self.backend is not None:
                await self.backend.delete(user_id)
        if removed:
            logger.info("session_deleted", user_id=user_id)
        return removed

    async def sweep(self) -> int:
        """Remove every expired session. Returns the number removed."""
        removed = 0
        for user_id in list(self._sessions):
            session = self._sessions.get(user_id)
            if session is None or not session.is_expired(self.now(), self.max_idle_seconds):
                continue
            async with self._locks.lock(user_id):
                # re-check: a request may have refreshed it while we waited
                current = self._sessions.get(user_id)
                if current is None or not current.is_expired(self.now(), self.max_idle_seconds):
                    continue
                del self._sessions[user_id]
                if self.backend is not None:
                    await self.backend.delete(user_id)
                removed += 1
        for hook in self._sweep_hooks:
            hook()
        logger.info("sessions_swept", removed=removed, active=len(self._sessions))
        return removed

    # ──────────────────────────────────────────────────────────────
    #  Introspection
    # ──────────────────────────────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        now = self.now()
        live = [s for s in self._sessions.values()
                if not s.is_expired(now, self.max_idle_seconds)]
        return {
            "active": len(live),
            "by_flow": dict(Counter(s.current_flow.value for s in live)),
            "by_stage": dict(Counter(f"{s.current_flow.value}:{s.stage}" for s in live)),
            "max_idle_seconds": self.max_idle_seconds,
        }

    def list_active(self) -> list[dict[str, Any]]:
        now = self.now()
        return [
            {
                "user_id": s.user_id,
                "flow": s.current_flow.value,
                "stage": s.stage,
                "idle_minutes": int(s.idle_seconds(now) // 60),
            }
            for s in sorted(self._sessions.values(), key=lambda s: s.last_activity, reverse=True)
            if not s.is_expired(now, self.max_idle_seconds)
        ]

    def __len__(self) -> int:
        return len(self._sessions)

    # ──────────────────────────────────────────────────────────────
    #  Internals (caller holds the key lock)
    # ──────────────────────────────────────────────────────────────

    async def _live(self, user_id: str) -> Optional[Session]:
        session = self._sessions.get(user_id)
        if session is None:
            return None
        if session.is_expired(self.now(), self.max_idle_seconds):
            del self._sessions[user_id]
            if self.backend is not None:
                await self.backend.delete(user_id)
            logger.info("session_expired", user_id=user_id, flow=session.current_flow.value,
                        stage=session.stage)
            return None
        return session

    async def _persist(self, session: Session) -> None:
        if self.backend is not None:
            await self.backend.save(session)
