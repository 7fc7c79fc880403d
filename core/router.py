"""
Flow Router — decides which flow receives an inbound message.

    active session ──▶ current flow.handle()
                            │ handled=False (text did not fit the stage)
                            ▼
    no session ──────▶ classify(text) ──▶ other flow.start()
                            │ nothing (or the same flow)
                            ▼
                  reprompt of the current stage, or Welcome when there is no session

Classification is keyword based on accent-folded text; when several flows
match, the registry order decides (welcome > quote > scheduling > faq >
emergency > human_handoff). Transfers returned by a flow start the target
flow within the same turn.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from typing import Optional

from context.session_store import SessionStore
from flows.base import BaseFlow, FlowResult
from models.schemas import FlowName

logger = structlog.get_logger()

# Upper bound on chained transfers within one turn
MAX_TRANSFERS = 3


@dataclass
class RouteOutcome:
    """What happened to one inbound message."""
    flow: FlowName
    started: bool = False                     # flow was (re)started this turn
    reprompted: bool = False
    transfers: list[FlowName] = field(default_factory=list)


class FlowRouter:

    def __init__(self, flows: dict[FlowName, BaseFlow], sessions: SessionStore):
        self.flows = flows
        self.sessions = sessions

    def classify(self, text: str) -> Optional[FlowName]:
        """First flow (in registry order) whose triggers appear in `text`."""
        for name, flow in self.flows.items():
            if flow.matches(text):
                return name
        return None

    async def route(self, user_id: str, text: str) -> RouteOutcome:
        session = await self.sessions.get(user_id)

        if session is None:
            target = self.classify(text) or FlowName.WELCOME
            logger.info("flow_classified", user_id=user_id, flow=target.value, session=False)
            return await self.start(user_id, target, text)

        flow = self.flows[session.current_flow]
        result = await flow.handle(session, text)
        if result.handled:
            outcome = RouteOutcome(flow=flow.name)
            return await self._follow_transfers(user_id, text, result, outcome)

        target = self.classify(text)
        if target is not None and target != flow.name:
            logger.info("flow_switched", user_id=user_id, from_flow=flow.name.value,
                        to_flow=target.value, stage=session.stage)
            return await self.start(user_id, target, text)

        if result.reprompt:
            await flow.reply(user_id, result.reprompt)
        logger.info("stage_reprompted", user_id=user_id, flow=flow.name.value,
                    stage=session.stage)
        return RouteOutcome(flow=flow.name, reprompted=True)

    async def start(self, user_id: str, target: FlowName, text: str = "") -> RouteOutcome:
        result = await self.flows[target].start(user_id, text)
        outcome = RouteOutcome(flow=target, started=True)
        return await self._follow_transfers(user_id, text, result, outcome)

    async def _follow_transfers(self, user_id: str, text: str, result: FlowResult,
                                outcome: RouteOutcome) -> RouteOutcome:
        hops = 0
        while result.transfer_to is not None:
            if hops >= MAX_TRANSFERS:
                logger.warning("transfer_limit_reached", user_id=user_id,
                               transfers=[t.value for t in outcome.transfers])
                break
            hops += 1
            target = result.transfer_to
            outcome.transfers.append(target)
            outcome.flow = target
            outcome.started = True
            logger.info("flow_transfer", user_id=user_id, to_flow=target.value)
            result = await self.flows[target].start(user_id, text)
        return outcome
