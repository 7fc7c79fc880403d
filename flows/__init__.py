"""Conversation flows and the registry the router dispatches to."""
from __future__ import annotations

from flows.base import BaseFlow, FlowContext, FlowResult
from flows.emergency import EmergencyFlow
from flows.faq import FaqFlow
from flows.human_handoff import HumanHandoffFlow
from flows.quote import QuoteFlow
from flows.scheduling import SchedulingFlow
from flows.welcome import WelcomeFlow
from models.schemas import FlowName

# Classification priority: earlier flows win when several trigger lists match.
FLOW_CLASSES: tuple[type[BaseFlow], ...] = (
    WelcomeFlow,
    QuoteFlow,
    SchedulingFlow,
    FaqFlow,
    EmergencyFlow,
    HumanHandoffFlow,
)


def build_flows(ctx: FlowContext) -> dict[FlowName, BaseFlow]:
    return {cls.name: cls(ctx) for cls in FLOW_CLASSES}


__all__ = [
    "BaseFlow", "FlowContext", "FlowResult", "FLOW_CLASSES", "build_flows",
    "WelcomeFlow", "QuoteFlow", "SchedulingFlow", "FaqFlow", "EmergencyFlow", "HumanHandoffFlow",
]
