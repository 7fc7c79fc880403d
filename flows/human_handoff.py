"""
Human handoff — hands the conversation to an operator.

The operator is alerted with the customer's original message; while the
session sits in `waiting_agent` every further message is relayed to the
operator until the customer sends "encerrar". Emergency keywords move the
customer to emergency triage instead.
"""
from __future__ import annotations

import structlog
from enum import Enum

from flows.base import BaseFlow, FlowResult
from flows.emergency import EmergencyFlow
from models.schemas import FlowName, Session
from utils.formatting import format_phone
from utils.text import contains_keyword, fold

logger = structlog.get_logger()

END_WORDS = {"encerrar", "finalizar", "terminar"}


class HumanHandoffFlow(BaseFlow):

    name = FlowName.HUMAN_HANDOFF
    triggers = ("atendente", "humano", "pessoa real", "funcionário", "funcionario",
                "falar com alguém", "falar com alguem")

    class Stage(str, Enum):
        WAITING_AGENT = "waiting_agent"

    def stage_handlers(self):
        return {self.Stage.WAITING_AGENT: self._waiting_agent}

    async def start(self, user_id: str, text: str = "") -> FlowResult:
        customer = await self.customer_for(user_id)
        label = customer.name if customer and customer.name else format_phone(user_id)
        await self.ctx.notifier.notify_operator(
            "🔔 Novo atendimento solicitado!\n"
            f"Cliente: {label}\n"
            f'Mensagem original: "{text}"'
        )

        if self.ctx.in_business_hours():
            message = ("Estou transferindo você para um de nossos atendentes. Por favor, aguarde "
                       "um momento que logo alguém irá atendê-lo(a).\n\n"
                       'Para encerrar o atendimento a qualquer momento, digite "encerrar".')
        else:
            message = ("Lamentamos, mas estamos fora do horário de atendimento no momento.\n"
                       f"Nosso horário de funcionamento é {self.ctx.business_hours_text()}.\n\n"
                       "Sua mensagem foi registrada e um atendente entrará em contato assim que "
                       "possível.\n\n"
                       "Em caso de emergência, digite *emergência* para acessar nosso "
                       "atendimento prioritário.")

        await self.begin(user_id, data={"relayed": 0})
        await self.reply(user_id, message)
        logger.info("handoff_requested", user_id=user_id, in_hours=self.ctx.in_business_hours())
        return FlowResult()

    async def _waiting_agent(self, session: Session, text: str) -> FlowResult:
        if fold(text).strip(" .!") in END_WORDS:
            await self.cancel(session)
            return FlowResult()
        if contains_keyword(text, EmergencyFlow.triggers):
            logger.info("handoff_escalated_to_emergency", user_id=session.user_id)
            return self.transfer(FlowName.EMERGENCY)

        relayed = session.data.get("relayed", 0) + 1
        await self.advance(session.user_id, relayed=relayed)
        delivered = await self.ctx.notifier.notify_operator(
            f"💬 {format_phone(session.user_id)}: {text}"
        )
        if relayed == 1:
            await self.reply(session.user_id, "Sua mensagem foi encaminhada ao atendente. "
                                              "Aguarde o retorno, por favor.")
        logger.info("handoff_message_relayed", user_id=session.user_id, delivered=delivered,
                    relayed=relayed)
        return FlowResult()

    async def cancel(self, session: Session) -> None:
        await self.finish(session.user_id)
        await self.ctx.notifier.notify_operator(
            f"ℹ️ Cliente {format_phone(session.user_id)} encerrou o atendimento."
        )
        await self.reply(session.user_id, "Atendimento encerrado. Obrigado pelo contato! "
                                          "Se precisar de algo mais, é só enviar uma mensagem. 👋")
        logger.info("handoff_closed", user_id=session.user_id)
