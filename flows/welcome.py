"""Welcome / main menu — greets the user and hands off to the chosen flow."""
from __future__ import annotations

import structlog
from enum import Enum
from typing import Optional

from flows.base import BaseFlow, FlowResult, menu_choice
from models.schemas import FlowName, Session
from utils.dates import greeting_for
from utils.text import contains_keyword

logger = structlog.get_logger()

MENU = (
    "1️⃣ *Orçamento de serviços*\n"
    "2️⃣ *Agendamento de atendimento*\n"
    "3️⃣ *Dúvidas sobre serviços*\n"
    "4️⃣ *Problemas emergenciais*\n"
    "5️⃣ *Falar com atendente humano*\n\n"
    "Digite o número da opção desejada."
)

INVALID_CHOICE = (
    "Desculpe, não entendi sua escolha. Por favor, selecione uma das opções do menu "
    "digitando o número correspondente (1 a 5)."
)

MENU_TARGETS: dict[int, FlowName] = {
    1: FlowName.QUOTE,
    2: FlowName.SCHEDULING,
    3: FlowName.FAQ,
    4: FlowName.EMERGENCY,
    5: FlowName.HUMAN_HANDOFF,
}

MENU_ALIASES: dict[int, tuple[str, ...]] = {
    1: ("orçamento", "orcamento", "orcar", "valor", "preço", "preco", "custo"),
    2: ("agenda", "marcar", "agendar", "horário", "horario", "atendimento"),
    3: ("dúvida", "duvida", "pergunta", "informação", "informacao"),
    4: ("emergência", "emergencia", "urgente", "urgência", "problema", "socorro"),
    5: ("humano", "pessoa", "atendente", "funcionário", "funcionario", "real"),
}


class WelcomeFlow(BaseFlow):

    name = FlowName.WELCOME
    triggers = (
        "oi", "olá", "ola", "bom dia", "boa tarde", "boa noite", "hi", "hello", "hey",
        "inicio", "início", "começar", "iniciar", "menu", "help", "ajuda",
    )

    class Stage(str, Enum):
        MENU = "menu"

    def stage_handlers(self):
        return {self.Stage.MENU: self._menu}

    async def start(self, user_id: str, text: str = "") -> FlowResult:
        customer = await self.customer_for(user_id)
        company = self.ctx.settings.business.company_name
        greeting = greeting_for(self.ctx.local_now())
        first_name = customer.first_name if customer else ""

        if customer and customer.total_services > 0:
            message = (
                f"{greeting}, {first_name}! 👋 Que bom ter você de volta à *{company}*!\n\n"
                f"É sempre um prazer atender você. Como podemos ajudar hoje?\n\n{MENU}"
            )
        else:
            salutation = f"{greeting}, {first_name}! 👋" if first_name \
                else f"{greeting}! 👋 Seja bem-vindo(a)"
            message = f"{salutation} à *{company}* - Especialistas em Soluções de Informática.\n\n"
            if not self.ctx.in_business_hours():
                message += (
                    "*⏰ AVISO: Estamos fora do horário de atendimento agora.*\n"
                    f"Nosso horário de funcionamento é {self.ctx.business_hours_text()}.\n\n"
                    "Você pode deixar sua mensagem e retornaremos no próximo horário de atendimento.\n\n"
                )
            message += f"Como posso ajudar você hoje?\n\n{MENU}"

        await self.begin(user_id)
        await self.reply(user_id, message)
        logger.info("welcome_sent", user_id=user_id, returning=bool(customer))
        return FlowResult()

    async def _menu(self, session: Session, text: str) -> FlowResult:
        choice = self.parse_choice(text)
        if choice is None:
            return self.reprompt(f"{INVALID_CHOICE}\n\n{MENU}")
        logger.info("menu_option_selected", user_id=session.user_id, option=choice)
        return self.transfer(MENU_TARGETS[choice])

    @staticmethod
    def parse_choice(text: str) -> Optional[int]:
        choice = menu_choice(text, len(MENU_TARGETS))
        if choice is not None:
            return choice
        for option, aliases in MENU_ALIASES.items():
            if contains_keyword(text, aliases):
                return option
        return None
