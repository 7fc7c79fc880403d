"""
Quote flow — service → three questions → urgency → contact → summary → rating.

Stages:
    service_selection → question_answering → urgency_selection
      → contact_info (name, then e-mail; skipped when the customer is known)
      → confirmation ── CONFIRMAR → feedback → [detailed_feedback]
                     ├─ AJUSTAR   → adjusting → (one step) → confirmation
                     └─ CANCELAR  → end

The quote is stored as a draft when the summary is first shown and moved to
pending on CONFIRMAR.
"""
from __future__ import annotations

import re
import structlog
from enum import Enum
from typing import Any

from channels.base import normalize_address
from flows.base import BaseFlow, FlowResult, menu_choice
from flows.catalog import (
    Service, estimate, find_service, find_urgency, get_service, get_urgency,
    services_menu, urgency_menu,
)
from models.schemas import FlowName, Quote, QuoteStatus, Session
from utils.formatting import format_price
from utils.text import fold

logger = structlog.get_logger()

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

RATINGS = {1: "Excelente", 2: "Boa", 3: "Regular", 4: "Ruim", 5: "Péssima"}

RATING_PROMPT = (
    "Como você avalia sua experiência com nosso sistema de orçamentos?\n\n"
    + "\n".join(f"{n}️⃣ {label}" for n, label in RATINGS.items())
)

ADJUST_MENU = (
    "Vamos ajustar seu orçamento. Por favor, selecione o que deseja modificar:\n\n"
    "1️⃣ Tipo de serviço\n"
    "2️⃣ Respostas às perguntas\n"
    "3️⃣ Nível de urgência\n"
    "4️⃣ Informações de contato"
)

CONFIRMATION_OPTIONS = "Por favor, responda com uma das opções: 'CONFIRMAR', 'AJUSTAR' ou 'CANCELAR'."


def valid_full_name(text: str) -> bool:
    return len(text.strip()) >= 5 and " " in text.strip()


def valid_email(text: str) -> bool:
    return bool(EMAIL_RE.match(text.strip()))


class QuoteFlow(BaseFlow):

    name = FlowName.QUOTE
    triggers = ("orçamento", "orcamento", "orçar", "orcar", "preço", "preco", "valor",
                "custo", "cotação", "cotacao", "quanto custa")

    class Stage(str, Enum):
        SERVICE_SELECTION = "service_selection"
        QUESTION_ANSWERING = "question_answering"
        URGENCY_SELECTION = "urgency_selection"
        CONTACT_INFO = "contact_info"
        CONFIRMATION = "confirmation"
        ADJUSTING = "adjusting"
        FEEDBACK = "feedback"
        DETAILED_FEEDBACK = "detailed_feedback"

    def stage_handlers(self):
        return {
            self.Stage.SERVICE_SELECTION: self._service_selection,
            self.Stage.QUESTION_ANSWERING: self._question_answering,
            self.Stage.URGENCY_SELECTION: self._urgency_selection,
            self.Stage.CONTACT_INFO: self._contact_info,
            self.Stage.CONFIRMATION: self._confirmation,
            self.Stage.ADJUSTING: self._adjusting,
            self.Stage.FEEDBACK: self._feedback,
            self.Stage.DETAILED_FEEDBACK: self._detailed_feedback,
        }

    async def start(self, user_id: str, text: str = "") -> FlowResult:
        await self.begin(user_id)
        await self.reply(user_id, self._service_prompt())
        logger.info("quote_started", user_id=user_id)
        return FlowResult()

    async def cancel(self, session: Session) -> None:
        await self._cancel_quote(session)

    # ── Stages ────────────────────────────────────────────────

    async def _service_selection(self, session: Session, text: str) -> FlowResult:
        service = find_service(text)
        if service is None:
            return self.reprompt(self._service_prompt())

        await self.advance(session.user_id, self.Stage.QUESTION_ANSWERING,
                           service_id=service.id, answers=[], question_index=0)
        await self.reply(
            session.user_id,
            f"Você selecionou: *{service.name}*.\n\n"
            f"Para prepararmos um orçamento preciso, responda algumas perguntas:\n\n"
            f"{self._question_text(service, 0)}",
        )
        logger.info("quote_service_selected", user_id=session.user_id, service=service.name)
        return FlowResult()

    async def _question_answering(self, session: Session, text: str) -> FlowResult:
        service = get_service(session.data.get("service_id"))
        if service is None:
            return await self.start(session.user_id)

        index = int(session.data.get("question_index", 0))
        if len(text) < 2:
            return self.reprompt(self._question_text(service, index))

        answers = list(session.data.get("answers", []))[:index] + [text]
        index += 1
        if index < len(service.questions):
            await self.advance(session.user_id, answers=answers, question_index=index)
            await self.reply(session.user_id, self._question_text(service, index))
            return FlowResult()

        if session.data.get("adjusting"):
            session = await self.advance(session.user_id, answers=answers, question_index=index)
            return await self._show_summary(session)

        await self.advance(session.user_id, self.Stage.URGENCY_SELECTION,
                           answers=answers, question_index=index)
        await self.reply(session.user_id,
                         f"Obrigado pelas informações! Qual a urgência do serviço?\n\n"
                         f"{urgency_menu()}\n\nDigite o número da opção desejada.")
        return FlowResult()

    async def _urgency_selection(self, session: Session, text: str) -> FlowResult:
        urgency = find_urgency(text)
        if urgency is None:
            return self.reprompt(f"Por favor, selecione o nível de urgência:\n\n{urgency_menu()}")

        session = await self.advance(session.user_id, urgency=urgency.key)
        logger.info("quote_urgency_selected", user_id=session.user_id, urgency=urgency.key)
        if session.data.get("adjusting"):
            return await self._show_summary(session)
        return await self._ask_contact(session)

    async def _contact_info(self, session: Session, text: str) -> FlowResult:
        step = session.data.get("contact_step", "name")

        if step == "name":
            if not valid_full_name(text):
                return self.reprompt("Por favor, forneça seu nome completo (nome e sobrenome).")
            name = text.strip()
            session = await self.advance(session.user_id, name=name)
            if session.data.get("email") and not session.data.get("force_contact"):
                return await self._show_summary(session)
            await self.advance(session.user_id, contact_step="email")
            await self.reply(session.user_id,
                             f"Obrigado, {name.split(' ')[0]}! Qual é o seu email para envio "
                             f"do orçamento detalhado?")
            return FlowResult()

        if not valid_email(text):
            return self.reprompt("Por favor, forneça um endereço de email válido.")
        session = await self.advance(session.user_id, email=text.strip())
        return await self._show_summary(session)

    async def _confirmation(self, session: Session, text: str) -> FlowResult:
        answer = fold(text).strip().upper()
        quote_id = session.data.get("quote_id")

        if answer == "CONFIRMAR":
            quote = await self.ctx.stores.records.update_quote(quote_id, status=QuoteStatus.PENDING)
            await self.advance(session.user_id, self.Stage.FEEDBACK)
            await self.reply(
                session.user_id,
                "✅ *Orçamento confirmado com sucesso!*\n\n"
                "Obrigado pela confiança em nossos serviços. Um de nossos técnicos analisará sua "
                "solicitação e entrará em contato em breve para discutir os detalhes finais e "
                "agendar o serviço.\n\n"
                f"O orçamento detalhado será enviado para o email: {session.data.get('email', '')}\n\n"
                f"*Número do orçamento:* #{quote_id}\n"
                "Se tiver alguma dúvida adicional, estamos à disposição.",
            )
            await self.reply(session.user_id, RATING_PROMPT)
            if quote is not None:
                await self.ctx.notifier.notify_admin(
                    f"💰 *Novo Orçamento #{quote.id}*\n\n"
                    f"Cliente: {quote.customer_name}\n"
                    f"Telefone: {session.user_id}\n"
                    f"Email: {quote.email}\n"
                    f"Serviço: {quote.service_name}\n"
                    f"Urgência: {get_urgency(quote.urgency).label}\n"
                    f"Valor estimado: {format_price(quote.estimate)}"
                )
            logger.info("quote_confirmed", user_id=session.user_id, quote_id=quote_id)
            return FlowResult()

        if answer == "AJUSTAR":
            await self.advance(session.user_id, self.Stage.ADJUSTING)
            await self.reply(session.user_id, ADJUST_MENU)
            return FlowResult()

        if answer == "CANCELAR":
            await self._cancel_quote(session)
            return FlowResult()

        return self.reprompt(CONFIRMATION_OPTIONS)

    async def _adjusting(self, session: Session, text: str) -> FlowResult:
        choice = menu_choice(text, 4)
        if choice is None:
            return self.reprompt(ADJUST_MENU)

        user_id = session.user_id
        if choice == 1:
            await self.advance(user_id, self.Stage.SERVICE_SELECTION, adjusting=True)
            await self.reply(user_id, self._service_prompt())
        elif choice == 2:
            service = get_service(session.data.get("service_id"))
            await self.advance(user_id, self.Stage.QUESTION_ANSWERING, adjusting=True,
                               answers=[], question_index=0)
            await self.reply(user_id, self._question_text(service, 0))
        elif choice == 3:
            await self.advance(user_id, self.Stage.URGENCY_SELECTION, adjusting=True)
            await self.reply(user_id, f"Qual a urgência do serviço?\n\n{urgency_menu()}")
        else:
            await self.advance(user_id, self.Stage.CONTACT_INFO, adjusting=True,
                               contact_step="name", force_contact=True)
            await self.reply(user_id, "Qual é o seu nome completo?")
        logger.info("quote_adjusting", user_id=user_id, option=choice)
        return FlowResult()

    async def _feedback(self, session: Session, text: str) -> FlowResult:
        rating = menu_choice(text, len(RATINGS))
        if rating is None:
            return self.reprompt(RATING_PROMPT)

        await self.ctx.stores.records.update_quote(session.data.get("quote_id"), rating=rating)
        await self.reply(session.user_id,
                         "Obrigado por sua avaliação! Sua opinião é muito importante para "
                         "melhorarmos nosso atendimento.")
        logger.info("quote_rated", user_id=session.user_id, rating=rating)

        if rating >= 4:
            await self.advance(session.user_id, self.Stage.DETAILED_FEEDBACK)
            await self.reply(session.user_id,
                             "Lamentamos que sua experiência não tenha sido satisfatória. "
                             "Gostaríamos de entender melhor o que poderíamos melhorar. Poderia "
                             "nos contar mais sobre o que não atendeu suas expectativas?")
        else:
            await self.finish(session.user_id)
        return FlowResult()

    async def _detailed_feedback(self, session: Session, text: str) -> FlowResult:
        await self.ctx.stores.records.update_quote(session.data.get("quote_id"), feedback=text)
        await self.reply(session.user_id,
                         "Agradecemos muito pelo seu retorno. Vamos usar suas sugestões para "
                         "melhorar nossos serviços. 🙏")
        await self.finish(session.user_id)
        return FlowResult()

    # ── Helpers ───────────────────────────────────────────────

    @staticmethod
    def _service_prompt() -> str:
        return (
            "Vamos preparar um orçamento personalizado para você. "
            "Por favor, selecione o tipo de serviço:\n\n"
            f"{services_menu()}\n\nDigite o número da opção desejada."
        )

    @staticmethod
    def _question_text(service: Service, index: int) -> str:
        total = len(service.questions)
        return f"*Pergunta {index + 1}/{total}*: {service.questions[index]}"

    async def _ask_contact(self, session: Session) -> FlowResult:
        customer = await self.customer_for(session.user_id)
        data: dict[str, Any] = {}
        if customer:
            data = {"name": customer.name, "email": customer.email}
            session = await self.advance(session.user_id, **data)
        if data.get("name") and data.get("email"):
            return await self._show_summary(session)
        if data.get("name"):
            await self.advance(session.user_id, self.Stage.CONTACT_INFO, contact_step="email")
            await self.reply(session.user_id,
                             f"Obrigado, {customer.first_name}! Qual é o seu email para envio "
                             f"do orçamento detalhado?")
            return FlowResult()
        await self.advance(session.user_id, self.Stage.CONTACT_INFO, contact_step="name")
        await self.reply(session.user_id,
                         "Para finalizar seu orçamento, preciso de algumas informações. "
                         "Qual é o seu nome completo?")
        return FlowResult()

    async def _show_summary(self, session: Session) -> FlowResult:
        data = session.data
        service = get_service(data.get("service_id"))
        urgency = get_urgency(data.get("urgency", "normal"))
        total = estimate(service.base_price, urgency.factor)
        fields = dict(
            customer_name=data.get("name", ""), email=data.get("email", ""),
            service_id=service.id, service_name=service.name, urgency=urgency.key,
            answers=list(data.get("answers", [])), base_price=service.base_price,
            urgency_factor=urgency.factor, estimate=total,
        )

        records = self.ctx.stores.records
        await records.upsert_customer(normalize_address(session.user_id),
                                      name=data.get("name", ""), email=data.get("email", ""))
        quote_id = data.get("quote_id")
        if quote_id and await records.get_quote(quote_id):
            await records.update_quote(quote_id, **fields)
        else:
            quote = await records.create_quote(Quote(user_id=session.user_id, **fields))
            quote_id = quote.id

        await self.advance(session.user_id, self.Stage.CONFIRMATION, quote_id=quote_id,
                           adjusting=False, force_contact=False)

        urgency_line = ""
        if urgency.surcharge_percent:
            urgency_line = f"\n• Fator de urgência ({urgency.label}): +{urgency.surcharge_percent}%"
        answers = "\n".join(
            f"• {question} {answer}"
            for question, answer in zip(service.questions, data.get("answers", []))
        )
        await self.reply(
            session.user_id,
            "*📋 Resumo do seu orçamento:*\n\n"
            f"*Serviços solicitados:*\n• {service.name}: {format_price(service.base_price)}"
            f"{urgency_line}\n\n"
            f"*Suas respostas:*\n{answers}\n\n"
            f"*Valor estimado: {format_price(total)}*\n\n"
            "*Observações:*\n"
            "- Este é um valor estimado, sujeito a ajustes após análise técnica detalhada.\n"
            "- A forma de pagamento pode ser definida no momento da confirmação do serviço.\n\n"
            "*Para confirmar o orçamento, digite 'CONFIRMAR'*\n"
            "*Para fazer ajustes, digite 'AJUSTAR'*\n"
            "*Para cancelar, digite 'CANCELAR'*",
        )
        logger.info("quote_summary_sent", user_id=session.user_id, quote_id=quote_id,
                    estimate=str(total))
        return FlowResult()

    async def _cancel_quote(self, session: Session) -> None:
        quote_id = session.data.get("quote_id")
        if quote_id:
            await self.ctx.stores.records.update_quote(quote_id, status=QuoteStatus.CANCELLED)
        await self.finish(session.user_id)
        await self.reply(session.user_id,
                         "✅ Orçamento cancelado conforme solicitado.\n\n"
                         "Se precisar de nossos serviços no futuro, estamos à disposição! 👋")
        logger.info("quote_cancelled", user_id=session.user_id, quote_id=quote_id)
