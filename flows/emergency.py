"""
Emergency flow — incident triage, ticket creation and escalation.

Stages:
    type_selection → description → [phone_collection] → [name_collection] → confirmation

CONFIRMAR opens a ticket, alerts the responsible team and arms an escalation
reminder to the admin. The escalation is an ordinary durable reminder, so it
survives restarts and is cancelled together with the ticket
("cancelar EMG-XXXXXXXX").
"""
from __future__ import annotations

import re
import structlog
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Optional

from channels.base import normalize_address
from flows.base import BaseFlow, FlowResult, menu_choice
from models.schemas import EmergencyTicket, FlowName, Session, TicketStatus
from utils.formatting import format_phone
from utils.text import contains_keyword, fold

logger = structlog.get_logger()

PHONE_RE = re.compile(r"^(\d{2}) ?(\d{4,5})[ -]?(\d{4})$")
CANCEL_TICKET_RE = re.compile(r"cancelar\s*#?\s*(EMG-[0-9A-F]{8})", re.IGNORECASE)


@dataclass(frozen=True)
class EmergencyType:
    id: str
    name: str
    team: str
    priority: str
    keywords: tuple[str, ...] = ()


EMERGENCY_TYPES: dict[int, EmergencyType] = {
    1: EmergencyType("computer_crash", "Travamento/Crash de Computador", "support", "high",
                     ("travar", "travou", "travando", "crash", "tela azul", "nao liga", "congelou")),
    2: EmergencyType("data_loss", "Perda de Dados", "data_recovery", "critical",
                     ("perdi", "perda", "arquivo", "arquivos", "dados", "documento", "sumiu",
                      "deletado", "apagado")),
    3: EmergencyType("network_failure", "Falha de Rede/Internet", "network", "high",
                     ("internet", "rede", "wifi", "conexao", "sem acesso", "offline", "nao conecta")),
    4: EmergencyType("security_breach", "Suspeita de Invasão/Vírus", "security", "critical",
                     ("virus", "hacker", "invadido", "sequestrado", "ransomware", "malware", "spam")),
    5: EmergencyType("hardware_failure", "Falha de Hardware", "hardware", "high",
                     ("quebrou", "quebrado", "hardware", "fisico", "tela", "monitor", "placa",
                      "bateria")),
    6: EmergencyType("other", "Outra Emergência", "support", "medium"),
}

# Minutes without a response before the admin is alerted
ESCALATION_MINUTES = {"critical": 5, "high": 30, "medium": 120}

PRIORITY_LABELS = {"critical": "Crítica", "high": "Alta", "medium": "Média"}


def identify_type(text: str) -> Optional[EmergencyType]:
    choice = menu_choice(text, len(EMERGENCY_TYPES))
    if choice is not None:
        return EMERGENCY_TYPES[choice]
    for emergency_type in EMERGENCY_TYPES.values():
        if emergency_type.keywords and contains_keyword(text, emergency_type.keywords):
            return emergency_type
    return None


def find_type_by_id(type_id: str) -> EmergencyType:
    return next((t for t in EMERGENCY_TYPES.values() if t.id == type_id), EMERGENCY_TYPES[6])


class EmergencyFlow(BaseFlow):

    name = FlowName.EMERGENCY
    triggers = ("emergência", "emergencia", "urgente", "urgência", "urgencia", "socorro",
                "grave", "crítico", "critico", "sos", "ajuda rápida", "imediato",
                "problema sério", "problema serio")

    class Stage(str, Enum):
        TYPE_SELECTION = "type_selection"
        DESCRIPTION = "description"
        PHONE_COLLECTION = "phone_collection"
        NAME_COLLECTION = "name_collection"
        CONFIRMATION = "confirmation"

    def stage_handlers(self):
        return {
            self.Stage.TYPE_SELECTION: self._type_selection,
            self.Stage.DESCRIPTION: self._description,
            self.Stage.PHONE_COLLECTION: self._phone_collection,
            self.Stage.NAME_COLLECTION: self._name_collection,
            self.Stage.CONFIRMATION: self._confirmation,
        }

    async def start(self, user_id: str, text: str = "") -> FlowResult:
        customer = await self.customer_for(user_id)
        in_hours = self.ctx.in_business_hours()
        business = self.ctx.settings.business

        message = "🚨 *ATENDIMENTO DE EMERGÊNCIA* 🚨\n\n"
        message += f"Olá, {customer.first_name}. " if customer and customer.first_name else "Olá. "
        message += "Entendemos que você está enfrentando um problema urgente.\n\n"
        if not in_hours:
            message += ("⚠️ *AVISO: Estamos fora do horário normal de atendimento.*\n"
                        "Você será atendido pelo nosso plantão de emergência, que pode ter tempo "
                        "de resposta mais longo.\n\n")
        message += "Por favor, selecione o tipo de emergência:\n\n"
        message += "\n".join(f"{n}️⃣ *{t.name}*" for n, t in EMERGENCY_TYPES.items())
        message += ("\n\nDigite o número correspondente ao seu problema.\n\n"
                    f"📞 Se preferir, ligue para nossa central de emergência: *{business.emergency_phone}*")

        await self.begin(user_id, data={
            "in_hours": in_hours,
            "name": customer.name if customer else "",
            "phone": customer.phone if customer else "",
        })
        await self.reply(user_id, message)
        await self.ctx.notifier.notify_admin(
            "⚠️ Atendimento de emergência iniciado\n"
            f"Cliente: {customer.name if customer else 'Não identificado'}\n"
            f"Telefone: {format_phone(user_id)}"
        )
        logger.info("emergency_started", user_id=user_id, in_hours=in_hours)
        return FlowResult()

    async def command(self, user_id: str, text: str) -> bool:
        match = CANCEL_TICKET_RE.search(text)
        if not match:
            return False
        await self.cancel_ticket(user_id, match.group(1).upper())
        return True

    async def cancel_ticket(self, user_id: str, ticket_id: str) -> bool:
        records = self.ctx.stores.records
        ticket = await records.get_ticket(ticket_id)
        if ticket is None or ticket.user_id != user_id or ticket.status != TicketStatus.OPEN:
            await self.reply(user_id, f"❌ Solicitação {ticket_id} não encontrada ou já encerrada.")
            return False
        await records.set_ticket_status(ticket_id, TicketStatus.CANCELLED)
        if ticket.escalation_id:
            await self.ctx.scheduler.cancel_reminder(ticket.escalation_id)
        await self.reply(user_id, f"✅ Solicitação de emergência {ticket_id} cancelada.")
        await self.ctx.notifier.notify_team(
            ticket.team, f"ℹ️ Emergência {ticket_id} cancelada pelo cliente."
        )
        logger.info("emergency_ticket_cancelled", user_id=user_id, ticket_id=ticket_id)
        return True

    # ── Stages ────────────────────────────────────────────────

    async def _type_selection(self, session: Session, text: str) -> FlowResult:
        emergency_type = identify_type(text)
        if emergency_type is None:
            return self.reprompt("Por favor, selecione uma opção válida digitando o número "
                                 f"correspondente (1 a {len(EMERGENCY_TYPES)}).")
        await self.advance(session.user_id, self.Stage.DESCRIPTION, type=emergency_type.id)
        await self.reply(session.user_id,
                         f"Você selecionou: *{emergency_type.name}*\n\n"
                         "Por favor, descreva brevemente o problema que está enfrentando. "
                         "Quanto mais detalhes você fornecer, melhor poderemos ajudar.")
        logger.info("emergency_type_selected", user_id=session.user_id, type=emergency_type.id)
        return FlowResult()

    async def _description(self, session: Session, text: str) -> FlowResult:
        if len(text) < 10:
            return self.reprompt("Por favor, forneça uma descrição mais detalhada do problema para "
                                 "que possamos ajudar melhor.")
        session = await self.advance(session.user_id, description=text)
        if not session.data.get("phone"):
            await self.advance(session.user_id, self.Stage.PHONE_COLLECTION)
            await self.reply(session.user_id,
                             "Para que possamos entrar em contato caso necessário, por favor, "
                             "informe um número de telefone para contato:\n\n"
                             "Digite no formato (XX) XXXXX-XXXX")
            return FlowResult()
        return await self._after_contact(session)

    async def _phone_collection(self, session: Session, text: str) -> FlowResult:
        if not PHONE_RE.match(re.sub(r"[()]", "", text).strip()):
            return self.reprompt("Por favor, forneça um número de telefone válido no formato "
                                 "(XX) XXXXX-XXXX.")
        session = await self.advance(session.user_id, phone=format_phone(text))
        return await self._after_contact(session)

    async def _name_collection(self, session: Session, text: str) -> FlowResult:
        if len(text) < 5 or " " not in text:
            return self.reprompt("Por favor, forneça seu nome completo (nome e sobrenome).")
        session = await self.advance(session.user_id, name=text)
        await self.ctx.stores.records.upsert_customer(normalize_address(session.user_id), name=text)
        return await self._after_contact(session)

    async def _confirmation(self, session: Session, text: str) -> FlowResult:
        answer = fold(text).strip().upper()
        if answer == "CONFIRMAR":
            return await self._open_ticket(session)
        if answer == "CANCELAR":
            await self.cancel(session)
            return FlowResult()
        return self.reprompt("Por favor, responda com *CONFIRMAR* para prosseguir com a solicitação "
                             "de emergência ou *CANCELAR* para cancelar.")

    async def cancel(self, session: Session) -> None:
        await self.finish(session.user_id)
        await self.reply(session.user_id,
                         "Sua solicitação de emergência foi cancelada. Se precisar de ajuda "
                         "posteriormente, não hesite em entrar em contato novamente.")
        logger.info("emergency_request_cancelled", user_id=session.user_id)

    # ── Ticket ────────────────────────────────────────────────

    async def _after_contact(self, session: Session) -> FlowResult:
        data = session.data
        if not data.get("name"):
            await self.advance(session.user_id, self.Stage.NAME_COLLECTION)
            await self.reply(session.user_id, "Por favor, informe seu nome completo:")
            return FlowResult()

        emergency_type = find_type_by_id(data["type"])
        await self.advance(session.user_id, self.Stage.CONFIRMATION)
        await self.reply(
            session.user_id,
            "📋 *Resumo da sua solicitação de emergência:*\n\n"
            f"*Tipo:* {emergency_type.name}\n"
            f"*Descrição:* {data.get('description', '')}\n"
            f"*Cliente:* {data.get('name') or 'Não informado'}\n"
            f"*Telefone:* {data.get('phone') or format_phone(session.user_id)}\n\n"
            "Para confirmar esta solicitação de emergência, digite *CONFIRMAR*\n"
            "Para cancelar, digite *CANCELAR*",
        )
        return FlowResult()

    async def _open_ticket(self, session: Session) -> FlowResult:
        data = session.data
        user_id = session.user_id
        emergency_type = find_type_by_id(data["type"])
        phone = data.get("phone") or format_phone(user_id)
        ticket = EmergencyTicket(
            user_id=user_id, emergency_type=emergency_type.id, team=emergency_type.team,
            priority=emergency_type.priority, description=data.get("description", ""),
            phone=phone, name=data.get("name", ""),
        )
        ticket.escalation_id = await self._arm_escalation(ticket)
        try:
            await self.ctx.stores.records.create_ticket(ticket)
        except Exception:
            if ticket.escalation_id:
                await self.ctx.scheduler.cancel_reminder(ticket.escalation_id)
            raise

        alert = (
            f"🚨 EMERGÊNCIA: {emergency_type.name}\n"
            f"Cliente: {ticket.name or 'Não identificado'}\n"
            f"Telefone: {phone}\n"
            f"Problema: {ticket.description}\n"
            f"Ticket: {ticket.id}\n"
            f"Prioridade: {PRIORITY_LABELS.get(ticket.priority, ticket.priority)}\n"
            f"Equipe: {ticket.team}"
        )
        if not await self.ctx.notifier.notify_team(ticket.team, alert):
            await self.ctx.notifier.notify_admin(
                f"ALERTA! Falha ao notificar equipe sobre emergência do cliente "
                f"{ticket.name or user_id} ({ticket.id})"
            )

        response_time = ("Durante o horário comercial, o tempo médio de resposta é de até 30 minutos."
                         if data.get("in_hours") else
                         "Fora do horário comercial, o tempo médio de resposta é de até 2 horas.")
        await self.finish(user_id)
        await self.reply(
            user_id,
            "✅ *Solicitação de emergência confirmada!*\n\n"
            f"Sua solicitação foi registrada com o número #{ticket.id}.\n\n"
            "Um de nossos técnicos entrará em contato o mais breve possível para resolver seu "
            f"problema. {response_time}\n\n"
            "Caso a situação se agrave ou precise de suporte imediato, ligue para nossa central "
            f"de emergência:\n📞 *{self.ctx.settings.business.emergency_phone}*\n\n"
            f'Para cancelar esta solicitação, envie "cancelar {ticket.id}".',
        )
        logger.info("emergency_ticket_created", user_id=user_id, ticket_id=ticket.id,
                    type=emergency_type.id, priority=ticket.priority, team=ticket.team)
        return FlowResult()

    async def _arm_escalation(self, ticket: EmergencyTicket) -> str:
        admin = self.ctx.settings.business.admin_number
        if not admin:
            logger.info("emergency_escalation_skipped", ticket_id=ticket.id,
                        reason="no_admin_number")
            return ""
        minutes = ESCALATION_MINUTES.get(ticket.priority, 120)
        return await self.ctx.scheduler.create_reminder(
            admin,
            f"⚠️ ESCALAÇÃO: Emergência {ticket.id} sem resposta há {minutes} minutos.\n"
            f"Prioridade: {PRIORITY_LABELS.get(ticket.priority, ticket.priority)}\n"
            f"Cliente: {ticket.name or 'Não identificado'} ({ticket.phone})\n"
            f"Descrição: {ticket.description[:100]}\n\n"
            "É necessário intervenção imediata.",
            self.ctx.scheduler.now() + timedelta(minutes=minutes),
            kind="escalation",
        )
