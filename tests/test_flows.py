"""
Conversation tests — full dialogues driven through the orchestrator.

Every test talks to a fully wired orchestrator on in-memory stores with a
fake clock (Tuesday 20/10/2026, 10:00 in São Paulo unless moved). Reminders
are fired explicitly with `scheduler.run_due()`.
"""
import re
from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from models.schemas import (
    AppointmentType, Booking, BookingStatus, QuoteStatus, ReminderStatus, TicketStatus,
)

from conftest import ADMIN, OPERATOR, SUPPORT_TEAM, USER, last_reply, replies, say


async def book_slot(stores, user, day=date(2026, 10, 21), start="08:00", end="12:00"):
    return await stores.bookings.book(Booking(
        user_id=user, customer_name="Outro Cliente", service="Limpeza",
        appointment_type=AppointmentType.LOJA, day=day, period="Manhã",
        start_time=start, end_time=end,
    ), capacity=3)


# ──────────────────────────────────────────────────────────────
#  Welcome
# ──────────────────────────────────────────────────────────────

class TestWelcome:
    @pytest.mark.asyncio
    async def test_greeting_shows_menu(self, orchestrator, messenger):
        result = await say(orchestrator, "oi")
        assert result["flow"] == "welcome"
        assert result["started"] is True
        assert result["stage"] == "menu"
        text = last_reply(messenger)
        assert text.startswith("Bom dia! 👋 Seja bem-vindo(a)")
        assert "5️⃣ *Falar com atendente humano*" in text
        assert "fora do horário" not in text

    @pytest.mark.asyncio
    async def test_out_of_hours_notice(self, orchestrator, messenger, clock):
        clock.set_local(2026, 10, 17, 10)            # Saturday
        await say(orchestrator, "olá")
        assert "fora do horário de atendimento" in last_reply(messenger)

    @pytest.mark.asyncio
    async def test_returning_customer(self, orchestrator, messenger, stores):
        await stores.records.upsert_customer(USER, name="Ana Lima", total_services=2)
        await say(orchestrator, "bom dia")
        assert "Bom dia, Ana! 👋 Que bom ter você de volta" in last_reply(messenger)

    @pytest.mark.asyncio
    async def test_menu_option_transfers(self, orchestrator, messenger):
        await say(orchestrator, "oi")
        result = await say(orchestrator, "1")
        assert result["flow"] == "quote"
        assert result["transfers"] == ["quote"]
        assert result["stage"] == "service_selection"
        assert "orçamento personalizado" in last_reply(messenger)

    @pytest.mark.asyncio
    async def test_menu_alias(self, orchestrator):
        await say(orchestrator, "oi")
        result = await say(orchestrator, "quero falar com uma pessoa")
        assert result["flow"] == "human_handoff"

    @pytest.mark.asyncio
    async def test_invalid_choice_reprompts(self, orchestrator, messenger):
        await say(orchestrator, "oi")
        result = await say(orchestrator, "xyz")
        assert result["reprompted"] is True
        assert result["stage"] == "menu"
        assert last_reply(messenger).startswith("Desculpe, não entendi sua escolha")

    @pytest.mark.asyncio
    async def test_expired_session_starts_over(self, orchestrator, messenger, clock):
        await say(orchestrator, "agendar")
        result = await say(orchestrator, "1")
        assert result["stage"] == "type_selection"

        clock.advance(seconds=7201)
        result = await say(orchestrator, "2")
        assert result["flow"] == "welcome"
        assert result["started"] is True
        assert "Digite o número da opção desejada." in last_reply(messenger)


# ──────────────────────────────────────────────────────────────
#  Quote
# ──────────────────────────────────────────────────────────────

class TestQuote:
    async def _reach_summary(self, orchestrator):
        for text in ("quero um orçamento", "1", "A tela fica azul",
                     "Notebook Dell Inspiron", "Há uma semana", "3"):
            await say(orchestrator, text)

    @pytest.mark.asyncio
    async def test_full_quote_with_urgent_surcharge(self, orchestrator, messenger, stores):
        await self._reach_summary(orchestrator)
        assert last_reply(messenger) == ("Para finalizar seu orçamento, preciso de algumas "
                                         "informações. Qual é o seu nome completo?")

        await say(orchestrator, "Ana Lima")
        assert last_reply(messenger).startswith("Obrigado, Ana!")

        result = await say(orchestrator, "ana@exemplo.com")
        assert result["stage"] == "confirmation"
        summary = last_reply(messenger)
        assert "• Conserto: R$ 150,00" in summary
        assert "Fator de urgência (Urgente): +30%" in summary
        assert "Valor estimado: R$ 195,00" in summary

        result = await say(orchestrator, "confirmar")
        assert result["stage"] == "feedback"
        assert any("*Número do orçamento:* #1" in r for r in replies(messenger))
        assert "Valor estimado: R$ 195,00" in last_reply(messenger, ADMIN)

        quote = await stores.records.get_quote(1)
        assert quote.status == QuoteStatus.PENDING
        assert quote.estimate == Decimal("195.00")
        assert quote.answers == ["A tela fica azul", "Notebook Dell Inspiron", "Há uma semana"]
        customer = await stores.records.get_customer_by_phone(USER)
        assert customer.email == "ana@exemplo.com"

    @pytest.mark.asyncio
    async def test_low_rating_asks_for_details(self, orchestrator, messenger, stores):
        await stores.records.upsert_customer(USER, name="Ana Lima", email="ana@exemplo.com")
        await self._reach_summary(orchestrator)
        await say(orchestrator, "CONFIRMAR")

        result = await say(orchestrator, "4")
        assert result["stage"] == "detailed_feedback"
        result = await say(orchestrator, "Demorou para responder")
        assert result["stage"] is None

        quote = await stores.records.get_quote(1)
        assert quote.rating == 4
        assert quote.feedback == "Demorou para responder"

    @pytest.mark.asyncio
    async def test_good_rating_ends_session(self, orchestrator, stores):
        await stores.records.upsert_customer(USER, name="Ana Lima", email="ana@exemplo.com")
        await self._reach_summary(orchestrator)
        await say(orchestrator, "CONFIRMAR")
        result = await say(orchestrator, "1")
        assert result["stage"] is None
        assert (await stores.records.get_quote(1)).rating == 1

    @pytest.mark.asyncio
    async def test_adjust_urgency_updates_same_quote(self, orchestrator, messenger, stores):
        await stores.records.upsert_customer(USER, name="Ana Lima", email="ana@exemplo.com")
        await self._reach_summary(orchestrator)
        assert "Valor estimado: R$ 195,00" in last_reply(messenger)

        await say(orchestrator, "AJUSTAR")
        await say(orchestrator, "3")
        result = await say(orchestrator, "1")
        assert result["stage"] == "confirmation"
        assert "Valor estimado: R$ 150,00" in last_reply(messenger)

        quote = await stores.records.get_quote(1)
        assert quote.estimate == Decimal("150.00")
        assert await stores.records.get_quote(2) is None

    @pytest.mark.asyncio
    async def test_cancel_at_confirmation(self, orchestrator, messenger, stores):
        await stores.records.upsert_customer(USER, name="Ana Lima", email="ana@exemplo.com")
        await self._reach_summary(orchestrator)
        result = await say(orchestrator, "cancelar")
        assert result["command"] == "cancel"
        assert result["stage"] is None
        assert last_reply(messenger).startswith("✅ Orçamento cancelado")
        assert (await stores.records.get_quote(1)).status == QuoteStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_invalid_email_reprompts(self, orchestrator, messenger):
        await self._reach_summary(orchestrator)
        await say(orchestrator, "Ana Lima")
        result = await say(orchestrator, "ana-sem-arroba")
        assert result["reprompted"] is True
        assert last_reply(messenger) == "Por favor, forneça um endereço de email válido."


# ──────────────────────────────────────────────────────────────
#  Scheduling
# ──────────────────────────────────────────────────────────────

class TestScheduling:
    @pytest.mark.asyncio
    async def test_full_booking_with_reminders(self, orchestrator, messenger, stores, clock):
        clock.set_local(2026, 10, 20, 9)
        for text in ("quero agendar uma visita", "2", "1",
                     "Rua das Flores, 100 - Boa Viagem, Recife", "2", "manhã"):
            await say(orchestrator, text)
        assert last_reply(messenger) == "Por favor, informe seu nome completo:"

        result = await say(orchestrator, "ana lima")
        assert result["stage"] == "confirmation"
        summary = last_reply(messenger)
        assert "👤 Nome: Ana Lima" in summary
        assert "📍 Endereço: Rua das Flores, 100 - Boa Viagem, Recife" in summary
        assert "📅 Data: 21/10/2026 (Quarta)" in summary
        assert summary.endswith("Confirma este agendamento? (Sim/Não)")

        result = await say(orchestrator, "sim")
        assert result["stage"] is None
        confirmation = last_reply(messenger)
        assert "✅ *Agendamento confirmado!*" in confirmation
        assert "*#1*" in confirmation
        assert "Novo Agendamento #1" in last_reply(messenger, ADMIN)

        booking = await stores.bookings.get(1)
        assert booking.address == "Rua das Flores, 100 - Boa Viagem, Recife"
        assert len(booking.reminder_ids) == 2

        jobs = await orchestrator.scheduler.get_reminders_for_recipient(USER)
        assert sorted(j.scheduled_time.hour for j in jobs) == [9, 13]     # 06:00 and 10:00 local
        assert all(j.kind == "appointment" for j in jobs)

        clock.advance(hours=1)
        assert await orchestrator.scheduler.run_due() == 1
        assert last_reply(messenger).startswith(
            "🔔 Lembrete: Você tem um agendamento de Limpeza amanhã (Quarta)"
        )

    @pytest.mark.asyncio
    async def test_list_and_cancel_booking(self, orchestrator, messenger, stores):
        await stores.records.upsert_customer(USER, name="Ana Lima")
        for text in ("agendar", "1", "remoto", "próxima semana", "tarde"):
            await say(orchestrator, text)
        await say(orchestrator, "sim")
        booking = await stores.bookings.get(1)
        assert booking.day == date(2026, 10, 26)
        assert booking.period == "Tarde"

        result = await say(orchestrator, "meus agendamentos")
        assert result["command"] == "scheduling"
        assert "🔖 Código: #1" in last_reply(messenger)

        result = await say(orchestrator, "cancelar #1")
        assert result["command"] == "scheduling"
        assert last_reply(messenger) == "✅ Agendamento #1 cancelado com sucesso."
        assert (await stores.bookings.get(1)).status == BookingStatus.CANCELLED
        jobs = await orchestrator.scheduler.get_reminders_for_recipient(USER)
        assert jobs and all(j.status == ReminderStatus.CANCELLED for j in jobs)

        await say(orchestrator, "meus agendamentos")
        assert last_reply(messenger) == "Você não possui agendamentos ativos no momento."

    @pytest.mark.asyncio
    async def test_cannot_cancel_someone_elses_booking(self, orchestrator, messenger, stores):
        await book_slot(stores, "5581911112222")
        await say(orchestrator, "cancelar #1")
        assert last_reply(messenger) == "❌ Agendamento #1 não encontrado ou já cancelado."
        assert (await stores.bookings.get(1)).status == BookingStatus.SCHEDULED

    @pytest.mark.asyncio
    async def test_today_after_cutoff_uses_next_work_day(self, orchestrator, messenger, clock):
        clock.set_local(2026, 10, 20, 18)
        for text in ("agendar", "1", "2"):
            await say(orchestrator, text)
        result = await say(orchestrator, "hoje")
        assert result["stage"] == "time_selection"
        assert "21/10/2026 (Quarta)" in last_reply(messenger)

    @pytest.mark.asyncio
    async def test_past_date_reprompts(self, orchestrator, messenger):
        for text in ("agendar", "1", "3"):
            await say(orchestrator, text)
        result = await say(orchestrator, "10/10")
        assert result["reprompted"] is True
        assert result["stage"] == "date_selection"
        assert last_reply(messenger).startswith("Esta data já passou.")

    @pytest.mark.asyncio
    async def test_full_slot_offers_next_day(self, orchestrator, messenger, stores):
        for i in range(3):
            await book_slot(stores, f"558191111000{i}")
        await stores.records.upsert_customer(USER, name="Ana Lima")

        for text in ("agendar", "1", "2", "amanhã"):
            await say(orchestrator, text)
        result = await say(orchestrator, "1")
        assert result["stage"] == "slot_full_confirmation"
        assert last_reply(messenger).startswith(
            "Desculpe, este horário já está com a agenda completa. "
            "Temos disponibilidade no dia 22/10/2026 (Quinta)."
        )

        result = await say(orchestrator, "sim")
        assert result["stage"] == "confirmation"
        assert "📅 Data: 22/10/2026 (Quinta)" in last_reply(messenger)

        await say(orchestrator, "sim")
        booking = await stores.bookings.get(4)
        assert booking.day == date(2026, 10, 22)

    @pytest.mark.asyncio
    async def test_declining_summary_ends_session(self, orchestrator, messenger, stores):
        await stores.records.upsert_customer(USER, name="Ana Lima")
        for text in ("agendar", "1", "2", "amanhã", "3"):
            await say(orchestrator, text)
        result = await say(orchestrator, "não")
        assert result["stage"] is None
        assert last_reply(messenger).startswith("Agendamento cancelado.")
        assert await stores.bookings.get(1) is None


# ──────────────────────────────────────────────────────────────
#  FAQ
# ──────────────────────────────────────────────────────────────

class TestFaq:
    @pytest.mark.asyncio
    async def test_menu_option_three_shows_categories(self, orchestrator, messenger):
        await say(orchestrator, "oi")
        result = await say(orchestrator, "3")
        assert result["flow"] == "faq"
        assert result["stage"] == "category_selection"
        assert last_reply(messenger).startswith("Para melhor atendê-lo(a)")

    @pytest.mark.asyncio
    async def test_category_then_numbered_question(self, orchestrator, messenger):
        await say(orchestrator, "tenho uma dúvida")
        result = await say(orchestrator, "1")
        assert result["stage"] == "waiting_question"
        assert "1. Qual o horário de funcionamento?" in last_reply(messenger)

        result = await say(orchestrator, "1")
        assert result["stage"] == "feedback"
        assert any(r.startswith("*Pergunta:* Qual o horário de funcionamento?")
                   for r in replies(messenger))
        assert last_reply(messenger) == "Esta resposta foi útil?\n\n1️⃣ Sim\n2️⃣ Não"

    @pytest.mark.asyncio
    async def test_question_in_first_message_is_answered(self, orchestrator, messenger):
        result = await say(orchestrator, "dúvida: vocês aceitam cartão de crédito?")
        assert result["flow"] == "faq"
        assert result["stage"] == "feedback"
        assert any(r.startswith("*Pergunta:* Vocês aceitam cartão de crédito?")
                   for r in replies(messenger))

    @pytest.mark.asyncio
    async def test_unhelpful_answer_can_reach_an_operator(self, orchestrator, messenger):
        await say(orchestrator, "tenho uma dúvida")
        await say(orchestrator, "qual o horário de funcionamento?")
        result = await say(orchestrator, "2")
        assert result["stage"] == "follow_up"

        result = await say(orchestrator, "2")
        assert result["transfers"] == ["human_handoff"]
        assert result["stage"] == "waiting_agent"
        assert "Novo atendimento solicitado" in last_reply(messenger, OPERATOR)

    @pytest.mark.asyncio
    async def test_no_answer_offers_most_frequent(self, orchestrator, messenger):
        await say(orchestrator, "tenho uma dúvida")
        result = await say(orchestrator, "xyzzy plugh")
        assert result["stage"] == "no_answer_follow_up"

        await say(orchestrator, "2")
        assert last_reply(messenger).startswith("Estas são as perguntas mais frequentes:")
        result = await say(orchestrator, "1")
        assert result["stage"] == "feedback"

    @pytest.mark.asyncio
    async def test_helpful_answer_keeps_listening(self, orchestrator, messenger):
        await say(orchestrator, "tenho uma dúvida")
        await say(orchestrator, "qual o horário de funcionamento?")
        result = await say(orchestrator, "sim")
        assert result["stage"] == "waiting_question"

        result = await say(orchestrator, "não")
        assert result["stage"] is None
        assert last_reply(messenger).startswith("Obrigado pelo contato!")


# ──────────────────────────────────────────────────────────────
#  Emergency
# ──────────────────────────────────────────────────────────────

def ticket_id_from(text: str) -> str:
    return re.search(r"EMG-[0-9A-F]{8}", text).group(0)


class TestEmergency:
    async def _open_ticket(self, orchestrator):
        for text in ("socorro, é uma emergência", "1", "O computador travou e não liga mais",
                     "(81) 98888-7777", "Carlos Souza"):
            await say(orchestrator, text)
        return await say(orchestrator, "CONFIRMAR")

    @pytest.mark.asyncio
    async def test_ticket_alerts_team_and_arms_escalation(self, orchestrator, messenger,
                                                          stores, clock):
        first = await say(orchestrator, "socorro, é uma emergência")
        assert first["flow"] == "emergency"
        assert "ATENDIMENTO DE EMERGÊNCIA" in last_reply(messenger)
        assert last_reply(messenger, ADMIN).startswith("⚠️ Atendimento de emergência iniciado")

        for text in ("1", "O computador travou e não liga mais", "(81) 98888-7777"):
            await say(orchestrator, text)
        assert last_reply(messenger) == "Por favor, informe seu nome completo:"
        await say(orchestrator, "Carlos Souza")
        assert "*Telefone:* (81) 98888-7777" in last_reply(messenger)

        result = await say(orchestrator, "CONFIRMAR")
        assert result["stage"] is None
        confirmation = last_reply(messenger)
        assert "✅ *Solicitação de emergência confirmada!*" in confirmation
        assert "até 30 minutos" in confirmation
        ticket_id = ticket_id_from(confirmation)

        assert last_reply(messenger, SUPPORT_TEAM).startswith(
            "🚨 EMERGÊNCIA: Travamento/Crash de Computador"
        )
        ticket = await stores.records.get_ticket(ticket_id)
        assert ticket.priority == "high"
        assert ticket.escalation_id

        jobs = await orchestrator.scheduler.get_reminders_for_recipient(ADMIN)
        assert [j.kind for j in jobs] == ["escalation"]
        assert jobs[0].scheduled_time == clock() + timedelta(minutes=30)

        clock.advance(minutes=30)
        await orchestrator.scheduler.run_due()
        assert last_reply(messenger, ADMIN).startswith(
            f"🔔 Lembrete: ⚠️ ESCALAÇÃO: Emergência {ticket_id}"
        )
        customer = await stores.records.get_customer_by_phone(USER)
        assert customer.name == "Carlos Souza"

    @pytest.mark.asyncio
    async def test_cancel_ticket_cancels_escalation(self, orchestrator, messenger, stores):
        await self._open_ticket(orchestrator)
        ticket_id = ticket_id_from(last_reply(messenger))

        result = await say(orchestrator, f"cancelar {ticket_id}")
        assert result["command"] == "emergency"
        assert last_reply(messenger) == f"✅ Solicitação de emergência {ticket_id} cancelada."
        assert (await stores.records.get_ticket(ticket_id)).status == TicketStatus.CANCELLED
        assert "cancelada pelo cliente" in last_reply(messenger, SUPPORT_TEAM)

        jobs = await orchestrator.scheduler.get_reminders_for_recipient(ADMIN)
        assert jobs[0].status == ReminderStatus.CANCELLED

        await say(orchestrator, f"cancelar {ticket_id}")
        assert last_reply(messenger) == f"❌ Solicitação {ticket_id} não encontrada ou já encerrada."

    @pytest.mark.asyncio
    async def test_failed_ticket_insert_cancels_escalation(self, orchestrator, stores,
                                                          monkeypatch):
        monkeypatch.setattr(stores.records, "create_ticket",
                            AsyncMock(side_effect=RuntimeError("insert failed")))
        result = await self._open_ticket(orchestrator)
        assert result["status"] == "error"

        jobs = await orchestrator.scheduler.get_reminders_for_recipient(ADMIN)
        assert [j.kind for j in jobs] == ["escalation"]
        assert jobs[0].status == ReminderStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_known_customer_skips_contact_questions(self, orchestrator, messenger, stores):
        await stores.records.upsert_customer(USER, name="Carlos Souza")
        await say(orchestrator, "emergência")
        await say(orchestrator, "perdi todos os meus arquivos")
        result = await say(orchestrator, "Apaguei a pasta do financeiro sem querer")
        assert result["stage"] == "confirmation"
        assert "*Tipo:* Perda de Dados" in last_reply(messenger)

    @pytest.mark.asyncio
    async def test_out_of_hours_response_time(self, orchestrator, messenger, clock):
        clock.set_local(2026, 10, 17, 22)            # Saturday night
        await say(orchestrator, "emergência")
        assert "fora do horário normal de atendimento" in last_reply(messenger)
        for text in ("3", "A internet caiu no escritório todo", "81988887777", "Carlos Souza"):
            await say(orchestrator, text)
        await say(orchestrator, "CONFIRMAR")
        assert "até 2 horas" in last_reply(messenger)

    @pytest.mark.asyncio
    async def test_short_description_and_bad_phone_reprompt(self, orchestrator, messenger):
        await say(orchestrator, "emergência")
        await say(orchestrator, "1")
        result = await say(orchestrator, "travou")
        assert result["reprompted"] is True
        await say(orchestrator, "O computador travou de vez")
        result = await say(orchestrator, "12345")
        assert result["reprompted"] is True
        assert result["stage"] == "phone_collection"


# ──────────────────────────────────────────────────────────────
#  Human handoff
# ──────────────────────────────────────────────────────────────

class TestHumanHandoff:
    @pytest.mark.asyncio
    async def test_relay_until_closed(self, orchestrator, messenger):
        result = await say(orchestrator, "quero falar com um atendente")
        assert result["flow"] == "human_handoff"
        assert result["stage"] == "waiting_agent"
        assert last_reply(messenger).startswith("Estou transferindo você")
        assert 'Mensagem original: "quero falar com um atendente"' in last_reply(messenger, OPERATOR)

        await say(orchestrator, "meu pc não liga")
        assert last_reply(messenger, OPERATOR) == "💬 (81) 98888-7777: meu pc não liga"
        await say(orchestrator, "alguém aí?")
        assert last_reply(messenger, OPERATOR) == "💬 (81) 98888-7777: alguém aí?"
        acks = [r for r in replies(messenger) if "foi encaminhada ao atendente" in r]
        assert len(acks) == 1

        result = await say(orchestrator, "encerrar")
        assert result["stage"] is None
        assert last_reply(messenger).startswith("Atendimento encerrado.")
        assert "encerrou o atendimento" in last_reply(messenger, OPERATOR)

    @pytest.mark.asyncio
    async def test_out_of_hours(self, orchestrator, messenger, clock):
        clock.set_local(2026, 10, 18, 15)            # Sunday
        await say(orchestrator, "humano")
        assert last_reply(messenger).startswith("Lamentamos, mas estamos fora do horário")

    @pytest.mark.asyncio
    async def test_emergency_keyword_leaves_the_queue(self, orchestrator, messenger, clock):
        clock.set_local(2026, 10, 20, 19)
        await say(orchestrator, "quero falar com atendente")
        assert "digite *emergência*" in last_reply(messenger)
        operator_messages = len(replies(messenger, OPERATOR))

        result = await say(orchestrator, "emergência")
        assert result["flow"] == "emergency"
        assert result["transfers"] == ["emergency"]
        assert result["stage"] == "type_selection"
        assert last_reply(messenger).startswith("🚨 *ATENDIMENTO DE EMERGÊNCIA* 🚨")
        assert len(replies(messenger, OPERATOR)) == operator_messages


# ──────────────────────────────────────────────────────────────
#  Service completion
# ──────────────────────────────────────────────────────────────

class TestServiceCompletion:
    @pytest.mark.asyncio
    async def test_completion_rating_and_follow_ups(self, orchestrator, messenger, stores):
        await book_slot(stores, USER, day=date(2026, 10, 20))

        booking = await orchestrator.register_service_completion(f"{USER}@c.us")
        assert booking.status == BookingStatus.COMPLETED
        assert last_reply(messenger).startswith("✅ *Serviço concluído com sucesso!*")
        assert (await stores.records.get_customer_by_phone(USER)).total_services == 1

        jobs = await orchestrator.scheduler.get_reminders_for_recipient(USER)
        assert sorted(j.kind for j in jobs) == ["follow_up", "follow_up"]

        result = await say(orchestrator, "5")
        assert result["flow"] == "scheduling"
        assert result["stage"] is None
        assert last_reply(messenger, ADMIN) == f"⭐ Avaliação do atendimento #1: 5/5 ({USER})"

    @pytest.mark.asyncio
    async def test_completion_without_booking(self, orchestrator):
        assert await orchestrator.register_service_completion(USER) is None
