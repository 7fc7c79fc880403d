"""
Scheduling flow — books a visit into a capacity-limited slot (day + period).

Stages:
    service_selection → type_selection → [address_collection]
      → date_selection → time_selection ──full──▶ slot_full_confirmation
      → [name_collection] → confirmation → booked (session ends)

On "sim" the booking goes through the store's capacity-checked insert, the
customer record is updated and appointment reminders are armed:

  - the day before at 10:00
  - on the day (06:00 / 11:00 / 16:00 by period) when the visit is less
    than 48h away

Commands that work with or without a session:
    "meus agendamentos"   list active bookings
    "cancelar #N"         cancel booking N and its pending reminders
"""
from __future__ import annotations

import re
import structlog
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Optional

from channels.base import normalize_address
from database.store_base import SlotUnavailableError
from flows.base import BaseFlow, FlowResult, is_no, is_yes, menu_choice
from flows.catalog import find_service, get_service, services_price_menu
from job_queue.scheduler import ReminderValidationError
from models.schemas import AppointmentType, Booking, BookingStatus, FlowName, Session
from utils.dates import (
    PERIODS, DateResolutionError, Period, find_period, format_date, weekday_name,
)
from utils.formatting import format_phone, format_price
from utils.text import contains_keyword

logger = structlog.get_logger()

CANCEL_BOOKING_RE = re.compile(r"cancelar\s*#\s*(\d+)", re.IGNORECASE)

TYPE_OPTIONS: dict[int, tuple[AppointmentType, str, tuple[str, ...]]] = {
    1: (AppointmentType.PRESENCIAL, "Presencial (vamos até você)",
        ("presencial", "casa", "domicilio", "domicílio")),
    2: (AppointmentType.REMOTO, "Remoto (atendimento online)",
        ("remoto", "online", "acesso remoto")),
    3: (AppointmentType.LOJA, "Trazer equipamento à loja", ("loja", "trazer", "levar")),
}

TYPE_LABELS = {
    AppointmentType.PRESENCIAL: "Presencial",
    AppointmentType.REMOTO: "Remoto",
    AppointmentType.LOJA: "Na loja (traga seu equipamento)",
}

DATE_CHOICES = {1: "hoje", 2: "amanhã", 3: "esta semana", 4: "próxima semana"}

DATE_OPTIONS = (
    "1️⃣ Hoje\n"
    "2️⃣ Amanhã\n"
    "3️⃣ Esta semana\n"
    "4️⃣ Próxima semana\n"
    "5️⃣ Outra data (informe DD/MM)"
)

# Hour of the same-day reminder for each period
SAME_DAY_REMINDER_HOUR = {"manha": 6, "tarde": 11, "noite": 16}


def type_menu() -> str:
    return "\n".join(f"{n}️⃣ {label}" for n, (_, label, _) in TYPE_OPTIONS.items())


def period_menu() -> str:
    return "\n".join(f"{key}️⃣ {p.label} ({p.start} - {p.end})" for key, p in PERIODS.items())


def find_type(text: str) -> Optional[AppointmentType]:
    choice = menu_choice(text, len(TYPE_OPTIONS))
    if choice is not None:
        return TYPE_OPTIONS[choice][0]
    for kind, _, keywords in TYPE_OPTIONS.values():
        if contains_keyword(text, keywords):
            return kind
    return None


class SchedulingFlow(BaseFlow):

    name = FlowName.SCHEDULING
    triggers = ("agendar", "agendamento", "agenda", "marcar", "marcar horário",
                "marcar horario", "visita", "reservar")

    class Stage(str, Enum):
        SERVICE_SELECTION = "service_selection"
        TYPE_SELECTION = "type_selection"
        ADDRESS_COLLECTION = "address_collection"
        DATE_SELECTION = "date_selection"
        SLOT_FULL_CONFIRMATION = "slot_full_confirmation"
        TIME_SELECTION = "time_selection"
        NAME_COLLECTION = "name_collection"
        CONFIRMATION = "confirmation"
        SERVICE_RATING = "service_rating"

    def stage_handlers(self):
        return {
            self.Stage.SERVICE_SELECTION: self._service_selection,
            self.Stage.TYPE_SELECTION: self._type_selection,
            self.Stage.ADDRESS_COLLECTION: self._address_collection,
            self.Stage.DATE_SELECTION: self._date_selection,
            self.Stage.SLOT_FULL_CONFIRMATION: self._slot_full_confirmation,
            self.Stage.TIME_SELECTION: self._time_selection,
            self.Stage.NAME_COLLECTION: self._name_collection,
            self.Stage.CONFIRMATION: self._confirmation,
            self.Stage.SERVICE_RATING: self._service_rating,
        }

    @property
    def config(self):
        return self.ctx.settings.scheduling

    async def start(self, user_id: str, text: str = "") -> FlowResult:
        active = await self.ctx.stores.bookings.list_for_user(user_id)
        message = "✅ *Agendamento de Serviços*\n\n"
        if active:
            message += (f"Você já possui {len(active)} agendamento(s) ativo(s). "
                        f"Envie \"meus agendamentos\" para ver detalhes.\n\n")
        message += (f"*Serviços disponíveis:*\n{services_price_menu()}\n\n"
                    f"Digite o número ou nome do serviço desejado:")
        await self.begin(user_id)
        await self.reply(user_id, message)
        logger.info("scheduling_started", user_id=user_id, active_bookings=len(active))
        return FlowResult()

    # ── Commands ──────────────────────────────────────────────

    async def command(self, user_id: str, text: str) -> bool:
        match = CANCEL_BOOKING_RE.search(text)
        if match:
            await self.cancel_booking(user_id, int(match.group(1)))
            return True
        if contains_keyword(text, ("meus agendamentos", "meu agendamento", "minhas visitas")):
            await self.list_bookings(user_id)
            return True
        return False

    async def list_bookings(self, user_id: str) -> None:
        bookings = await self.ctx.stores.bookings.list_for_user(user_id)
        if not bookings:
            await self.reply(user_id, "Você não possui agendamentos ativos no momento.")
            return
        lines = ["📅 *Seus agendamentos ativos:*\n"]
        for idx, booking in enumerate(bookings, start=1):
            lines.append(
                f"*{idx}.* {booking.service}\n"
                f"   📆 Data: {format_date(booking.day)} ({weekday_name(booking.day)})\n"
                f"   🕒 Horário: {booking.period} (a partir de {booking.start_time})\n"
                f"   🔖 Código: #{booking.id}\n"
            )
        lines.append('Para cancelar um agendamento, envie "cancelar #código".')
        await self.reply(user_id, "\n".join(lines))

    async def cancel_booking(self, user_id: str, booking_id: int) -> bool:
        bookings = self.ctx.stores.bookings
        booking = await bookings.get(booking_id)
        if booking is None or booking.user_id != user_id or booking.status != BookingStatus.SCHEDULED:
            await self.reply(user_id, f"❌ Agendamento #{booking_id} não encontrado ou já cancelado.")
            return False

        await bookings.set_status(booking_id, BookingStatus.CANCELLED)
        for reminder_id in booking.reminder_ids:
            await self.ctx.scheduler.cancel_reminder(reminder_id)
        await self.reply(user_id, f"✅ Agendamento #{booking_id} cancelado com sucesso.")
        await self.ctx.notifier.notify_admin(
            f"❌ *Agendamento #{booking_id} cancelado pelo cliente*\n\n"
            f"👤 Cliente: {booking.customer_name}\n"
            f"📅 Data: {format_date(booking.day)} ({booking.period})"
        )
        logger.info("booking_cancelled", user_id=user_id, booking_id=booking_id,
                    reminders=len(booking.reminder_ids))
        return True

    async def register_service_completion(self, user_id: str,
                                          service_name: str = "") -> Optional[Booking]:
        """
        Mark the visit as done, thank the customer, ask for a rating and arm
        the follow-up check-ins. Returns the completed booking, or None when
        the user has no active booking.
        """
        active = await self.ctx.stores.bookings.list_for_user(user_id)
        if not active:
            logger.warning("service_completion_without_booking", user_id=user_id)
            return None

        candidates = [b for b in active if service_name and b.service == service_name] or active
        today = self.ctx.local_now().date()
        past = [b for b in candidates if b.day <= today]
        booking = past[-1] if past else candidates[0]

        completed = await self.ctx.stores.bookings.set_status(booking.id, BookingStatus.COMPLETED)
        for reminder_id in booking.reminder_ids:
            await self.ctx.scheduler.cancel_reminder(reminder_id)

        phone = normalize_address(user_id)
        customer = await self.ctx.stores.records.get_customer_by_phone(phone)
        total = (customer.total_services if customer else 0) + 1
        await self.ctx.stores.records.upsert_customer(phone, total_services=total)

        await self.ctx.scheduler.create_follow_up_reminders(user_id, service_name or booking.service)
        await self.begin(user_id, self.Stage.SERVICE_RATING.value, data={"booking_id": booking.id})
        await self.reply(
            user_id,
            "✅ *Serviço concluído com sucesso!*\n\n"
            "Obrigado por escolher nossos serviços! Esperamos que tenha ficado satisfeito com o "
            "resultado.\n\n"
            "Gostaríamos de receber seu feedback sobre o atendimento. De 1 a 5 estrelas, como "
            "você avaliaria o serviço prestado?",
        )
        logger.info("service_completed", user_id=user_id, booking_id=booking.id,
                    service=booking.service)
        return completed

    # ── Stages ────────────────────────────────────────────────

    async def _service_selection(self, session: Session, text: str) -> FlowResult:
        service = find_service(text)
        if service is None:
            return self.reprompt("Desculpe, não reconheci este serviço. Por favor, escolha um "
                                 f"número da lista:\n\n{services_price_menu()}")
        await self.advance(session.user_id, self.Stage.TYPE_SELECTION, service_id=service.id)
        await self.reply(session.user_id,
                         f"Ótimo! Você escolheu *{service.name}*.\n\n"
                         f"Qual tipo de atendimento prefere?\n\n{type_menu()}")
        return FlowResult()

    async def _type_selection(self, session: Session, text: str) -> FlowResult:
        kind = find_type(text)
        if kind is None:
            return self.reprompt(f"Por favor, escolha o tipo de atendimento:\n\n{type_menu()}")

        if kind == AppointmentType.PRESENCIAL:
            await self.advance(session.user_id, self.Stage.ADDRESS_COLLECTION, type=kind.value)
            await self.reply(session.user_id,
                             "Por favor, informe o endereço completo para atendimento presencial:")
            return FlowResult()

        await self.advance(session.user_id, self.Stage.DATE_SELECTION, type=kind.value)
        await self.reply(session.user_id, f"Para quando você gostaria de agendar?\n\n{DATE_OPTIONS}")
        return FlowResult()

    async def _address_collection(self, session: Session, text: str) -> FlowResult:
        if len(text) < 10:
            return self.reprompt("Por favor, informe o endereço completo (com rua, número, "
                                 "bairro e cidade):")
        await self.advance(session.user_id, self.Stage.DATE_SELECTION, address=text)
        await self.reply(session.user_id,
                         f"Endereço registrado! Para quando você gostaria de agendar?\n\n{DATE_OPTIONS}")
        return FlowResult()

    async def _date_selection(self, session: Session, text: str) -> FlowResult:
        choice = menu_choice(text, 5)
        if choice == 5:
            await self.reply(session.user_id, "Por favor, informe a data desejada no formato DD/MM:")
            return FlowResult()
        preference = DATE_CHOICES.get(choice, text)

        now = self.ctx.local_now()
        try:
            day = self.ctx.calendar.resolve(preference, now, self.config.today_cutoff_hour)
        except DateResolutionError as e:
            logger.info("date_not_resolved", user_id=session.user_id, reason=e.reason)
            if e.reason == "past":
                return self.reprompt("Esta data já passou. Por favor, escolha uma data a partir "
                                     f"de hoje:\n\n{DATE_OPTIONS}")
            if e.reason == "invalid":
                return self.reprompt(f"Data inválida. Por favor, use o formato DD/MM:\n\n{DATE_OPTIONS}")
            return self.reprompt(f"Por favor, escolha uma das opções de data:\n\n{DATE_OPTIONS}")

        if (day - now.date()).days > self.config.max_days_ahead:
            return self.reprompt(f"Desculpe, só podemos agendar para até {self.config.max_days_ahead} "
                                 f"dias à frente. Por favor, escolha uma data mais próxima.")

        await self.advance(session.user_id, self.Stage.TIME_SELECTION, day=day.isoformat())
        await self.reply(session.user_id, self._period_prompt(day))
        return FlowResult()

    async def _time_selection(self, session: Session, text: str) -> FlowResult:
        day = date.fromisoformat(session.data["day"])
        period = find_period(text)
        if period is None:
            return self.reprompt(self._period_prompt(day))

        now = self.ctx.local_now()
        if self._starts_at(day, period) <= now:
            return self.reprompt(f"Este período já começou. Por favor, escolha outro período:\n\n"
                                 f"{period_menu()}")

        used = await self.ctx.stores.bookings.count_overlapping(day, period.start, period.end)
        if used >= self.config.max_per_slot:
            suggestion = await self._next_available(day, period)
            logger.info("slot_full", user_id=session.user_id, day=day.isoformat(),
                        period=period.key, suggestion=suggestion.isoformat() if suggestion else None)
            if suggestion is None:
                return self.reprompt("Desculpe, não há disponibilidade neste período nos próximos "
                                     f"dias. Por favor, escolha outro período:\n\n{period_menu()}")
            await self.advance(session.user_id, self.Stage.SLOT_FULL_CONFIRMATION,
                               period=period.key, suggested_day=suggestion.isoformat())
            await self.reply(session.user_id,
                             "Desculpe, este horário já está com a agenda completa. Temos "
                             f"disponibilidade no dia {format_date(suggestion)} "
                             f"({weekday_name(suggestion)}).\n\n"
                             "Gostaria de agendar para este dia? (Sim/Não)")
            return FlowResult()

        session = await self.advance(session.user_id, period=period.key)
        return await self._after_period(session)

    async def _slot_full_confirmation(self, session: Session, text: str) -> FlowResult:
        if is_yes(text):
            session = await self.advance(session.user_id, day=session.data["suggested_day"],
                                         suggested_day=None)
            return await self._after_period(session)
        if is_no(text):
            await self.advance(session.user_id, self.Stage.DATE_SELECTION, suggested_day=None)
            await self.reply(session.user_id,
                             f"Entendi. Por favor, escolha outra data para agendamento:\n\n{DATE_OPTIONS}")
            return FlowResult()
        return self.reprompt("Por favor, responda *Sim* ou *Não*.")

    async def _name_collection(self, session: Session, text: str) -> FlowResult:
        if len(text) < 3:
            return self.reprompt("Por favor, informe seu nome completo:")
        session = await self.advance(session.user_id, name=text.title())
        return await self._show_summary(session)

    async def _confirmation(self, session: Session, text: str) -> FlowResult:
        if is_no(text):
            await self.finish(session.user_id)
            await self.reply(session.user_id,
                             'Agendamento cancelado. Se desejar agendar novamente, digite "agendamento".')
            logger.info("scheduling_declined", user_id=session.user_id)
            return FlowResult()
        if not is_yes(text):
            return self.reprompt("Confirma este agendamento? (Sim/Não)")
        return await self._book(session)

    async def _service_rating(self, session: Session, text: str) -> FlowResult:
        rating = menu_choice(text, 5)
        if rating is None:
            return self.reprompt("Por favor, avalie o serviço com uma nota de 1 a 5.")
        booking_id = session.data.get("booking_id")
        await self.finish(session.user_id)
        await self.reply(session.user_id,
                         "Obrigado pela sua avaliação! Ela nos ajuda a melhorar cada vez mais. ⭐")
        await self.ctx.notifier.notify_admin(
            f"⭐ Avaliação do atendimento #{booking_id}: {rating}/5 ({session.user_id})"
        )
        logger.info("service_rated", user_id=session.user_id, booking_id=booking_id, rating=rating)
        return FlowResult()

    # ── Booking ───────────────────────────────────────────────

    async def _book(self, session: Session) -> FlowResult:
        data = session.data
        user_id = session.user_id
        service = get_service(data["service_id"])
        period = PERIODS[data["period"]]
        day = date.fromisoformat(data["day"])
        kind = AppointmentType(data["type"])

        booking = Booking(
            user_id=user_id, customer_name=data.get("name", ""), service=service.name,
            appointment_type=kind, address=data.get("address", ""), day=day,
            period=period.label, start_time=period.start, end_time=period.end,
        )
        try:
            booking = await self.ctx.stores.bookings.book(booking, self.config.max_per_slot)
        except SlotUnavailableError as e:
            logger.warning("booking_slot_taken", user_id=user_id, day=day.isoformat(),
                           period=period.key, existing=e.existing)
            await self.advance(user_id, self.Stage.TIME_SELECTION)
            await self.reply(user_id, "Desculpe, este período acabou de ser preenchido. Por favor, "
                                      f"escolha outro período:\n\n{period_menu()}")
            return FlowResult()

        reminder_ids = await self._arm_reminders(booking, period)
        await self.ctx.stores.bookings.set_reminders(booking.id, reminder_ids)
        await self.ctx.stores.records.upsert_customer(
            normalize_address(user_id), name=booking.customer_name, address=booking.address,
        )
        await self.finish(user_id)

        await self.reply(
            user_id,
            "✅ *Agendamento confirmado!*\n\n"
            f"Seu código de agendamento é: *#{booking.id}*\n\n"
            f"📅 Data: {format_date(day)} ({weekday_name(day)})\n"
            f"🕒 Período: {period.label} (a partir de {period.start})\n\n"
            "Enviaremos um lembrete um dia antes do seu atendimento.\n\n"
            'Para verificar seus agendamentos, envie "meus agendamentos".\n'
            f'Para cancelar, envie "cancelar #{booking.id}".\n\n'
            "Obrigado pela preferência!",
        )
        await self.ctx.notifier.notify_admin(
            f"🆕 *Novo Agendamento #{booking.id}*\n\n"
            f"👤 Cliente: {booking.customer_name}\n"
            f"📱 Telefone: {format_phone(user_id)}\n"
            f"📋 Serviço: {service.name}\n"
            f"🏠 Tipo: {TYPE_LABELS[kind]}\n"
            f"📅 Data: {format_date(day)} ({weekday_name(day)})\n"
            f"🕒 Período: {period.label}"
        )
        logger.info("booking_confirmed", user_id=user_id, booking_id=booking.id,
                    day=day.isoformat(), period=period.key, reminders=len(reminder_ids))
        return FlowResult()

    async def _arm_reminders(self, booking: Booking, period: Period) -> list[str]:
        now = self.ctx.local_now()
        starts_at = self._starts_at(booking.day, period)
        weekday = weekday_name(booking.day)

        planned = [(
            self._local(booking.day - timedelta(days=1), time(10, 0)),
            f"Você tem um agendamento de {booking.service} amanhã ({weekday}) no período da "
            f"{period.label}. Para cancelar, envie \"cancelar #{booking.id}\".",
        )]
        if starts_at - now < timedelta(hours=48):
            planned.append((
                self._local(booking.day, time(SAME_DAY_REMINDER_HOUR[period.key], 0)),
                f"Seu agendamento de {booking.service} está marcado para hoje às "
                f"{period.start}. Estamos aguardando você!",
            ))

        reminder_ids = []
        for fire_at, message in planned:
            if fire_at <= now:
                continue
            try:
                reminder_ids.append(await self.ctx.scheduler.create_reminder(
                    booking.user_id, message, fire_at, kind="appointment",
                ))
            except ReminderValidationError as e:
                logger.warning("booking_reminder_skipped", booking_id=booking.id, error=str(e))
        return reminder_ids

    # ── Helpers ───────────────────────────────────────────────

    async def _after_period(self, session: Session) -> FlowResult:
        if not session.data.get("name"):
            customer = await self.customer_for(session.user_id)
            if customer and customer.name:
                session = await self.advance(session.user_id, name=customer.name)
        if session.data.get("name"):
            return await self._show_summary(session)
        await self.advance(session.user_id, self.Stage.NAME_COLLECTION)
        await self.reply(session.user_id, "Por favor, informe seu nome completo:")
        return FlowResult()

    async def _show_summary(self, session: Session) -> FlowResult:
        data = session.data
        service = get_service(data["service_id"])
        period = PERIODS[data["period"]]
        day = date.fromisoformat(data["day"])
        kind = AppointmentType(data["type"])

        message = (
            "🔍 *Resumo do agendamento:*\n\n"
            f"👤 Nome: {data.get('name', '')}\n"
            f"📱 Telefone: {format_phone(session.user_id)}\n"
            f"📋 Serviço: {service.name}\n"
            f"💰 Valor: {format_price(service.base_price)}\n"
            f"🏠 Tipo: {TYPE_LABELS[kind]}\n"
        )
        if kind == AppointmentType.PRESENCIAL:
            message += f"📍 Endereço: {data.get('address', '')}\n"
        message += (
            f"📅 Data: {format_date(day)} ({weekday_name(day)})\n"
            f"🕒 Período: {period.label} (a partir de {period.start})\n\n"
            "Confirma este agendamento? (Sim/Não)"
        )
        await self.advance(session.user_id, self.Stage.CONFIRMATION)
        await self.reply(session.user_id, message)
        return FlowResult()

    def _period_prompt(self, day: date) -> str:
        return (f"Qual período você prefere para {format_date(day)} ({weekday_name(day)})?\n\n"
                f"{period_menu()}")

    def _local(self, day: date, at: time) -> datetime:
        return datetime.combine(day, at, tzinfo=self.ctx.tz)

    def _starts_at(self, day: date, period: Period) -> datetime:
        return self._local(day, period.start_time)

    async def _next_available(self, day: date, period: Period) -> Optional[date]:
        limit = self.ctx.local_now().date() + timedelta(days=self.config.max_days_ahead)
        candidate = self.ctx.calendar.next_work_day(day)
        while candidate <= limit:
            used = await self.ctx.stores.bookings.count_overlapping(candidate, period.start, period.end)
            if used < self.config.max_per_slot:
                return candidate
            candidate = self.ctx.calendar.next_work_day(candidate)
        return None
