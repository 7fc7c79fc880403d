"""
Business calendar — work days, fixed holidays, periods and date preferences.

Natural-language date preferences ("hoje", "amanhã", "esta semana",
"próxima semana", "DD/MM[/AA]") resolve to a concrete calendar date which is
then rolled forward past weekends and holidays.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Optional

from utils.text import fold


@dataclass(frozen=True)
class Period:
    key: str
    label: str
    start: str      # "HH:MM"
    end: str

    @property
    def start_time(self) -> time:
        hours, minutes = self.start.split(":")
        return time(int(hours), int(minutes))


PERIODS: dict[str, Period] = {
    "1": Period("manha", "Manhã", "08:00", "12:00"),
    "2": Period("tarde", "Tarde", "13:00", "17:00"),
    "3": Period("noite", "Noite", "18:00", "21:00"),
}

WEEKDAYS = ["Segunda", "Terça", "Quarta", "Quinta", "Sexta", "Sábado", "Domingo"]

_EXPLICIT_DATE = re.compile(r"\b(\d{1,2})/(\d{1,2})(?:/(\d{2}|\d{4}))?\b")


class DateResolutionError(ValueError):
    """Raised when a date preference cannot be turned into a bookable date."""

    def __init__(self, reason: str, message: str = ""):
        self.reason = reason          # unrecognized | invalid | past
        super().__init__(message or reason)


def find_period(text: str) -> Optional[Period]:
    """Match a period by menu digit or by name."""
    text = fold(text).strip()
    if text in PERIODS:
        return PERIODS[text]
    for period in PERIODS.values():
        if text == period.key or text.startswith(period.key):
            return period
    return None


class BusinessCalendar:
    """Monday–Friday work week minus a fixed list of MM-DD holidays."""

    def __init__(self, holidays: Iterable[str] = (), work_days: Iterable[int] = (0, 1, 2, 3, 4)):
        self.holidays = set(holidays)
        self.work_days = set(work_days)

    def is_holiday(self, day: date) -> bool:
        return day.strftime("%m-%d") in self.holidays

    def is_work_day(self, day: date) -> bool:
        return day.weekday() in self.work_days and not self.is_holiday(day)

    def next_work_day(self, day: date) -> date:
        """First work day strictly after `day`."""
        candidate = day + timedelta(days=1)
        while not self.is_work_day(candidate):
            candidate += timedelta(days=1)
        return candidate

    def roll_forward(self, day: date) -> date:
        return day if self.is_work_day(day) else self.next_work_day(day)

    def is_business_hours(self, now: datetime, open_hour: int, close_hour: int) -> bool:
        return now.weekday() in self.work_days and open_hour <= now.hour < close_hour

    # ── Date preferences ──────────────────────────────────────

    def resolve(self, preference: str, now: datetime, cutoff_hour: int = 17) -> date:
        """
        Resolve a date preference relative to `now` (local time).

        Raises DateResolutionError when the text is not a recognizable
        preference, names an impossible date, or names a date in the past.
        """
        text = fold(preference).strip()
        today = now.date()

        if "hoje" in text:
            if now.hour >= cutoff_hour:
                return self.next_work_day(today)
            return self.roll_forward(today)

        if "amanha" in text:
            return self.roll_forward(today + timedelta(days=1))

        if "esta semana" in text or "essa semana" in text:
            # Friday or later: nothing useful left this week
            if today.weekday() >= 4:
                return self.roll_forward(_next_monday(today))
            return self.roll_forward(today + timedelta(days=1))

        if "proxima semana" in text or "semana que vem" in text:
            return self.roll_forward(_next_monday(today))

        match = _EXPLICIT_DATE.search(text)
        if match:
            day_num, month_num, year_raw = match.groups()
            year = today.year
            if year_raw:
                year = int(year_raw) + 2000 if len(year_raw) == 2 else int(year_raw)
            try:
                requested = date(year, int(month_num), int(day_num))
            except ValueError:
                raise DateResolutionError("invalid", f"Invalid date: {match.group(0)}")
            if requested < today:
                raise DateResolutionError("past", f"Date in the past: {requested.isoformat()}")
            return self.roll_forward(requested)

        raise DateResolutionError("unrecognized", f"Unrecognized date preference: {preference!r}")


def _next_monday(day: date) -> date:
    return day + timedelta(days=7 - day.weekday())


def greeting_for(now: datetime) -> str:
    if 5 <= now.hour < 12:
        return "Bom dia"
    if 12 <= now.hour < 18:
        return "Boa tarde"
    return "Boa noite"


def format_date(day: date) -> str:
    return day.strftime("%d/%m/%Y")


def weekday_name(day: date) -> str:
    return WEEKDAYS[day.weekday()]
