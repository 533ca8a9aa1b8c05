"""
Calendar helpers for the business calendar and the Portuguese date phrases
customers type ("amanhã", "sexta", "15/02", "dia 20").

Weekday numbers follow the WORKING_DAYS convention: 0=Sunday ... 6=Saturday.
"""

import re
import unicodedata
from datetime import date, datetime, timedelta
from typing import Optional, Tuple

WEEKDAY_NAMES = {
    0: "Domingo",
    1: "Segunda",
    2: "Terça",
    3: "Quarta",
    4: "Quinta",
    5: "Sexta",
    6: "Sábado",
}

MONTH_NAMES = {
    1: "JANEIRO",
    2: "FEVEREIRO",
    3: "MARÇO",
    4: "ABRIL",
    5: "MAIO",
    6: "JUNHO",
    7: "JULHO",
    8: "AGOSTO",
    9: "SETEMBRO",
    10: "OUTUBRO",
    11: "NOVEMBRO",
    12: "DEZEMBRO",
}

# Checked in order, full names before abbreviations. Matched on whole words of
# the accent-stripped phrase, so "quarta" never matches inside another word.
_WEEKDAY_WORDS = [
    ("domingo", 0),
    ("segunda", 1),
    ("terca", 2),
    ("quarta", 3),
    ("quinta", 4),
    ("sexta", 5),
    ("sabado", 6),
    ("dom", 0),
    ("seg", 1),
    ("ter", 2),
    ("qua", 3),
    ("qui", 4),
    ("sex", 5),
    ("sab", 6),
]

_TIME_RE = re.compile(r"^\s*(\d{1,2})\s*(?:[:h]\s*(\d{2})?)?\s*(?:hs?|horas?)?\s*$", re.IGNORECASE)
_SLASH_DATE_RE = re.compile(r"(\d{1,2})\s*/\s*(\d{1,2})(?:\s*/\s*(\d{2,4}))?")
_DAY_NUMBER_RE = re.compile(r"(?:\bdia\s+)?\b(\d{1,2})\b")


def _strip_accents(text: str) -> str:
    normalized = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in normalized if not unicodedata.combining(ch))


def weekday_number(day: date) -> int:
    """Weekday of `day` with 0=Sunday (Python's weekday() has 0=Monday)."""
    return (day.weekday() + 1) % 7


def weekday_name(day: date) -> str:
    return WEEKDAY_NAMES[weekday_number(day)]


def month_name(day: date) -> str:
    return MONTH_NAMES[day.month]


def sheet_tab_name(day: date) -> str:
    """Calendar tab holding the bookings of `day`'s month, e.g. "OUTUBRO 2026"."""
    return f"{month_name(day)} {day.year}"


def format_time(hours: int, minutes: int) -> str:
    return f"{hours:02d}:{minutes:02d}"


def parse_time(value: str) -> Optional[Tuple[int, int]]:
    """
    Parse a time of day the way customers and the AI write it.

    Accepts "14:30", "9", "9h", "9h30", "14hs" and "10 horas".
    Returns (hours, minutes) or None when the text is not a valid time.
    """
    if value is None:
        return None
    match = _TIME_RE.match(str(value))
    if not match:
        return None
    hours = int(match.group(1))
    minutes = int(match.group(2) or 0)
    if hours > 23 or minutes > 59:
        return None
    return hours, minutes


def normalize_time(value: str) -> Optional[str]:
    """Return `value` as "HH:MM", or None when it cannot be parsed."""
    parsed = parse_time(value)
    if parsed is None:
        return None
    return format_time(*parsed)


def _minutes(value: str) -> Optional[int]:
    parsed = parse_time(value)
    if parsed is None:
        return None
    return parsed[0] * 60 + parsed[1]


def is_within_business_hours(time_str: str, start: str, end: str) -> bool:
    """True when start <= time < end. Unparseable times are outside."""
    value = _minutes(time_str)
    if value is None:
        return False
    return _minutes(start) <= value < _minutes(end)


def is_working_day(day: date, working_days) -> bool:
    return weekday_number(day) in working_days


def generate_time_slots(start: str, end: str, interval_minutes: int = 30) -> list[str]:
    """All "HH:MM" times from start (inclusive) to end (exclusive)."""
    slots = []
    current = _minutes(start)
    end_minutes = _minutes(end)
    while current < end_minutes:
        slots.append(format_time(current // 60, current % 60))
        current += interval_minutes
    return slots


def _add_month(year: int, month: int) -> Tuple[int, int]:
    if month == 12:
        return year + 1, 1
    return year, month + 1


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_date(phrase: str, reference: Optional[datetime] = None) -> Optional[datetime]:
    """
    Turn a Portuguese date phrase into a date (midnight of that day).

    Recognized, in this order:
      - "depois de amanhã", "hoje", "amanhã" (accents optional)
      - weekday names or abbreviations, resolved to the next occurrence
        strictly after today
      - "dd/mm", "dd/mm/yy", "dd/mm/yyyy" (current year when omitted)
      - a bare day number ("dia 15", "15"), in the current month, or the next
        month when that day has already passed

    Anything else, including impossible calendar dates, returns None so the
    caller can ask the customer to restate the date.
    """
    if not phrase or not str(phrase).strip():
        return None

    now = reference or datetime.now()
    today = datetime(now.year, now.month, now.day)
    lower = _strip_accents(str(phrase).lower().strip())

    if "depois de amanh" in lower:
        return today + timedelta(days=2)
    if "hoje" in lower:
        return today
    if "amanh" in lower:
        return today + timedelta(days=1)

    words = re.findall(r"[a-z]+", lower)
    for name, weekday in _WEEKDAY_WORDS:
        if name in words or any(word.startswith(name) and len(name) > 3 for word in words):
            days_ahead = weekday - weekday_number(today.date())
            if days_ahead <= 0:
                days_ahead += 7
            return today + timedelta(days=days_ahead)

    slash = _SLASH_DATE_RE.search(lower)
    if slash:
        day = int(slash.group(1))
        month = int(slash.group(2))
        year = today.year
        if slash.group(3):
            year = int(slash.group(3))
            if year < 100:
                year += 2000
        parsed = _safe_date(year, month, day)
        return datetime(parsed.year, parsed.month, parsed.day) if parsed else None

    number = _DAY_NUMBER_RE.search(lower)
    if number:
        day = int(number.group(1))
        if not 1 <= day <= 31:
            return None
        year, month = today.year, today.month
        if day < today.day:
            year, month = _add_month(year, month)
        parsed = _safe_date(year, month, day)
        return datetime(parsed.year, parsed.month, parsed.day) if parsed else None

    return None
