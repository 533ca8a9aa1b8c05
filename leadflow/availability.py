"""
Slot availability and booking validation over the business calendar.

Calendar reads are best-effort: a failed read never blocks a booking.
"""

from datetime import date, datetime, timedelta
from typing import Callable, Iterable, List

from leadflow.calendar_store import CalendarStore
from leadflow.date_helpers import (
    generate_time_slots,
    is_within_business_hours,
    is_working_day,
    normalize_time,
)
from leadflow.logging_config import get_logger
from leadflow.models import AvailabilitySlot, ValidationResult

logger = get_logger(__name__)

MAX_DAYS_TO_SCAN = 14


class AvailabilityService:
    """Computes open slots and validates proposed bookings."""

    def __init__(
        self,
        calendar: CalendarStore,
        working_days: Iterable[int],
        start: str,
        end: str,
        interval_minutes: int = 30,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.calendar = calendar
        self.working_days = set(working_days)
        self.start = start
        self.end = end
        self.interval_minutes = interval_minutes
        self.clock = clock

    def is_working_day(self, day: date) -> bool:
        return is_working_day(day, self.working_days)

    def is_open_at(self, moment: datetime) -> bool:
        """True on a working day within business hours."""
        return self.is_working_day(moment.date()) and is_within_business_hours(
            moment.strftime("%H:%M"), self.start, self.end
        )

    async def compute_slots(self, day: date) -> List[str]:
        """Open "HH:MM" times on `day`. Fails open when the calendar is unreadable."""
        if not self.is_working_day(day):
            logger.debug("not_a_working_day", day=day.isoformat())
            return []

        all_slots = generate_time_slots(self.start, self.end, self.interval_minutes)
        try:
            taken = set(await self.calendar.get_taken_slots(day))
        except Exception as e:
            logger.error("calendar_read_failed", day=day.isoformat(), error=str(e))
            return all_slots

        available = [slot for slot in all_slots if slot not in taken]
        logger.debug("slots_computed", day=day.isoformat(), total=len(all_slots), taken=len(taken), available=len(available))
        return available

    async def validate_booking(self, day: date, time: str) -> ValidationResult:
        """
        Check, in order: working day, not in the past, within business hours,
        slot not already taken. The first failing check wins.
        """
        if not self.is_working_day(day):
            return ValidationResult(valid=False, reason="Esse dia não é um dia útil. Podemos agendar em outro dia?")

        if day < self.clock().date():
            return ValidationResult(valid=False, reason="Essa data já passou. Qual outra data seria melhor?")

        if not is_within_business_hours(time, self.start, self.end):
            return ValidationResult(
                valid=False,
                reason=(
                    f"Nosso horário de atendimento é das {self.start} às {self.end}. "
                    "Podemos agendar dentro desse horário?"
                ),
            )

        try:
            taken = await self.calendar.get_taken_slots(day)
        except Exception as e:
            logger.warning("calendar_validation_skipped", day=day.isoformat(), error=str(e))
        else:
            if normalize_time(time) in taken:
                return ValidationResult(
                    valid=False,
                    reason="Esse horário já está ocupado. Vou verificar outros horários disponíveis para você.",
                )

        return ValidationResult(valid=True)

    async def find_next_available(self, from_day: date, count: int = 3) -> List[AvailabilitySlot]:
        """Up to `count` open slots from `from_day` on, within 14 days."""
        now = self.clock()
        current_time = now.strftime("%H:%M")
        results: List[AvailabilitySlot] = []

        day = max(from_day, now.date())
        for _ in range(MAX_DAYS_TO_SCAN):
            if len(results) >= count:
                break
            if self.is_working_day(day):
                for slot in await self.compute_slots(day):
                    if day == now.date() and slot <= current_time:
                        continue
                    results.append(AvailabilitySlot(day=day, time=slot))
                    if len(results) >= count:
                        break
            day += timedelta(days=1)

        return results

    async def upcoming_slots(self, days: int = 3, per_day: int = 3, limit: int = 8) -> List[AvailabilitySlot]:
        """
        A short menu of open slots for the AI context: the first few times of
        today and the next days, past times of today skipped.
        """
        now = self.clock()
        current_time = now.strftime("%H:%M")
        seen = set()
        results: List[AvailabilitySlot] = []

        for offset in range(days):
            day = now.date() + timedelta(days=offset)
            slots = [s for s in await self.compute_slots(day) if not (offset == 0 and s <= current_time)]
            for slot in slots[:per_day]:
                if (day, slot) not in seen:
                    seen.add((day, slot))
                    results.append(AvailabilitySlot(day=day, time=slot))

        return results[:limit]
