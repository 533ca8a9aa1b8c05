"""Tests for slot computation, booking validation and the booking service."""

import asyncio
from datetime import date, datetime

from leadflow.availability import AvailabilityService
from leadflow.booking import BookingService
from leadflow.calendar_store import CalendarStore, InMemoryCalendarStore
from leadflow.db_models import AppointmentStatus, Intention
from leadflow.models import ScheduleRequest
from leadflow.services import AppointmentService

from conftest import FakeClock, RecordingNotifier

MONDAY = date(2026, 10, 19)
TUESDAY = date(2026, 10, 20)
SUNDAY = date(2026, 10, 25)


class BrokenCalendar(CalendarStore):
    async def get_taken_slots(self, day):
        raise RuntimeError("sheets quota exceeded")

    async def write_booking(self, booking):
        raise RuntimeError("sheets quota exceeded")


def _service(calendar=None, clock=None):
    return AvailabilityService(
        calendar or InMemoryCalendarStore(),
        working_days=[1, 2, 3, 4, 5, 6],
        start="09:00",
        end="18:00",
        interval_minutes=30,
        clock=clock or FakeClock(),
    )


def test_compute_slots_filters_taken_times():
    calendar = InMemoryCalendarStore()
    calendar.mark_taken(TUESDAY, "10:00")
    calendar.mark_taken(TUESDAY, "9h30")

    slots = asyncio.run(_service(calendar).compute_slots(TUESDAY))

    assert "10:00" not in slots
    assert "09:30" not in slots
    assert slots[0] == "09:00"
    assert len(slots) == 16


def test_compute_slots_empty_on_non_working_day():
    assert asyncio.run(_service().compute_slots(SUNDAY)) == []


def test_compute_slots_fails_open_when_calendar_unreadable():
    slots = asyncio.run(_service(BrokenCalendar()).compute_slots(TUESDAY))
    assert len(slots) == 18


def test_validate_booking_checks_in_order():
    service = _service()

    async def _run():
        return [
            await service.validate_booking(SUNDAY, "10:00"),
            await service.validate_booking(date(2026, 10, 17), "10:00"),
            await service.validate_booking(TUESDAY, "19:00"),
            await service.validate_booking(TUESDAY, "10:00"),
        ]

    non_working, past, outside, ok = asyncio.run(_run())

    assert not non_working.valid and "dia útil" in non_working.reason
    assert not past.valid and "já passou" in past.reason
    assert not outside.valid and "09:00 às 18:00" in outside.reason
    assert ok.valid and ok.reason is None


def test_validate_booking_rejects_taken_slot():
    calendar = InMemoryCalendarStore()
    calendar.mark_taken(TUESDAY, "10:00")

    result = asyncio.run(_service(calendar).validate_booking(TUESDAY, "10:00"))

    assert not result.valid
    assert "ocupado" in result.reason


def test_validate_booking_calendar_error_is_not_blocking():
    result = asyncio.run(_service(BrokenCalendar()).validate_booking(TUESDAY, "10:00"))
    assert result.valid


def test_find_next_available_skips_past_times_today():
    clock = FakeClock(datetime(2026, 10, 19, 16, 40))
    slots = asyncio.run(_service(clock=clock).find_next_available(MONDAY, 3))

    assert [(s.day, s.time) for s in slots] == [(MONDAY, "17:00"), (MONDAY, "17:30"), (TUESDAY, "09:00")]


def test_find_next_available_skips_sunday():
    clock = FakeClock(datetime(2026, 10, 24, 17, 45))  # Saturday, last slot gone
    slots = asyncio.run(_service(clock=clock).find_next_available(date(2026, 10, 24), 2))

    assert [s.day for s in slots] == [date(2026, 10, 26), date(2026, 10, 26)]


def test_upcoming_slots_for_context():
    clock = FakeClock(datetime(2026, 10, 19, 17, 10))
    slots = asyncio.run(_service(clock=clock).upcoming_slots())

    assert [(s.day, s.time) for s in slots][:2] == [(MONDAY, "17:30"), (TUESDAY, "09:00")]
    assert len(slots) == 7  # 1 left today + 3 Tuesday + 3 Wednesday
    assert slots[0].display_text == "19/10 às 17:30"


def _request(**overrides):
    values = dict(
        conversation_id=None,
        customer_name="Carlos",
        phone="5511999999999",
        vehicle="Gol 2015",
        city="Campinas",
        intention=Intention.SELL,
        day=TUESDAY,
        time="10h",
        created_by="Ana",
    )
    values.update(overrides)
    return ScheduleRequest(**values)


def test_booking_creates_appointment_and_calendar_row(db):
    calendar = InMemoryCalendarStore()
    notifier = RecordingNotifier()
    booking = BookingService(_service(calendar), calendar, notifier=notifier)

    async def _run():
        result = await booking.schedule(db, _request())
        await asyncio.sleep(0)
        return result

    result = asyncio.run(_run())

    assert result.success
    assert result.message == "Agendamento confirmado! Terça, dia 20, às 10:00. Te esperamos na loja! 😊"

    appointment = AppointmentService.get(db, result.appointment_id)
    assert appointment.status == AppointmentStatus.SCHEDULED
    assert appointment.scheduled_time == "10:00"
    assert appointment.sheets_row_id == 2

    row = calendar.bookings[0]
    assert row.origin == "LEAD (SELL)"
    assert row.client_name == "Carlos"
    assert any("NOVO AGENDAMENTO" in text for text in notifier.sent)


def test_booking_rejected_slot_suggests_alternatives(db):
    calendar = InMemoryCalendarStore()
    calendar.mark_taken(TUESDAY, "10:00")
    booking = BookingService(_service(calendar), calendar)

    result = asyncio.run(booking.schedule(db, _request()))

    assert not result.success
    assert "ocupado" in result.message
    assert len(result.suggested_slots) == 3
    assert all(s.time != "10:00" or s.day != TUESDAY for s in result.suggested_slots)
    assert AppointmentService.list_by_phone(db, "5511999999999") == []


def test_booking_survives_calendar_write_failure(db):
    availability = _service(InMemoryCalendarStore())
    booking = BookingService(availability, BrokenCalendar())

    result = asyncio.run(booking.schedule(db, _request()))

    assert result.success
    assert AppointmentService.get(db, result.appointment_id).sheets_row_id is None
