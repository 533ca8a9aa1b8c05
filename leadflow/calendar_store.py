"""Appointment calendar: taken slots per day and new booking rows."""

from datetime import date
from typing import Optional

from leadflow.date_helpers import normalize_time, weekday_name
from leadflow.logging_config import get_logger
from leadflow.models import CalendarBooking
from leadflow.sheets_client import SheetsClient

logger = get_logger(__name__)

# Column order of a month tab (row 1 is the header).
# A: DIA | B: DIA DA SEMANA | C: HORA | D: PRÉ VENDAS | E: CLIENTE | F: CARRO
# G: TELEFONE | H: CIDADE | I: ORIGEM | J: COMPARECEU
COL_DIA = 0
COL_HORA = 2


class CalendarStore:
    """Interface of the external calendar."""

    async def get_taken_slots(self, day: date) -> list[str]:
        """Times ("HH:MM") already booked on `day`."""
        raise NotImplementedError

    async def write_booking(self, booking: CalendarBooking) -> Optional[int]:
        """Write a booking row and return its row reference."""
        raise NotImplementedError


class InMemoryCalendarStore(CalendarStore):
    """Calendar kept in process memory, for development and tests."""

    def __init__(self):
        self.bookings: list[CalendarBooking] = []

    def mark_taken(self, day: date, time: str) -> None:
        self.bookings.append(CalendarBooking(day=day, time=time, pre_sales="", client_name="", phone=""))

    async def get_taken_slots(self, day: date) -> list[str]:
        return [normalize_time(b.time) or b.time for b in self.bookings if b.day == day]

    async def write_booking(self, booking: CalendarBooking) -> Optional[int]:
        self.bookings.append(booking)
        row = len(self.bookings) + 1  # header is row 1
        logger.info("calendar_booking_written", row=row, day=booking.day.isoformat(), time=booking.time)
        return row


class SheetsCalendarStore(CalendarStore):
    """Calendar stored in one Google Sheets tab per month ("OUTUBRO 2026")."""

    def __init__(self, client: SheetsClient):
        self.client = client

    async def _read_rows(self, day: date) -> tuple[str, list[list]]:
        tab = await self.client.detect_month_tab(day)
        rows = await self.client.read_range(f"'{tab}'!A2:J")
        return tab, rows

    async def get_taken_slots(self, day: date) -> list[str]:
        _, rows = await self._read_rows(day)
        taken = []
        for row in rows:
            if len(row) <= COL_HORA:
                continue
            try:
                row_day = int(str(row[COL_DIA]).strip() or 0)
            except ValueError:
                continue
            if row_day != day.day:
                continue
            time = normalize_time(str(row[COL_HORA]))
            if time:
                taken.append(time)
        return taken

    async def write_booking(self, booking: CalendarBooking) -> Optional[int]:
        tab, rows = await self._read_rows(booking.day)

        # Write after the last row with any data; appending would let the API
        # guess the table and shift columns.
        last_used = 1
        for index in range(len(rows) - 1, -1, -1):
            if any(str(cell).strip() for cell in rows[index] if cell is not None):
                last_used = index + 2
                break
        next_row = last_used + 1

        values = [
            booking.day.day,
            weekday_name(booking.day),
            booking.time,
            booking.pre_sales,
            booking.client_name,
            booking.vehicle,
            booking.phone,
            booking.city,
            booking.origin,
            "",
        ]
        await self.client.update_range(f"'{tab}'!A{next_row}:J{next_row}", [values])

        logger.info(
            "calendar_booking_written",
            tab=tab,
            row=next_row,
            day=booking.day.isoformat(),
            time=booking.time,
            origin=booking.origin,
        )
        return next_row
