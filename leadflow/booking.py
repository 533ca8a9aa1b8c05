"""
Appointment booking: validate the requested slot, write it to the calendar,
persist it and tell the operators.
"""

import asyncio
from typing import Callable, Optional

from sqlalchemy.orm import Session

from leadflow.availability import AvailabilityService
from leadflow.calendar_store import CalendarStore
from leadflow.date_helpers import normalize_time, weekday_name
from leadflow.logging_config import get_logger
from leadflow.models import CalendarBooking, ScheduleRequest, ScheduleResult
from leadflow.notifications import OperatorNotifier
from leadflow.services import AppointmentService

logger = get_logger(__name__)

SUGGESTION_COUNT = 3


class BookingService:
    """Turns a confirmed day and time into an appointment."""

    def __init__(
        self,
        availability: AvailabilityService,
        calendar: CalendarStore,
        notifier: Optional[OperatorNotifier] = None,
        spawn: Optional[Callable] = None,
    ):
        self.availability = availability
        self.calendar = calendar
        self.notifier = notifier
        # Runs fire-and-forget coroutines; the orchestrator passes its own
        # tracker so shutdown can wait for them.
        self.spawn = spawn or asyncio.ensure_future

    async def schedule(self, db: Session, request: ScheduleRequest) -> ScheduleResult:
        """
        Book `request.day` at `request.time`.

        A rejected slot returns the reason and up to three alternatives.
        Calendar write failures are tolerated; persistence errors propagate.
        """
        time = normalize_time(request.time) or request.time
        logger.info("scheduling_appointment", phone=request.phone, day=request.day.isoformat(), time=time)

        validation = await self.availability.validate_booking(request.day, time)
        if not validation.valid:
            suggestions = await self.availability.find_next_available(request.day, SUGGESTION_COUNT)
            logger.info("booking_rejected", phone=request.phone, reason=validation.reason, suggestions=len(suggestions))
            return ScheduleResult(
                success=False,
                message=validation.reason or "Horário não disponível.",
                suggested_slots=suggestions,
            )

        origin = f"LEAD ({request.intention.value.upper()})" if request.intention else "LEAD"
        row_id = None
        try:
            row_id = await self.calendar.write_booking(
                CalendarBooking(
                    day=request.day,
                    time=time,
                    pre_sales=request.created_by,
                    client_name=request.customer_name,
                    vehicle=request.vehicle or "",
                    phone=request.phone,
                    city=request.city or "",
                    origin=origin,
                )
            )
        except Exception as e:
            logger.warning("calendar_write_failed", phone=request.phone, error=str(e))

        now = self.availability.clock()
        appointment = AppointmentService.create(
            db,
            customer_name=request.customer_name,
            phone=request.phone,
            scheduled_date=request.day,
            scheduled_time=time,
            created_by=request.created_by,
            conversation_id=request.conversation_id,
            vehicle=request.vehicle,
            city=request.city,
            now=now,
        )
        if row_id:
            AppointmentService.set_sheets_row(db, appointment.id, row_id, now=now)

        day_label = f"{weekday_name(request.day)}, dia {request.day.day}"
        if self.notifier:
            self.spawn(
                self.notifier.notify_new_appointment(
                    request.phone, request.customer_name, day_label, time, request.vehicle
                )
            )

        return ScheduleResult(
            success=True,
            message=f"Agendamento confirmado! {day_label}, às {time}. Te esperamos na loja! 😊",
            appointment_id=appointment.id,
        )
