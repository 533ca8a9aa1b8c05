"""
Follow-up scheduler.

Every 30 minutes: nudge leads that went quiet, offer a new slot to no-shows,
and close conversations idle for a week. Messages go through the delivery
queue, so a sweep never waits on the WhatsApp connection.
"""

import asyncio
from datetime import datetime, time, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from leadflow.db_models import AppointmentStatus, MessageSender
from leadflow.delivery_queue import DeliveryQueue
from leadflow.logging_config import conversation_context, get_logger
from leadflow.notifications import OperatorNotifier
from leadflow.services import AppointmentService, ConversationService, MessageService

logger = get_logger(__name__)

FOLLOW_UP_MARKER = "[follow-up]"
RESCHEDULE_MARKER = "[reagendamento]"

SWEEP_INTERVAL_SECONDS = 30 * 60
FIRST_FOLLOW_UP_AFTER = timedelta(hours=2)
FINAL_FOLLOW_UP_AFTER = timedelta(hours=24)
MAX_FOLLOW_UPS = 2
NO_SHOW_LOOK_BACK_DAYS = 2
CONVERSATION_TIMEOUT = timedelta(days=7)


def strip_markers(text: str) -> str:
    """Remove bookkeeping markers before a message reaches a person."""
    for marker in (FOLLOW_UP_MARKER, RESCHEDULE_MARKER):
        text = text.replace(f" {marker}", "").replace(marker, "")
    return text.strip()


def _greeting(customer_name: Optional[str]) -> str:
    return f"Oi, {customer_name}!" if customer_name else "Oi!"


def first_follow_up_text(customer_name: Optional[str]) -> str:
    return (
        f"{_greeting(customer_name)} 😊 Só passando pra saber se ainda tem interesse. "
        f"Posso te ajudar com alguma dúvida? {FOLLOW_UP_MARKER}"
    )


def final_follow_up_text(customer_name: Optional[str]) -> str:
    return f"{_greeting(customer_name)} Caso mude de ideia, estou por aqui 😊 É só me chamar! {FOLLOW_UP_MARKER}"


def reschedule_offer_text(customer_name: Optional[str]) -> str:
    return (
        f"{_greeting(customer_name)} Vi que você não conseguiu vir 😊 sem problema! "
        f"Quer que eu te encaixe em outro horário? É rápido e sem compromisso! {RESCHEDULE_MARKER}"
    )


class FollowUpScheduler:
    """Periodic re-engagement sweep over persisted conversations."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        delivery_queue: DeliveryQueue,
        notifier: Optional[OperatorNotifier] = None,
        clock: Callable[[], datetime] = datetime.now,
        interval_seconds: float = SWEEP_INTERVAL_SECONDS,
    ):
        self.session_factory = session_factory
        self.delivery_queue = delivery_queue
        self.notifier = notifier
        self.clock = clock
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        """Run a sweep now and then every interval."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info("follow_up_scheduler_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("follow_up_scheduler_stopped")

    async def _loop(self) -> None:
        while True:
            await self.run_cycle()
            await asyncio.sleep(self.interval_seconds)

    async def run_cycle(self) -> dict:
        """One sweep. A failing pass is logged and does not skip the others."""
        summary = {}
        for name, sweep in (
            ("follow_ups", self.process_follow_ups),
            ("no_shows", self.process_no_shows),
            ("expired", self.process_expired_conversations),
        ):
            db = self.session_factory()
            try:
                summary[name] = await sweep(db)
            except Exception as e:
                db.rollback()
                summary[name] = 0
                logger.error("follow_up_pass_failed", sweep=name, error=str(e), exc_info=True)
            finally:
                db.close()
        logger.debug("follow_up_cycle_completed", **summary)
        return summary

    async def _send(self, db: Session, conversation_id: int, phone: str, text: str) -> None:
        MessageService.add_message(db, conversation_id, MessageSender.BOT, text, created_at=self.clock())
        await self.delivery_queue.enqueue_or_send(phone, strip_markers(text))

    async def process_follow_ups(self, db: Session) -> int:
        now = self.clock()
        sent = 0
        for row in ConversationService.list_idle_candidates(db, FOLLOW_UP_MARKER):
            conversation = row["conversation"]
            last_bot_at = row["last_bot_at"]
            last_customer_at = row["last_customer_at"]
            count = row["follow_up_count"]

            # Nothing to follow up on until the bot has spoken.
            if last_bot_at is None:
                continue
            if last_customer_at is not None and last_customer_at > last_bot_at:
                continue
            if count >= MAX_FOLLOW_UPS:
                continue

            idle = now - last_bot_at
            if count == 0 and FIRST_FOLLOW_UP_AFTER <= idle < FINAL_FOLLOW_UP_AFTER:
                text = first_follow_up_text(conversation.customer_name)
                stage = "first"
            elif idle >= FINAL_FOLLOW_UP_AFTER:
                text = final_follow_up_text(conversation.customer_name)
                stage = "final"
            else:
                continue

            with conversation_context(conversation.phone_number, conversation_id=conversation.id):
                await self._send(db, conversation.id, conversation.phone_number, text)
                logger.info("follow_up_sent", stage=stage)
            sent += 1
        return sent

    async def process_no_shows(self, db: Session) -> int:
        now = self.clock()
        candidates = AppointmentService.list_no_show_candidates(db, now.date(), NO_SHOW_LOOK_BACK_DAYS)
        # Taken before this pass stores any offer of its own.
        already_offered = {
            appointment.id
            for appointment in candidates
            if appointment.conversation_id
            and MessageService.has_bot_marker_since(
                db,
                appointment.conversation_id,
                RESCHEDULE_MARKER,
                datetime.combine(appointment.scheduled_date, time.min),
            )
        }

        handled = 0
        offered_conversations = set()
        for appointment in candidates:
            if appointment.id in already_offered:
                continue

            with conversation_context(
                appointment.phone_number, conversation_id=appointment.conversation_id, appointment_id=appointment.id
            ):
                AppointmentService.mark_status(db, appointment.id, AppointmentStatus.NO_SHOW, now=now)
                if appointment.conversation_id and appointment.conversation_id not in offered_conversations:
                    offered_conversations.add(appointment.conversation_id)
                    await self._send(
                        db,
                        appointment.conversation_id,
                        appointment.phone_number,
                        reschedule_offer_text(appointment.customer_name),
                    )
                if self.notifier:
                    await self.notifier.notify_no_show(appointment.phone_number, appointment.customer_name)
                logger.info("no_show_detected")
            handled += 1
        return handled

    async def process_expired_conversations(self, db: Session) -> int:
        expired = ConversationService.list_expired(db, self.clock() - CONVERSATION_TIMEOUT)
        for conversation in expired:
            ConversationService.close(db, conversation.id, now=self.clock())
            logger.info("conversation_timed_out", phone=conversation.phone_number)
        if expired:
            logger.info("conversations_timed_out", count=len(expired))
        return len(expired)
