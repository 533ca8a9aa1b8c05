"""
Conversation orchestrator: one inbound WhatsApp message in, at most one reply out.

A turn runs under the phone's lock so messages from one customer are handled
in order. Best-effort collaborators (lead sheet, operator alerts, appointment
history) never fail a turn; persistence errors do, and then nothing is sent.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from leadflow.availability import AvailabilityService
from leadflow.booking import BookingService
from leadflow.date_helpers import parse_date
from leadflow.db_models import Conversation, ConversationMode, LeadTemperature, MessageSender
from leadflow.delivery_queue import DeliveryQueue
from leadflow.follow_up import strip_markers
from leadflow.leads_store import LeadTracker, intention_to_busca
from leadflow.llm_agent import AIService
from leadflow.logging_config import conversation_context, get_logger
from leadflow.models import AIResponse, LeadUpdate, ScheduleRequest
from leadflow.notifications import OperatorNotifier
from leadflow.prompts import ConversationContext
from leadflow.services import AppointmentService, ConversationService, MessageService

logger = get_logger(__name__)

MIN_MESSAGE_INTERVAL = timedelta(seconds=2)
CONTEXT_MESSAGE_LIMIT = 15
LOW_CONFIDENCE_THRESHOLD = 0.3
MAX_SUGGESTIONS = 3

HANDOFF_NOTICE = "Vou te encaminhar para um dos nossos especialistas que pode te ajudar melhor!"
TRANSFER_NOTICE = f"{HANDOFF_NOTICE} Um momento 😊"
UNPARSEABLE_DATE_REPLY = "Não consegui entender a data. Pode me dizer novamente? Por exemplo: 15/02 ou 20/02."


class ConversationNotFound(Exception):
    """No active conversation for the phone number."""


class ConversationOrchestrator:
    """Runs conversation turns and the operator actions on a conversation."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        ai_service: AIService,
        availability: AvailabilityService,
        booking: BookingService,
        delivery_queue: DeliveryQueue,
        lead_tracker: Optional[LeadTracker] = None,
        notifier: Optional[OperatorNotifier] = None,
        clock: Callable[[], datetime] = datetime.now,
        bot_name: str = "LeadFlow",
        brand_name: str = "LeadFlow",
    ):
        self.session_factory = session_factory
        self.ai_service = ai_service
        self.availability = availability
        self.booking = booking
        self.delivery_queue = delivery_queue
        self.lead_tracker = lead_tracker
        self.notifier = notifier
        self.clock = clock
        self.bot_name = bot_name
        self.brand_name = brand_name

        self._last_seen: Dict[str, datetime] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        # Turns holding or waiting for each phone lock; the lock goes when this reaches zero.
        self._lock_users: Dict[str, int] = {}
        self._background: set = set()
        self._lead_chain: Dict[str, asyncio.Task] = {}

        # Booking notifications are tracked with the rest of our background work.
        self.booking.spawn = self._spawn

    # ─── Background work ────────────────────────────────────────

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("background_task_failed", error=str(task.exception()))

    async def wait_for_background(self) -> None:
        """Wait for fire-and-forget work (lead sheet, alerts) to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _track_lead(self, phone: str, operation: Callable, event: str) -> None:
        """Run a lead-sheet call in the background, after the previous one for this phone."""
        if self.lead_tracker is None:
            return
        previous = self._lead_chain.get(phone)

        async def run():
            if previous is not None:
                await asyncio.gather(previous, return_exceptions=True)
            try:
                await operation()
            except Exception as e:
                logger.warning(event, error=str(e))

        task = self._spawn(run())
        self._lead_chain[phone] = task
        task.add_done_callback(
            lambda t: self._lead_chain.pop(phone, None) if self._lead_chain.get(phone) is t else None
        )

    # ─── Gates ──────────────────────────────────────────────────

    def is_within_business_hours(self, now: Optional[datetime] = None) -> bool:
        return self.availability.is_open_at(now or self.clock())

    def off_hours_message(self) -> str:
        return (
            f"Olá! 😊 Obrigado por entrar em contato com a {self.brand_name}. "
            f"Nosso horário de atendimento é de {self.availability.start} às {self.availability.end}, "
            "de segunda a sábado. Retornaremos assim que possível!"
        )

    def _rate_limited(self, phone: str, now: datetime) -> bool:
        for seen_phone, seen_at in list(self._last_seen.items()):
            if now - seen_at >= MIN_MESSAGE_INTERVAL:
                del self._last_seen[seen_phone]

        last = self._last_seen.get(phone)
        if last is not None and now - last < MIN_MESSAGE_INTERVAL:
            return True
        self._last_seen[phone] = now
        return False

    @asynccontextmanager
    async def _phone_lock(self, phone: str):
        """Serialize work on one phone; events logged inside carry the phone."""
        lock = self._locks.get(phone)
        if lock is None:
            lock = self._locks[phone] = asyncio.Lock()
        self._lock_users[phone] = self._lock_users.get(phone, 0) + 1
        try:
            async with lock:
                with conversation_context(phone):
                    yield
        finally:
            self._lock_users[phone] -= 1
            if self._lock_users[phone] == 0:
                del self._lock_users[phone]
                del self._locks[phone]

    # ─── Inbound turn ───────────────────────────────────────────

    async def process_incoming_message(
        self,
        phone: str,
        text: str,
        bypass_hours_gate: bool = False,
        deliver: bool = True,
    ) -> Optional[str]:
        """
        Handle one inbound message and return the reply text, or None when
        nothing is sent (flood gate, human mode).
        """
        now = self.clock()
        if self._rate_limited(phone, now):
            logger.debug("inbound_rate_limited", phone=phone)
            return None

        async with self._phone_lock(phone):
            db = self.session_factory()
            try:
                reply = await self._run_turn(db, phone, text, bypass_hours_gate)
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

        if reply is not None and deliver:
            await self.delivery_queue.enqueue_or_send(phone, reply)
        return reply

    def _find_or_create(self, db: Session, phone: str) -> Conversation:
        conversation, created = ConversationService.find_or_create(
            db, phone, assigned_to=self.bot_name, now=self.clock()
        )
        if created:
            self._track_lead(
                phone,
                lambda: self.lead_tracker.register_lead(phone, self.bot_name),
                "lead_register_failed",
            )
        return conversation

    async def _run_turn(self, db: Session, phone: str, text: str, bypass_hours_gate: bool) -> Optional[str]:
        logger.info("processing_incoming_message", length=len(text))
        now = self.clock()

        if not bypass_hours_gate and not self.is_within_business_hours(now):
            conversation = self._find_or_create(db, phone)
            MessageService.add_message(db, conversation.id, MessageSender.CUSTOMER, text, created_at=now)
            reply = self.off_hours_message()
            MessageService.add_message(db, conversation.id, MessageSender.BOT, reply, created_at=self.clock())
            logger.info("off_hours_reply")
            return reply

        conversation = self._find_or_create(db, phone)

        if conversation.mode == ConversationMode.HUMAN:
            MessageService.add_message(db, conversation.id, MessageSender.CUSTOMER, text, created_at=now)
            logger.info("message_saved_for_human_mode", assigned_to=conversation.assigned_to)
            return None

        MessageService.add_message(db, conversation.id, MessageSender.CUSTOMER, text, created_at=now)

        context = await self._build_context(db, conversation, now)
        response = await self.ai_service.respond(context)
        response = self._apply_confidence_guard(response, phone)

        previous_temperature = conversation.lead_temperature
        data = response.extracted_data
        conversation = ConversationService.update_fields(
            db,
            conversation.id,
            now=self.clock(),
            customer_name=data.customer_name,
            vehicle=data.vehicle,
            city=data.city,
            intention=data.intention,
            lead_temperature=response.lead_temperature,
        )

        if response.lead_temperature == LeadTemperature.HOT and previous_temperature != LeadTemperature.HOT:
            logger.info("hot_lead_detected")
            if self.notifier:
                self._spawn(self.notifier.notify_hot_lead(phone, conversation.customer_name, conversation.vehicle))

        final_message = response.message
        booked = False

        if response.action == "schedule":
            final_message, booked = await self._handle_schedule(db, conversation, response)
        elif response.action == "transfer":
            ConversationService.set_mode(db, conversation.id, ConversationMode.HUMAN, now=self.clock())
            logger.info("conversation_transferred_to_human", conversation_id=conversation.id)
            if self.notifier:
                self._spawn(self.notifier.notify_transfer(phone, conversation.customer_name))
        elif response.action == "close":
            ConversationService.close(db, conversation.id, now=self.clock())
        elif response.action == "follow_up":
            logger.info("follow_up_requested", temperature=conversation.lead_temperature.value)

        update = self._lead_update(conversation, response.action, booked)
        if not update.is_empty():
            self._track_lead(phone, lambda: self.lead_tracker.update_lead(phone, update), "lead_update_failed")

        MessageService.add_message(db, conversation.id, MessageSender.BOT, final_message, created_at=self.clock())
        return final_message

    async def _build_context(self, db: Session, conversation: Conversation, now: datetime) -> ConversationContext:
        recent = MessageService.recent_messages(db, conversation.id, CONTEXT_MESSAGE_LIMIT)

        try:
            slots = await self.availability.upcoming_slots()
        except Exception as e:
            logger.warning("context_slots_unavailable", error=str(e))
            slots = []

        try:
            statuses = [a.status for a in AppointmentService.list_by_phone(db, conversation.phone_number)]
        except Exception as e:
            db.rollback()
            logger.warning("appointment_history_unavailable", error=str(e))
            statuses = []

        return ConversationContext(
            phone=conversation.phone_number,
            now=now,
            is_working_day=self.availability.is_working_day(now.date()),
            customer_name=conversation.customer_name,
            vehicle=conversation.vehicle,
            city=conversation.city,
            intention=conversation.intention,
            lead_temperature=conversation.lead_temperature or LeadTemperature.WARM,
            messages=[(m.sender, strip_markers(m.content)) for m in recent],
            available_slots=slots,
            previous_appointment_statuses=statuses,
        )

    @staticmethod
    def _apply_confidence_guard(response: AIResponse, phone: str) -> AIResponse:
        if response.confidence < LOW_CONFIDENCE_THRESHOLD and response.action != "transfer":
            logger.warning("low_confidence_transfer", confidence=response.confidence, action=response.action)
            return response.model_copy(
                update={"action": "transfer", "message": f"{response.message}\n\n{HANDOFF_NOTICE}"}
            )
        return response

    async def _handle_schedule(self, db: Session, conversation: Conversation, response: AIResponse):
        """Book only with name, vehicle and an explicit day and time. Returns (reply, booked)."""
        data = response.extracted_data
        phone = conversation.phone_number

        if not conversation.customer_name:
            logger.warning("schedule_blocked_missing_name")
            return response.message, False
        if not conversation.vehicle:
            logger.warning("schedule_blocked_missing_vehicle")
            return response.message, False
        if not data.desired_date or not data.desired_time:
            logger.warning("schedule_blocked_missing_date_time")
            return response.message, False

        day = parse_date(data.desired_date, reference=self.clock())
        if day is None:
            logger.info("schedule_date_unparseable", phrase=data.desired_date)
            return UNPARSEABLE_DATE_REPLY, False

        result = await self.booking.schedule(
            db,
            ScheduleRequest(
                conversation_id=conversation.id,
                customer_name=conversation.customer_name,
                phone=phone,
                vehicle=conversation.vehicle,
                city=conversation.city,
                intention=conversation.intention,
                lead_temperature=conversation.lead_temperature,
                day=day.date(),
                time=data.desired_time,
                created_by=self.bot_name,
            ),
        )
        if result.success:
            return result.message, True

        if result.suggested_slots:
            options = "\n• ".join(s.display_text for s in result.suggested_slots[:MAX_SUGGESTIONS])
            return f"{result.message}\n\nTenho esses horários disponíveis:\n• {options}\n\nQual prefere?", False
        return result.message, False

    @staticmethod
    def _lead_update(conversation: Conversation, action: str, booked: bool) -> LeadUpdate:
        qualified = conversation.is_qualified
        qualificado = "SIM" if qualified or booked else None
        if action == "close" and not qualificado:
            qualificado = "NÃO"
        return LeadUpdate(
            customer_name=conversation.customer_name,
            vehicle=conversation.vehicle,
            busca=intention_to_busca(conversation.intention) or None,
            qualificado=qualificado,
            agendou="SIM" if booked else None,
            responsible="HUMANO" if action == "transfer" else None,
        )

    # ─── Operator actions ───────────────────────────────────────

    def _require_active(self, db: Session, phone: str) -> Conversation:
        conversation = ConversationService.find_active_by_phone(db, phone)
        if conversation is None:
            raise ConversationNotFound(phone)
        return conversation

    async def send_human_message(self, phone: str, text: str, agent_label: str) -> None:
        """Store an operator's message, take the conversation over and send it."""
        async with self._phone_lock(phone):
            db = self.session_factory()
            try:
                conversation = self._require_active(db, phone)
                MessageService.add_message(db, conversation.id, MessageSender.AGENT, text, created_at=self.clock())
                if conversation.mode != ConversationMode.HUMAN:
                    ConversationService.set_mode(
                        db, conversation.id, ConversationMode.HUMAN, assigned_to=agent_label, now=self.clock()
                    )
            finally:
                db.close()
            logger.info("human_message_sent", agent=agent_label)

        await self.delivery_queue.enqueue_or_send(phone, text)

    async def transfer_to_human(self, phone: str, agent_label: str) -> bool:
        """Hand the conversation to an operator. False when it already was."""
        async with self._phone_lock(phone):
            db = self.session_factory()
            try:
                conversation = self._require_active(db, phone)
                if conversation.mode == ConversationMode.HUMAN:
                    return False
                ConversationService.set_mode(
                    db, conversation.id, ConversationMode.HUMAN, assigned_to=agent_label, now=self.clock()
                )
                MessageService.add_message(db, conversation.id, MessageSender.BOT, TRANSFER_NOTICE, created_at=self.clock())
            finally:
                db.close()
            logger.info("conversation_transferred_to_human", agent=agent_label)

        await self.delivery_queue.enqueue_or_send(phone, TRANSFER_NOTICE)
        return True

    async def return_to_ai(self, phone: str) -> None:
        async with self._phone_lock(phone):
            db = self.session_factory()
            try:
                conversation = self._require_active(db, phone)
                ConversationService.set_mode(
                    db, conversation.id, ConversationMode.AI, assigned_to=self.bot_name, now=self.clock()
                )
            finally:
                db.close()
            logger.info("conversation_returned_to_ai")

