"""
Application runtime: builds the long-lived components once and owns their
background tasks (transport connection, queue drain, follow-up sweep).
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from fastapi import HTTPException, Request

from leadflow.availability import AvailabilityService
from leadflow.booking import BookingService
from leadflow.calendar_store import CalendarStore, InMemoryCalendarStore, SheetsCalendarStore
from leadflow.config import config as default_config
from leadflow.database import SessionLocal
from leadflow.delivery_queue import DeliveryQueue
from leadflow.follow_up import FollowUpScheduler
from leadflow.leads_store import InMemoryLeadTracker, LeadTracker, SheetsLeadTracker
from leadflow.llm_agent import AIService, build_ai_service
from leadflow.logging_config import get_logger
from leadflow.notifications import OperatorNotifier
from leadflow.orchestrator import ConversationOrchestrator
from leadflow.sheets_client import SheetsClient
from leadflow.transport import TransportConnectionManager, TransportSession, TwilioWhatsAppSession

logger = get_logger(__name__)


@dataclass
class Runtime:
    transport: TransportConnectionManager
    delivery_queue: DeliveryQueue
    orchestrator: ConversationOrchestrator
    scheduler: FollowUpScheduler
    availability: AvailabilityService
    calendar: CalendarStore
    lead_tracker: LeadTracker
    notifier: OperatorNotifier
    _connect_task: Optional[asyncio.Task] = field(default=None, repr=False)

    async def start(self) -> None:
        """Start background work. The transport connects in the background."""
        self.delivery_queue.start()
        self.scheduler.start()
        self._connect_task = asyncio.create_task(self.transport.start())
        logger.info("runtime_started")

    async def stop(self) -> None:
        if self._connect_task and not self._connect_task.done():
            self._connect_task.cancel()
            try:
                await self._connect_task
            except asyncio.CancelledError:
                pass
        await self.scheduler.stop()
        await self.delivery_queue.stop()
        await self.orchestrator.wait_for_background()
        await self.transport.stop()
        logger.info("runtime_stopped")


def _twilio_session_factory(cfg) -> Callable[[], TransportSession]:
    def factory() -> TransportSession:
        return TwilioWhatsAppSession(cfg.TWILIO_ACCOUNT_SID, cfg.TWILIO_AUTH_TOKEN, cfg.TWILIO_WHATSAPP_FROM)

    return factory


def build_runtime(
    cfg=default_config,
    session_factory=SessionLocal,
    transport_session_factory: Optional[Callable[[], TransportSession]] = None,
    ai_service: Optional[AIService] = None,
    calendar: Optional[CalendarStore] = None,
    lead_tracker: Optional[LeadTracker] = None,
    notifier: Optional[OperatorNotifier] = None,
    clock: Callable[[], datetime] = datetime.now,
    sleep=asyncio.sleep,
) -> Runtime:
    """
    Wire the components from configuration. Any collaborator can be passed in
    instead (tests, scripts).
    """
    if calendar is None or lead_tracker is None:
        if cfg.has_sheets_config():
            sheets = SheetsClient(cfg.GOOGLE_SHEETS_ID, cfg.GOOGLE_SERVICE_ACCOUNT_JSON)
            calendar = calendar or SheetsCalendarStore(sheets)
            lead_tracker = lead_tracker or SheetsLeadTracker(sheets, clock=clock)
            logger.info("sheets_integration_enabled")
        else:
            calendar = calendar or InMemoryCalendarStore()
            lead_tracker = lead_tracker or InMemoryLeadTracker(clock=clock)
            logger.warning("sheets_not_configured", detail="using in-memory calendar and lead tracking")

    if notifier is None:
        notifier = OperatorNotifier(cfg.TELEGRAM_BOT_TOKEN, cfg.TELEGRAM_CHAT_ID)

    transport = TransportConnectionManager(
        transport_session_factory or _twilio_session_factory(cfg),
        session_path=cfg.WHATSAPP_SESSION_PATH,
        orphan_process_pattern=cfg.ORPHAN_PROCESS_PATTERN,
        sleep=sleep,
    )
    delivery_queue = DeliveryQueue(transport, clock=clock, sleep=sleep)

    availability = AvailabilityService(
        calendar,
        cfg.WORKING_DAYS,
        cfg.BUSINESS_HOURS_START,
        cfg.BUSINESS_HOURS_END,
        interval_minutes=cfg.SLOT_INTERVAL_MINUTES,
        clock=clock,
    )
    booking = BookingService(availability, calendar, notifier=notifier)

    orchestrator = ConversationOrchestrator(
        session_factory,
        ai_service or build_ai_service(cfg),
        availability,
        booking,
        delivery_queue,
        lead_tracker=lead_tracker,
        notifier=notifier,
        clock=clock,
        bot_name=cfg.BOT_NAME,
        brand_name=cfg.AI_BRAND_NAME,
    )
    scheduler = FollowUpScheduler(session_factory, delivery_queue, notifier=notifier, clock=clock)

    return Runtime(
        transport=transport,
        delivery_queue=delivery_queue,
        orchestrator=orchestrator,
        scheduler=scheduler,
        availability=availability,
        calendar=calendar,
        lead_tracker=lead_tracker,
        notifier=notifier,
    )


def get_runtime(request: Request) -> Runtime:
    """FastAPI dependency: the runtime the lifespan put on app.state."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Service is starting")
    return runtime
