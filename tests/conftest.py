from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from leadflow.calendar_store import InMemoryCalendarStore
from leadflow.database import init_db
from leadflow.leads_store import InMemoryLeadTracker
from leadflow.llm_agent import AIProvider, AIService
from leadflow.models import AIResponse
from leadflow.notifications import OperatorNotifier
from leadflow.runtime import build_runtime
from leadflow.transport import TransportError, TransportEvent, TransportEventType, TransportSession

# Monday, within business hours.
MONDAY_10AM = datetime(2026, 10, 19, 10, 0)


@pytest.fixture(autouse=True)
def _safe_test_config(monkeypatch):
    """Force deterministic, offline-safe config for tests.

    The repo loads .env on import; these overrides prevent real network calls
    (OpenAI/Gemini/Twilio/Telegram/Sheets) and pin the business calendar.
    """
    from leadflow.config import config, Config

    overrides = {
        "OPENAI_API_KEY": "",
        "GEMINI_API_KEY": "",
        "TWILIO_ACCOUNT_SID": "",
        "TWILIO_AUTH_TOKEN": "",
        "TWILIO_WHATSAPP_FROM": "",
        "TELEGRAM_BOT_TOKEN": "",
        "TELEGRAM_CHAT_ID": "",
        "GOOGLE_SHEETS_ID": "",
        "GOOGLE_SERVICE_ACCOUNT_JSON": "",
        "API_KEY": "",
        "BUSINESS_HOURS_START": "09:00",
        "BUSINESS_HOURS_END": "18:00",
        "WORKING_DAYS": [1, 2, 3, 4, 5, 6],
        "SLOT_INTERVAL_MINUTES": 30,
        "BOT_NAME": "Ana",
        "AI_BRAND_NAME": "Auto Center",
        "WHATSAPP_SESSION_PATH": "",
        "ORPHAN_PROCESS_PATTERN": "",
    }
    for name, value in overrides.items():
        monkeypatch.setattr(Config, name, value, raising=False)
        # Keep the instance in sync for any code that reads instance attributes directly.
        monkeypatch.setattr(config, name, value, raising=False)

    return config


class FakeClock:
    def __init__(self, now: datetime = MONDAY_10AM):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeWhatsApp:
    """The far side of the fake transport: records what was sent."""

    def __init__(self):
        self.sent = []
        self.sessions = []
        self.open_failures = 0
        self.send_errors = []

    def factory(self) -> "FakeTransportSession":
        session = FakeTransportSession(self)
        self.sessions.append(session)
        return session


class FakeTransportSession(TransportSession):
    def __init__(self, network: FakeWhatsApp):
        self.network = network
        self.emit = None
        self.closed = False

    async def open(self, emit) -> None:
        self.emit = emit
        if self.network.open_failures > 0:
            self.network.open_failures -= 1
            raise TransportError("browser failed to launch")
        emit(TransportEvent(TransportEventType.AUTHENTICATED))
        emit(TransportEvent(TransportEventType.READY))

    async def send(self, recipient: str, text: str) -> None:
        if self.network.send_errors:
            error = self.network.send_errors.pop(0)
            if error is not None:
                raise error
        self.network.sent.append((recipient, text))

    async def close(self) -> None:
        self.closed = True

    def drop(self, reason: str = "NAVIGATION") -> None:
        self.emit(TransportEvent(TransportEventType.DISCONNECTED, reason))


class RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class ScriptedProvider(AIProvider):
    """Returns queued replies in order; an Exception in the queue is raised instead."""

    name = "scripted"

    def __init__(self, *replies):
        self.replies = list(replies)
        self.contexts = []

    def push(self, reply) -> None:
        self.replies.append(reply)

    async def generate(self, context):
        self.contexts.append(context)
        if not self.replies:
            return AIResponse(message="Certo! Como posso ajudar?", confidence=0.9)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, dict):
            return AIResponse.model_validate(reply)
        return reply


class RecordingNotifier(OperatorNotifier):
    def __init__(self):
        super().__init__()
        self.sent = []

    async def send(self, text: str) -> bool:
        self.sent.append(text)
        return True


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def whatsapp():
    return FakeWhatsApp()


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def runtime(_safe_test_config, session_factory, clock, whatsapp, provider, notifier):
    return build_runtime(
        cfg=_safe_test_config,
        session_factory=session_factory,
        transport_session_factory=whatsapp.factory,
        ai_service=AIService([provider]),
        calendar=InMemoryCalendarStore(),
        lead_tracker=InMemoryLeadTracker(clock=clock),
        notifier=notifier,
        clock=clock,
        sleep=RecordingSleep(),
    )


@pytest.fixture
def client(runtime, session_factory):
    """TestClient on the app with the test runtime and database; the lifespan is not run."""
    from fastapi.testclient import TestClient

    from leadflow.database import get_db
    from leadflow.main import app

    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    app.state.runtime = runtime
    yield TestClient(app)
    app.dependency_overrides.clear()
    del app.state.runtime
