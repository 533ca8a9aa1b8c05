"""
WhatsApp transport connection manager.

The manager owns the single messaging session. Sessions report what happens
to them (ready, auth challenge, disconnect, ...) as TransportEvent values on
an asyncio.Queue; one dispatch loop consumes the queue and applies the state
transitions:

    DISCONNECTED -> CONNECTING -> CONNECTED
    CONNECTED -> DISCONNECTED          (drop, auth failure)
    CONNECTING -> DISCONNECTED         (failed attempt)

Startup makes a few attempts with fixed delays. A drop while connected starts
a reconnect loop with exponential backoff. Sends fail fast while not
connected; callers go through the delivery queue.
"""

import asyncio
import enum
import glob
import os
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional

from leadflow.logging_config import get_logger
from leadflow.models import TransportStatus

logger = get_logger(__name__)

STARTUP_ATTEMPTS = 3
STARTUP_RETRY_DELAYS = (5, 15, 30)  # seconds; only the first two are used with 3 attempts
RECONNECT_BASE_DELAY = 5
RECONNECT_MAX_DELAY = 60
MAX_RECONNECT_ATTEMPTS = 10
STALE_LOCK_FILES = ("SingletonLock", "SingletonSocket", "SingletonCookie")
CLEANUP_COMMAND_TIMEOUT = 10


class TransportError(Exception):
    """Base class for transport failures."""


class TransportNotConnected(TransportError):
    """The session is not connected; nothing was sent."""


class TransportAuthError(TransportError):
    """The messaging account rejected our credentials."""


class ConnectionStatus(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class TransportEventType(str, enum.Enum):
    READY = "ready"
    AUTHENTICATED = "authenticated"
    AUTH_CHALLENGE = "auth_challenge"
    AUTH_FAILURE = "auth_failure"
    DISCONNECTED = "disconnected"


@dataclass
class TransportEvent:
    type: TransportEventType
    detail: Optional[str] = None


EmitFn = Callable[[TransportEvent], None]


def reconnect_delay(attempt: int) -> int:
    """Backoff before reconnect attempt `attempt` (1-based): 5, 10, 20, 40, 60, 60..."""
    return min(RECONNECT_BASE_DELAY * 2 ** (attempt - 1), RECONNECT_MAX_DELAY)


class TransportSession:
    """
    One connection to the messaging provider.

    `open` raises when the connection cannot be established and emits READY
    once it can send. Later drops are reported by emitting DISCONNECTED or
    AUTH_FAILURE.
    """

    async def open(self, emit: EmitFn) -> None:
        raise NotImplementedError

    async def send(self, recipient: str, text: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class TwilioWhatsAppSession(TransportSession):
    """WhatsApp through Twilio's Programmable Messaging API."""

    def __init__(self, account_sid: str, auth_token: str, from_number: str, client: Any = None):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self._client = client
        self._emit: Optional[EmitFn] = None

    @staticmethod
    def _address(number: str) -> str:
        """Turn 5511999999999 or +5511999999999 into whatsapp:+5511999999999."""
        number = number.replace("whatsapp:", "").strip()
        if not number.startswith("+"):
            number = f"+{number}"
        return f"whatsapp:{number}"

    def _get_client(self):
        if self._client is None:
            from twilio.rest import Client

            self._client = Client(self.account_sid, self.auth_token)
        return self._client

    async def open(self, emit: EmitFn) -> None:
        from twilio.base.exceptions import TwilioRestException

        if not (self.account_sid and self.auth_token and self.from_number):
            raise TransportAuthError("Twilio is not configured")

        self._emit = emit
        client = self._get_client()
        try:
            await asyncio.to_thread(client.api.accounts(self.account_sid).fetch)
        except TwilioRestException as e:
            if e.status in (401, 403):
                raise TransportAuthError(str(e)) from e
            raise TransportError(str(e)) from e

        emit(TransportEvent(TransportEventType.AUTHENTICATED))
        emit(TransportEvent(TransportEventType.READY))

    async def send(self, recipient: str, text: str) -> None:
        from twilio.base.exceptions import TwilioRestException

        client = self._get_client()
        try:
            message = await asyncio.to_thread(
                client.messages.create,
                from_=self._address(self.from_number),
                to=self._address(recipient),
                body=text,
            )
        except TwilioRestException as e:
            if e.status in (401, 403):
                # Credentials revoked: the session is gone until we reconnect.
                if self._emit:
                    self._emit(TransportEvent(TransportEventType.AUTH_FAILURE, str(e)))
                raise TransportNotConnected(str(e)) from e
            raise TransportError(str(e)) from e

        logger.debug("whatsapp_message_sent", to=recipient, sid=getattr(message, "sid", None))

    async def close(self) -> None:
        self._emit = None


class TransportConnectionManager:
    """Keeps the messaging session connected and exposes a raw send."""

    def __init__(
        self,
        session_factory: Callable[[], TransportSession],
        session_path: str = "",
        orphan_process_pattern: str = "",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._session_factory = session_factory
        self.session_path = session_path
        self.orphan_process_pattern = orphan_process_pattern
        self._sleep = sleep

        self.connection_status = ConnectionStatus.DISCONNECTED
        self.current_auth_challenge: Optional[str] = None
        self._session: Optional[TransportSession] = None
        self._events: Optional[asyncio.Queue] = None
        self._dispatch_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._listener_tasks: set = set()
        self._connected_listeners: List[Callable[[], Awaitable[None]]] = []
        self._attempt_in_progress = False
        self.reconnect_attempt = 0

    # ─── Public API ──────────────────────────────────────────────

    @property
    def is_connected(self) -> bool:
        return self.connection_status == ConnectionStatus.CONNECTED

    def status(self) -> TransportStatus:
        return TransportStatus(
            status=self.connection_status.value,
            is_ready=self.is_connected,
            has_pending_auth_challenge=self.current_auth_challenge is not None,
        )

    def add_connected_listener(self, listener: Callable[[], Awaitable[None]]) -> None:
        """Run `listener` every time the session becomes connected."""
        self._connected_listeners.append(listener)

    async def start(self) -> bool:
        """
        Clean up after a crashed instance, then try to connect a few times.
        Returns False when every attempt failed; the process keeps running
        and messages stay queued.
        """
        self._ensure_dispatch_loop()
        await self.cleanup_stale_session()

        for attempt in range(1, STARTUP_ATTEMPTS + 1):
            logger.info("transport_connect_attempt", attempt=attempt, max_attempts=STARTUP_ATTEMPTS)
            if await self._connect_once():
                return True
            if attempt < STARTUP_ATTEMPTS:
                delay = STARTUP_RETRY_DELAYS[attempt - 1]
                logger.info("transport_connect_retry_scheduled", delay_seconds=delay)
                await self.cleanup_stale_session()
                await self._sleep(delay)

        logger.error("transport_startup_failed", attempts=STARTUP_ATTEMPTS)
        logger.warning("transport_running_offline", detail="messages will be queued until the session reconnects")
        return False

    async def stop(self) -> None:
        tasks = [self._reconnect_task, self._dispatch_task, *self._listener_tasks]
        for task in tasks:
            if task and not task.done():
                task.cancel()
        for task in tasks:
            if task:
                try:
                    await task
                except (asyncio.CancelledError, Exception):
                    pass
        self._reconnect_task = None
        self._dispatch_task = None
        self._listener_tasks.clear()

        await self._close_session()
        self.connection_status = ConnectionStatus.DISCONNECTED
        logger.info("transport_stopped")

    async def send_raw(self, recipient: str, text: str) -> None:
        """Send now or raise. Never waits for a connection."""
        if not self.is_connected or self._session is None:
            raise TransportNotConnected(f"transport is {self.connection_status.value}")
        await self._session.send(recipient, text)

    async def wait_idle(self) -> None:
        """Wait until queued events and connected listeners have been handled."""
        if self._events is not None and self._dispatch_task and not self._dispatch_task.done():
            await self._events.join()
        if self._listener_tasks:
            await asyncio.gather(*list(self._listener_tasks), return_exceptions=True)

    # ─── Stale session cleanup ──────────────────────────────────

    async def cleanup_stale_session(self) -> None:
        """Remove browser lock files and kill orphaned helper processes."""
        if self.session_path:
            for name in STALE_LOCK_FILES:
                for path in glob.glob(os.path.join(self.session_path, "session", name)):
                    try:
                        os.remove(path)
                        logger.info("stale_lock_removed", file=path)
                    except OSError as e:
                        logger.warning("stale_lock_remove_failed", file=path, error=str(e))

        if self.orphan_process_pattern:
            try:
                proc = await asyncio.create_subprocess_exec(
                    "pkill",
                    "-f",
                    self.orphan_process_pattern,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.DEVNULL,
                )
                await asyncio.wait_for(proc.wait(), timeout=CLEANUP_COMMAND_TIMEOUT)
            except FileNotFoundError:
                logger.debug("pkill_not_available")
            except (OSError, asyncio.TimeoutError) as e:
                logger.warning("orphan_process_cleanup_failed", error=str(e))

    # ─── Internals ───────────────────────────────────────────────

    def _ensure_dispatch_loop(self) -> None:
        if self._events is None:
            self._events = asyncio.Queue()
        if self._dispatch_task is None or self._dispatch_task.done():
            self._dispatch_task = asyncio.create_task(self._dispatch_loop())

    def _emit(self, event: TransportEvent) -> None:
        self._events.put_nowait(event)

    async def _close_session(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            try:
                await session.close()
            except Exception as e:
                logger.warning("transport_session_close_failed", error=str(e))

    async def _connect_once(self) -> bool:
        """One connection attempt with a fresh session."""
        await self._close_session()
        self._attempt_in_progress = True
        self.connection_status = ConnectionStatus.CONNECTING
        session = self._session_factory()
        try:
            await session.open(self._emit)
            self._session = session
            # Let the dispatch loop apply READY before reporting success.
            await self._events.join()
        except Exception as e:
            logger.error("transport_connect_failed", error=str(e), error_type=type(e).__name__)
            self.connection_status = ConnectionStatus.DISCONNECTED
            try:
                await session.close()
            except Exception:
                logger.debug("transport_session_close_after_failure_failed")
            return False
        finally:
            self._attempt_in_progress = False

        if not self.is_connected:
            logger.error("transport_connect_not_ready")
            self.connection_status = ConnectionStatus.DISCONNECTED
            return False
        return True

    async def _dispatch_loop(self) -> None:
        while True:
            event = await self._events.get()
            try:
                self._handle_event(event)
            except Exception as e:
                logger.error("transport_event_handler_failed", event_type=event.type.value, error=str(e))
            finally:
                self._events.task_done()

    def _handle_event(self, event: TransportEvent) -> None:
        if event.type == TransportEventType.READY:
            self.connection_status = ConnectionStatus.CONNECTED
            self.current_auth_challenge = None
            self.reconnect_attempt = 0
            logger.info("transport_connected")
            for listener in self._connected_listeners:
                task = asyncio.create_task(listener())
                self._listener_tasks.add(task)
                task.add_done_callback(self._listener_done)

        elif event.type == TransportEventType.AUTHENTICATED:
            logger.info("transport_authenticated")

        elif event.type == TransportEventType.AUTH_CHALLENGE:
            self.current_auth_challenge = event.detail
            logger.info("transport_auth_challenge_received")

        elif event.type in (TransportEventType.DISCONNECTED, TransportEventType.AUTH_FAILURE):
            was_connected = self.is_connected
            self.connection_status = ConnectionStatus.DISCONNECTED
            self.current_auth_challenge = None
            logger.warning("transport_disconnected", reason=event.detail, event_type=event.type.value)
            if was_connected and not self._attempt_in_progress:
                self._schedule_reconnect()

    def _listener_done(self, task: asyncio.Task) -> None:
        self._listener_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("transport_connected_listener_failed", error=str(task.exception()))

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        while self.reconnect_attempt < MAX_RECONNECT_ATTEMPTS:
            self.reconnect_attempt += 1
            delay = reconnect_delay(self.reconnect_attempt)
            logger.info("transport_reconnect_scheduled", attempt=self.reconnect_attempt, delay_seconds=delay)
            await self._sleep(delay)
            await self.cleanup_stale_session()
            if await self._connect_once():
                self.reconnect_attempt = 0
                return
        logger.error("transport_reconnect_gave_up", attempts=self.reconnect_attempt)
