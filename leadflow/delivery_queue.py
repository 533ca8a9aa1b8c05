"""
Outbound delivery queue.

Every outbound WhatsApp message goes through `enqueue_or_send`: sent right away
when the transport is connected, otherwise kept in memory and drained when the
connection comes back. Delivery is at-most-several-times; the queue is not
persisted across restarts.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from leadflow.logging_config import get_logger
from leadflow.transport import TransportConnectionManager, TransportNotConnected

logger = get_logger(__name__)

DEDUP_WINDOW = timedelta(seconds=60)
EXPIRY_HORIZON = timedelta(hours=4)
MAX_RETRIES = 3
SEND_INTERVAL_SECONDS = 1.0
DRAIN_INTERVAL_SECONDS = 120


@dataclass
class PendingOutboundMessage:
    recipient: str
    text: str
    created_at: datetime
    retries: int = 0


class DeliveryQueue:
    """Queue-or-send front of the transport connection manager."""

    def __init__(
        self,
        transport: TransportConnectionManager,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        send_interval: float = SEND_INTERVAL_SECONDS,
        drain_interval: float = DRAIN_INTERVAL_SECONDS,
    ):
        self.transport = transport
        self.clock = clock
        self._sleep = sleep
        self.send_interval = send_interval
        self.drain_interval = drain_interval

        self._pending: List[PendingOutboundMessage] = []
        # (recipient, text) -> when it was last accepted, for deduplication
        self._recent: Dict[Tuple[str, str], datetime] = {}
        self._drain_lock = asyncio.Lock()
        self._drain_task: Optional[asyncio.Task] = None

        transport.add_connected_listener(self.drain)

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def pending(self) -> List[PendingOutboundMessage]:
        return list(self._pending)

    def _is_duplicate(self, recipient: str, text: str, now: datetime) -> bool:
        for key, accepted_at in list(self._recent.items()):
            if now - accepted_at >= DEDUP_WINDOW:
                del self._recent[key]
        return (recipient, text) in self._recent

    async def enqueue_or_send(self, recipient: str, text: str) -> bool:
        """
        Send `text` now if connected, otherwise queue it.

        Returns True only when the message went out immediately. The same
        (recipient, text) pair accepted within the last 60 seconds is dropped.
        """
        now = self.clock()
        if self._is_duplicate(recipient, text, now):
            logger.debug("duplicate_message_skipped", recipient=recipient)
            return False
        self._recent[(recipient, text)] = now

        if self.transport.is_connected:
            try:
                await self.transport.send_raw(recipient, text)
                logger.debug("message_sent", recipient=recipient, length=len(text))
                return True
            except Exception as e:
                logger.error("message_send_failed", recipient=recipient, error=str(e))

        self._pending.append(PendingOutboundMessage(recipient=recipient, text=text, created_at=now))
        logger.info(
            "message_queued",
            recipient=recipient,
            queue_size=len(self._pending),
            preview=text[:50],
        )
        return False

    async def drain(self) -> None:
        """Send everything queued so far, in order. Only one drain runs at a time."""
        async with self._drain_lock:
            if not self._pending:
                return

            batch, self._pending = self._pending, []
            logger.info("pending_messages_draining", count=len(batch))

            sent = expired = failed = 0
            attempted = False
            for index, message in enumerate(batch):
                if self.clock() - message.created_at > EXPIRY_HORIZON:
                    expired += 1
                    logger.debug("queued_message_expired", recipient=message.recipient)
                    continue

                if attempted:
                    await self._sleep(self.send_interval)
                attempted = True

                try:
                    await self.transport.send_raw(message.recipient, message.text)
                    sent += 1
                except TransportNotConnected:
                    # Connection dropped: keep the rest for the next drain, ahead of newer arrivals.
                    self._pending = batch[index:] + self._pending
                    logger.warning("drain_interrupted_not_connected", remaining=len(batch) - index)
                    break
                except Exception as e:
                    failed += 1
                    if message.retries < MAX_RETRIES:
                        message.retries += 1
                        self._pending.append(message)
                        logger.warning(
                            "queued_message_send_failed",
                            recipient=message.recipient,
                            retries=message.retries,
                            error=str(e),
                        )
                    else:
                        logger.error("queued_message_dropped", recipient=message.recipient, error=str(e))

            logger.info(
                "pending_messages_drained",
                sent=sent,
                expired=expired,
                failed=failed,
                remaining=len(self._pending),
            )

    # ─── Periodic drain ─────────────────────────────────────────

    def start(self) -> None:
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain_loop())

    async def stop(self) -> None:
        task, self._drain_task = self._drain_task, None
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _drain_loop(self) -> None:
        while True:
            await asyncio.sleep(self.drain_interval)
            if self.transport.is_connected and self._pending:
                try:
                    await self.drain()
                except Exception as e:
                    logger.error("periodic_drain_failed", error=str(e))
