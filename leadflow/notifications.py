"""Operator alerts sent to a Telegram chat."""

from typing import Optional

import httpx

from leadflow.logging_config import get_logger

logger = get_logger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"


class OperatorNotifier:
    """
    Sends HTML messages to the operators' Telegram chat.

    Does nothing when no bot token or chat id is configured. Failures are
    logged and never raised: an alert must not break a conversation turn.
    """

    def __init__(self, bot_token: str = "", chat_id: str = "", timeout: float = 10.0):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    async def send(self, text: str) -> bool:
        if not self.enabled:
            logger.debug("telegram_not_configured")
            return False

        url = f"{TELEGRAM_API_URL}/bot{self.bot_token}/sendMessage"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    url,
                    json={"chat_id": self.chat_id, "text": text, "parse_mode": "HTML"},
                )
        except httpx.HTTPError as e:
            logger.warning("telegram_notification_error", error=str(e))
            return False

        if response.status_code >= 400:
            logger.warning("telegram_notification_failed", status=response.status_code, body=response.text[:200])
            return False

        logger.debug("telegram_notification_sent")
        return True

    async def notify_transfer(self, phone: str, customer_name: Optional[str], reason: Optional[str] = None) -> bool:
        name = customer_name or "Cliente"
        return await self.send(
            f"🔄 <b>TRANSFERÊNCIA PARA HUMANO</b>\n\n👤 {name}\n📱 {phone}\n"
            f"💬 {reason or 'IA transferiu a conversa'}\n\n⚡ Acesse o sistema para responder."
        )

    async def notify_hot_lead(self, phone: str, customer_name: Optional[str], vehicle: Optional[str] = None) -> bool:
        name = customer_name or "Cliente"
        car = f"\n🚗 {vehicle}" if vehicle else ""
        return await self.send(
            f"🔥 <b>LEAD QUENTE</b>\n\n👤 {name}\n📱 {phone}{car}\n\n⚡ Alta probabilidade de agendamento!"
        )

    async def notify_new_appointment(
        self, phone: str, customer_name: str, when: str, time: str, vehicle: Optional[str] = None
    ) -> bool:
        car = f"\n🚗 {vehicle}" if vehicle else ""
        return await self.send(
            f"✅ <b>NOVO AGENDAMENTO</b>\n\n👤 {customer_name}\n📱 {phone}{car}\n📅 {when} às {time}"
            "\n\n📋 Registrado na planilha."
        )

    async def notify_no_show(self, phone: str, customer_name: str) -> bool:
        return await self.send(
            f"⚠️ <b>NO-SHOW</b>\n\n👤 {customer_name}\n📱 {phone}"
            "\n\n❌ Cliente não compareceu. Follow-up automático enviado."
        )
