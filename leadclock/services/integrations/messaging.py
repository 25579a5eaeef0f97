"""
WhatsApp messaging provider implementations.
Mock provider for development, Twilio for production.
"""
import uuid
import logging
from datetime import datetime
from typing import Optional

import httpx

from leadclock.config import settings
from leadclock.core.exceptions import MessagingProviderError
from leadclock.services.integrations.base import MessagingProvider, SendResult

logger = logging.getLogger(__name__)


class MockMessagingProvider(MessagingProvider):
    """
    Mock provider for development/testing.
    Logs messages instead of sending them and returns stub ids.
    """

    name = "stub"

    async def send(self, to_phone: str, text: str) -> SendResult:
        logger.info(f"[MOCK WHATSAPP] To: {to_phone}, Body: {text[:100]}")
        return SendResult(
            provider=self.name,
            provider_message_id=f"stub-{uuid.uuid4()}",
            sent_at=datetime.utcnow()
        )


class TwilioWhatsAppProvider(MessagingProvider):
    """
    Twilio WhatsApp sender over the REST API.
    """

    name = "twilio"
    BASE_URL = "https://api.twilio.com/2010-04-01"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.client = client or httpx.AsyncClient(timeout=15.0)

    @staticmethod
    def _whatsapp_address(phone: str) -> str:
        return phone if phone.startswith("whatsapp:") else f"whatsapp:{phone}"

    async def send(self, to_phone: str, text: str) -> SendResult:
        url = f"{self.BASE_URL}/Accounts/{self.account_sid}/Messages.json"
        try:
            response = await self.client.post(
                url,
                data={
                    "From": self._whatsapp_address(self.from_number),
                    "To": self._whatsapp_address(to_phone),
                    "Body": text
                },
                auth=(self.account_sid, self.auth_token)
            )
        except httpx.HTTPError as e:
            raise MessagingProviderError(self.name, f"transport error: {e}") from e

        if response.status_code not in (200, 201):
            raise MessagingProviderError(self.name, f"HTTP {response.status_code}: {response.text}")

        try:
            message_sid = response.json().get("sid")
        except ValueError as e:
            raise MessagingProviderError(self.name, "response is not JSON") from e
        if not message_sid:
            raise MessagingProviderError(self.name, "response missing message id")

        return SendResult(
            provider=self.name,
            provider_message_id=message_sid,
            sent_at=datetime.utcnow()
        )


def get_messaging_provider() -> MessagingProvider:
    """Provider selected by MESSAGING_PROVIDER."""
    if settings.MESSAGING_PROVIDER == "twilio":
        if not (settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN and settings.TWILIO_WHATSAPP_FROM):
            raise MessagingProviderError("twilio", "Twilio credentials are not configured")
        return TwilioWhatsAppProvider(
            account_sid=settings.TWILIO_ACCOUNT_SID,
            auth_token=settings.TWILIO_AUTH_TOKEN,
            from_number=settings.TWILIO_WHATSAPP_FROM
        )
    return MockMessagingProvider()
