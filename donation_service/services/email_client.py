"""
HTTP client for the Resend email API
"""
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

from donation_service.core.config import get_settings
from donation_service.core.errors import EmailDeliveryError

logger = structlog.get_logger(__name__)


@dataclass
class EmailMessage:
    to: str
    subject: str
    html: str
    text: Optional[str] = None


class ResendEmailClient:
    """Sends transactional email through Resend"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        sender: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.resend_api_key
        self.sender = sender or settings.email_from
        self.base_url = settings.resend_api_url.rstrip("/")
        self.timeout = httpx.Timeout(10.0, connect=5.0)
        self._transport = transport

    async def send(self, message: EmailMessage) -> str:
        """
        Send one email

        Returns:
            Provider message id

        Raises:
            EmailDeliveryError: when the API key is missing or the provider rejects the message
        """
        if not self.api_key:
            raise EmailDeliveryError("RESEND_API_KEY is not configured", code="NO_API_KEY")
        if not message.to:
            raise EmailDeliveryError("No recipient email address provided", code="NO_RECIPIENT")

        payload = {
            "from": self.sender,
            "to": [message.to],
            "subject": message.subject,
            "html": message.html,
        }
        if message.text:
            payload["text"] = message.text

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self.base_url}/emails",
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"}
                )
        except httpx.TimeoutException:
            logger.error("Timeout while sending email", to=message.to)
            raise EmailDeliveryError("Email provider timeout")
        except httpx.HTTPError as e:
            logger.error("Connection error to email provider", to=message.to, error=str(e))
            raise EmailDeliveryError("Email provider unavailable")

        if response.status_code >= 400:
            logger.error(
                "Email provider rejected message",
                to=message.to,
                status_code=response.status_code,
                response=response.text[:500]
            )
            raise EmailDeliveryError(
                "Email provider rejected the message",
                details={"status_code": response.status_code}
            )

        try:
            message_id = response.json().get("id", "")
        except (ValueError, AttributeError):
            logger.error(
                "Unexpected response from email provider",
                to=message.to,
                status_code=response.status_code,
                response=response.text[:500]
            )
            raise EmailDeliveryError(
                "Unexpected response from email provider",
                code="UNEXPECTED_RESPONSE",
                details={"status_code": response.status_code}
            )
        logger.info("Email sent", to=message.to, message_id=message_id)
        return message_id


def get_email_client() -> ResendEmailClient:
    """Dependency to get the email client"""
    return ResendEmailClient()
