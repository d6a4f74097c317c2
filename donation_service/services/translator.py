"""
Azure Translator v3 client used by the offline translation backfill
"""
from typing import Optional

import httpx
import structlog

from donation_service.core.config import get_settings
from donation_service.core.errors import TranslationError

logger = structlog.get_logger(__name__)


class TranslatorClient:

    def __init__(
        self,
        endpoint: Optional[str] = None,
        key: Optional[str] = None,
        region: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.endpoint = (endpoint or settings.azure_translator_endpoint).rstrip("/")
        self.key = key if key is not None else settings.azure_translator_key
        self.region = region or settings.azure_translator_region
        self.timeout = httpx.Timeout(10.0, connect=5.0)
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.key)

    async def translate(self, text: str, to: str, from_: str) -> str:
        """Translate ``text`` from ``from_`` to ``to`` (``en`` or ``ms``)"""
        if not text or not text.strip():
            return ""
        if not self.key:
            raise TranslationError("AZURE_TRANSLATOR_KEY is not configured")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    f"{self.endpoint}/translate",
                    params={"api-version": "3.0", "to": to, "from": from_},
                    headers={
                        "Ocp-Apim-Subscription-Key": self.key,
                        "Ocp-Apim-Subscription-Region": self.region,
                    },
                    json=[{"text": text}],
                )
        except httpx.HTTPError as e:
            logger.error("Translator request failed", error=str(e))
            raise TranslationError(f"Translator unavailable: {e}")

        if response.status_code >= 400:
            try:
                message = response.json().get("error", {}).get("message")
            except ValueError:
                message = None
            raise TranslationError(message or f"Translation failed: {response.status_code}")

        try:
            return response.json()[0]["translations"][0]["text"]
        except (ValueError, LookupError, TypeError):
            raise TranslationError("Unexpected translator response")
