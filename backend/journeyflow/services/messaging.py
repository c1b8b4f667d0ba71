"""
Messaging provider for WhatsApp.

``WhatsAppMessagingProvider`` sends through the WhatsApp Cloud API (Graph API)
with httpx. Both send calls return the provider message id and raise
ExternalProviderError on failure, flagged transient for timeouts, rate limits
and 5xx responses.
"""
import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

import httpx

from journeyflow.config import settings
from journeyflow.errors import ConfigurationError, ExternalProviderError
from journeyflow.services.http_client import request_json

logger = logging.getLogger(__name__)


class MessagingProvider(ABC):
    """Interface for outbound WhatsApp messaging backends."""

    @abstractmethod
    def is_configured(self) -> bool:
        """True when credentials for the store are present."""

    @abstractmethod
    async def send_free_form(self, phone: str, body: str) -> str:
        """Send plain text inside the 24 hour window. Returns the message id."""

    @abstractmethod
    async def send_template(self, phone: str, template_name: str, language: str, variables: Dict[str, str]) -> str:
        """Send a pre-approved template. Returns the message id."""


class WhatsAppMessagingProvider(MessagingProvider):

    def __init__(
        self,
        access_token: Optional[str] = None,
        phone_number_id: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.access_token = access_token if access_token is not None else settings.WHATSAPP_ACCESS_TOKEN
        self.phone_number_id = phone_number_id if phone_number_id is not None else settings.WHATSAPP_PHONE_NUMBER_ID
        self.graph_url = f"{settings.WHATSAPP_GRAPH_URL}/{settings.WHATSAPP_GRAPH_VERSION}"
        self.client = client

    def is_configured(self):
        return bool(self.access_token and self.phone_number_id)

    async def _send(self, payload: Dict) -> str:
        if not self.is_configured():
            raise ConfigurationError("WhatsApp is not configured for this store")
        data = await request_json(
            "whatsapp",
            "POST",
            f"{self.graph_url}/{self.phone_number_id}/messages",
            headers={"Authorization": f"Bearer {self.access_token}"},
            json={"messaging_product": "whatsapp", **payload},
            client=self.client,
        )
        messages = data.get("messages") or []
        if not messages or not messages[0].get("id"):
            raise ExternalProviderError("WhatsApp response did not include a message id", provider="whatsapp")
        return messages[0]["id"]

    async def send_free_form(self, phone, body):
        logger.info(f"[WHATSAPP] Sending free-form message to {phone}")
        message_id = await self._send({"to": phone, "type": "text", "text": {"preview_url": True, "body": body}})
        logger.info(f"[WHATSAPP] Free-form message {message_id} accepted for {phone}")
        return message_id

    async def send_template(self, phone, template_name, language, variables):
        logger.info(f"[WHATSAPP] Sending template '{template_name}' ({language}) to {phone}")
        template = {"name": template_name, "language": {"code": language}}
        if variables:
            # Template placeholders are positional; variables keep their configured order.
            template["components"] = [
                {
                    "type": "body",
                    "parameters": [{"type": "text", "text": str(value)} for value in variables.values()],
                }
            ]
        message_id = await self._send({"to": phone, "type": "template", "template": template})
        logger.info(f"[WHATSAPP] Template message {message_id} accepted for {phone}")
        return message_id
