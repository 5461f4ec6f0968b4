"""
Email Dispatch Module

Client side of the send-email endpoint. The orchestrator hands it a recipient,
a rendered message and the operator's OAuth credential; the endpoint composes
the MIME message and sends it through Gmail.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from .config import get_settings
from .errors import DeliveryError
from .models import MessageKind

logger = logging.getLogger(__name__)


@dataclass
class OutgoingEmail:
    """Container for a message waiting to be dispatched"""
    recipient: str
    subject: str
    body_text: str
    auth_credential: dict[str, Any]
    message_kind: MessageKind = MessageKind.CERTIFICATE
    artifact_ref: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        payload = {
            "to": self.recipient,
            "subject": self.subject,
            "body": self.body_text,
            "authCredential": self.auth_credential,
            "type": self.message_kind.value,
        }
        if self.artifact_ref:
            payload["attachmentUrl"] = self.artifact_ref
        return payload


class EmailDispatcher:
    """Sends one email per call through the send-email endpoint"""

    def __init__(self, http_client: httpx.AsyncClient, endpoint_url: Optional[str] = None):
        self._client = http_client
        self.endpoint_url = endpoint_url or get_settings().email_endpoint_url

    async def send(self, message: OutgoingEmail) -> bool:
        """
        Dispatch a single email

        Args:
            message: Recipient, content and credential

        Returns:
            True once the endpoint confirms the send

        Raises:
            DeliveryError: If the message is incomplete or the send fails
        """
        if message.message_kind is MessageKind.CERTIFICATE and not message.artifact_ref:
            raise DeliveryError("Missing attachment URL for certificate email")
        if not message.auth_credential:
            raise DeliveryError("Missing auth credential")

        try:
            response = await self._client.post(self.endpoint_url, json=message.to_payload())
        except httpx.HTTPError as e:
            raise DeliveryError(f"Failed to send email: {str(e) or type(e).__name__}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.is_error:
            detail = data.get("error") if isinstance(data, dict) else None
            raise DeliveryError(
                str(detail or f"Failed to send email: {response.status_code}"),
                status_code=response.status_code,
            )

        if isinstance(data, dict) and data.get("success") is False:
            raise DeliveryError(str(data.get("error") or "Failed to send email"), status_code=response.status_code)

        logger.debug(f"Email dispatched to {message.recipient}")
        return True
