"""
Mail Service Module

Server side of the send-email endpoint: builds MIME messages and sends them
through the Gmail REST API with the operator's OAuth access token.
"""

import base64
import logging
from email.message import EmailMessage
from typing import Any, Optional

import httpx

from .config import get_settings
from .errors import DeliveryError

logger = logging.getLogger(__name__)


ATTACHMENT_FILENAME = "certificate.pdf"


def build_certificate_message(to: str, subject: str, body: str, pdf_bytes: bytes) -> EmailMessage:
    """
    Build a multipart message with the certificate PDF attached

    Args:
        to: Recipient address
        subject: Message subject
        body: Plain-text body
        pdf_bytes: Certificate contents

    Returns:
        MIME message ready to be encoded
    """
    message = build_credentials_message(to, subject, body)
    message.add_attachment(
        pdf_bytes,
        maintype="application",
        subtype="pdf",
        filename=ATTACHMENT_FILENAME,
    )
    return message


def build_credentials_message(to: str, subject: str, body: str) -> EmailMessage:
    """Build a plain-text message with no attachment"""
    message = EmailMessage()
    message["To"] = to
    message["Subject"] = subject
    message.set_content(body, charset="utf-8")
    return message


def encode_raw_message(message: EmailMessage) -> str:
    """Encode a message as the unpadded base64url string Gmail expects"""
    return base64.urlsafe_b64encode(message.as_bytes()).decode("ascii").rstrip("=")


def _access_token(tokens: Optional[dict[str, Any]]) -> str:
    token = (tokens or {}).get("access_token")
    if not token:
        raise DeliveryError("Auth credential has no access_token")
    return str(token)


class GmailMailer:
    """Sends composed messages as the authenticated Gmail user"""

    def __init__(self, http_client: httpx.AsyncClient, send_url: Optional[str] = None):
        self._client = http_client
        self.send_url = send_url or get_settings().gmail_send_url

    async def send_certificate_email(
        self,
        to: str,
        subject: str,
        body: str,
        attachment_url: str,
        tokens: dict[str, Any],
    ) -> None:
        """
        Fetch the certificate PDF and send it as an attachment

        Raises:
            DeliveryError: If the attachment cannot be fetched or Gmail rejects the send
        """
        access_token = _access_token(tokens)
        pdf_bytes = await self._fetch_attachment(attachment_url)
        message = build_certificate_message(to, subject, body, pdf_bytes)
        await self._send(message, access_token)

    async def send_credentials_email(self, to: str, subject: str, body: str, tokens: dict[str, Any]) -> None:
        """
        Send a plain-text credentials email

        Raises:
            DeliveryError: If Gmail rejects the send
        """
        access_token = _access_token(tokens)
        message = build_credentials_message(to, subject, body)
        await self._send(message, access_token)

    async def _fetch_attachment(self, attachment_url: str) -> bytes:
        try:
            response = await self._client.get(attachment_url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise DeliveryError(f"Failed to fetch certificate attachment: {str(e) or type(e).__name__}") from e
        return response.content

    async def _send(self, message: EmailMessage, access_token: str) -> None:
        try:
            response = await self._client.post(
                self.send_url,
                json={"raw": encode_raw_message(message)},
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            raise DeliveryError(f"Gmail request failed: {str(e) or type(e).__name__}") from e

        if response.is_error:
            detail = response.text
            try:
                detail = response.json().get("error", {}).get("message", detail)
            except (ValueError, AttributeError):
                pass
            logger.error(f"Gmail send failed ({response.status_code}): {detail}")
            raise DeliveryError(f"Gmail rejected the message: {detail}", status_code=response.status_code)

        logger.info(f"Sent email to {message['To']}")
