"""
Remote Generator Client

Wraps the external certificate and credential generation endpoints. One call
per row, one attempt per call: any transport failure, non-success status or
error payload is surfaced as a GenerationError.
"""

import logging
from typing import Any, Optional

import httpx

from .config import get_settings
from .errors import GenerationError
from .models import GenerationKind, RowRecord

logger = logging.getLogger(__name__)


def _error_message_from_payload(data: Any) -> Optional[str]:
    """Pull the message out of an {"error": {"message": ...}} payload"""
    if not isinstance(data, dict):
        return None
    error = data.get("error")
    if not error:
        return None
    if isinstance(error, dict):
        return str(error.get("message") or error.get("code") or "Unknown error")
    return str(error)


class RemoteGeneratorClient:
    """
    Client for the remote artifact generation services

    Certificate requests send {name} and expect {url}; credential requests send
    {email, phone, name} and expect {password}.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        certificate_url: Optional[str] = None,
        credentials_url: Optional[str] = None,
    ):
        settings = get_settings()
        self._client = http_client
        self.certificate_url = certificate_url or settings.certificate_api_url
        self.credentials_url = credentials_url or settings.credentials_api_url

    async def generate(self, row: RowRecord, kind: GenerationKind) -> str:
        """
        Generate the artifact for one row

        Args:
            row: Validated row
            kind: Certificate or credential generation

        Returns:
            Certificate URL or credential password

        Raises:
            GenerationError: On any failure of the remote call
        """
        if kind is GenerationKind.CREDENTIAL:
            return await self.generate_credentials(row.name, row.email or "", row.phone or "")
        return await self.generate_certificate(row.name)

    async def generate_certificate(self, name: str) -> str:
        """Request a certificate PDF for a name and return its URL"""
        data = await self._post(self.certificate_url, {"name": name}, "certificate")
        url = data.get("url")
        if not url:
            raise GenerationError("Certificate response did not include a url")
        return str(url)

    async def generate_credentials(self, name: str, email: str, phone: str) -> str:
        """Request Swayam credentials and return the issued password"""
        data = await self._post(
            self.credentials_url,
            {"email": email, "phone": phone, "name": name},
            "credentials",
        )
        password = data.get("password")
        if not password:
            raise GenerationError("Credentials response did not include a password")
        return str(password)

    async def _post(self, url: str, payload: dict[str, str], label: str) -> dict[str, Any]:
        try:
            response = await self._client.post(url, json=payload)
        except httpx.HTTPError as e:
            logger.debug(f"Transport error calling {label} endpoint: {e}")
            raise GenerationError(f"Failed to generate {label}: {str(e) or type(e).__name__}") from e

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.is_error:
            message = _error_message_from_payload(data)
            raise GenerationError(
                message or f"Failed to generate {label}: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )

        if not isinstance(data, dict):
            raise GenerationError(f"Invalid response from {label} endpoint", status_code=response.status_code)

        message = _error_message_from_payload(data)
        if message:
            raise GenerationError(message, status_code=response.status_code)

        return data
