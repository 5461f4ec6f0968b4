"""
Application Configuration

Environment-driven settings for the Certificate Batch Service. Values are read
from the process environment, with an optional .env file loaded first.
"""

import logging
import os
from typing import Optional
from urllib.parse import urlparse

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


DEFAULT_CERTIFICATE_API_URL = "https://choicecert.snipeit.ai/"
DEFAULT_CREDENTIALS_API_URL = "https://singupapi-ffnfpldenq-uc.a.run.app/"
DEFAULT_GMAIL_SEND_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"


class Settings:
    """Service configuration management"""

    def __init__(self):
        # Server
        self.host = os.getenv("HOST", "0.0.0.0")
        self.port = int(os.getenv("PORT", "8000"))
        self.log_level = os.getenv("LOG_LEVEL", "INFO")

        # Remote generation endpoints
        self.certificate_api_url = os.getenv("CERTIFICATE_API_URL", DEFAULT_CERTIFICATE_API_URL)
        self.credentials_api_url = os.getenv("CREDENTIALS_API_URL", DEFAULT_CREDENTIALS_API_URL)

        # Same-origin endpoints used by the pipeline
        local_base = f"http://127.0.0.1:{self.port}"
        self.email_endpoint_url = os.getenv("EMAIL_ENDPOINT_URL", f"{local_base}/api/send-email")
        self.retrieval_proxy_url = os.getenv("RETRIEVAL_PROXY_URL", f"{local_base}/api/proxy-pdf")
        self.gmail_send_url = os.getenv("GMAIL_SEND_URL", DEFAULT_GMAIL_SEND_URL)

        # Hosts the PDF proxy and attachment fetches may contact; subdomains included
        default_hosts = urlparse(self.certificate_api_url).hostname or ""
        self.proxy_allowed_hosts = tuple(
            host.strip().lower()
            for host in os.getenv("PROXY_ALLOWED_HOSTS", default_hosts).split(",")
            if host.strip()
        )

        # Transport and processing
        self.http_timeout_seconds = float(os.getenv("HTTP_TIMEOUT_SECONDS", "60"))
        self.archive_compression_level = int(os.getenv("ARCHIVE_COMPRESSION_LEVEL", "6"))
        self.max_sheet_rows = int(os.getenv("MAX_SHEET_ROWS", "5000"))
        self.history_limit = int(os.getenv("HISTORY_LIMIT", "10"))
        self.certificate_subject = os.getenv("CERTIFICATE_SUBJECT", "Your Certificate")
        self.sse_poll_interval_seconds = float(os.getenv("SSE_POLL_INTERVAL_SECONDS", "1.0"))

        # Finished runs kept in memory for status, streaming and download
        self.batch_retention_seconds = float(os.getenv("BATCH_RETENTION_SECONDS", "3600"))
        self.max_finished_batches = int(os.getenv("MAX_FINISHED_BATCHES", "20"))

    def validate_config(self) -> tuple[bool, Optional[str]]:
        """Validate service configuration"""
        if not self.certificate_api_url:
            return False, "CERTIFICATE_API_URL is required"
        if not self.credentials_api_url:
            return False, "CREDENTIALS_API_URL is required"
        if not 0 <= self.archive_compression_level <= 9:
            return False, f"Invalid ARCHIVE_COMPRESSION_LEVEL: {self.archive_compression_level}"
        if self.history_limit <= 0:
            return False, f"Invalid HISTORY_LIMIT: {self.history_limit}"
        if self.http_timeout_seconds <= 0:
            return False, f"Invalid HTTP_TIMEOUT_SECONDS: {self.http_timeout_seconds}"
        if self.max_finished_batches < 0:
            return False, f"Invalid MAX_FINISHED_BATCHES: {self.max_finished_batches}"

        return True, None


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create global settings"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging once for the service process"""
    level_name = (level or get_settings().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
