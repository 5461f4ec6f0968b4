"""
Utility Functions Module

Common helper functions used across the Certificate Batch Service.
"""

import math
import re
import uuid
from datetime import date, datetime, timezone
from typing import Optional, Sequence
from urllib.parse import urlparse


ARCHIVE_FOLDER = "certificates"

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9]")
_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_PATTERN = re.compile(r"^\d{10}$")


def generate_batch_id() -> str:
    """
    Generate a short, unique batch ID for tracking

    Returns:
        8-character UUID string
    """
    return str(uuid.uuid4())[:8]


def utc_timestamp() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision"""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def is_valid_email(email: Optional[str]) -> bool:
    """Basic email shape check: something@something.something, no whitespace"""
    if not email:
        return False
    return bool(_EMAIL_PATTERN.match(email))


def is_valid_phone(phone: Optional[str]) -> bool:
    """Phone numbers must be exactly 10 digits"""
    if not phone:
        return False
    return bool(_PHONE_PATTERN.match(phone))


def sanitize_entry_name(name: str) -> str:
    """
    Build an archive-safe file name for a certificate

    Every character outside [A-Za-z0-9] becomes an underscore and a .pdf
    suffix is appended.

    Args:
        name: Recipient name from the spreadsheet

    Returns:
        Sanitized file name, e.g. "A/B:C" -> "A_B_C.pdf"
    """
    return f"{_UNSAFE_NAME_CHARS.sub('_', name)}.pdf"


def archive_entry_path(name: str) -> str:
    """Path of a certificate inside the archive"""
    return f"{ARCHIVE_FOLDER}/{sanitize_entry_name(name)}"


def archive_filename(on: Optional[date] = None) -> str:
    """
    Deterministic archive download name for a given (UTC) date

    Args:
        on: Date to stamp, defaults to today in UTC

    Returns:
        File name such as certificates-2024-05-01.zip
    """
    stamp = on or datetime.now(timezone.utc).date()
    return f"{ARCHIVE_FOLDER}-{stamp.isoformat()}.zip"


def scaled_percent(completed: int, total: int, scale: int = 100, offset: int = 0) -> int:
    """
    Compute a progress percentage as round(completed / total * scale) + offset

    Halves round up, so 1 of 8 rows on a 100 scale reports 13.

    Args:
        completed: Units of work finished
        total: Units of work in this phase
        scale: Share of the overall bar owned by this phase
        offset: Share already completed by earlier phases

    Returns:
        Integer percentage clamped to [0, 100]
    """
    if total <= 0:
        return max(0, min(100, offset))
    value = offset + math.floor(completed / total * scale + 0.5)
    return max(0, min(100, value))


def calculate_file_size_mb(content: bytes) -> float:
    """
    Calculate file size in MB from raw bytes

    Args:
        content: Bytes to measure

    Returns:
        File size in megabytes
    """
    return round(len(content) / (1024 * 1024), 2)


def is_allowed_url(url: Optional[str], allowed_hosts: Sequence[str]) -> bool:
    """
    Check that a URL is http(s) and points at an allowed host or one of its subdomains

    Args:
        url: URL supplied by a caller
        allowed_hosts: Lower-case host names

    Returns:
        True if the URL may be fetched by the service
    """
    if not isinstance(url, str):
        return False
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return False
    host = parsed.hostname.lower()
    return any(host == allowed or host.endswith(f".{allowed}") for allowed in allowed_hosts)
