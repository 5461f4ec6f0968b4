"""
Archive Builder Module

Fetches generated certificates through the retrieval proxy, one at a time, and
packs every successfully retrieved PDF into a single deflate-compressed zip.
"""

import io
import logging
import zipfile
from datetime import date, datetime, timezone
from typing import Callable, Optional, Sequence

import httpx

from .config import get_settings
from .errors import BatchFatalError, RetrievalError
from .models import ArchiveEntry, ArchiveResult
from .utils import archive_entry_path, archive_filename

logger = logging.getLogger(__name__)


FetchProgressCallback = Callable[[int, int], None]


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


class RetrievalProxyClient:
    """Fetches artifact bytes via the same-origin proxy endpoint"""

    def __init__(self, http_client: httpx.AsyncClient, proxy_url: Optional[str] = None):
        self._client = http_client
        self.proxy_url = proxy_url or get_settings().retrieval_proxy_url

    async def fetch(self, entry: ArchiveEntry) -> bytes:
        """
        Retrieve one artifact

        Args:
            entry: Name and upstream URL of the certificate

        Returns:
            Raw PDF bytes

        Raises:
            RetrievalError: On transport failure or an error status from the proxy
        """
        try:
            response = await self._client.post(self.proxy_url, json={"url": entry.artifact_ref})
        except httpx.HTTPError as e:
            raise RetrievalError(entry.name, entry.artifact_ref, str(e) or type(e).__name__) from e

        if response.is_error:
            raise RetrievalError(entry.name, entry.artifact_ref, f"HTTP error! status: {response.status_code}")

        return response.content


class ArchiveBuilder:
    """
    Packs retrieved certificates into certificates/<sanitized-name>.pdf entries

    Entries whose sanitized names collide overwrite each other; the last
    retrieved file wins.
    """

    def __init__(
        self,
        fetcher: RetrievalProxyClient,
        compression_level: Optional[int] = None,
        today: Callable[[], date] = _utc_today,
    ):
        self._fetcher = fetcher
        if compression_level is None:
            compression_level = get_settings().archive_compression_level
        self.compression_level = compression_level
        self._today = today

    async def build(
        self,
        entries: Sequence[ArchiveEntry],
        on_progress: Optional[FetchProgressCallback] = None,
    ) -> ArchiveResult:
        """
        Fetch every entry and finalize the archive

        Args:
            entries: Certificates in generation order
            on_progress: Called with (attempted, total) after every fetch

        Returns:
            ArchiveResult with the zip bytes and a date-stamped file name

        Raises:
            BatchFatalError: If no entry contributed any bytes
        """
        files: dict[str, bytes] = {}
        skipped: list[RetrievalError] = []
        total = len(entries)

        for index, entry in enumerate(entries, start=1):
            logger.debug(f"Retrieving {index}/{total}: {entry.name}")
            try:
                content = await self._fetcher.fetch(entry)
            except RetrievalError as e:
                logger.warning(f"Skipping archive entry for {entry.name}: {e.message}")
                skipped.append(e)
            else:
                path = archive_entry_path(entry.name)
                if path in files:
                    logger.info(f"Archive entry {path} overwritten by a later row")
                files[path] = content

            if on_progress:
                on_progress(index, total)

        payload_bytes = sum(len(content) for content in files.values())
        if payload_bytes == 0:
            raise BatchFatalError(
                f"Generated zip file is empty: {len(skipped)} of {total} certificates could not be retrieved"
            )

        archive = ArchiveResult(
            filename=archive_filename(self._today()),
            content=self._write_zip(files),
            entry_paths=list(files),
            skipped=skipped,
            payload_bytes=payload_bytes,
        )
        logger.info(
            f"Archive {archive.filename} finalized: {archive.entry_count} entries, "
            f"{len(skipped)} skipped, {archive.size_bytes} bytes"
        )
        return archive

    def _write_zip(self, files: dict[str, bytes]) -> bytes:
        buffer = io.BytesIO()
        with zipfile.ZipFile(
            buffer,
            mode="w",
            compression=zipfile.ZIP_DEFLATED,
            compresslevel=self.compression_level,
        ) as archive:
            for path, content in files.items():
                archive.writestr(path, content)
        return buffer.getvalue()
