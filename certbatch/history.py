"""
History and Credential Storage

Recently generated artifacts and the operator's OAuth tokens live in a small
key-value store. The caller loads them explicitly before a run and the
orchestrator writes history once, at the end of the run.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Protocol

from .config import get_settings
from .database.services import KeyValueService
from .models import BatchReport, GenerationKind, HistoryEntry, HistoryStatus, OutputMode

logger = logging.getLogger(__name__)


HISTORY_KEYS = {
    GenerationKind.CERTIFICATE: "certificateHistory",
    GenerationKind.CREDENTIAL: "swayamResults",
}
CREDENTIALS_KEY = "googleTokens"
CREDENTIALS_ISSUED = "credentials issued"


class KeyValueStore(Protocol):
    """Minimal persistence interface used for history and tokens"""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def clear(self, key: str) -> None: ...


class InMemoryKeyValueStore:
    """Process-local store, used by tests and when no database is configured"""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._values: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    def clear(self, key: str) -> None:
        self._values.pop(key, None)


class DatabaseKeyValueStore:
    """Store backed by the key_value_entries table"""

    def get(self, key: str) -> Optional[str]:
        return KeyValueService.get_value(key)

    def set(self, key: str, value: str) -> None:
        KeyValueService.set_value(key, value)

    def clear(self, key: str) -> None:
        KeyValueService.clear_value(key)


def _history_status(report: BatchReport, email_sent: bool) -> HistoryStatus:
    if report.output_mode is OutputMode.ARCHIVE_DOWNLOAD:
        return HistoryStatus.DOWNLOADED
    if not email_sent:
        return HistoryStatus.DOWNLOADED
    if report.kind is GenerationKind.CREDENTIAL:
        return HistoryStatus.EMAILED
    return HistoryStatus.BOTH


class HistoryRecorder:
    """
    Keeps the most recent generated artifacts for one generation kind

    New entries are prepended in processing order and the list is cut to the
    configured limit, so the oldest entries are evicted first.
    """

    def __init__(self, store: KeyValueStore, kind: GenerationKind = GenerationKind.CERTIFICATE, limit: Optional[int] = None):
        self._store = store
        self.kind = kind
        self.key = HISTORY_KEYS[kind]
        self.limit = limit or get_settings().history_limit
        self._entries: Optional[List[HistoryEntry]] = None

    @property
    def loaded(self) -> bool:
        return self._entries is not None

    @property
    def entries(self) -> List[HistoryEntry]:
        return list(self._entries or [])

    def load(self) -> List[HistoryEntry]:
        """Read the persisted history; unreadable data is treated as empty"""
        raw = self._store.get(self.key)
        entries: List[HistoryEntry] = []
        if raw:
            try:
                entries = [HistoryEntry.from_dict(item) for item in json.loads(raw)]
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Discarding unreadable {self.key} history: {e}")
                entries = []
        self._entries = entries[: self.limit]
        return self.entries

    def build_entries(self, report: BatchReport) -> List[HistoryEntry]:
        """History entries for every outcome in the report that produced an artifact"""
        entries = []
        for outcome in report.ledger:
            if not outcome.succeeded:
                continue
            if report.kind is GenerationKind.CREDENTIAL:
                artifact = CREDENTIALS_ISSUED
            else:
                artifact = outcome.artifact_ref
            entries.append(HistoryEntry(
                name=outcome.row.name,
                artifact_url_or_status=artifact,
                timestamp_utc=outcome.timestamp_utc,
                status=_history_status(report, outcome.email_sent),
            ))
        return entries

    def record_batch(self, report: BatchReport) -> List[HistoryEntry]:
        """
        Prepend the run's artifacts and persist the capped list

        Args:
            report: Terminal report of a finished run

        Returns:
            The history as persisted, newest first
        """
        if not self.loaded:
            self.load()

        new_entries = self.build_entries(report)
        if not new_entries:
            return self.entries

        merged = (new_entries + self.entries)[: self.limit]
        self._store.set(self.key, json.dumps([entry.to_dict() for entry in merged]))
        self._entries = merged
        logger.info(f"Recorded {len(new_entries)} {self.key} entries for batch {report.batch_id}")
        return self.entries

    def clear(self) -> None:
        self._store.clear(self.key)
        self._entries = []


class CredentialStore:
    """Persists the OAuth tokens obtained by the external sign-in flow"""

    def __init__(self, store: KeyValueStore):
        self._store = store

    def load(self) -> Optional[Dict[str, Any]]:
        raw = self._store.get(CREDENTIALS_KEY)
        if not raw:
            return None
        try:
            tokens = json.loads(raw)
        except ValueError as e:
            logger.warning(f"Discarding unreadable stored credentials: {e}")
            return None
        return tokens if isinstance(tokens, dict) and tokens else None

    def save(self, tokens: Dict[str, Any]) -> None:
        if not tokens:
            raise ValueError("Cannot store empty credentials")
        self._store.set(CREDENTIALS_KEY, json.dumps(tokens))
        logger.info("Stored auth credentials")

    def clear(self) -> None:
        self._store.clear(CREDENTIALS_KEY)
        logger.info("Cleared auth credentials")
