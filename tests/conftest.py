"""Shared pytest fixtures.

Provides:
- A file-based SQLite database swapped in for the global database manager
- In-memory key-value store
- Scripted stand-ins for the remote generator, email dispatcher and
  retrieval proxy so orchestrator tests never touch the network
- A key-value store that fails like an unavailable database
"""

from collections.abc import Generator
from datetime import date

import pytest
from sqlalchemy.exc import OperationalError

from certbatch.background_processor import get_batch_registry
from certbatch.database import connection
from certbatch.database.connection import DatabaseConfig, DatabaseManager
from certbatch.errors import DeliveryError, GenerationError, RetrievalError
from certbatch.history import InMemoryKeyValueStore
from certbatch.models import GenerationKind, RowRecord


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def db_manager(tmp_path, monkeypatch) -> Generator[DatabaseManager, None, None]:
    """File-based SQLite database used by every service call in the test."""
    manager = DatabaseManager(DatabaseConfig(f"sqlite:///{tmp_path / 'certbatch-test.db'}"))
    manager.create_tables()
    monkeypatch.setattr(connection, "_db_manager", manager)
    yield manager
    manager.close()


@pytest.fixture
def kv_store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture(autouse=True)
def clean_registry() -> Generator[None, None, None]:
    registry = get_batch_registry()
    registry.clear()
    yield
    registry.clear()


# ============================================================================
# Pipeline stand-ins
# ============================================================================


class ScriptedGenerator:
    """Returns a URL (or password) per row; names listed in `failures` raise."""

    def __init__(self, failures=None, artifact="https://certs.example.com/{slug}.pdf"):
        self.failures = dict(failures or {})
        self.artifact = artifact
        self.calls = []

    async def generate(self, row: RowRecord, kind: GenerationKind) -> str:
        self.calls.append((row, kind))
        if row.name in self.failures:
            raise GenerationError(self.failures[row.name])
        if kind is GenerationKind.CREDENTIAL:
            return f"pw-{row.name.lower()}"
        return self.artifact.format(slug=row.name.lower().replace(" ", "-"))


class RecordingDispatcher:
    """Collects outgoing emails; recipients in `failing` raise DeliveryError."""

    def __init__(self, failing=None):
        self.failing = set(failing or [])
        self.sent = []

    async def send(self, message) -> bool:
        if message.recipient in self.failing:
            raise DeliveryError("Failed to send email", status_code=500)
        self.sent.append(message)
        return True


class ScriptedFetcher:
    """Serves artifact bytes by URL; unknown or listed URLs fail retrieval."""

    def __init__(self, contents=None, failing=None):
        self.contents = dict(contents or {})
        self.failing = set(failing or [])
        self.fetched = []

    async def fetch(self, entry) -> bytes:
        self.fetched.append(entry)
        if entry.artifact_ref in self.failing:
            raise RetrievalError(entry.name, entry.artifact_ref, "HTTP error! status: 502")
        return self.contents.get(entry.artifact_ref, b"%PDF-1.4 " + entry.name.encode())


@pytest.fixture
def generator_factory():
    return ScriptedGenerator


@pytest.fixture
def dispatcher_factory():
    return RecordingDispatcher


@pytest.fixture
def fetcher_factory():
    return ScriptedFetcher


@pytest.fixture
def fixed_today():
    return lambda: date(2024, 5, 1)


@pytest.fixture
def auth_tokens() -> dict:
    return {"access_token": "ya29.test-token", "refresh_token": "1//refresh", "token_type": "Bearer"}


class UnavailableStore(InMemoryKeyValueStore):
    """Key-value store whose reads and/or writes fail like a locked database."""

    def __init__(self, initial=None, fail_get=False, fail_set=True):
        super().__init__(initial)
        self.fail_get = fail_get
        self.fail_set = fail_set
        self.writes = []

    def get(self, key):
        if self.fail_get:
            raise OperationalError("SELECT key_value_entries", {}, Exception("database is locked"))
        return super().get(key)

    def set(self, key, value):
        if self.fail_set:
            raise OperationalError("INSERT INTO key_value_entries", {}, Exception("database is locked"))
        self.writes.append(key)
        super().set(key, value)


@pytest.fixture
def unavailable_store_factory():
    return UnavailableStore
