"""
Batch Data Model

Rows, per-row outcomes, the run ledger, progress snapshots and the terminal
report produced by a batch run.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, List, Optional

from .errors import BatchFatalError, RetrievalError
from .utils import is_valid_email, utc_timestamp


REDACTED = "********"


class GenerationKind(str, Enum):
    """What the remote generation endpoint produces for each row"""
    CERTIFICATE = "certificate"
    CREDENTIAL = "credential"


class MessageKind(str, Enum):
    """Email flavour understood by the send-email endpoint"""
    CERTIFICATE = "certificate"
    CREDENTIALS = "credentials"

    @classmethod
    def for_generation(cls, kind: GenerationKind) -> "MessageKind":
        return cls.CREDENTIALS if kind is GenerationKind.CREDENTIAL else cls.CERTIFICATE


class OutputMode(str, Enum):
    """Terminal action for generated artifacts, fixed for one run"""
    EMAIL_DELIVERY = "email"
    ARCHIVE_DOWNLOAD = "zip"


class BatchState(str, Enum):
    """Lifecycle of a batch run"""
    PREVIEW = "preview"
    PROCESSING = "processing"
    COMPLETE = "complete"


class BatchStatus(str, Enum):
    """Terminal status of a completed run"""
    SUCCESS = "success"
    PARTIAL = "partial"
    FATAL = "fatal"


class HistoryStatus(str, Enum):
    """How a generated artifact reached its recipient"""
    DOWNLOADED = "downloaded"
    EMAILED = "emailed"
    BOTH = "both"


@dataclass(frozen=True)
class RowRecord:
    """A validated spreadsheet row"""
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None

    @property
    def has_dispatchable_email(self) -> bool:
        return is_valid_email(self.email)

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "email": self.email, "phone": self.phone}


@dataclass(frozen=True)
class GenerationOutcome:
    """
    Result of processing one row

    Exactly one of artifact_ref or error_message is set. A delivery_error is
    only ever present next to an artifact_ref.
    """
    row: RowRecord
    artifact_ref: Optional[str] = None
    error_message: Optional[str] = None
    email_sent: bool = False
    delivery_error: Optional[str] = None
    timestamp_utc: str = field(default_factory=utc_timestamp)

    def __post_init__(self):
        if not self.row.name:
            raise ValueError("GenerationOutcome requires a row with a non-empty name")
        if (self.artifact_ref is None) == (self.error_message is None):
            raise ValueError("Exactly one of artifact_ref or error_message must be set")
        if self.artifact_ref is None and (self.email_sent or self.delivery_error):
            raise ValueError("Failed generations cannot carry delivery results")

    @classmethod
    def success(
        cls,
        row: RowRecord,
        artifact_ref: str,
        email_sent: bool = False,
        delivery_error: Optional[str] = None,
    ) -> "GenerationOutcome":
        return cls(row=row, artifact_ref=artifact_ref, email_sent=email_sent, delivery_error=delivery_error)

    @classmethod
    def failure(cls, row: RowRecord, error_message: str) -> "GenerationOutcome":
        return cls(row=row, error_message=error_message or "Unknown generation error")

    @property
    def succeeded(self) -> bool:
        return self.artifact_ref is not None

    def to_dict(self, redact_artifact: bool = False) -> dict[str, Any]:
        artifact = self.artifact_ref
        if redact_artifact and artifact is not None:
            artifact = REDACTED
        return {
            "name": self.row.name,
            "email": self.row.email,
            "artifact_ref": artifact,
            "error_message": self.error_message,
            "email_sent": self.email_sent,
            "delivery_error": self.delivery_error,
            "timestamp_utc": self.timestamp_utc,
        }


class BatchLedger:
    """Ordered, append-only record of per-row outcomes for one run"""

    def __init__(self, capacity: int):
        self._capacity = capacity
        self._outcomes: List[GenerationOutcome] = []

    def append(self, outcome: GenerationOutcome) -> None:
        if len(self._outcomes) >= self._capacity:
            raise ValueError(f"Ledger is full: {self._capacity} rows already recorded")
        self._outcomes.append(outcome)

    def __len__(self) -> int:
        return len(self._outcomes)

    def __iter__(self) -> Iterator[GenerationOutcome]:
        return iter(tuple(self._outcomes))

    def __getitem__(self, index: int) -> GenerationOutcome:
        return self._outcomes[index]

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def outcomes(self) -> tuple[GenerationOutcome, ...]:
        return tuple(self._outcomes)

    @property
    def usable_count(self) -> int:
        return sum(1 for outcome in self._outcomes if outcome.succeeded)

    @property
    def failed_count(self) -> int:
        return sum(1 for outcome in self._outcomes if not outcome.succeeded)

    @property
    def emailed_count(self) -> int:
        return sum(1 for outcome in self._outcomes if outcome.email_sent)

    @property
    def delivery_error_count(self) -> int:
        return sum(1 for outcome in self._outcomes if outcome.delivery_error)


@dataclass(frozen=True)
class BatchProgress:
    """Snapshot handed to the progress reporter after every unit of work"""
    completed_count: int
    total_count: int
    percent: int
    phase: str = "generation"

    def to_dict(self) -> dict[str, Any]:
        return {
            "completed_count": self.completed_count,
            "total_count": self.total_count,
            "percent": self.percent,
            "phase": self.phase,
        }


@dataclass(frozen=True)
class ArchiveEntry:
    """A generated certificate waiting to be packed"""
    name: str
    artifact_ref: str


@dataclass
class ArchiveResult:
    """A finalized zip archive ready for download"""
    filename: str
    content: bytes
    entry_paths: List[str] = field(default_factory=list)
    skipped: List[RetrievalError] = field(default_factory=list)
    payload_bytes: int = 0

    @property
    def entry_count(self) -> int:
        return len(self.entry_paths)

    @property
    def size_bytes(self) -> int:
        return len(self.content)

    def to_dict(self) -> dict[str, Any]:
        return {
            "filename": self.filename,
            "entry_count": self.entry_count,
            "size_bytes": self.size_bytes,
            "payload_bytes": self.payload_bytes,
            "skipped": [{"name": failure.name, "error": failure.message} for failure in self.skipped],
        }


@dataclass(frozen=True)
class HistoryEntry:
    """A recently generated artifact, kept by the history store"""
    name: str
    artifact_url_or_status: str
    timestamp_utc: str
    status: HistoryStatus

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "artifactUrlOrStatus": self.artifact_url_or_status,
            "timestampUtc": self.timestamp_utc,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HistoryEntry":
        return cls(
            name=str(data["name"]),
            artifact_url_or_status=str(data.get("artifactUrlOrStatus", "")),
            timestamp_utc=str(data.get("timestampUtc", "")),
            status=HistoryStatus(data.get("status", HistoryStatus.DOWNLOADED.value)),
        )


@dataclass
class BatchReport:
    """Terminal status plus the full ledger of a completed run"""
    batch_id: str
    kind: GenerationKind
    output_mode: OutputMode
    status: BatchStatus
    ledger: BatchLedger
    archive: Optional[ArchiveResult] = None
    error_message: Optional[str] = None
    processing_time_seconds: float = 0.0
    completed_at: str = field(default_factory=utc_timestamp)

    @property
    def total_rows(self) -> int:
        return self.ledger.capacity

    @property
    def generated_count(self) -> int:
        return self.ledger.usable_count

    @property
    def failed_count(self) -> int:
        return self.ledger.failed_count

    @property
    def emailed_count(self) -> int:
        return self.ledger.emailed_count

    @property
    def delivery_error_count(self) -> int:
        return self.ledger.delivery_error_count

    @property
    def retrieval_error_count(self) -> int:
        return len(self.archive.skipped) if self.archive else 0

    @property
    def is_fatal(self) -> bool:
        return self.status is BatchStatus.FATAL

    def raise_for_status(self) -> None:
        """Raise BatchFatalError when the run produced nothing usable"""
        if self.is_fatal:
            raise BatchFatalError(self.error_message or "Batch run failed")

    @property
    def summary_message(self) -> str:
        noun = "certificates" if self.kind is GenerationKind.CERTIFICATE else "credentials"
        if self.is_fatal:
            return self.error_message or f"Failed to generate any {noun}"
        if self.output_mode is OutputMode.EMAIL_DELIVERY:
            message = f"Successfully processed {self.generated_count}/{self.total_rows} {noun}, emailed {self.emailed_count}"
        else:
            packed = self.archive.entry_count if self.archive else 0
            message = f"Successfully processed {self.generated_count}/{self.total_rows} {noun}, archived {packed}"
        if self.status is BatchStatus.PARTIAL:
            message += " (partial success)"
        return message

    def to_dict(self) -> dict[str, Any]:
        redact = self.kind is GenerationKind.CREDENTIAL
        return {
            "batch_id": self.batch_id,
            "kind": self.kind.value,
            "output_mode": self.output_mode.value,
            "status": self.status.value,
            "message": self.summary_message,
            "error_message": self.error_message,
            "counts": {
                "total_rows": self.total_rows,
                "generated": self.generated_count,
                "failed": self.failed_count,
                "emailed": self.emailed_count,
                "delivery_errors": self.delivery_error_count,
                "retrieval_errors": self.retrieval_error_count,
            },
            "archive": self.archive.to_dict() if self.archive else None,
            "processing_time_seconds": round(self.processing_time_seconds, 2),
            "completed_at": self.completed_at,
            "ledger": [outcome.to_dict(redact_artifact=redact) for outcome in self.ledger],
        }
