"""
Background Processing Module

Runs batch orchestrators as asyncio tasks, keeps a registry of in-flight and
finished runs for the status and streaming endpoints, and stores terminal
reports in the database.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError

from .archive_builder import ArchiveBuilder, RetrievalProxyClient
from .config import Settings, get_settings
from .database.services import BatchRunService
from .email_dispatcher import EmailDispatcher
from .generator_client import RemoteGeneratorClient
from .history import HistoryRecorder
from .models import BatchProgress, BatchReport, BatchState, GenerationKind, OutputMode, RowRecord
from .orchestrator import BatchOrchestrator
from .utils import utc_timestamp

logger = logging.getLogger(__name__)


@dataclass
class BatchHandle:
    """Live view of one batch run, shared with the HTTP layer"""
    batch_id: str
    kind: GenerationKind
    output_mode: OutputMode
    total_rows: int
    original_filename: Optional[str] = None
    rejected_rows: List[Dict[str, Any]] = field(default_factory=list)
    state: BatchState = BatchState.PREVIEW
    progress: Optional[BatchProgress] = None
    report: Optional[BatchReport] = None
    error: Optional[str] = None
    created_at: str = field(default_factory=utc_timestamp)
    finished_at: Optional[float] = None
    task: Optional["asyncio.Task[Any]"] = field(default=None, repr=False)

    def __post_init__(self):
        if self.progress is None:
            self.progress = BatchProgress(completed_count=0, total_count=self.total_rows, percent=0)

    @property
    def is_finished(self) -> bool:
        return self.state is BatchState.COMPLETE

    def update_progress(self, progress: BatchProgress) -> None:
        self.progress = progress

    def mark_finished(self) -> None:
        self.state = BatchState.COMPLETE
        self.finished_at = time.monotonic()

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "batch_id": self.batch_id,
            "kind": self.kind.value,
            "output_mode": self.output_mode.value,
            "state": self.state.value,
            "total_rows": self.total_rows,
            "rejected_rows": len(self.rejected_rows),
            "original_filename": self.original_filename,
            "progress": self.progress.to_dict(),
            "created_at": self.created_at,
            "error": self.error,
        }
        if self.report:
            data["report"] = self.report.to_dict()
        return data


class BatchRegistry:
    """
    In-process lookup of batch handles by ID

    Finished handles hold their report (and archive bytes), so they are
    evicted once older than retention_seconds, and beyond the newest
    max_finished. Runs still processing are never evicted. Evicted runs
    remain available from the batch_runs table.
    """

    def __init__(
        self,
        max_finished: int = 20,
        retention_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_finished = max_finished
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._handles: Dict[str, BatchHandle] = {}

    def register(self, handle: BatchHandle) -> BatchHandle:
        self.prune()
        self._handles[handle.batch_id] = handle
        return handle

    def get(self, batch_id: str) -> Optional[BatchHandle]:
        self.prune()
        return self._handles.get(batch_id)

    def list(self) -> List[BatchHandle]:
        self.prune()
        return list(self._handles.values())

    def prune(self) -> List[str]:
        """Drop expired and surplus finished handles; returns the evicted IDs"""
        now = self._clock()
        finished = sorted(
            (h for h in self._handles.values() if h.is_finished and h.finished_at is not None),
            key=lambda h: h.finished_at,
            reverse=True,
        )
        evicted = [
            h.batch_id for index, h in enumerate(finished)
            if index >= self.max_finished or now - h.finished_at > self.retention_seconds
        ]
        for batch_id in evicted:
            del self._handles[batch_id]
        if evicted:
            logger.debug(f"Evicted finished batches from memory: {', '.join(evicted)}")
        return evicted

    def clear(self) -> None:
        self._handles.clear()


# Global registry instance
_registry: Optional[BatchRegistry] = None


def get_batch_registry() -> BatchRegistry:
    """Get or create the global batch registry"""
    global _registry
    if _registry is None:
        settings = get_settings()
        _registry = BatchRegistry(
            max_finished=settings.max_finished_batches,
            retention_seconds=settings.batch_retention_seconds,
        )
    return _registry


def build_orchestrator(
    handle: BatchHandle,
    rows: List[RowRecord],
    http_client: httpx.AsyncClient,
    settings: Settings,
    message_template: Optional[str] = None,
    subject: Optional[str] = None,
    auth_credential: Optional[Dict[str, Any]] = None,
    history: Optional[HistoryRecorder] = None,
) -> BatchOrchestrator:
    """Wire the pipeline components for one run around a shared HTTP client"""
    dispatcher = None
    archive_builder = None
    if handle.output_mode is OutputMode.EMAIL_DELIVERY:
        dispatcher = EmailDispatcher(http_client, settings.email_endpoint_url)
    else:
        archive_builder = ArchiveBuilder(
            RetrievalProxyClient(http_client, settings.retrieval_proxy_url),
            compression_level=settings.archive_compression_level,
        )

    return BatchOrchestrator(
        rows,
        output_mode=handle.output_mode,
        generator=RemoteGeneratorClient(
            http_client,
            certificate_url=settings.certificate_api_url,
            credentials_url=settings.credentials_api_url,
        ),
        dispatcher=dispatcher,
        archive_builder=archive_builder,
        kind=handle.kind,
        message_template=message_template,
        subject=subject,
        auth_credential=auth_credential,
        progress_reporter=handle.update_progress,
        history=history,
        batch_id=handle.batch_id,
    )


def record_run_started(handle: BatchHandle, file_size_bytes: Optional[int] = None) -> None:
    """Create the batch_runs row; database failures are logged and ignored"""
    try:
        BatchRunService.create_run(
            batch_id=handle.batch_id,
            kind=handle.kind.value,
            output_mode=handle.output_mode.value,
            total_rows=handle.total_rows,
            rejected_rows=len(handle.rejected_rows),
            original_filename=handle.original_filename,
            file_size_bytes=file_size_bytes,
        )
    except SQLAlchemyError as e:
        logger.error(f"Failed to record start of batch {handle.batch_id}: {e}")


def record_run_report(report: BatchReport) -> None:
    """Store a terminal report; database failures are logged and ignored"""
    try:
        if BatchRunService.record_report(report):
            logger.info(f"Saved report for batch {report.batch_id}")
        else:
            logger.warning(f"No batch_runs row for {report.batch_id}; report not saved")
    except SQLAlchemyError as e:
        logger.error(f"Failed to save report for batch {report.batch_id}: {e}")


async def process_batch_background(
    handle: BatchHandle,
    rows: List[RowRecord],
    message_template: Optional[str] = None,
    subject: Optional[str] = None,
    auth_credential: Optional[Dict[str, Any]] = None,
    history: Optional[HistoryRecorder] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    settings: Optional[Settings] = None,
) -> Optional[BatchReport]:
    """
    Run one batch to completion and publish its report on the handle

    Args:
        handle: Registry entry updated with progress, state and report
        rows: Validated rows
        message_template: Email body override
        subject: Email subject override
        auth_credential: OAuth tokens loaded by the caller
        history: History recorder loaded by the caller
        http_client: Shared client; a new one is created when omitted
        settings: Service settings

    Returns:
        The terminal report, or None if the run aborted unexpectedly
    """
    settings = settings or get_settings()
    logger.info(f"Starting background processing for batch {handle.batch_id}")
    handle.state = BatchState.PROCESSING

    try:
        if http_client is not None:
            report = await _run(handle, rows, http_client, settings, message_template, subject, auth_credential, history)
        else:
            async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as client:
                report = await _run(handle, rows, client, settings, message_template, subject, auth_credential, history)
    except Exception as e:
        logger.exception(f"Background processing aborted for batch {handle.batch_id}")
        handle.error = f"Batch processing aborted: {str(e)}"
        handle.mark_finished()
        return None

    handle.report = report
    handle.mark_finished()
    record_run_report(report)
    return report


async def _run(
    handle: BatchHandle,
    rows: List[RowRecord],
    client: httpx.AsyncClient,
    settings: Settings,
    message_template: Optional[str],
    subject: Optional[str],
    auth_credential: Optional[Dict[str, Any]],
    history: Optional[HistoryRecorder],
) -> BatchReport:
    orchestrator = build_orchestrator(
        handle,
        rows,
        client,
        settings,
        message_template=message_template,
        subject=subject,
        auth_credential=auth_credential,
        history=history,
    )
    return await orchestrator.run()


def start_batch(handle: BatchHandle, rows: List[RowRecord], **kwargs: Any) -> "asyncio.Task[Optional[BatchReport]]":
    """Register a handle and schedule its run on the running event loop"""
    get_batch_registry().register(handle)
    handle.task = asyncio.create_task(process_batch_background(handle, rows, **kwargs))
    return handle.task
