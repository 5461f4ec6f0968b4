"""
Batch Orchestrator

Drives one batch run: every validated row goes through the remote generator,
then either to the email dispatcher or onto the archive list. Rows are
processed strictly one at a time. Per-row failures are folded into the ledger;
only a run with no usable artifact, or an empty archive, ends as fatal.
"""

import logging
import time
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from .archive_builder import ArchiveBuilder
from .email_dispatcher import EmailDispatcher, OutgoingEmail
from .errors import BatchFatalError, DeliveryError, GenerationError, InvalidBatchStateError
from .generator_client import RemoteGeneratorClient
from .history import HistoryRecorder
from .models import (
    ArchiveEntry, ArchiveResult, BatchLedger, BatchReport, BatchState, BatchStatus,
    GenerationKind, GenerationOutcome, MessageKind, OutputMode, RowRecord
)
from .progress import ProgressReporter, ProgressTracker
from .templates import MessageTemplate, get_default_subject, get_template_content
from .utils import generate_batch_id

logger = logging.getLogger(__name__)


# Archive runs split the bar between generation and retrieval
ARCHIVE_GENERATION_SCALE = 50
ARCHIVE_FETCH_SCALE = 50


class BatchOrchestrator:
    """
    One batch run over a fixed list of rows

    The orchestrator starts in the preview state. run() moves it to processing
    and, once every row has been attempted (and the archive finalized in
    archive mode), to complete. A run cannot be restarted.
    """

    def __init__(
        self,
        rows: Sequence[RowRecord],
        *,
        output_mode: OutputMode,
        generator: RemoteGeneratorClient,
        dispatcher: Optional[EmailDispatcher] = None,
        archive_builder: Optional[ArchiveBuilder] = None,
        kind: GenerationKind = GenerationKind.CERTIFICATE,
        message_template: Optional[str] = None,
        subject: Optional[str] = None,
        auth_credential: Optional[Dict[str, Any]] = None,
        progress_reporter: Optional[ProgressReporter] = None,
        history: Optional[HistoryRecorder] = None,
        batch_id: Optional[str] = None,
    ):
        if kind is GenerationKind.CREDENTIAL and output_mode is OutputMode.ARCHIVE_DOWNLOAD:
            raise ValueError("Credential runs only support email delivery")
        if output_mode is OutputMode.ARCHIVE_DOWNLOAD and archive_builder is None:
            raise ValueError("Archive download requires an archive builder")
        if output_mode is OutputMode.EMAIL_DELIVERY and dispatcher is None:
            raise ValueError("Email delivery requires an email dispatcher")

        self.batch_id = batch_id or generate_batch_id()
        self.rows = tuple(rows)
        self.output_mode = output_mode
        self.kind = kind
        self.message_template = MessageTemplate(get_template_content(kind, message_template))
        self.subject = subject or get_default_subject(kind)
        self.auth_credential = auth_credential

        self._generator = generator
        self._dispatcher = dispatcher
        self._archive_builder = archive_builder
        self._history = history
        self._progress = ProgressTracker(len(self.rows), progress_reporter)
        self._ledger = BatchLedger(len(self.rows))
        self._state = BatchState.PREVIEW
        self._report: Optional[BatchReport] = None

    @property
    def state(self) -> BatchState:
        return self._state

    @property
    def ledger(self) -> BatchLedger:
        return self._ledger

    @property
    def progress(self):
        return self._progress.latest

    @property
    def report(self) -> Optional[BatchReport]:
        return self._report

    def preview(self) -> List[Dict[str, Any]]:
        """Rows waiting to be processed; no side effects"""
        if self._state is not BatchState.PREVIEW:
            raise InvalidBatchStateError(f"Batch {self.batch_id} is already {self._state.value}")
        return [row.to_dict() for row in self.rows]

    async def run(self) -> BatchReport:
        """
        Process every row and build the terminal report

        Returns:
            BatchReport with the full ledger and a success, partial or fatal status

        Raises:
            InvalidBatchStateError: If the run was already started
        """
        if self._state is not BatchState.PREVIEW:
            raise InvalidBatchStateError(f"Batch {self.batch_id} cannot be started from {self._state.value}")
        self._state = BatchState.PROCESSING

        start_time = time.time()
        if self._history is not None and not self._history.loaded:
            try:
                self._history.load()
            except SQLAlchemyError as e:
                logger.error(f"Failed to load history for batch {self.batch_id}: {e}")

        total = len(self.rows)
        logger.info(
            f"Starting batch {self.batch_id}: {total} {self.kind.value} rows, "
            f"output mode {self.output_mode.value}"
        )

        if self.output_mode is OutputMode.EMAIL_DELIVERY and not self.auth_credential:
            logger.warning(f"Batch {self.batch_id} has no auth credential; emails will not be sent")

        generation_scale = ARCHIVE_GENERATION_SCALE if self.output_mode is OutputMode.ARCHIVE_DOWNLOAD else 100
        pending: List[ArchiveEntry] = []

        for index, row in enumerate(self.rows, start=1):
            outcome = await self._process_row(row)
            self._ledger.append(outcome)
            if outcome.succeeded and self.output_mode is OutputMode.ARCHIVE_DOWNLOAD:
                pending.append(ArchiveEntry(name=row.name, artifact_ref=outcome.artifact_ref))
            self._progress.update(index, total, scale=generation_scale)

        archive: Optional[ArchiveResult] = None
        error_message: Optional[str] = None

        if self._ledger.usable_count == 0:
            noun = "certificates" if self.kind is GenerationKind.CERTIFICATE else "credentials"
            error_message = f"Failed to generate any {noun}"
        elif self.output_mode is OutputMode.ARCHIVE_DOWNLOAD:
            try:
                archive = await self._build_archive(pending)
            except BatchFatalError as e:
                error_message = e.message

        status = self._terminal_status(archive, error_message)
        self._report = BatchReport(
            batch_id=self.batch_id,
            kind=self.kind,
            output_mode=self.output_mode,
            status=status,
            ledger=self._ledger,
            archive=archive,
            error_message=error_message,
            processing_time_seconds=time.time() - start_time,
        )

        self._state = BatchState.COMPLETE
        self._progress.complete()

        if status is BatchStatus.FATAL:
            logger.error(f"Batch {self.batch_id} failed: {error_message}")
        else:
            logger.info(f"Batch {self.batch_id} finished ({status.value}): {self._report.summary_message}")

        if self._history is not None:
            self._record_history()

        return self._report

    def _record_history(self) -> None:
        # record_batch reloads first when the initial load failed, so a
        # history that could not be read is never overwritten
        try:
            self._history.record_batch(self._report)
        except SQLAlchemyError as e:
            logger.error(f"Failed to record history for batch {self.batch_id}: {e}")

    async def _process_row(self, row: RowRecord) -> GenerationOutcome:
        try:
            artifact_ref = await self._generator.generate(row, self.kind)
        except GenerationError as e:
            logger.warning(f"Generation failed for {row.name}: {e.message}")
            return GenerationOutcome.failure(row, e.message)

        if self.output_mode is not OutputMode.EMAIL_DELIVERY:
            return GenerationOutcome.success(row, artifact_ref)

        if not row.has_dispatchable_email or not self.auth_credential:
            return GenerationOutcome.success(row, artifact_ref)

        try:
            await self._dispatcher.send(self._compose_email(row, artifact_ref))
        except DeliveryError as e:
            logger.warning(f"Email delivery failed for {row.name}: {e.message}")
            return GenerationOutcome.success(row, artifact_ref, delivery_error=e.message)

        return GenerationOutcome.success(row, artifact_ref, email_sent=True)

    def _compose_email(self, row: RowRecord, artifact_ref: str) -> OutgoingEmail:
        values = {"name": row.name, "email": row.email}
        attachment = artifact_ref
        if self.kind is GenerationKind.CREDENTIAL:
            values["password"] = artifact_ref
            attachment = None

        try:
            body = self.message_template.render(**values)
        except ValueError as e:
            raise DeliveryError(str(e)) from e

        return OutgoingEmail(
            recipient=row.email,
            subject=self.subject,
            body_text=body,
            auth_credential=self.auth_credential,
            message_kind=MessageKind.for_generation(self.kind),
            artifact_ref=attachment,
        )

    async def _build_archive(self, entries: List[ArchiveEntry]) -> ArchiveResult:
        def on_fetch(completed: int, total: int) -> None:
            self._progress.update(
                completed,
                total,
                scale=ARCHIVE_FETCH_SCALE,
                offset=ARCHIVE_GENERATION_SCALE,
                phase="archive",
            )

        return await self._archive_builder.build(entries, on_progress=on_fetch)

    def _terminal_status(self, archive: Optional[ArchiveResult], error_message: Optional[str]) -> BatchStatus:
        if error_message:
            return BatchStatus.FATAL

        clean = (
            self._ledger.failed_count == 0
            and self._ledger.delivery_error_count == 0
            and (archive is None or not archive.skipped)
        )
        return BatchStatus.SUCCESS if clean else BatchStatus.PARTIAL
