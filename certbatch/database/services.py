"""
Database Services for the Certificate Batch Service

Business logic layer for database operations: the key-value store behind
history and tokens, and persisted batch run reports.
"""

from typing import Optional, List, Dict, Any
from sqlalchemy import desc
from datetime import datetime
import logging

from .models import KeyValueEntry, BatchRun, RowOutcomeRecord
from .connection import get_database_manager
from ..models import BatchReport, GenerationKind, REDACTED

logger = logging.getLogger(__name__)


class KeyValueService:
    """Service for the key_value_entries table"""

    @staticmethod
    def get_value(key: str) -> Optional[str]:
        """Get the stored value for a key"""
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            entry = session.query(KeyValueEntry).filter_by(key=key).first()
            return entry.value if entry else None

    @staticmethod
    def set_value(key: str, value: str) -> None:
        """Insert or replace the value for a key"""
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            entry = session.query(KeyValueEntry).filter_by(key=key).first()
            if entry:
                entry.value = value
                entry.updated_at = datetime.utcnow()
            else:
                session.add(KeyValueEntry(key=key, value=value))

    @staticmethod
    def clear_value(key: str) -> bool:
        """Delete a key; returns whether anything was removed"""
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            deleted = session.query(KeyValueEntry).filter_by(key=key).delete()
            return deleted > 0


class BatchRunService:
    """Service for managing batch run records"""

    @staticmethod
    def create_run(
        batch_id: str,
        kind: str,
        output_mode: str,
        total_rows: int,
        rejected_rows: int = 0,
        original_filename: Optional[str] = None,
        file_size_bytes: Optional[int] = None
    ) -> Dict[str, Any]:
        """Create a new batch run record in the processing state"""
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            run = BatchRun(
                batch_id=batch_id,
                kind=kind,
                output_mode=output_mode,
                total_rows=total_rows,
                rejected_rows=rejected_rows,
                original_filename=original_filename,
                file_size_bytes=file_size_bytes,
                state="processing",
            )
            session.add(run)
            session.flush()
            return run.to_dict()

    @staticmethod
    def record_report(report: BatchReport) -> bool:
        """Store the terminal status, counts and ledger of a finished run"""
        db_manager = get_database_manager()
        redact = report.kind is GenerationKind.CREDENTIAL

        with db_manager.session_scope() as session:
            run = session.query(BatchRun).filter_by(batch_id=report.batch_id).first()
            if not run:
                return False

            run.state = "complete"
            run.status = report.status.value
            run.error_message = report.error_message
            run.generated_count = report.generated_count
            run.failed_count = report.failed_count
            run.emailed_count = report.emailed_count
            run.delivery_error_count = report.delivery_error_count
            run.retrieval_error_count = report.retrieval_error_count
            run.processing_time_seconds = round(report.processing_time_seconds, 2)
            run.completed_at = datetime.utcnow()
            if report.archive:
                run.archive_filename = report.archive.filename
                run.archive_size_bytes = report.archive.size_bytes

            for index, outcome in enumerate(report.ledger):
                artifact = outcome.artifact_ref
                if redact and artifact is not None:
                    artifact = REDACTED
                session.add(RowOutcomeRecord(
                    batch_id=report.batch_id,
                    row_index=index,
                    name=outcome.row.name,
                    email=outcome.row.email,
                    artifact_ref=artifact,
                    error_message=outcome.error_message,
                    email_sent=outcome.email_sent,
                    delivery_error=outcome.delivery_error,
                    timestamp_utc=outcome.timestamp_utc,
                ))

            return True

    @staticmethod
    def get_run(batch_id: str) -> Optional[Dict[str, Any]]:
        """Get run summary by ID"""
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            run = session.query(BatchRun).filter_by(batch_id=batch_id).first()
            return run.to_dict() if run else None

    @staticmethod
    def get_outcomes(batch_id: str) -> List[Dict[str, Any]]:
        """Get the persisted ledger of a run in row order"""
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            records = session.query(RowOutcomeRecord).filter_by(
                batch_id=batch_id
            ).order_by(RowOutcomeRecord.row_index).all()
            return [record.to_dict() for record in records]

    @staticmethod
    def get_recent_runs(limit: int = 10) -> List[Dict[str, Any]]:
        """Get recent runs, newest first"""
        db_manager = get_database_manager()

        with db_manager.session_scope() as session:
            runs = session.query(BatchRun).order_by(desc(BatchRun.created_at), desc(BatchRun.id)).limit(limit).all()
            return [run.to_dict() for run in runs]
