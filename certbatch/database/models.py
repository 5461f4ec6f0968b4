"""
Database Models for the Certificate Batch Service

SQLAlchemy models for persisted history, stored tokens and batch run reports.
"""

from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DECIMAL, TIMESTAMP,
    ForeignKey, Index
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime

Base = declarative_base()


class KeyValueEntry(Base):
    """
    Small key-value records: recent history lists and OAuth tokens
    """
    __tablename__ = "key_value_entries"

    id = Column(Integer, primary_key=True)
    key = Column(String(100), unique=True, nullable=False, index=True)
    value = Column(Text, nullable=False)

    created_at = Column(TIMESTAMP, default=datetime.utcnow)
    updated_at = Column(TIMESTAMP, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<KeyValueEntry(key='{self.key}')>"


class BatchRun(Base):
    """
    Tracks each batch run from upload to terminal status
    """
    __tablename__ = "batch_runs"

    # Primary key
    id = Column(Integer, primary_key=True)
    batch_id = Column(String(50), unique=True, nullable=False, index=True)

    # Upload information
    original_filename = Column(String(255))
    file_size_bytes = Column(Integer)

    # Run configuration
    kind = Column(String(20), nullable=False)  # certificate, credential
    output_mode = Column(String(20), nullable=False)  # email, zip
    total_rows = Column(Integer, nullable=False)
    rejected_rows = Column(Integer, default=0)

    # Status tracking
    state = Column(String(20), default='processing', index=True)  # processing, complete
    status = Column(String(20), index=True)  # success, partial, fatal
    error_message = Column(Text)

    # Results summary
    generated_count = Column(Integer, default=0)
    failed_count = Column(Integer, default=0)
    emailed_count = Column(Integer, default=0)
    delivery_error_count = Column(Integer, default=0)
    retrieval_error_count = Column(Integer, default=0)
    archive_filename = Column(String(255))
    archive_size_bytes = Column(Integer)

    # Timing
    created_at = Column(TIMESTAMP, default=datetime.utcnow, index=True)
    completed_at = Column(TIMESTAMP)
    processing_time_seconds = Column(DECIMAL(10, 2))

    # Relationships
    outcomes = relationship(
        "RowOutcomeRecord",
        back_populates="batch_run",
        cascade="all, delete-orphan",
        order_by="RowOutcomeRecord.row_index",
    )

    def to_dict(self):
        return {
            "batch_id": self.batch_id,
            "original_filename": self.original_filename,
            "kind": self.kind,
            "output_mode": self.output_mode,
            "total_rows": self.total_rows,
            "rejected_rows": self.rejected_rows,
            "state": self.state,
            "status": self.status,
            "error_message": self.error_message,
            "generated_count": self.generated_count,
            "failed_count": self.failed_count,
            "emailed_count": self.emailed_count,
            "delivery_error_count": self.delivery_error_count,
            "retrieval_error_count": self.retrieval_error_count,
            "archive_filename": self.archive_filename,
            "archive_size_bytes": self.archive_size_bytes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "processing_time_seconds": float(self.processing_time_seconds) if self.processing_time_seconds is not None else None,
        }


class RowOutcomeRecord(Base):
    """
    One ledger entry of a finished batch run
    """
    __tablename__ = "row_outcomes"

    id = Column(Integer, primary_key=True)
    batch_id = Column(String(50), ForeignKey("batch_runs.batch_id", ondelete="CASCADE"), nullable=False, index=True)
    row_index = Column(Integer, nullable=False)

    # Row data
    name = Column(String(255), nullable=False)
    email = Column(String(255))

    # Outcome; credential passwords are never stored here
    artifact_ref = Column(Text)
    error_message = Column(Text)
    email_sent = Column(Boolean, default=False)
    delivery_error = Column(Text)
    timestamp_utc = Column(String(40))

    batch_run = relationship("BatchRun", back_populates="outcomes")

    __table_args__ = (
        Index('idx_row_outcomes_batch_row', 'batch_id', 'row_index'),
    )

    def to_dict(self):
        return {
            "row_index": self.row_index,
            "name": self.name,
            "email": self.email,
            "artifact_ref": self.artifact_ref,
            "error_message": self.error_message,
            "email_sent": self.email_sent,
            "delivery_error": self.delivery_error,
            "timestamp_utc": self.timestamp_utc,
        }
