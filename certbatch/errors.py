"""
Error Taxonomy

Exceptions raised by the batch pipeline components. Per-row errors are caught by
the orchestrator and folded into the ledger; only BatchFatalError describes the
failure of a whole run.
"""

from typing import Any, Optional


class BatchError(Exception):
    """Base class for all pipeline errors"""


class RowValidationError(BatchError):
    """A spreadsheet row was excluded before processing"""

    def __init__(self, row_index: int, reason: str, record: Optional[dict[str, Any]] = None):
        super().__init__(reason)
        self.row_index = row_index
        self.reason = reason
        self.record = record or {}

    def to_dict(self) -> dict[str, Any]:
        return {"row_index": self.row_index, "reason": self.reason, "record": self.record}


class GenerationError(BatchError):
    """The remote generation call failed or returned an error payload"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class DeliveryError(BatchError):
    """An email could not be sent after a successful generation"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class RetrievalError(BatchError):
    """An artifact could not be fetched through the retrieval proxy"""

    def __init__(self, name: str, url: str, message: str):
        super().__init__(f"Failed to retrieve artifact for {name}: {message}")
        self.name = name
        self.url = url
        self.message = message


class BatchFatalError(BatchError):
    """The run produced no usable artifact, or its archive came out empty"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidBatchStateError(BatchError):
    """A batch operation was requested from the wrong lifecycle state"""
