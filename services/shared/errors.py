"""Error taxonomy shared by the request/reply handlers and the processing pipeline.

Every error carries a numeric status so it can be returned to a bus caller
as a structured ``{"status", "message"}`` reply.
"""

from typing import Any


class AnalyzerError(Exception):
    """Base class for all errors raised by the analyzer."""

    status: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, Any]:
        """Structured error reply for request/reply callers."""
        return {"status": self.status, "message": self.message}


class ValidationError(AnalyzerError):
    """Bad or missing required input. The document is never enqueued."""

    status = 400


class ForbiddenError(AnalyzerError):
    status = 403


class NotFoundError(AnalyzerError):
    status = 404


class DuplicateInvoiceError(AnalyzerError):
    """The service of record already holds an invoice with this number and type."""

    status = 409

    def __init__(self, message: str, invoice_id: str | None = None) -> None:
        super().__init__(message)
        self.invoice_id = invoice_id


class ExtractionServiceError(AnalyzerError):
    """The extraction vendor failed, or rate-limit retries were exhausted."""

    status = 502

    def __init__(self, message: str, vendor_status: str | None = None) -> None:
        super().__init__(message)
        self.vendor_status = vendor_status


class StorageError(AnalyzerError):
    status = 502


class PersistenceError(AnalyzerError):
    """A database transaction failed and was rolled back."""

    status = 500


class UnexpectedError(AnalyzerError):
    status = 500
