"""Per-document processing job.

One job drives one document through:
1. Claim (PENDING/PROCESSING -> PROCESSING)
2. Upload the raw bytes to blob storage and sign a read URL
3. Extraction through the configured provider
4. Normalization
5. Duplicate check against the service of record
6. Extraction stored and document marked DONE in one transaction
7. Analyzed event

Any error moves the document to FAILED and emits a failure event. Errors
never leave ``process_document``, so the queue keeps draining.
"""

import asyncio
import logging
import time
from decimal import Decimal
from typing import Any

from services.documents.duplicates import DuplicateChecker
from services.documents.models import Document
from services.documents.normalizer import NormalizedExtraction, ResultNormalizer
from services.documents.store import DocumentStore
from services.extraction.base import ExtractionProvider
from services.messaging.bus import MessageBus
from services.messaging.subjects import AnalyzerEvents
from services.shared import metrics
from services.shared.config import Settings
from services.shared.errors import (
    AnalyzerError,
    DuplicateInvoiceError,
    ExtractionServiceError,
    StorageError,
    ValidationError,
)
from services.storage.service import StorageService

logger = logging.getLogger(__name__)


def json_decimal(value: Decimal | None) -> float | None:
    """Event amounts are JSON numbers.

    Normalized values fit NUMERIC(12, 2) or NUMERIC(10, 3), at most 12
    significant digits, so the float prints back as the same decimal.
    """
    return float(value) if value is not None else None


def extraction_payload(extraction: NormalizedExtraction) -> dict[str, Any]:
    """JSON-safe view of an extraction for the analyzed event."""
    issue_date = extraction.issue_date
    return {
        "supplierName": extraction.supplier_name,
        "supplierTaxId": extraction.supplier_tax_id,
        "invoiceNumber": extraction.invoice_number,
        "issueDate": issue_date.isoformat().replace("+00:00", "Z") if issue_date else None,
        "totalAmount": json_decimal(extraction.total_amount),
        "taxAmount": json_decimal(extraction.tax_amount),
        "currency": extraction.currency,
        "lines": [
            {
                "description": line.description,
                "productCode": line.product_code,
                "unit": line.unit,
                "quantity": json_decimal(line.quantity),
                "unitPrice": json_decimal(line.unit_price),
                "linePrice": json_decimal(line.line_price),
                "total": json_decimal(line.total),
                "taxIndicator": line.tax_indicator,
                "discountCode": line.discount_code,
                "additionalReference": line.additional_reference,
            }
            for line in extraction.lines
        ],
    }


class DocumentProcessor:
    """Runs the processing job for a single document id."""

    def __init__(
        self,
        settings: Settings,
        store: DocumentStore,
        storage: StorageService,
        extractor: ExtractionProvider,
        bus: MessageBus,
        duplicates: DuplicateChecker | None = None,
        normalizer: ResultNormalizer | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.storage = storage
        self.extractor = extractor
        self.bus = bus
        self.duplicates = duplicates
        self.normalizer = normalizer or ResultNormalizer(settings.default_currency)

    async def process_document(self, document_id: str) -> None:
        document = await asyncio.to_thread(self.store.claim, document_id)
        if document is None:
            logger.warning(f"Document {document_id} not claimable, skipping")
            return

        logger.info(f"Processing document {document_id} ({document.filename})")
        try:
            blob_name, extraction = await self._process(document)
        except Exception as e:
            await self._fail(document, e)
            return

        metrics.documents_processed_total.labels(status="done").inc()
        logger.info(
            f"Document {document_id} done: invoice {extraction.invoice_number}, "
            f"{len(extraction.lines)} lines"
        )
        await self._publish(
            AnalyzerEvents.ANALYZED,
            {
                "documentId": document.id,
                "tenantId": document.tenant_id,
                "blobName": blob_name,
                "extraction": extraction_payload(extraction),
            },
        )

    async def _process(self, document: Document) -> tuple[str | None, NormalizedExtraction]:
        if not document.file_data:
            raise ValidationError(f"Document {document.id} has no file data")

        blob_name, document_url = await self._upload(document)

        started = time.perf_counter()
        try:
            invoice = await self.extractor.analyze(
                document.file_data,
                document.mimetype,
                document_url,
                notes=document.notes,
            )
        finally:
            metrics.extraction_duration_seconds.labels(
                provider=self.extractor.provider_name
            ).observe(time.perf_counter() - started)
        if invoice is None:
            raise ExtractionServiceError("Extraction service returned no result")

        extraction = self.normalizer.normalize(invoice)
        await self._check_duplicate(document, extraction, blob_name)

        await asyncio.to_thread(
            self.store.persist_extraction, document.id, extraction, blob_name
        )
        return blob_name, extraction

    async def _upload(self, document: Document) -> tuple[str | None, str | None]:
        """Store the bytes and sign a read URL for the extraction service.

        Without configured storage credentials the document is sent inline
        and no blob is recorded.
        """
        if not self.storage.is_available():
            logger.debug(f"Storage not configured, sending document {document.id} inline")
            return None, None

        stored = await asyncio.to_thread(
            self.storage.upload_document,
            document.id,
            document.file_data,
            document.mimetype,
            document.filename,
        )
        if not stored.success:
            raise StorageError(f"Blob upload failed: {stored.error}")

        signed = await asyncio.to_thread(self.storage.get_presigned_url, stored.object_name)
        if not signed.success:
            raise StorageError(f"Could not sign blob URL: {signed.error}")
        return stored.object_name, signed.url

    async def _check_duplicate(
        self, document: Document, extraction: NormalizedExtraction, blob_name: str | None
    ) -> None:
        if self.duplicates is None or not self.settings.duplicate_check_enabled:
            return
        if not extraction.invoice_number or not document.document_type:
            return

        result = await self.duplicates.exists(
            extraction.invoice_number, document.document_type, document.tenant_id
        )
        if not result.exists:
            return

        if blob_name and self.settings.revert_blob_on_duplicate:
            await asyncio.to_thread(self.storage.delete_object, blob_name)
        raise DuplicateInvoiceError(
            f"Duplicate invoice {extraction.invoice_number} ({document.document_type}) "
            f"already recorded as {result.invoice_id or 'unknown'}",
            invoice_id=result.invoice_id,
        )

    async def _fail(self, document: Document, error: Exception) -> None:
        if isinstance(error, DuplicateInvoiceError):
            logger.warning(f"Document {document.id} rejected: {error}")
        else:
            logger.exception(f"Document {document.id} failed: {error}")

        if isinstance(error, AnalyzerError):
            reason = error.message
        else:
            reason = f"Unexpected error: {error}"
        reason = (reason or type(error).__name__)[: self.settings.error_reason_max_length]

        try:
            await asyncio.to_thread(self.store.mark_failed, document.id, reason)
        except AnalyzerError:
            logger.exception(f"Could not record failure of document {document.id}")

        metrics.documents_processed_total.labels(status="failed").inc()
        await self._publish(
            AnalyzerEvents.FAILED,
            {"documentId": document.id, "tenantId": document.tenant_id, "reason": reason},
        )

    async def _publish(self, subject: str, data: dict[str, Any]) -> None:
        """Emit an event; delivery is best effort."""
        try:
            await self.bus.publish(subject, data)
        except Exception as e:
            logger.warning(f"Could not publish {subject} for {data.get('documentId')}: {e}")
