"""Request/reply operations of the analyzer: submit, submit batch, get by id, health.

Submission only records the document and enqueues it; processing is always
asynchronous, so a document read right after submission is PENDING or
PROCESSING.
"""

import asyncio
import base64
import binascii
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from services.documents.models import Document, Extraction
from services.documents.store import DocumentStore, NewDocument
from services.queue.queue import ProcessingQueue
from services.shared import metrics
from services.shared.errors import ForbiddenError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 50


class SubmitDocumentRequest(BaseModel):
    """Payload of ``analyzer.submit``; the file travels base64 encoded."""

    model_config = ConfigDict(populate_by_name=True)

    buffer: str = Field(min_length=1)
    filename: str = Field(min_length=1)
    mimetype: str = Field(min_length=1)
    tenant_id: str = Field(alias="tenantId", min_length=1)
    uploaded_by: str = Field(alias="uploadedBy", min_length=1)
    document_type: str | None = Field(default=None, alias="documentType")
    has_delivery_notes: bool = Field(default=False, alias="hasDeliveryNotes")
    notes: str | None = None


class SubmitBatchRequest(BaseModel):
    documents: list[SubmitDocumentRequest] = Field(min_length=1, max_length=MAX_BATCH_SIZE)


class GetDocumentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1)
    tenant_id: str | None = Field(default=None, alias="tenantId")


class InvoiceProcessedEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    document_id: str = Field(alias="documentId")
    invoice_id: str | None = Field(default=None, alias="invoiceId")
    tenant_id: str | None = Field(default=None, alias="tenantId")
    success: bool = True


def parse_payload(model: type[BaseModel], payload: Any) -> Any:
    """Validate an inbound payload, reporting problems as ``ValidationError``."""
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'payload'}: {err['msg']}"
            for err in e.errors()
        )
        raise ValidationError(f"Invalid {model.__name__}: {problems}") from e


def decode_file(request: SubmitDocumentRequest) -> bytes:
    try:
        data = base64.b64decode(request.buffer, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError(f"File {request.filename} is not valid base64") from e
    if not data:
        raise ValidationError(f"File {request.filename} is empty")
    return data


def iso(value: datetime | None) -> str | None:
    """ISO-8601 UTC instant; naive values are read as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def number(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


class DocumentsService:
    """Entry point for everything a bus client can ask of the analyzer."""

    def __init__(self, store: DocumentStore, queue: ProcessingQueue) -> None:
        self.store = store
        self.queue = queue

    async def submit(self, payload: Any) -> dict[str, Any]:
        """Record one document and enqueue it.

        Raises:
            ValidationError: Missing tenant, bad base64, or empty file
        """
        request = parse_payload(SubmitDocumentRequest, payload)
        document = self._new_document(request)
        created = await asyncio.to_thread(self.store.create_document, document)
        self._accept(created)
        return {"documentId": created.id}

    async def submit_batch(self, payload: Any) -> dict[str, Any]:
        """Record 1..50 documents. Nothing is created unless every element is valid."""
        request = parse_payload(SubmitBatchRequest, payload)
        documents = [self._new_document(item) for item in request.documents]
        created = await asyncio.to_thread(self.store.create_documents, documents)
        for document in created:
            self._accept(document)
        logger.info(f"Accepted batch of {len(created)} documents")
        return {
            "documents": [
                {"documentId": document.id, "filename": document.filename}
                for document in created
            ]
        }

    async def get_by_id(self, payload: Any) -> dict[str, Any]:
        """Current state of a document, with its extraction once DONE.

        Raises:
            NotFoundError: No such document
            ForbiddenError: A tenant id was given and does not own the document
        """
        request = parse_payload(GetDocumentRequest, payload)
        document = await asyncio.to_thread(self.store.get_document, request.id)
        if document is None:
            raise NotFoundError(f"Document {request.id} not found")
        if request.tenant_id and request.tenant_id != document.tenant_id:
            raise ForbiddenError(f"Document {request.id} belongs to another tenant")
        return self._to_response(document)

    def health(self) -> dict[str, Any]:
        queue_health = self.queue.health()
        return {
            "status": "ok",
            "queued": queue_health.queued,
            "activeJobs": queue_health.active_jobs,
        }

    async def invoice_processed(self, payload: Any) -> None:
        """Link the invoice the service of record created for a document."""
        event = parse_payload(InvoiceProcessedEvent, payload)
        if not event.success or not event.invoice_id:
            logger.info(f"Service of record did not create an invoice for {event.document_id}")
            return

        document = await asyncio.to_thread(self.store.get_document, event.document_id)
        if document is None:
            raise NotFoundError(f"Document {event.document_id} not found")
        if event.tenant_id and event.tenant_id != document.tenant_id:
            raise ForbiddenError(f"Document {event.document_id} belongs to another tenant")

        await asyncio.to_thread(self.store.link_invoice, event.document_id, event.invoice_id)
        logger.info(f"Document {event.document_id} linked to invoice {event.invoice_id}")

    async def recover(self) -> int:
        """Re-enqueue every document left PENDING or PROCESSING by a previous run."""
        document_ids = await asyncio.to_thread(self.store.list_unfinished_ids)
        enqueued = sum(1 for document_id in document_ids if self.queue.enqueue(document_id))
        if enqueued:
            logger.info(f"Recovered {enqueued} unfinished documents")
        return enqueued

    @staticmethod
    def _new_document(request: SubmitDocumentRequest) -> NewDocument:
        return NewDocument(
            tenant_id=request.tenant_id,
            uploaded_by=request.uploaded_by,
            filename=request.filename,
            mimetype=request.mimetype,
            file_data=decode_file(request),
            document_type=request.document_type,
            has_delivery_notes=request.has_delivery_notes,
            notes=request.notes,
        )

    def _accept(self, document: Document) -> None:
        metrics.documents_submitted_total.inc()
        metrics.document_upload_size_bytes.observe(document.file_size)
        self.queue.enqueue(document.id)
        logger.info(f"Accepted document {document.id} ({document.filename})")

    @staticmethod
    def _to_response(document: Document) -> dict[str, Any]:
        extraction: Extraction | None = document.extraction
        return {
            "id": document.id,
            "tenantId": document.tenant_id,
            "uploadedBy": document.uploaded_by,
            "filename": document.filename,
            "mimetype": document.mimetype,
            "fileSize": document.file_size,
            "documentType": document.document_type,
            "hasDeliveryNotes": document.has_delivery_notes,
            "notes": document.notes,
            "status": document.status.value,
            "errorReason": document.error_reason,
            "blobName": document.blob_name,
            "invoiceId": document.invoice_id,
            "processedAt": iso(document.processed_at),
            "createdAt": iso(document.created_at),
            "updatedAt": iso(document.updated_at),
            "extraction": (
                {
                    "id": extraction.id,
                    "supplierName": extraction.supplier_name,
                    "supplierTaxId": extraction.supplier_tax_id,
                    "invoiceNumber": extraction.invoice_number,
                    "issueDate": iso(extraction.issue_date),
                    "totalAmount": number(extraction.total_amount),
                    "taxAmount": number(extraction.tax_amount),
                    "currency": extraction.currency,
                }
                if extraction is not None
                else None
            ),
            "lines": [
                {
                    "id": line.id,
                    "description": line.description,
                    "productCode": line.product_code,
                    "unit": line.unit,
                    "quantity": number(line.quantity),
                    "unitPrice": number(line.unit_price),
                    "linePrice": number(line.line_price),
                    "total": number(line.total),
                    "taxIndicator": line.tax_indicator,
                    "discountCode": line.discount_code,
                    "additionalReference": line.additional_reference,
                }
                for line in (extraction.line_items if extraction is not None else [])
            ],
        }
