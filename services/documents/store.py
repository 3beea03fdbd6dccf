"""Document store: persisted documents, their state transitions and extractions.

Methods are blocking; the pipeline runs them in worker threads.

State machine:
    PENDING -> PROCESSING -> DONE | FAILED
A PROCESSING document may be claimed again after a crash (startup re-scan).
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload

from services.documents.database import Database
from services.documents.models import Document, DocumentStatus, Extraction, LineItem, utcnow
from services.documents.normalizer import NormalizedExtraction
from services.shared.errors import NotFoundError, PersistenceError

logger = logging.getLogger(__name__)

CLAIMABLE_STATES = (DocumentStatus.PENDING, DocumentStatus.PROCESSING)


@dataclass
class NewDocument:
    """Input for a document creation."""

    tenant_id: str
    uploaded_by: str
    filename: str
    mimetype: str
    file_data: bytes
    document_type: str | None = None
    has_delivery_notes: bool = False
    notes: str | None = None


class DocumentStore:
    """Owns Document, Extraction and LineItem rows."""

    def __init__(self, database: Database, error_reason_max_length: int = 500) -> None:
        self.database = database
        self.error_reason_max_length = error_reason_max_length

    def create_documents(self, documents: Sequence[NewDocument]) -> list[Document]:
        """Create PENDING documents in a single transaction."""
        rows = [
            Document(
                tenant_id=doc.tenant_id,
                uploaded_by=doc.uploaded_by,
                filename=doc.filename,
                mimetype=doc.mimetype,
                file_size=len(doc.file_data),
                document_type=doc.document_type,
                has_delivery_notes=doc.has_delivery_notes,
                notes=doc.notes,
                file_data=doc.file_data,
                status=DocumentStatus.PENDING,
            )
            for doc in documents
        ]
        try:
            with self.database.transaction() as session:
                session.add_all(rows)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not create document: {e}") from e
        return rows

    def create_document(self, document: NewDocument) -> Document:
        return self.create_documents([document])[0]

    def get_document(self, document_id: str) -> Document | None:
        """Load a document with its extraction and line items."""
        with self.database.session() as session:
            return session.scalar(
                select(Document)
                .where(Document.id == document_id)
                .options(selectinload(Document.extraction).selectinload(Extraction.line_items))
            )

    def list_unfinished_ids(self) -> list[str]:
        """Ids of documents still PENDING or PROCESSING, oldest first."""
        with self.database.session() as session:
            return list(
                session.scalars(
                    select(Document.id)
                    .where(Document.status.in_(CLAIMABLE_STATES))
                    .order_by(Document.created_at)
                )
            )

    def claim(self, document_id: str) -> Document | None:
        """Move a document to PROCESSING and clear any stale error.

        Returns:
            The claimed document, or None when it no longer exists or has
            already reached a terminal state
        """
        with self.database.transaction() as session:
            document = session.get(Document, document_id)
            if document is None:
                return None
            if document.status not in CLAIMABLE_STATES:
                logger.info(f"Document {document_id} is {document.status.value}, not claiming")
                return None
            document.status = DocumentStatus.PROCESSING
            document.error_reason = None
            return document

    def persist_extraction(
        self, document_id: str, extraction: NormalizedExtraction, blob_name: str | None = None
    ) -> str:
        """Store the extraction and move the document to DONE in one transaction.

        The extraction is upserted, its previous line items are replaced, and
        the document records the blob name and drops its file bytes. Nothing
        is written unless every step succeeds, so an extraction exists only
        for a DONE document.

        Returns:
            Extraction id

        Raises:
            NotFoundError: The document no longer exists
            PersistenceError: The transaction failed and was rolled back
        """
        try:
            with self.database.transaction() as session:
                document = session.get(Document, document_id)
                if document is None:
                    raise NotFoundError(f"Document {document_id} not found")

                record = session.scalar(
                    select(Extraction).where(Extraction.document_id == document_id)
                )
                if record is None:
                    record = Extraction(document_id=document_id)
                    session.add(record)

                record.supplier_name = extraction.supplier_name
                record.supplier_tax_id = extraction.supplier_tax_id
                record.invoice_number = extraction.invoice_number
                record.issue_date = extraction.issue_date
                record.total_amount = extraction.total_amount
                record.tax_amount = extraction.tax_amount
                record.currency = extraction.currency
                record.raw_response = extraction.raw_response
                session.flush()

                session.execute(delete(LineItem).where(LineItem.extraction_id == record.id))
                session.expire(record, ["line_items"])
                session.add_all(
                    LineItem(extraction_id=record.id, position=position, **line.model_dump())
                    for position, line in enumerate(extraction.lines)
                )
                extraction_id = record.id

                document.status = DocumentStatus.DONE
                document.processed_at = utcnow()
                document.error_reason = None
                document.blob_name = blob_name
                document.file_data = None
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not store extraction: {e}") from e

        logger.debug(f"Stored extraction {extraction_id} with {len(extraction.lines)} lines")
        return extraction_id

    def mark_failed(self, document_id: str, reason: str) -> None:
        """FAILED: records a bounded reason, file bytes are retained."""
        reason = (reason or "Unknown error")[: self.error_reason_max_length]
        try:
            with self.database.transaction() as session:
                document = session.get(Document, document_id)
                if document is None:
                    logger.warning(f"Document {document_id} vanished before it could fail")
                    return
                document.status = DocumentStatus.FAILED
                document.error_reason = reason
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not mark document failed: {e}") from e

    def link_invoice(self, document_id: str, invoice_id: str) -> None:
        """Record the invoice created for this document by the service of record."""
        try:
            with self.database.transaction() as session:
                document = session.get(Document, document_id)
                if document is None:
                    raise NotFoundError(f"Document {document_id} not found")
                document.invoice_id = invoice_id
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not link invoice: {e}") from e
