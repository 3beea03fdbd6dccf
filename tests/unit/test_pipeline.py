"""Unit tests for the per-document processing job.

Runs against an in-memory database and an in-process bus; storage and the
extraction vendor are mocked.
"""

from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import func, select

from services.documents.database import Database, create_db_engine
from services.documents.duplicates import DuplicateChecker
from services.documents.models import DocumentStatus, Extraction
from services.documents.pipeline import DocumentProcessor, json_decimal
from services.documents.service import DocumentsService
from services.documents.store import DocumentStore, NewDocument
from services.extraction.schema import CanonicalInvoice, CanonicalLineItem
from services.messaging.bus import LocalMessageBus
from services.messaging.subjects import AnalyzerEvents, SuppliersSubjects
from services.queue.queue import ProcessingQueue
from services.shared.config import Settings
from services.shared.errors import ExtractionServiceError, PersistenceError
from services.storage.service import PresignedUrlResult, StorageResult


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None, error_reason_max_length=60)


@pytest.fixture
def store() -> DocumentStore:
    database = Database(create_db_engine("sqlite:///:memory:"))
    database.create_all()
    return DocumentStore(database, error_reason_max_length=60)


@pytest.fixture
def bus() -> LocalMessageBus:
    return LocalMessageBus()


@pytest.fixture
def events(bus: LocalMessageBus) -> dict[str, list[Any]]:
    """Events published by the processor, by subject."""
    recorded: dict[str, list[Any]] = {AnalyzerEvents.ANALYZED: [], AnalyzerEvents.FAILED: []}
    for subject, received in recorded.items():
        bus.subscribe(subject, AsyncMock(side_effect=received.append))
    return recorded


@pytest.fixture
def storage() -> MagicMock:
    mock = MagicMock()
    mock.is_available.return_value = True
    mock.upload_document.side_effect = lambda document_id, *args: StorageResult(
        success=True, object_name=f"{document_id}.pdf", bucket="invoices"
    )
    mock.get_presigned_url.side_effect = lambda name: PresignedUrlResult(
        success=True, url=f"https://minio/invoices/{name}?sig", expires_in_seconds=60
    )
    return mock


INVOICE = CanonicalInvoice(
    supplier_name="Frutas Garcia SL",
    supplier_tax_id="B12345678",
    supplier_tax_id_valid=True,
    invoice_number="F-2024-001",
    sale_date="2024-01-15T00:00:00Z",
    total_amount="121,00",
    subtotal=100,
    items=[
        CanonicalLineItem(description="Tomatoes", quantity=2.5, unit_price="3,60"),
        CanonicalLineItem(),
    ],
)


@pytest.fixture
def extractor() -> MagicMock:
    mock = MagicMock()
    mock.provider_name = "fake"
    mock.analyze = AsyncMock(return_value=INVOICE)
    return mock


@pytest.fixture
def processor(
    settings: Settings,
    store: DocumentStore,
    storage: MagicMock,
    extractor: MagicMock,
    bus: LocalMessageBus,
) -> DocumentProcessor:
    return DocumentProcessor(
        settings=settings,
        store=store,
        storage=storage,
        extractor=extractor,
        bus=bus,
        duplicates=DuplicateChecker(bus, timeout_seconds=1),
    )


def submit(store: DocumentStore, **overrides: Any) -> str:
    values: dict[str, Any] = {
        "tenant_id": "tenant-1",
        "uploaded_by": "user-1",
        "filename": "invoice.pdf",
        "mimetype": "application/pdf",
        "file_data": b"%PDF-1.7",
        "document_type": "invoice",
    }
    values.update(overrides)
    return store.create_document(NewDocument(**values)).id


def extraction_count(store: DocumentStore) -> int:
    with store.database.session() as session:
        return session.scalar(select(func.count()).select_from(Extraction)) or 0


class TestSuccessfulProcessing:
    """Test the happy path."""

    @pytest.mark.asyncio
    async def test_document_reaches_done(
        self,
        processor: DocumentProcessor,
        store: DocumentStore,
        extractor: MagicMock,
        events: dict[str, list[Any]],
    ) -> None:
        document_id = submit(store)

        await processor.process_document(document_id)

        document = store.get_document(document_id)
        assert document is not None
        assert document.status == DocumentStatus.DONE
        assert document.file_data is None
        assert document.blob_name == f"{document_id}.pdf"
        assert document.extraction is not None
        assert document.extraction.invoice_number == "F-2024-001"
        assert len(document.extraction.line_items) == 1

        extractor.analyze.assert_awaited_once_with(
            b"%PDF-1.7",
            "application/pdf",
            f"https://minio/invoices/{document_id}.pdf?sig",
            notes=None,
        )

    @pytest.mark.asyncio
    async def test_publishes_analyzed_event(
        self,
        processor: DocumentProcessor,
        store: DocumentStore,
        events: dict[str, list[Any]],
    ) -> None:
        document_id = submit(store)

        await processor.process_document(document_id)

        assert events[AnalyzerEvents.FAILED] == []
        event = events[AnalyzerEvents.ANALYZED][0]
        assert event["documentId"] == document_id
        assert event["tenantId"] == "tenant-1"
        assert event["blobName"] == f"{document_id}.pdf"
        extraction = event["extraction"]
        assert extraction["supplierTaxId"] == "B12345678"
        assert extraction["issueDate"] == "2024-01-15T00:00:00Z"
        assert extraction["totalAmount"] == 121.0
        assert extraction["taxAmount"] == 21.0
        assert extraction["currency"] == "EUR"
        assert extraction["lines"][0]["total"] == 9.0

    @pytest.mark.asyncio
    async def test_sends_document_inline_without_storage(
        self,
        processor: DocumentProcessor,
        store: DocumentStore,
        storage: MagicMock,
        extractor: MagicMock,
    ) -> None:
        storage.is_available.return_value = False
        document_id = submit(store)

        await processor.process_document(document_id)

        assert extractor.analyze.await_args.args[2] is None
        document = store.get_document(document_id)
        assert document is not None
        assert document.status == DocumentStatus.DONE
        assert document.blob_name is None

    @pytest.mark.asyncio
    async def test_reprocessing_keeps_single_extraction(
        self, processor: DocumentProcessor, store: DocumentStore
    ) -> None:
        document_id = submit(store)
        await processor.process_document(document_id)
        store.persist_extraction(
            document_id, processor.normalizer.normalize(CanonicalInvoice(currency="USD"))
        )

        assert extraction_count(store) == 1


class TestFailedProcessing:
    """Test that every failure ends in FAILED with a reason."""

    @pytest.mark.asyncio
    async def test_extraction_error(
        self,
        processor: DocumentProcessor,
        store: DocumentStore,
        extractor: MagicMock,
        events: dict[str, list[Any]],
    ) -> None:
        extractor.analyze.side_effect = ExtractionServiceError(
            "Analysis failed, status: Failed", vendor_status="Failed"
        )
        document_id = submit(store)

        await processor.process_document(document_id)

        document = store.get_document(document_id)
        assert document is not None
        assert document.status == DocumentStatus.FAILED
        assert document.error_reason == "Analysis failed, status: Failed"
        assert document.file_data == b"%PDF-1.7"
        assert document.extraction is None
        assert events[AnalyzerEvents.FAILED] == [
            {
                "documentId": document_id,
                "tenantId": "tenant-1",
                "reason": "Analysis failed, status: Failed",
            }
        ]
        assert events[AnalyzerEvents.ANALYZED] == []

    @pytest.mark.asyncio
    async def test_empty_result(
        self, processor: DocumentProcessor, store: DocumentStore, extractor: MagicMock
    ) -> None:
        extractor.analyze.return_value = None
        document_id = submit(store)

        await processor.process_document(document_id)

        document = store.get_document(document_id)
        assert document is not None
        assert document.status == DocumentStatus.FAILED
        assert "no result" in (document.error_reason or "")

    @pytest.mark.asyncio
    async def test_unexpected_error_reason_truncated(
        self, processor: DocumentProcessor, store: DocumentStore, extractor: MagicMock
    ) -> None:
        extractor.analyze.side_effect = RuntimeError("x" * 500)
        document_id = submit(store)

        await processor.process_document(document_id)

        document = store.get_document(document_id)
        assert document is not None
        assert document.status == DocumentStatus.FAILED
        assert (document.error_reason or "").startswith("Unexpected error: ")
        assert len(document.error_reason or "") == 60

    @pytest.mark.asyncio
    async def test_upload_failure(
        self,
        processor: DocumentProcessor,
        store: DocumentStore,
        storage: MagicMock,
        extractor: MagicMock,
    ) -> None:
        storage.upload_document.side_effect = None
        storage.upload_document.return_value = StorageResult(success=False, error="S3 down")
        document_id = submit(store)

        await processor.process_document(document_id)

        document = store.get_document(document_id)
        assert document is not None
        assert document.status == DocumentStatus.FAILED
        assert document.error_reason == "Blob upload failed: S3 down"
        extractor.analyze.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_persistence_failure_never_reaches_done(
        self, processor: DocumentProcessor, store: DocumentStore
    ) -> None:
        document_id = submit(store)

        with patch.object(
            store, "persist_extraction", side_effect=PersistenceError("disk full")
        ):
            await processor.process_document(document_id)

        document = store.get_document(document_id)
        assert document is not None
        assert document.status == DocumentStatus.FAILED
        assert document.error_reason == "disk full"

    @pytest.mark.asyncio
    async def test_failed_done_transition_leaves_no_extraction(
        self, processor: DocumentProcessor, store: DocumentStore, events: dict[str, list[Any]]
    ) -> None:
        document_id = submit(store)

        with patch("services.documents.store.utcnow", return_value="not-a-timestamp"):
            await processor.process_document(document_id)

        document = store.get_document(document_id)
        assert document is not None
        assert document.status == DocumentStatus.FAILED
        assert (document.error_reason or "").startswith("Could not store extraction")
        assert document.extraction is None
        assert extraction_count(store) == 0
        assert events[AnalyzerEvents.ANALYZED] == []

    @pytest.mark.asyncio
    async def test_out_of_range_numbers_become_null(
        self, processor: DocumentProcessor, store: DocumentStore, extractor: MagicMock
    ) -> None:
        extractor.analyze.return_value = CanonicalInvoice(
            invoice_number="F-2024-002",
            total_amount=1e300,
            items=[
                CanonicalLineItem(
                    description="Barcode 123456789012345678901234567890",
                    quantity=1e40,
                    unit_price="123456789012345678901234567890",
                )
            ],
        )
        document_id = submit(store)

        await processor.process_document(document_id)

        document = store.get_document(document_id)
        assert document is not None
        assert document.status == DocumentStatus.DONE
        assert document.extraction is not None
        assert document.extraction.total_amount is None
        line = document.extraction.line_items[0]
        assert line.quantity is None
        assert line.unit_price is None
        assert line.total is None


class TestDuplicates:
    """Test the duplicate check step."""

    @pytest.mark.asyncio
    async def test_duplicate_fails_without_extraction(
        self,
        processor: DocumentProcessor,
        store: DocumentStore,
        storage: MagicMock,
        bus: LocalMessageBus,
        events: dict[str, list[Any]],
    ) -> None:
        bus.respond(
            SuppliersSubjects.INVOICE_EXISTS,
            AsyncMock(return_value={"exists": True, "invoiceId": "inv-7"}),
        )
        document_id = submit(store)

        await processor.process_document(document_id)

        document = store.get_document(document_id)
        assert document is not None
        assert document.status == DocumentStatus.FAILED
        assert (document.error_reason or "").startswith("Duplicate invoice F-2024-001")
        assert extraction_count(store) == 0
        storage.delete_object.assert_called_once_with(f"{document_id}.pdf")
        assert events[AnalyzerEvents.FAILED][0]["documentId"] == document_id

    @pytest.mark.asyncio
    async def test_unreachable_checker_fails_open(
        self, processor: DocumentProcessor, store: DocumentStore
    ) -> None:
        # No responder on the bus for the existence check
        document_id = submit(store)

        await processor.process_document(document_id)

        document = store.get_document(document_id)
        assert document is not None
        assert document.status == DocumentStatus.DONE

    @pytest.mark.asyncio
    async def test_skipped_without_document_type(
        self, processor: DocumentProcessor, store: DocumentStore, bus: LocalMessageBus
    ) -> None:
        responder = AsyncMock(return_value={"exists": True})
        bus.respond(SuppliersSubjects.INVOICE_EXISTS, responder)
        document_id = submit(store, document_type=None)

        await processor.process_document(document_id)

        responder.assert_not_awaited()
        document = store.get_document(document_id)
        assert document is not None
        assert document.status == DocumentStatus.DONE

    @pytest.mark.asyncio
    async def test_disabled_by_configuration(
        self,
        processor: DocumentProcessor,
        store: DocumentStore,
        bus: LocalMessageBus,
    ) -> None:
        processor.settings.duplicate_check_enabled = False
        responder = AsyncMock(return_value={"exists": True})
        bus.respond(SuppliersSubjects.INVOICE_EXISTS, responder)

        await processor.process_document(submit(store))

        responder.assert_not_awaited()


class TestClaiming:
    """Test documents that cannot be claimed."""

    @pytest.mark.asyncio
    async def test_missing_document_is_a_no_op(
        self,
        processor: DocumentProcessor,
        extractor: MagicMock,
        events: dict[str, list[Any]],
    ) -> None:
        await processor.process_document("missing")

        extractor.analyze.assert_not_awaited()
        assert events[AnalyzerEvents.FAILED] == []

    @pytest.mark.asyncio
    async def test_terminal_document_not_reprocessed(
        self, processor: DocumentProcessor, store: DocumentStore, extractor: MagicMock
    ) -> None:
        document_id = submit(store)
        await processor.process_document(document_id)
        await processor.process_document(document_id)

        assert extractor.analyze.await_count == 1


class TestStartupRecovery:
    """Test that unfinished documents are picked up again."""

    @pytest.mark.asyncio
    async def test_processing_documents_after_crash_reach_terminal_state(
        self, processor: DocumentProcessor, store: DocumentStore
    ) -> None:
        crashed = submit(store)
        store.claim(crashed)
        pending = submit(store)
        failed = submit(store)
        store.claim(failed)
        store.mark_failed(failed, "earlier failure")

        # One job at a time: the in-memory database shares a single connection
        queue = ProcessingQueue(processor.process_document, concurrency=1)
        service = DocumentsService(store, queue)

        assert await service.recover() == 2
        await queue.join()

        for document_id in (crashed, pending):
            document = store.get_document(document_id)
            assert document is not None
            assert document.status == DocumentStatus.DONE
        failed_document = store.get_document(failed)
        assert failed_document is not None
        assert failed_document.status == DocumentStatus.FAILED


class TestEventAmounts:
    """Test amounts in the analyzed event."""

    @pytest.mark.parametrize(
        "value", ["9999999999.99", "-9999999999.99", "0.10", "1234.56", "9999999.999"]
    )
    def test_amounts_print_back_exactly(self, value: str) -> None:
        assert Decimal(str(json_decimal(Decimal(value)))) == Decimal(value)

    def test_missing_amount_is_null(self) -> None:
        assert json_decimal(None) is None
