"""Subject names used on the message bus."""


class AnalyzerSubjects:
    """Request/reply operations served by this service."""

    SUBMIT = "analyzer.submit"
    SUBMIT_BATCH = "analyzer.submitBatch"
    GET_BY_ID = "analyzer.getById"
    HEALTH = "analyzer.health.check"


class AnalyzerEvents:
    """Events published by this service."""

    ANALYZED = "documents.analyzed"
    FAILED = "documents.analysis.failed"


class SuppliersSubjects:
    """Subjects owned by the invoice service of record."""

    INVOICE_EXISTS = "suppliers.invoice.exists"
    INVOICE_PROCESSED = "suppliers.invoice.processed"
