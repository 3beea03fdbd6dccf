"""Routing of bus subjects to the documents service."""

import logging
from typing import Any

from services.documents.service import DocumentsService
from services.messaging.bus import MessageBus
from services.messaging.subjects import AnalyzerSubjects, SuppliersSubjects

logger = logging.getLogger(__name__)


def register_handlers(bus: MessageBus, service: DocumentsService) -> None:
    """Serve the analyzer's request/reply subjects and consume inbound events."""
    bus.respond(AnalyzerSubjects.SUBMIT, service.submit)
    bus.respond(AnalyzerSubjects.SUBMIT_BATCH, service.submit_batch)
    bus.respond(AnalyzerSubjects.GET_BY_ID, service.get_by_id)

    async def health(_: Any) -> dict[str, Any]:
        return service.health()

    async def invoice_processed(payload: Any) -> None:
        # Failures are never reported back to the emitter.
        try:
            await service.invoice_processed(payload)
        except Exception as e:
            logger.warning(f"Could not handle invoice processed event: {e}")

    bus.respond(AnalyzerSubjects.HEALTH, health)
    bus.subscribe(SuppliersSubjects.INVOICE_PROCESSED, invoice_processed)
