"""Analyzer process runner.

Run with: python -m services.queue.worker

Builds the service graph, re-enqueues documents left unfinished by a
previous run, then serves bus requests until interrupted.
"""

import asyncio
import logging
from dataclasses import dataclass

from services.documents.database import Database
from services.documents.duplicates import DuplicateChecker
from services.documents.handlers import register_handlers
from services.documents.pipeline import DocumentProcessor
from services.documents.service import DocumentsService
from services.documents.store import DocumentStore
from services.extraction.base import ExtractionProvider
from services.extraction.factory import create_extraction_service
from services.messaging.bus import MessageBus, RedisMessageBus
from services.queue.queue import ProcessingQueue
from services.shared.config import Settings, get_settings
from services.shared.metrics import start_metrics_server
from services.storage.service import StorageService

logger = logging.getLogger(__name__)


@dataclass
class Analyzer:
    """Wired components of a running analyzer."""

    database: Database
    bus: MessageBus
    extractor: ExtractionProvider
    storage: StorageService
    queue: ProcessingQueue
    service: DocumentsService


def build_analyzer(
    settings: Settings,
    bus: MessageBus | None = None,
    database: Database | None = None,
    extractor: ExtractionProvider | None = None,
    storage: StorageService | None = None,
) -> Analyzer:
    """Wire every component from settings; collaborators may be injected."""
    database = database or Database.from_settings(settings)
    database.create_all()
    store = DocumentStore(database, settings.error_reason_max_length)
    bus = bus or RedisMessageBus(settings.redis_url)
    extractor = extractor or create_extraction_service(settings)
    storage = storage or StorageService(settings)

    processor = DocumentProcessor(
        settings=settings,
        store=store,
        storage=storage,
        extractor=extractor,
        bus=bus,
        duplicates=DuplicateChecker(bus, settings.duplicate_check_timeout_seconds),
    )
    queue = ProcessingQueue(processor.process_document, settings.processing_concurrency)
    service = DocumentsService(store, queue)
    register_handlers(bus, service)
    return Analyzer(
        database=database,
        bus=bus,
        extractor=extractor,
        storage=storage,
        queue=queue,
        service=service,
    )


async def check_storage(storage: StorageService) -> bool:
    """Log whether blob storage is usable; processing starts either way."""
    if not storage.is_available():
        logger.warning("Blob storage not configured, documents are sent to extraction inline")
        return False
    if not await asyncio.to_thread(storage.health_check):
        logger.warning("Blob storage unreachable, uploads fail until it recovers")
        return False
    logger.info("Blob storage reachable")
    return True


async def run(settings: Settings) -> None:
    analyzer = build_analyzer(settings)
    await check_storage(analyzer.storage)
    await analyzer.service.recover()
    await analyzer.bus.start()
    logger.info(
        f"{settings.service_name} {settings.service_version} ready "
        f"(provider: {settings.extraction_provider}, "
        f"concurrency: {settings.processing_concurrency})"
    )
    try:
        await asyncio.Event().wait()
    finally:
        await analyzer.queue.shutdown()
        await analyzer.bus.close()
        await analyzer.extractor.close()
        analyzer.database.dispose()
        logger.info("Analyzer stopped")


def main() -> None:
    """Run the analyzer until interrupted."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if settings.metrics_port:
        start_metrics_server(settings.metrics_port)
        logger.info(f"Metrics exposed on port {settings.metrics_port}")

    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
