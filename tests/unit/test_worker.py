"""Unit tests for wiring the analyzer process."""

import base64
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from services.documents.database import Database, create_db_engine
from services.messaging.bus import LocalMessageBus
from services.messaging.subjects import AnalyzerSubjects
from services.queue.worker import build_analyzer, check_storage
from services.shared.config import Settings


@pytest.mark.asyncio
async def test_build_analyzer_serves_analyzer_subjects() -> None:
    """Submitting over the bus runs the full pipeline to a terminal state."""
    settings = Settings(_env_file=None, processing_concurrency=1)
    extractor = MagicMock()
    extractor.provider_name = "fake"
    extractor.analyze = AsyncMock(return_value=None)
    storage = MagicMock()
    storage.is_available.return_value = False

    analyzer = build_analyzer(
        settings,
        bus=LocalMessageBus(),
        database=Database(create_db_engine("sqlite:///:memory:")),
        extractor=extractor,
        storage=storage,
    )

    reply = await analyzer.bus.request(
        AnalyzerSubjects.SUBMIT,
        {
            "buffer": base64.b64encode(b"%PDF").decode(),
            "filename": "a.pdf",
            "mimetype": "application/pdf",
            "uploadedBy": "user-1",
            "tenantId": "tenant-1",
        },
        timeout=1,
    )
    await analyzer.queue.join()

    document = await analyzer.bus.request(
        AnalyzerSubjects.GET_BY_ID, {"id": reply["documentId"]}, timeout=1
    )
    assert document["status"] == "FAILED"
    assert document["errorReason"] == "Extraction service returned no result"

    health = await analyzer.bus.request(AnalyzerSubjects.HEALTH, None, timeout=1)
    assert health == {"status": "ok", "queued": 0, "activeJobs": 0}


class TestCheckStorage:
    """Test the startup storage check."""

    @pytest.mark.asyncio
    async def test_unconfigured_storage_skips_health_check(self) -> None:
        storage = MagicMock()
        storage.is_available.return_value = False

        assert await check_storage(storage) is False
        storage.health_check.assert_not_called()

    @pytest.mark.asyncio
    async def test_unreachable_storage_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        storage = MagicMock()
        storage.is_available.return_value = True
        storage.health_check.return_value = False

        with caplog.at_level(logging.WARNING):
            assert await check_storage(storage) is False

        assert "unreachable" in caplog.text

    @pytest.mark.asyncio
    async def test_reachable_storage(self) -> None:
        storage = MagicMock()
        storage.is_available.return_value = True
        storage.health_check.return_value = True

        assert await check_storage(storage) is True
        storage.health_check.assert_called_once_with()
