"""Unit tests for extraction provider selection.

Tests cover:
- Configuration-based selection
- Error handling for unknown providers
"""

import logging
from typing import get_args
from unittest.mock import MagicMock

import pytest

from services.extraction.content_understanding import ContentUnderstandingProvider
from services.extraction.factory import PROVIDERS, create_extraction_service
from services.extraction.openai_provider import OpenAIExtractionProvider
from services.shared.config import Settings


def test_providers_match_configurable_names() -> None:
    """Test that every selectable provider name has an implementation."""
    configurable = get_args(Settings.model_fields["extraction_provider"].annotation)

    assert set(PROVIDERS) == set(configurable) == {"content_understanding", "openai"}


def test_create_extraction_service_unknown_provider() -> None:
    """Test that an unknown name raises ValueError listing the alternatives."""
    settings = MagicMock(extraction_provider="nonexistent")

    with pytest.raises(ValueError, match="Available providers: .*openai"):
        create_extraction_service(settings)


def test_create_extraction_service_default() -> None:
    """Test factory creates the Content Understanding provider by default."""
    provider = create_extraction_service(Settings(_env_file=None))

    assert isinstance(provider, ContentUnderstandingProvider)
    assert provider.provider_name == "content_understanding"


def test_create_extraction_service_openai() -> None:
    settings = Settings(_env_file=None, extraction_provider="openai", openai_api_key="sk-test")
    provider = create_extraction_service(settings)

    assert isinstance(provider, OpenAIExtractionProvider)
    assert provider.is_available() is True


def test_create_extraction_service_warns_when_unconfigured(
    caplog: pytest.LogCaptureFixture,
) -> None:
    """Test that a provider without credentials is created with a warning."""
    settings = Settings(_env_file=None, cu_endpoint="", cu_key="")

    with caplog.at_level(logging.WARNING):
        provider = create_extraction_service(settings)

    assert provider.is_available() is False
    assert "not fully available" in caplog.text
