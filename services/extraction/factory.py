"""Selection of the extraction provider from configuration.

``Settings.extraction_provider`` names one entry of ``PROVIDERS``; the
analyzer builds exactly one provider per process.
"""

import logging

from services.extraction.base import ExtractionProvider
from services.extraction.content_understanding import ContentUnderstandingProvider
from services.extraction.openai_provider import OpenAIExtractionProvider
from services.shared.config import Settings

logger = logging.getLogger(__name__)

PROVIDERS: dict[str, type[ExtractionProvider]] = {
    "content_understanding": ContentUnderstandingProvider,
    "openai": OpenAIExtractionProvider,
}


def create_extraction_service(settings: Settings) -> ExtractionProvider:
    """Instantiate the configured extraction provider.

    A provider missing its endpoint or credentials is still returned, with a
    warning; its first ``analyze`` call then fails the document.

    Raises:
        ValueError: If the configured provider name is unknown
    """
    provider_name = settings.extraction_provider
    provider_class = PROVIDERS.get(provider_name)
    if provider_class is None:
        available = ", ".join(PROVIDERS)
        raise ValueError(
            f"Unknown extraction provider: '{provider_name}'. Available providers: {available}"
        )

    provider = provider_class(settings)
    if not provider.is_available():
        logger.warning(
            f"Extraction provider '{provider_name}' is not fully available. "
            f"Check configuration (endpoint, API keys)."
        )

    logger.info(f"Created extraction provider: {provider_name}")
    return provider
