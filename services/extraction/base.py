"""Interface shared by all extraction providers.

Enables switching between extraction vendors (Content Understanding, OpenAI)
while keeping a single canonical output shape.

Based on Strategy Pattern:
https://refactoring.guru/design-patterns/strategy/python
"""

from abc import ABC, abstractmethod

from services.extraction.schema import CanonicalInvoice
from services.shared.config import Settings


class ExtractionProvider(ABC):
    """Abstract base class for invoice extraction providers.

    Implementations translate one vendor's output into a ``CanonicalInvoice``.
    They perform no side effects besides outbound network calls.

    Example implementations:
    - ContentUnderstandingProvider: asynchronous analyze operation, polled by URL
    - OpenAIExtractionProvider: vision model with structured JSON output
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize provider with settings.

        Args:
            settings: Application settings
        """
        self.settings = settings

    @abstractmethod
    async def analyze(
        self,
        file_bytes: bytes,
        mime_type: str,
        document_url: str | None,
        notes: str | None = None,
    ) -> CanonicalInvoice | None:
        """Extract a canonical invoice record from a document.

        Args:
            file_bytes: Raw document bytes
            mime_type: MIME type of the document
            document_url: URL the vendor can fetch the document from
            notes: Optional free-text hint supplied at submission

        Returns:
            Canonical record, or None when the vendor found no document content

        Raises:
            ExtractionServiceError: On unrecoverable vendor failure
        """

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this provider is configured (endpoint, credentials).

        Returns:
            True if provider can be used, False otherwise
        """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider identifier for logging/metrics."""

    async def close(self) -> None:
        """Release network resources held by the provider."""
