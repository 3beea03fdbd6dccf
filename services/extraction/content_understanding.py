"""Azure AI Content Understanding extraction provider.

The analyze call is asynchronous: the document is submitted by URL, the
service answers with an ``Operation-Location`` handle, and the handle is
polled at a fixed interval until the operation leaves the running states.

Rate-limit responses (HTTP 429) on either step are retried with tenacity,
honoring ``Retry-After`` when the service sends one and falling back to
exponential backoff with jitter otherwise.

See: https://learn.microsoft.com/azure/ai-services/content-understanding/
"""

import asyncio
import base64
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)
from tenacity.wait import wait_base

from services.extraction.base import ExtractionProvider
from services.extraction.schema import (
    CanonicalInvoice,
    CanonicalLineItem,
    TaxSummaryEntry,
    to_iso_instant,
)
from services.shared import metrics
from services.shared.config import Settings
from services.shared.errors import ExtractionServiceError
from services.shared.taxid import is_valid_tax_id, normalize_tax_id

logger = logging.getLogger(__name__)

RUNNING_STATES = frozenset({"notstarted", "running"})
SUCCEEDED = "succeeded"


class RateLimitedError(Exception):
    """The service answered 429 for a submit or poll request."""

    def __init__(self, step: str, retry_after: float | None) -> None:
        super().__init__(f"Rate limited during {step}")
        self.step = step
        self.retry_after = retry_after


class wait_retry_after(wait_base):  # noqa: N801 - tenacity naming convention
    """Wait for the server-provided delay, or defer to a fallback strategy."""

    def __init__(self, fallback: wait_base) -> None:
        self.fallback = fallback

    def __call__(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
            return exc.retry_after
        return self.fallback(retry_state)


def parse_retry_after(headers: httpx.Headers) -> float | None:
    """Read the retry delay from a 429 response, in seconds."""
    for name in ("retry-after-ms", "x-ms-retry-after-ms"):
        value = headers.get(name)
        if value:
            try:
                return max(float(value) / 1000.0, 0.0)
            except ValueError:
                pass

    value = headers.get("retry-after")
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)


def _string(field: dict[str, Any] | None) -> str | None:
    if not field:
        return None
    value = field.get("valueString")
    return value if isinstance(value, str) else None


def _number(field: dict[str, Any] | None) -> int | float | None:
    if not field:
        return None
    for key in ("valueNumber", "valueInteger"):
        value = field.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
    return None


def _date(field: dict[str, Any] | None) -> str | None:
    if not field:
        return None
    return to_iso_instant(field.get("valueDate"))


def _object(field: dict[str, Any] | None) -> dict[str, Any]:
    if not field:
        return {}
    value = field.get("valueObject")
    return value if isinstance(value, dict) else {}


def _array(field: dict[str, Any] | None) -> list[dict[str, Any]]:
    if not field:
        return []
    value = field.get("valueArray")
    return value if isinstance(value, list) else []


class ContentUnderstandingProvider(ExtractionProvider):
    """Extraction through a Content Understanding analyzer.

    Polling has no overall deadline; ``extraction_max_polls`` bounds it when
    an operator needs one.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize Content Understanding provider.

        Args:
            settings: Application settings
        """
        super().__init__(settings)
        self._endpoint = settings.cu_endpoint.rstrip("/")
        self._client = httpx.AsyncClient(timeout=settings.extraction_request_timeout_seconds)
        self._sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    @property
    def provider_name(self) -> str:
        return "content_understanding"

    def is_available(self) -> bool:
        return bool(self._endpoint and self.settings.cu_key)

    async def close(self) -> None:
        await self._client.aclose()

    async def analyze(
        self,
        file_bytes: bytes,
        mime_type: str,
        document_url: str | None,
        notes: str | None = None,
    ) -> CanonicalInvoice | None:
        """Run an analysis job and map its fields to a canonical record.

        Args:
            file_bytes: Raw document bytes, sent inline when no URL is available
            mime_type: MIME type of the document
            document_url: Presigned URL the service downloads the document from
            notes: Unused by this provider

        Returns:
            Canonical record, or None when the result holds no content

        Raises:
            ExtractionServiceError: Non-success terminal status, rejected request,
                transport failure, or exhausted rate-limit retries
        """
        try:
            operation_url = await self._with_rate_limit_retry(
                "submit", self._submit, file_bytes, mime_type, document_url
            )
            result = await self._wait_for_result(operation_url)
        except httpx.HTTPError as e:
            raise ExtractionServiceError(f"Extraction service unreachable: {e}") from e

        contents = (result.get("result") or {}).get("contents") or []
        if not contents:
            return None
        return self._map_fields(contents[0].get("fields") or {}, result.get("result"))

    async def _with_rate_limit_retry(
        self, step: str, call: Callable[..., Awaitable[Any]], *args: Any
    ) -> Any:
        """Retry one protocol step while the service keeps rate limiting it.

        ``call`` must be the coroutine function itself; tenacity only awaits
        callables it recognizes as coroutine functions.
        """
        max_retries = self.settings.extraction_max_retries
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(RateLimitedError),
            wait=wait_retry_after(
                wait_exponential_jitter(
                    initial=self.settings.extraction_backoff_base_seconds,
                    exp_base=2,
                    jitter=self.settings.extraction_backoff_jitter_seconds,
                )
            ),
            stop=stop_after_attempt(max_retries + 1),
            sleep=self._sleep,
            before_sleep=lambda state: logger.warning(
                f"Extraction service rate limited the {step} step "
                f"(retry {state.attempt_number}/{max_retries})"
            ),
        )
        try:
            return await retrying(call, *args)
        except RetryError as e:
            raise ExtractionServiceError(
                f"Extraction service rate limit exceeded after {max_retries} retries ({step})"
            ) from e

    async def _submit(self, file_bytes: bytes, mime_type: str, document_url: str | None) -> str:
        """Start an analyze operation and return its polling URL."""
        if document_url:
            source: dict[str, Any] = {"url": document_url}
        else:
            source = {
                "data": base64.b64encode(file_bytes).decode("ascii"),
                "mimeType": mime_type,
            }

        response = await self._client.post(
            f"{self._endpoint}/contentunderstanding/analyzers/{self.settings.cu_analyzer_id}:analyze",
            params={"api-version": self.settings.cu_api_version},
            headers=self._headers(),
            json={"inputs": [source]},
        )
        if response.status_code == 429:
            metrics.extraction_rate_limited_total.labels(step="submit").inc()
            raise RateLimitedError("submit", parse_retry_after(response.headers))
        if not response.is_success:
            raise ExtractionServiceError(
                f"Analyze request rejected ({response.status_code}): {response.text[:200]}"
            )

        operation_url = response.headers.get("Operation-Location")
        if not operation_url:
            raise ExtractionServiceError("Analyze response is missing Operation-Location")
        return operation_url

    async def _poll(self, operation_url: str) -> dict[str, Any]:
        response = await self._client.get(operation_url, headers=self._headers())
        if response.status_code == 429:
            metrics.extraction_rate_limited_total.labels(step="poll").inc()
            raise RateLimitedError("poll", parse_retry_after(response.headers))
        if not response.is_success:
            raise ExtractionServiceError(
                f"Operation status request failed ({response.status_code}): {response.text[:200]}"
            )
        try:
            payload = response.json()
        except ValueError as e:
            raise ExtractionServiceError(
                f"Operation status response is not JSON: {response.text[:200]}"
            ) from e
        if not isinstance(payload, dict):
            raise ExtractionServiceError("Operation status response is not a JSON object")
        return payload

    async def _wait_for_result(self, operation_url: str) -> dict[str, Any]:
        """Poll the operation until it reaches a terminal status."""
        max_polls = self.settings.extraction_max_polls
        polls = 0
        while True:
            payload = await self._with_rate_limit_retry("poll", self._poll, operation_url)
            polls += 1
            status = str(payload.get("status") or "")
            if status.lower() not in RUNNING_STATES:
                break
            if max_polls is not None and polls >= max_polls:
                raise ExtractionServiceError(
                    f"Analysis still {status} after {polls} polls", vendor_status=status
                )
            await self._sleep(self.settings.extraction_poll_interval_seconds)

        if status.lower() != SUCCEEDED:
            raise ExtractionServiceError(f"Analysis failed, status: {status}", vendor_status=status)
        logger.debug(f"Analysis operation finished after {polls} polls")
        return payload

    def _headers(self) -> dict[str, str]:
        return {"Ocp-Apim-Subscription-Key": self.settings.cu_key}

    def _map_fields(self, fields: dict[str, Any], raw: Any) -> CanonicalInvoice:
        """Flatten the analyzer's typed field tree into the canonical record."""
        items = []
        for entry in _array(fields.get("Items")):
            item = _object(entry)
            items.append(
                CanonicalLineItem(
                    product_code=_string(item.get("ProductCode")),
                    description=_string(item.get("ProductDescription")),
                    unit=_string(item.get("ProductUnit")),
                    unit_count=_string(item.get("UnitCount")),
                    quantity=_number(item.get("Quantity")),
                    # The analyzer reports the per-unit price as LinePrice on most layouts
                    unit_price=_first_number(item.get("LinePrice"), item.get("UnitPrice")),
                    line_price=_number(item.get("LinePrice")),
                    line_amount=_number(item.get("LineAmount")),
                    tax_indicator=_string(item.get("TaxIndicator")),
                    discount_code=_string(item.get("DiscountCode")),
                    additional_reference=_string(item.get("AdditionalReference")),
                )
            )

        tax_summary = [
            TaxSummaryEntry(
                base_amount=_number(_object(entry).get("TaxBaseAmount")),
                rate=_string(_object(entry).get("TaxRate")),
                amount=_number(_object(entry).get("TaxAmount")),
            )
            for entry in _array(fields.get("TaxSummary"))
        ]

        supplier_tax_id = normalize_tax_id(_string(fields.get("CompanyTaxId")))
        customer_tax_id = normalize_tax_id(_string(fields.get("CustomerTaxId")))

        return CanonicalInvoice(
            supplier_name=_string(fields.get("CompanyName")),
            supplier_address=_string(fields.get("CompanyAddress")),
            supplier_tax_id=supplier_tax_id,
            supplier_tax_id_valid=is_valid_tax_id(supplier_tax_id),
            branch_name=_string(fields.get("BranchName")),
            branch_address=_string(fields.get("BranchAddress")),
            branch_phone=_string(fields.get("BranchPhoneNumber")),
            branch_fax=_string(fields.get("BranchFaxNumber")),
            customer_name=_string(fields.get("CustomerName")),
            customer_address=_string(fields.get("CustomerAddress")),
            customer_tax_id=customer_tax_id,
            customer_tax_id_valid=is_valid_tax_id(customer_tax_id),
            customer_code=_string(fields.get("CustomerCode")),
            invoice_number=_string(fields.get("InvoiceNumber")),
            invoice_reference=_string(fields.get("InvoiceReference")),
            sale_date=_date(fields.get("SaleDate")),
            sale_time=_string(fields.get("SaleTime")),
            print_date=_date(fields.get("PrintDate")),
            print_time=_string(fields.get("PrintTime")),
            delivery_date=_date(fields.get("DeliveryDate")),
            delivery_time=_string(fields.get("DeliveryTime")),
            subtotal=_number(fields.get("SubtotalAmount")),
            total_amount=_number(fields.get("TotalAmount")),
            total_tax_amount=_number(fields.get("TotalTaxAmount")),
            total_discount_amount=_number(fields.get("TotalDiscountAmount")),
            cash_payment_amount=_number(fields.get("CashPaymentAmount")),
            cash_change_amount=_number(fields.get("CashChangeAmount")),
            currency=_string(fields.get("CurrencyCode")),
            package_count=_number(fields.get("PackageCount")),
            total_weight_kg=_string(fields.get("TotalWeightKg")),
            container_count=_number(fields.get("ContainerCount")),
            items=items,
            tax_summary=tax_summary,
            raw=raw,
        )


def _first_number(*fields: dict[str, Any] | None) -> int | float | None:
    for field in fields:
        value = _number(field)
        if value is not None:
            return value
    return None
