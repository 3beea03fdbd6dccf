"""OpenAI-based extraction provider for invoice field extraction.

Sends the document image to a vision-capable model and asks for a strict
JSON schema response, which is then mapped to the canonical record.

Includes retry logic with a linearly growing delay for transient API errors.
"""

import asyncio
import base64
import json
import logging
from typing import Any, Awaitable, Callable

from openai import APIError, AsyncOpenAI
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from services.extraction.base import ExtractionProvider
from services.extraction.schema import (
    CanonicalInvoice,
    CanonicalLineItem,
    to_iso_instant,
)
from services.shared.config import Settings
from services.shared.errors import ExtractionServiceError
from services.shared.taxid import is_valid_tax_id, normalize_tax_id

logger = logging.getLogger(__name__)

_NULLABLE_STRING = {"type": ["string", "null"]}
_NULLABLE_NUMBER = {"type": ["number", "string", "null"]}


class OpenAIExtractionProvider(ExtractionProvider):
    """Extraction through an OpenAI vision model with structured outputs.

    Requires APP_OPENAI_API_KEY.
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize OpenAI extraction provider.

        Args:
            settings: Application settings
        """
        super().__init__(settings)
        self._client: AsyncOpenAI | None = None
        self._sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    @property
    def provider_name(self) -> str:
        return "openai"

    def is_available(self) -> bool:
        """Check if an OpenAI API key is configured."""
        return bool(self.settings.openai_api_key)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.settings.openai_api_key,
                timeout=self.settings.openai_timeout_seconds,
                max_retries=0,  # retries are handled here
            )
        return self._client

    async def analyze(
        self,
        file_bytes: bytes,
        mime_type: str,
        document_url: str | None,
        notes: str | None = None,
    ) -> CanonicalInvoice | None:
        """Extract a canonical record from the document image.

        The image is always sent inline; ``document_url`` is not needed.

        Raises:
            ExtractionServiceError: Missing API key, exhausted retries or an
                unparseable model response
        """
        if not self.is_available():
            raise ExtractionServiceError("APP_OPENAI_API_KEY is not configured")

        image_url = f"data:{mime_type};base64,{base64.b64encode(file_bytes).decode('ascii')}"
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(APIError),
            wait=wait_incrementing(start=0.3, increment=0.3),
            stop=stop_after_attempt(self.settings.openai_max_retries + 1),
            sleep=self._sleep,
            before_sleep=lambda state: logger.warning(
                f"OpenAI attempt {state.attempt_number} failed: {state.outcome.exception()}"
            ),
            reraise=True,
        )
        try:
            response = await retrying(self._request, self._build_prompt(notes), image_url)
        except APIError as e:
            raise ExtractionServiceError(f"OpenAI extraction failed: {e}") from e

        return self._map_response(self._parse_response(response))

    async def _request(self, prompt: str, image_url: str) -> Any:
        return await self._get_client().responses.create(
            model=self.settings.openai_model,
            input=[
                {
                    "role": "user",
                    "content": [
                        {"type": "input_text", "text": prompt},
                        {"type": "input_image", "image_url": image_url, "detail": "auto"},
                    ],
                }
            ],
            text={
                "format": {
                    "type": "json_schema",
                    "name": "invoice_extraction",
                    "schema": self._get_invoice_schema(),
                    "strict": True,
                }
            },
            max_output_tokens=1200,
        )

    def _parse_response(self, response: Any) -> dict[str, Any]:
        """Read the JSON document out of a Responses API result."""
        text = getattr(response, "output_text", None)
        if not text:
            raise ExtractionServiceError("OpenAI returned an empty response")
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as e:
            raise ExtractionServiceError(f"OpenAI returned invalid JSON: {e}") from e
        if not isinstance(parsed, dict):
            raise ExtractionServiceError("OpenAI returned an unexpected response")
        return parsed

    def _map_response(self, data: dict[str, Any]) -> CanonicalInvoice:
        supplier = data.get("supplier") or {}
        customer = data.get("customer") or {}
        invoice = data.get("invoice") or {}
        items = data.get("items") if isinstance(data.get("items"), list) else []

        supplier_tax_id = normalize_tax_id(_text(supplier.get("tax_id")))
        customer_tax_id = normalize_tax_id(_text(customer.get("tax_id")))

        return CanonicalInvoice(
            supplier_name=_text(supplier.get("name")),
            supplier_address=_text(supplier.get("address")),
            supplier_tax_id=supplier_tax_id,
            supplier_tax_id_valid=is_valid_tax_id(supplier_tax_id),
            branch_phone=_text(supplier.get("phone")),
            customer_name=_text(customer.get("name")),
            customer_address=_text(customer.get("address")),
            customer_tax_id=customer_tax_id,
            customer_tax_id_valid=is_valid_tax_id(customer_tax_id),
            invoice_number=_text(invoice.get("number")),
            sale_date=to_iso_instant(invoice.get("issue_date")),
            subtotal=_raw_number(invoice.get("subtotal")),
            total_tax_amount=_raw_number(invoice.get("tax")),
            total_amount=_raw_number(invoice.get("total")),
            currency=_text(invoice.get("currency")),
            items=[
                CanonicalLineItem(
                    product_code=_text(item.get("code")),
                    description=_text(item.get("description")),
                    quantity=_raw_number(item.get("quantity")),
                    unit_price=_raw_number(item.get("unit_price")),
                    line_amount=_raw_number(item.get("total")),
                    additional_reference=_text(item.get("delivery_note")),
                )
                for item in items
                if isinstance(item, dict)
            ],
            raw=data,
        )

    def _build_prompt(self, notes: str | None) -> str:
        """Build the extraction prompt, with the submitter's notes appended."""
        prompt = """You are an expert in reading commercial invoices and delivery notes.
Extract ALL structured data from the attached document and return ONLY the JSON object
described by the schema.

SUPPLIER:
- The supplier is usually printed at the top of the document.
- tax_id: look for "NIF", "CIF", "N.I.F.", "VAT", "Tax ID". Valid formats include
  A12345678, B-12/345678, ESA12345678 and 12345678A. Use null when absent.

INVOICE:
- number: "Factura no", "Invoice", "Albaran", "Doc." and similar labels.
- issue_date: ISO 8601 (YYYY-MM-DD).
- subtotal / tax / total: numbers only, no currency symbols, dot as decimal separator.
- currency: ISO 4217 code; EUR when the document is Spanish and shows no other currency.

ITEMS:
- One entry per product or service row, top to bottom. Skip subtotal and tax rows.
- description: copy the text exactly as printed, do not summarize.
- quantity, unit_price, total: dot as decimal separator ("28,5 kg" -> 28.5).
- delivery_note: the delivery note number the row belongs to, when printed.

Use null for anything not present in the document. Never invent data."""
        if notes:
            prompt += f"\n\nADDITIONAL CONTEXT:\n{notes}"
        return prompt

    def _get_invoice_schema(self) -> dict[str, Any]:
        """JSON schema for the strict structured output."""

        def obj(properties: dict[str, Any]) -> dict[str, Any]:
            return {
                "type": "object",
                "properties": properties,
                "required": list(properties),
                "additionalProperties": False,
            }

        return obj(
            {
                "supplier": obj(
                    {
                        "name": _NULLABLE_STRING,
                        "tax_id": _NULLABLE_STRING,
                        "address": _NULLABLE_STRING,
                        "phone": _NULLABLE_STRING,
                    }
                ),
                "customer": obj(
                    {
                        "name": _NULLABLE_STRING,
                        "tax_id": _NULLABLE_STRING,
                        "address": _NULLABLE_STRING,
                    }
                ),
                "invoice": obj(
                    {
                        "number": _NULLABLE_STRING,
                        "issue_date": _NULLABLE_STRING,
                        "subtotal": _NULLABLE_NUMBER,
                        "tax": _NULLABLE_NUMBER,
                        "total": _NULLABLE_NUMBER,
                        "currency": _NULLABLE_STRING,
                    }
                ),
                "items": {
                    "type": "array",
                    "items": obj(
                        {
                            "delivery_note": _NULLABLE_STRING,
                            "code": _NULLABLE_STRING,
                            "description": _NULLABLE_STRING,
                            "quantity": _NULLABLE_NUMBER,
                            "unit_price": _NULLABLE_NUMBER,
                            "total": _NULLABLE_NUMBER,
                        }
                    ),
                },
            }
        )


def _text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _raw_number(value: Any) -> int | float | str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, str)):
        return value
    return None
