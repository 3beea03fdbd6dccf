"""Conversion of canonical extraction records into the persisted shape.

All monetary values are quantized to 2 decimal places and quantities to 3,
using ``Decimal`` from parse to storage so no binary floating point rounding
leaks into the stored figures.
"""

import logging
import math
import re
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from pydantic import BaseModel, Field

from services.extraction.schema import CanonicalInvoice, CanonicalLineItem

logger = logging.getLogger(__name__)

MONEY = Decimal("0.01")
QUANTITY = Decimal("0.001")

# Exclusive magnitude limits of the NUMERIC(12, 2) and NUMERIC(10, 3) columns
MONEY_LIMIT = Decimal("1e10")
QUANTITY_LIMIT = Decimal("1e7")

_NON_NUMERIC = re.compile(r"[^0-9.,\-]")


class NormalizedLineItem(BaseModel):
    """One line item ready to be persisted."""

    description: str | None = None
    product_code: str | None = None
    unit: str | None = None
    quantity: Decimal | None = None
    unit_price: Decimal | None = None
    line_price: Decimal | None = None
    total: Decimal | None = None
    tax_indicator: str | None = None
    discount_code: str | None = None
    additional_reference: str | None = None

    def is_empty(self) -> bool:
        return all(value is None for value in self.model_dump().values())


class NormalizedExtraction(BaseModel):
    """Extraction ready to be persisted, and published in the analyzed event."""

    supplier_name: str | None = None
    supplier_tax_id: str | None = None
    invoice_number: str | None = None
    issue_date: datetime | None = None
    total_amount: Decimal | None = None
    tax_amount: Decimal | None = None
    currency: str
    lines: list[NormalizedLineItem] = Field(default_factory=list)
    raw_response: dict[str, Any] = Field(default_factory=dict)


def parse_decimal(value: Any) -> Decimal | None:
    """Parse a vendor number into a Decimal.

    JSON numbers are taken as they are. Strings are stripped of anything
    that is not a digit, sign or separator; the rightmost of ``,`` and ``.``
    is the decimal point and the other one a thousands separator. A lone
    comma is a decimal point, so ``"1.234,56"`` and ``"1234,56"`` both give
    ``1234.56``. Unparseable and non-finite input gives None.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        return Decimal(str(value))

    if not isinstance(value, str):
        return None

    cleaned = _NON_NUMERIC.sub("", value)
    if not cleaned:
        return None

    if "," in cleaned and "." in cleaned:
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        if cleaned.count(",") > 1:
            cleaned = cleaned.replace(",", "")
        else:
            cleaned = cleaned.replace(",", ".")
    elif cleaned.count(".") > 1:
        cleaned = cleaned.replace(".", "")

    try:
        parsed = Decimal(cleaned)
    except InvalidOperation:
        return None
    return parsed if parsed.is_finite() else None


def quantize_within(value: Decimal | None, exponent: Decimal, limit: Decimal) -> Decimal | None:
    """Round to ``exponent``; values the column cannot hold give None."""
    if value is None or abs(value) >= limit:
        return None
    return value.quantize(exponent, rounding=ROUND_HALF_UP)


def to_money(value: Any) -> Decimal | None:
    return quantize_within(parse_decimal(value), MONEY, MONEY_LIMIT)


def to_quantity(value: Any) -> Decimal | None:
    return quantize_within(parse_decimal(value), QUANTITY, QUANTITY_LIMIT)


def normalize_text(value: Any) -> str | None:
    """Trim strings, stringify numbers, and turn blanks into None."""
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def parse_instant(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


class ResultNormalizer:
    """Turns a ``CanonicalInvoice`` into a ``NormalizedExtraction``."""

    def __init__(self, default_currency: str = "EUR") -> None:
        self.default_currency = default_currency.upper()

    def normalize(self, invoice: CanonicalInvoice) -> NormalizedExtraction:
        lines = [self.normalize_line(item) for item in invoice.items]
        kept = [line for line in lines if not line.is_empty()]
        if len(kept) < len(lines):
            logger.debug(f"Dropped {len(lines) - len(kept)} empty line items")

        total = to_money(invoice.total_amount)
        currency = normalize_text(invoice.currency)

        return NormalizedExtraction(
            supplier_name=normalize_text(invoice.supplier_name),
            supplier_tax_id=invoice.supplier_tax_id,
            invoice_number=normalize_text(invoice.invoice_number),
            issue_date=parse_instant(
                invoice.sale_date or invoice.print_date or invoice.delivery_date
            ),
            total_amount=total,
            tax_amount=self._tax_amount(invoice, total),
            currency=currency.upper() if currency else self.default_currency,
            lines=kept,
            raw_response=invoice.model_dump(mode="json"),
        )

    def normalize_line(self, item: CanonicalLineItem) -> NormalizedLineItem:
        quantity = to_quantity(item.quantity)
        unit_price = to_money(item.unit_price)
        total = to_money(item.line_amount)
        if total is None and quantity is not None and unit_price is not None:
            total = quantize_within(quantity * unit_price, MONEY, MONEY_LIMIT)

        return NormalizedLineItem(
            description=normalize_text(item.description),
            product_code=normalize_text(item.product_code),
            unit=normalize_text(item.unit),
            quantity=quantity,
            unit_price=unit_price,
            line_price=to_money(item.line_price),
            total=total,
            tax_indicator=normalize_text(item.tax_indicator),
            discount_code=normalize_text(item.discount_code),
            additional_reference=normalize_text(item.additional_reference),
        )

    def _tax_amount(self, invoice: CanonicalInvoice, total: Decimal | None) -> Decimal | None:
        """Reported tax, else the tax summary sum, else total minus subtotal."""
        reported = to_money(invoice.total_tax_amount)
        if reported is not None:
            return reported

        summary = [to_money(entry.amount) for entry in invoice.tax_summary]
        amounts = [amount for amount in summary if amount is not None]
        if amounts:
            return quantize_within(sum(amounts, Decimal("0.00")), MONEY, MONEY_LIMIT)

        subtotal = to_money(invoice.subtotal)
        if total is not None and subtotal is not None:
            return quantize_within(total - subtotal, MONEY, MONEY_LIMIT)
        return None
