"""Canonical invoice record produced by every extraction provider.

Values are kept as close to the vendor output as possible. Numbers may still
be locale-formatted strings; turning them into fixed-precision decimals is
the normalizer's job.
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

# Vendor numbers arrive either as JSON numbers or as printed strings ("1.234,56")
RawNumber = int | float | str | None


class CanonicalLineItem(BaseModel):
    """One product/service row as reported by the vendor."""

    product_code: str | None = None
    description: str | None = None
    unit: str | None = None
    unit_count: str | None = None
    quantity: RawNumber = None
    unit_price: RawNumber = None
    line_price: RawNumber = None
    line_amount: RawNumber = Field(None, description="Explicit line total, when printed")
    tax_indicator: str | None = None
    discount_code: str | None = None
    additional_reference: str | None = None


class TaxSummaryEntry(BaseModel):
    """One row of the document's tax breakdown."""

    base_amount: RawNumber = None
    rate: str | None = None
    amount: RawNumber = None


class CanonicalInvoice(BaseModel):
    """Vendor-agnostic intermediate representation of an invoice or delivery note.

    Dates are ISO-8601 instants (``2024-01-15T00:00:00Z``) or None. Tax ids
    are normalized; the ``*_tax_id_valid`` flags tell whether the normalized
    value also passed validation.
    """

    # Supplier
    supplier_name: str | None = None
    supplier_address: str | None = None
    supplier_tax_id: str | None = None
    supplier_tax_id_valid: bool = False
    branch_name: str | None = None
    branch_address: str | None = None
    branch_phone: str | None = None
    branch_fax: str | None = None

    # Customer
    customer_name: str | None = None
    customer_address: str | None = None
    customer_tax_id: str | None = None
    customer_tax_id_valid: bool = False
    customer_code: str | None = None

    # Document identity and dates
    invoice_number: str | None = None
    invoice_reference: str | None = None
    sale_date: str | None = None
    sale_time: str | None = None
    print_date: str | None = None
    print_time: str | None = None
    delivery_date: str | None = None
    delivery_time: str | None = None

    # Totals
    subtotal: RawNumber = None
    total_amount: RawNumber = None
    total_tax_amount: RawNumber = None
    total_discount_amount: RawNumber = None
    cash_payment_amount: RawNumber = None
    cash_change_amount: RawNumber = None
    currency: str | None = None

    # Logistics
    package_count: RawNumber = None
    total_weight_kg: str | None = None
    container_count: RawNumber = None

    items: list[CanonicalLineItem] = Field(default_factory=list)
    tax_summary: list[TaxSummaryEntry] = Field(default_factory=list)

    raw: Any = Field(None, description="Untouched vendor payload, kept for audit")


def to_iso_instant(value: Any) -> str | None:
    """Convert a date or date-time string into an ISO-8601 UTC instant.

    Dates without a time are taken as midnight UTC. Anything that cannot be
    parsed yields None instead of raising.
    """
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.strip())
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
