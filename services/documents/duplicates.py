"""Duplicate invoice detection against the invoice service of record.

The check is a best-effort safeguard: when the service of record cannot be
reached, or answers with an error, the invoice is treated as new (fail-open).
"""

import logging
from typing import Any

from pydantic import BaseModel

from services.messaging.bus import MessageBus
from services.messaging.subjects import SuppliersSubjects
from services.shared import metrics

logger = logging.getLogger(__name__)


class DuplicateCheckResult(BaseModel):
    exists: bool
    invoice_id: str | None = None


class DuplicateChecker:
    """Asks the service of record whether an invoice is already recorded."""

    def __init__(self, bus: MessageBus, timeout_seconds: float = 5.0) -> None:
        self.bus = bus
        self.timeout_seconds = timeout_seconds

    async def exists(
        self, invoice_number: str, document_type: str, tenant_id: str
    ) -> DuplicateCheckResult:
        """Look up an invoice by number and document type within a tenant.

        Never raises: any failure of the request is logged and reported as
        "does not exist".
        """
        payload = {
            "invoiceNumber": invoice_number,
            "documentType": document_type,
            "enterpriseId": tenant_id,
        }
        try:
            reply = await self.bus.request(
                SuppliersSubjects.INVOICE_EXISTS, payload, timeout=self.timeout_seconds
            )
            result = self._parse_reply(reply)
        except Exception as e:
            logger.warning(
                f"Duplicate check for invoice {invoice_number} unavailable, "
                f"treating as new: {e}"
            )
            metrics.duplicate_checks_total.labels(outcome="unavailable").inc()
            return DuplicateCheckResult(exists=False)

        metrics.duplicate_checks_total.labels(
            outcome="duplicate" if result.exists else "unique"
        ).inc()
        return result

    @staticmethod
    def _parse_reply(reply: Any) -> DuplicateCheckResult:
        if not isinstance(reply, dict):
            raise ValueError(f"Unexpected duplicate check reply: {reply!r}")
        invoice_id = reply.get("invoiceId")
        return DuplicateCheckResult(
            exists=bool(reply.get("exists")),
            invoice_id=str(invoice_id) if invoice_id is not None else None,
        )
