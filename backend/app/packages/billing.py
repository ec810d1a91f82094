"""Append-only billing ledger writer."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from .models import ZERO, BillingRecord
from .protocols import PurchaseTransaction

logger = logging.getLogger(__name__)

INVOICE_PREFIX = "INV-"
INVOICE_DIGITS = 10


def format_invoice_number(record_id: int) -> str:
    """Return the fixed-length invoice number for a billing record id."""

    if record_id < 1:
        raise ValueError(f"record_id must be >= 1, got {record_id}")
    if record_id >= 10**INVOICE_DIGITS:
        raise ValueError(f"record_id {record_id} exceeds the invoice number range")
    return f"{INVOICE_PREFIX}{record_id:0{INVOICE_DIGITS}d}"


class BillingRecorder:
    """Appends billing records inside a purchase transaction.

    Records are never edited or removed. The recorder only accepts an open
    :class:`PurchaseTransaction`, which ties every record to the payment that
    produced it.
    """

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def append(
        self,
        transaction: PurchaseTransaction,
        *,
        purchase_id: str,
        amount: Decimal,
        discount: Decimal = ZERO,
        payment_mode: Optional[str] = None,
        transaction_reference: Optional[str] = None,
        notes: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> BillingRecord:
        if amount <= 0:
            raise ValueError("billing record amount must be positive")
        if discount < 0:
            raise ValueError("billing record discount must be >= 0")
        if transaction.purchase is None or transaction.purchase.purchase_id != purchase_id:
            raise ValueError("billing records must be appended within the purchase's own transaction")

        record = transaction.append_billing_record(
            purchase_id=purchase_id,
            amount=amount,
            discount=discount,
            payment_mode=payment_mode,
            transaction_reference=transaction_reference,
            notes=notes,
            created_at=created_at or self._clock(),
        )
        logger.debug(
            "Billing record appended",
            extra={"record_id": record.record_id, "purchase_id": purchase_id, "amount": str(amount)},
        )
        return record

    @staticmethod
    def invoice_number(record: BillingRecord) -> str:
        return format_invoice_number(record.record_id)


__all__ = ["BillingRecorder", "INVOICE_PREFIX", "format_invoice_number"]
