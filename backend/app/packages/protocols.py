"""Collaborator protocols required by the package ledger components."""
from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import ContextManager, Iterable, Optional, Protocol, Sequence

from .models import (
    Advertiser,
    BillingRecord,
    LedgerAuditEvent,
    PackageDefinition,
    PackagePurchase,
    PackageRequest,
    PackageRequestStatus,
    PackageState,
    PurchaseAggregate,
    RenewalCandidate,
)

logger = logging.getLogger(__name__)


class PurchaseTransaction(Protocol):
    """Write scope holding the lock on a single purchase.

    Changes staged through the transaction become visible together when the
    owning context manager exits cleanly and are discarded if it raises.
    """

    purchase: Optional[PackagePurchase]

    def get_package_definition(self, definition_id: str) -> Optional[PackageDefinition]:
        ...

    def save_purchase(self, purchase: PackagePurchase) -> PackagePurchase:
        ...

    def append_billing_record(
        self,
        *,
        purchase_id: str,
        amount: Decimal,
        discount: Decimal,
        payment_mode: Optional[str],
        transaction_reference: Optional[str],
        notes: Optional[str],
        created_at: datetime,
    ) -> BillingRecord:
        ...


class PackageRepository(Protocol):
    """Persistence operations required by the package ledger."""

    def get_advertiser(self, advertiser_id: str) -> Optional[Advertiser]:
        ...

    def get_package_definition(self, definition_id: str) -> Optional[PackageDefinition]:
        ...

    def list_package_definitions(self, *, include_inactive: bool = False) -> Sequence[PackageDefinition]:
        ...

    def save_package_definition(self, definition: PackageDefinition) -> PackageDefinition:
        ...

    def delete_package_definition(self, definition_id: str) -> bool:
        ...

    def count_purchases_for_definition(self, definition_id: str) -> int:
        ...

    def insert_purchase(self, purchase: PackagePurchase) -> PackagePurchase:
        ...

    def get_purchase(self, purchase_id: str) -> Optional[PackagePurchase]:
        ...

    def purchase_transaction(self, purchase_id: str) -> ContextManager[PurchaseTransaction]:
        ...

    def expire_purchases(
        self,
        *,
        now: datetime,
        purchase_ids: Optional[Iterable[str]] = None,
    ) -> Sequence[str]:
        """Move ACTIVE purchases with ``expiry_date < now`` to EXPIRED.

        Returns the ids that were transitioned by this call only.
        """

    def load_purchase_aggregates(
        self,
        *,
        purchase_ids: Optional[Iterable[str]] = None,
        advertiser_id: Optional[str] = None,
        states: Optional[Iterable[PackageState]] = None,
    ) -> Sequence[PurchaseAggregate]:
        ...

    def list_billing_records(
        self,
        *,
        advertiser_id: Optional[str] = None,
        purchase_id: Optional[str] = None,
    ) -> Sequence[BillingRecord]:
        ...

    def get_billing_record(self, record_id: int) -> Optional[BillingRecord]:
        ...

    def insert_package_request(self, request: PackageRequest) -> Optional[PackageRequest]:
        """Store a PENDING request; ``None`` when the advertiser already has one."""

    def get_package_request(self, request_id: str) -> Optional[PackageRequest]:
        ...

    def list_package_requests(
        self,
        *,
        status: Optional[PackageRequestStatus] = None,
        advertiser_id: Optional[str] = None,
    ) -> Sequence[PackageRequest]:
        ...

    def transition_package_request(
        self,
        request_id: str,
        *,
        from_status: PackageRequestStatus,
        to_status: PackageRequestStatus,
        purchase_id: Optional[str] = None,
        updated_at: datetime,
    ) -> Optional[PackageRequest]:
        """Compare-and-set the request status; ``None`` when it was not ``from_status``."""


class LedgerEventLogger(Protocol):
    """Captures structured ledger audit events."""

    def log(self, event: LedgerAuditEvent) -> None:
        ...


class RenewalNotifier(Protocol):
    """Delivers renewal reminders to advertisers."""

    def send_renewal_reminder(self, candidate: RenewalCandidate) -> None:
        ...


class ReminderWatermarkStore(Protocol):
    """Per-purchase per-day record of delivered renewal reminders."""

    def claim(self, purchase_id: str, reminder_date: date) -> bool:
        """Reserve the reminder slot; ``False`` when it was already taken."""

    def release(self, purchase_id: str, reminder_date: date) -> None:
        ...


def log_audit_event(event_logger: Optional[LedgerEventLogger], event: LedgerAuditEvent) -> None:
    """Forward an audit event without letting audit failures undo a committed change."""

    if event_logger is None:
        return
    try:
        event_logger.log(event)
    except Exception:
        logger.exception(
            "Failed to record ledger audit event",
            extra={"event_type": event.event_type.value, "purchase_id": event.purchase_id},
        )


__all__ = [
    "LedgerEventLogger",
    "PackageRepository",
    "PurchaseTransaction",
    "ReminderWatermarkStore",
    "RenewalNotifier",
    "log_audit_event",
]
