"""Thread-safe in-memory storage suitable for tests and local development."""
from __future__ import annotations

import itertools
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from threading import Lock, RLock
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from .models import (
    Advertiser,
    BillingRecord,
    PackageDefinition,
    PackagePurchase,
    PackageRequest,
    PackageRequestStatus,
    PackageState,
    PurchaseAggregate,
)


class _InMemoryPurchaseTransaction:
    def __init__(self, repository: "InMemoryPackageRepository", purchase: Optional[PackagePurchase]) -> None:
        self._repository = repository
        self.purchase = purchase
        self.staged_purchase: Optional[PackagePurchase] = None
        self.staged_records: List[BillingRecord] = []

    def get_package_definition(self, definition_id: str) -> Optional[PackageDefinition]:
        return self._repository.get_package_definition(definition_id)

    def save_purchase(self, purchase: PackagePurchase) -> PackagePurchase:
        if self.purchase is None or purchase.purchase_id != self.purchase.purchase_id:
            raise ValueError("transaction can only save the purchase it locked")
        self.staged_purchase = purchase
        return purchase

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
        record = BillingRecord(
            record_id=self._repository._next_record_id(),
            purchase_id=purchase_id,
            amount=amount,
            discount=discount,
            payment_mode=payment_mode,
            transaction_reference=transaction_reference,
            notes=notes,
            created_at=created_at,
        )
        self.staged_records.append(record)
        return record


class InMemoryPackageRepository:
    """Package repository keeping committed state in dictionaries.

    Writers on the same purchase are serialized with a per-purchase lock.
    Readers copy the committed state under a short store lock, so they see a
    consistent snapshot and never wait on a writer's validation work.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._purchase_locks: Dict[str, Lock] = {}
        self._advertisers: Dict[str, Advertiser] = {}
        self._definitions: Dict[str, PackageDefinition] = {}
        self._purchases: Dict[str, PackagePurchase] = {}
        self._records: Dict[int, BillingRecord] = {}
        self._requests: Dict[str, PackageRequest] = {}
        self._record_ids = itertools.count(1)

    def add_advertiser(self, advertiser: Advertiser) -> Advertiser:
        with self._lock:
            self._advertisers[advertiser.advertiser_id] = advertiser
        return advertiser

    def get_advertiser(self, advertiser_id: str) -> Optional[Advertiser]:
        with self._lock:
            return self._advertisers.get(advertiser_id)

    def get_package_definition(self, definition_id: str) -> Optional[PackageDefinition]:
        with self._lock:
            return self._definitions.get(definition_id)

    def list_package_definitions(self, *, include_inactive: bool = False) -> Sequence[PackageDefinition]:
        with self._lock:
            definitions = list(self._definitions.values())
        return [definition for definition in definitions if include_inactive or definition.is_active]

    def save_package_definition(self, definition: PackageDefinition) -> PackageDefinition:
        with self._lock:
            self._definitions[definition.definition_id] = definition
        return definition

    def delete_package_definition(self, definition_id: str) -> bool:
        with self._lock:
            return self._definitions.pop(definition_id, None) is not None

    def count_purchases_for_definition(self, definition_id: str) -> int:
        with self._lock:
            return sum(
                1 for purchase in self._purchases.values() if purchase.package_definition_id == definition_id
            )

    def insert_purchase(self, purchase: PackagePurchase) -> PackagePurchase:
        with self._lock:
            if purchase.purchase_id in self._purchases:
                raise ValueError(f"purchase {purchase.purchase_id!r} already exists")
            self._purchases[purchase.purchase_id] = purchase
        return purchase

    def get_purchase(self, purchase_id: str) -> Optional[PackagePurchase]:
        with self._lock:
            return self._purchases.get(purchase_id)

    @contextmanager
    def purchase_transaction(self, purchase_id: str) -> Iterator[_InMemoryPurchaseTransaction]:
        with self._lock_for(purchase_id):
            transaction = _InMemoryPurchaseTransaction(self, self.get_purchase(purchase_id))
            yield transaction
            with self._lock:
                if transaction.staged_purchase is not None:
                    self._purchases[purchase_id] = transaction.staged_purchase
                for record in transaction.staged_records:
                    self._records[record.record_id] = record

    def expire_purchases(
        self,
        *,
        now: datetime,
        purchase_ids: Optional[Iterable[str]] = None,
    ) -> Sequence[str]:
        with self._lock:
            if purchase_ids is None:
                candidates = [p.purchase_id for p in self._purchases.values() if p.is_overdue(now)]
            else:
                candidates = list(purchase_ids)

        expired: List[str] = []
        for purchase_id in sorted(candidates):
            with self._lock_for(purchase_id), self._lock:
                purchase = self._purchases.get(purchase_id)
                if purchase is None or not purchase.is_overdue(now):
                    continue
                self._purchases[purchase_id] = purchase.model_copy(
                    update={"state": PackageState.EXPIRED, "updated_at": now}
                )
                expired.append(purchase_id)
        return expired

    def load_purchase_aggregates(
        self,
        *,
        purchase_ids: Optional[Iterable[str]] = None,
        advertiser_id: Optional[str] = None,
        states: Optional[Iterable[PackageState]] = None,
    ) -> Sequence[PurchaseAggregate]:
        purchases, definitions, advertisers, records = self._snapshot()
        wanted_ids: Optional[Set[str]] = set(purchase_ids) if purchase_ids is not None else None
        wanted_states: Optional[Set[PackageState]] = set(states) if states is not None else None

        records_by_purchase: Dict[str, List[BillingRecord]] = {}
        for record in records:
            records_by_purchase.setdefault(record.purchase_id, []).append(record)

        aggregates: List[PurchaseAggregate] = []
        for purchase in purchases:
            if wanted_ids is not None and purchase.purchase_id not in wanted_ids:
                continue
            if advertiser_id is not None and purchase.advertiser_id != advertiser_id:
                continue
            if wanted_states is not None and purchase.state not in wanted_states:
                continue
            aggregates.append(
                PurchaseAggregate(
                    purchase=purchase,
                    definition=definitions.get(purchase.package_definition_id),
                    advertiser=advertisers.get(purchase.advertiser_id),
                    billing_records=tuple(records_by_purchase.get(purchase.purchase_id, ())),
                )
            )
        return aggregates

    def list_billing_records(
        self,
        *,
        advertiser_id: Optional[str] = None,
        purchase_id: Optional[str] = None,
    ) -> Sequence[BillingRecord]:
        purchases, _, _, records = self._snapshot()
        owners = {purchase.purchase_id: purchase.advertiser_id for purchase in purchases}
        return [
            record
            for record in records
            if (purchase_id is None or record.purchase_id == purchase_id)
            and (advertiser_id is None or owners.get(record.purchase_id) == advertiser_id)
        ]

    def get_billing_record(self, record_id: int) -> Optional[BillingRecord]:
        with self._lock:
            return self._records.get(record_id)

    def insert_package_request(self, request: PackageRequest) -> Optional[PackageRequest]:
        with self._lock:
            if request.request_id in self._requests:
                raise ValueError(f"package request {request.request_id!r} already exists")
            if request.status == PackageRequestStatus.PENDING and any(
                existing.advertiser_id == request.advertiser_id
                and existing.status == PackageRequestStatus.PENDING
                for existing in self._requests.values()
            ):
                return None
            self._requests[request.request_id] = request
        return request

    def get_package_request(self, request_id: str) -> Optional[PackageRequest]:
        with self._lock:
            return self._requests.get(request_id)

    def list_package_requests(
        self,
        *,
        status: Optional[PackageRequestStatus] = None,
        advertiser_id: Optional[str] = None,
    ) -> Sequence[PackageRequest]:
        with self._lock:
            requests = list(self._requests.values())
        matching = [
            request
            for request in requests
            if (status is None or request.status == status)
            and (advertiser_id is None or request.advertiser_id == advertiser_id)
        ]
        return sorted(matching, key=lambda request: request.created_at, reverse=True)

    def transition_package_request(
        self,
        request_id: str,
        *,
        from_status: PackageRequestStatus,
        to_status: PackageRequestStatus,
        purchase_id: Optional[str] = None,
        updated_at: datetime,
    ) -> Optional[PackageRequest]:
        with self._lock:
            request = self._requests.get(request_id)
            if request is None or request.status != from_status:
                return None
            updated = request.model_copy(
                update={
                    "status": to_status,
                    "purchase_id": purchase_id if purchase_id is not None else request.purchase_id,
                    "updated_at": updated_at,
                }
            )
            self._requests[request_id] = updated
            return updated

    def _snapshot(
        self,
    ) -> Tuple[List[PackagePurchase], Dict[str, PackageDefinition], Dict[str, Advertiser], List[BillingRecord]]:
        with self._lock:
            return (
                list(self._purchases.values()),
                dict(self._definitions),
                dict(self._advertisers),
                sorted(self._records.values(), key=lambda record: record.record_id),
            )

    def _lock_for(self, purchase_id: str) -> Lock:
        with self._lock:
            return self._purchase_locks.setdefault(purchase_id, Lock())

    def _next_record_id(self) -> int:
        with self._lock:
            return next(self._record_ids)


class InMemoryReminderWatermarkStore:
    """Reminder watermark store backed by a set of ``(purchase_id, date)`` pairs."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._claimed: Set[Tuple[str, date]] = set()

    def claim(self, purchase_id: str, reminder_date: date) -> bool:
        key = (purchase_id, reminder_date)
        with self._lock:
            if key in self._claimed:
                return False
            self._claimed.add(key)
            return True

    def release(self, purchase_id: str, reminder_date: date) -> None:
        with self._lock:
            self._claimed.discard((purchase_id, reminder_date))


__all__ = ["InMemoryPackageRepository", "InMemoryReminderWatermarkStore"]
