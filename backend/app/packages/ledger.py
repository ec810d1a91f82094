"""Subscription ledger owning package purchases and their state machine."""
from __future__ import annotations

import calendar
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, List, Optional, Tuple, Union
from uuid import uuid4

from .billing import BillingRecorder, format_invoice_number
from .exceptions import (
    InactivePackage,
    InvalidStateTransition,
    NotFound,
    OverpaymentError,
    PendingRequestExists,
    RequestNotPending,
)
from .models import (
    ZERO,
    ActivationPolicy,
    BillingRecord,
    Invoice,
    LedgerAuditEvent,
    LedgerAuditEventType,
    PackagePurchase,
    PackageRequest,
    PackageRequestStatus,
    PackageState,
    PurchaseAggregate,
)
from .protocols import LedgerEventLogger, PackageRepository, log_audit_event

logger = logging.getLogger(__name__)

Amount = Union[Decimal, int, str]

_OPEN_STATES = frozenset({PackageState.PENDING, PackageState.ACTIVE})


def add_months(value: datetime, months: int) -> datetime:
    """Shift ``value`` by calendar months, clamping to the end of short months."""

    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


class SubscriptionLedger:
    """Creates purchases, applies payments and drives lifecycle transitions."""

    def __init__(
        self,
        repository: PackageRepository,
        *,
        recorder: Optional[BillingRecorder] = None,
        event_logger: Optional[LedgerEventLogger] = None,
        activation_policy: ActivationPolicy = ActivationPolicy.FIRST_PAYMENT,
        amount_tolerance: Decimal = Decimal("0.01"),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if amount_tolerance < 0:
            raise ValueError("amount_tolerance must be >= 0")
        self._repository = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._recorder = recorder or BillingRecorder(clock=self._clock)
        self._event_logger = event_logger
        self._activation_policy = activation_policy
        self._tolerance = amount_tolerance

    @property
    def activation_policy(self) -> ActivationPolicy:
        return self._activation_policy

    @property
    def amount_tolerance(self) -> Decimal:
        return self._tolerance

    def _now(self) -> datetime:
        return self._clock()

    def create_purchase(
        self,
        advertiser_id: str,
        package_definition_id: str,
        *,
        discount: Amount = ZERO,
        payment_due_date: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> PackagePurchase:
        advertiser = self._repository.get_advertiser(advertiser_id)
        if advertiser is None:
            raise NotFound("advertiser", advertiser_id)
        definition = self._repository.get_package_definition(package_definition_id)
        if definition is None:
            raise NotFound("package definition", package_definition_id)
        if not definition.is_active:
            raise InactivePackage(definition.definition_id)

        reduction, price = _apply_discount(definition.price, discount)

        now = self._now()
        purchase = PackagePurchase(
            purchase_id=f"pp_{uuid4().hex}",
            advertiser_id=advertiser.advertiser_id,
            package_definition_id=definition.definition_id,
            state=PackageState.PENDING,
            price=price,
            discount=reduction,
            amount_paid=ZERO,
            pending_amount=price,
            purchase_date=now,
            payment_due_date=payment_due_date,
            created_at=now,
            updated_at=now,
        )
        # Nothing is owed on a free package, so no payment will ever arrive to activate it.
        if price <= 0:
            purchase = purchase.model_copy(
                update={
                    "state": PackageState.ACTIVE,
                    "activated_at": now,
                    "expiry_date": add_months(now, definition.duration_months),
                }
            )
        stored = self._repository.insert_purchase(purchase)

        logger.info(
            "Package purchase created",
            extra={
                "purchase_id": stored.purchase_id,
                "advertiser_id": stored.advertiser_id,
                "definition_id": stored.package_definition_id,
                "state": stored.state.value,
            },
        )
        log_audit_event(
            self._event_logger,
            LedgerAuditEvent(
                event_type=LedgerAuditEventType.PURCHASE_CREATED,
                purchase_id=stored.purchase_id,
                definition_id=stored.package_definition_id,
                actor_id=actor_id,
                metadata={
                    "advertiser_id": stored.advertiser_id,
                    "price": str(stored.price),
                    "discount": str(stored.discount),
                },
                occurred_at=now,
            ),
        )
        return stored

    def record_payment(
        self,
        purchase_id: str,
        amount: Amount,
        *,
        payment_mode: Optional[str] = None,
        transaction_reference: Optional[str] = None,
        notes: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Tuple[PackagePurchase, BillingRecord]:
        payment = _to_amount(amount)
        now = self._now()
        activated = False

        with self._repository.purchase_transaction(purchase_id) as transaction:
            purchase = transaction.purchase
            if purchase is None:
                raise NotFound("purchase", purchase_id)
            state = purchase.effective_state(now)
            if state not in _OPEN_STATES:
                raise InvalidStateTransition(purchase_id, state, "record payment on")
            if (
                payment <= 0
                or payment > purchase.pending_amount + self._tolerance
                or purchase.amount_paid + payment > purchase.price + self._tolerance
            ):
                raise OverpaymentError(purchase_id, payment, purchase.pending_amount)

            amount_paid = purchase.amount_paid + payment
            pending_amount = max(purchase.pending_amount - payment, ZERO)
            update = {
                "amount_paid": amount_paid,
                "pending_amount": pending_amount,
                "updated_at": now,
            }
            if purchase.state == PackageState.PENDING and self._qualifies_for_activation(pending_amount):
                definition = transaction.get_package_definition(purchase.package_definition_id)
                if definition is None:
                    raise NotFound("package definition", purchase.package_definition_id)
                update.update(
                    {
                        "state": PackageState.ACTIVE,
                        "activated_at": now,
                        "expiry_date": add_months(purchase.purchase_date, definition.duration_months),
                    }
                )
                activated = True

            record = self._recorder.append(
                transaction,
                purchase_id=purchase_id,
                amount=payment,
                discount=purchase.discount if purchase.amount_paid == 0 else ZERO,
                payment_mode=payment_mode,
                transaction_reference=transaction_reference,
                notes=notes,
                created_at=now,
            )
            updated = transaction.save_purchase(purchase.model_copy(update=update))

        logger.info(
            "Payment recorded",
            extra={
                "purchase_id": purchase_id,
                "record_id": record.record_id,
                "amount": str(payment),
                "pending_amount": str(updated.pending_amount),
            },
        )
        log_audit_event(
            self._event_logger,
            LedgerAuditEvent(
                event_type=LedgerAuditEventType.PAYMENT_RECORDED,
                purchase_id=purchase_id,
                actor_id=actor_id,
                metadata={
                    "amount": str(payment),
                    "remaining_pending": str(updated.pending_amount),
                    "invoice_number": format_invoice_number(record.record_id),
                },
                occurred_at=now,
            ),
        )
        if activated:
            logger.info(
                "Package purchase activated",
                extra={"purchase_id": purchase_id, "expiry_date": updated.expiry_date.isoformat()},
            )
            log_audit_event(
                self._event_logger,
                LedgerAuditEvent(
                    event_type=LedgerAuditEventType.PURCHASE_ACTIVATED,
                    purchase_id=purchase_id,
                    actor_id=actor_id,
                    metadata={"policy": self._activation_policy.value},
                    occurred_at=now,
                ),
            )
        return updated, record

    def cancel(self, purchase_id: str, *, actor_id: Optional[str] = None) -> PackagePurchase:
        now = self._now()
        with self._repository.purchase_transaction(purchase_id) as transaction:
            purchase = transaction.purchase
            if purchase is None:
                raise NotFound("purchase", purchase_id)
            state = purchase.effective_state(now)
            if state not in _OPEN_STATES:
                raise InvalidStateTransition(purchase_id, state, "cancel")
            updated = transaction.save_purchase(
                purchase.model_copy(
                    update={"state": PackageState.CANCELLED, "cancelled_at": now, "updated_at": now}
                )
            )

        logger.info(
            "Package purchase cancelled",
            extra={"purchase_id": purchase_id, "previous_state": purchase.state.value},
        )
        log_audit_event(
            self._event_logger,
            LedgerAuditEvent(
                event_type=LedgerAuditEventType.PURCHASE_CANCELLED,
                purchase_id=purchase_id,
                actor_id=actor_id,
                metadata={"previous_state": purchase.state.value},
                occurred_at=now,
            ),
        )
        return updated

    def expire_overdue(self, *, now: Optional[datetime] = None) -> int:
        """Move every overdue ACTIVE purchase to EXPIRED; returns how many moved."""

        current_time = now or self._now()
        expired_ids = self._repository.expire_purchases(now=current_time)
        if not expired_ids:
            logger.debug("Expiry sweep found nothing to expire")
            return 0

        logger.info(
            "Expiry sweep completed",
            extra={"expired_count": len(expired_ids), "purchase_ids": list(expired_ids)},
        )
        log_audit_event(
            self._event_logger,
            LedgerAuditEvent(
                event_type=LedgerAuditEventType.PURCHASES_EXPIRED,
                metadata={"expired_count": str(len(expired_ids)), "purchase_ids": ",".join(expired_ids)},
                occurred_at=current_time,
            ),
        )
        return len(expired_ids)

    def get_purchase(self, purchase_id: str) -> PackagePurchase:
        purchase = self._repository.get_purchase(purchase_id)
        if purchase is None:
            raise NotFound("purchase", purchase_id)
        now = self._now()
        if purchase.is_overdue(now):
            if self._repository.expire_purchases(now=now, purchase_ids=[purchase_id]):
                logger.info("Package purchase expired on read", extra={"purchase_id": purchase_id})
            refreshed = self._repository.get_purchase(purchase_id)
            if refreshed is None:
                raise NotFound("purchase", purchase_id)
            purchase = refreshed
        return purchase

    def list_advertiser_purchases(self, advertiser_id: str) -> List[PurchaseAggregate]:
        aggregates = self._repository.load_purchase_aggregates(advertiser_id=advertiser_id)
        return sorted(
            aggregates,
            key=lambda aggregate: (aggregate.purchase.purchase_date, aggregate.purchase.purchase_id),
            reverse=True,
        )

    def list_pending_dues(self) -> List[PurchaseAggregate]:
        aggregates = self._repository.load_purchase_aggregates(states=_OPEN_STATES)
        dues = [aggregate for aggregate in aggregates if aggregate.purchase.pending_amount > 0]

        def sort_key(aggregate: PurchaseAggregate):
            due = aggregate.purchase.payment_due_date
            return (due is None, due or aggregate.purchase.purchase_date, aggregate.purchase.purchase_id)

        return sorted(dues, key=sort_key)

    def list_billing_ledger(self, advertiser_id: Optional[str] = None) -> List[BillingRecord]:
        records = self._repository.list_billing_records(advertiser_id=advertiser_id)
        return sorted(records, key=lambda record: (record.created_at, record.record_id), reverse=True)

    def get_invoice(self, billing_record_id: int, advertiser_id: Optional[str] = None) -> Invoice:
        record = self._repository.get_billing_record(billing_record_id)
        if record is None:
            raise NotFound("billing record", billing_record_id)
        aggregates = self._repository.load_purchase_aggregates(purchase_ids=[record.purchase_id])
        if not aggregates:
            raise NotFound("purchase", record.purchase_id)
        aggregate = aggregates[0]
        if advertiser_id is not None and aggregate.purchase.advertiser_id != advertiser_id:
            raise NotFound("billing record", billing_record_id)
        return Invoice(
            invoice_number=self._recorder.invoice_number(record),
            record=record,
            aggregate=aggregate,
        )

    def create_package_request(
        self,
        advertiser_id: str,
        package_definition_id: str,
        *,
        actor_id: Optional[str] = None,
    ) -> PackageRequest:
        if self._repository.get_advertiser(advertiser_id) is None:
            raise NotFound("advertiser", advertiser_id)
        definition = self._repository.get_package_definition(package_definition_id)
        if definition is None:
            raise NotFound("package definition", package_definition_id)
        if not definition.is_active:
            raise InactivePackage(definition.definition_id)

        now = self._now()
        stored = self._repository.insert_package_request(
            PackageRequest(
                request_id=f"preq_{uuid4().hex}",
                advertiser_id=advertiser_id,
                package_definition_id=definition.definition_id,
                created_at=now,
                updated_at=now,
            )
        )
        if stored is None:
            raise PendingRequestExists(advertiser_id)

        logger.info(
            "Package request created",
            extra={"request_id": stored.request_id, "advertiser_id": advertiser_id},
        )
        log_audit_event(
            self._event_logger,
            LedgerAuditEvent(
                event_type=LedgerAuditEventType.REQUEST_CREATED,
                definition_id=definition.definition_id,
                actor_id=actor_id,
                metadata={"request_id": stored.request_id, "advertiser_id": advertiser_id},
                occurred_at=now,
            ),
        )
        return stored

    def list_package_requests(
        self,
        *,
        status: Optional[PackageRequestStatus] = None,
        advertiser_id: Optional[str] = None,
    ) -> List[PackageRequest]:
        return list(self._repository.list_package_requests(status=status, advertiser_id=advertiser_id))

    def confirm_package_request(
        self,
        request_id: str,
        amount: Optional[Amount] = None,
        *,
        discount: Amount = ZERO,
        payment_mode: Optional[str] = None,
        transaction_reference: Optional[str] = None,
        notes: Optional[str] = None,
        payment_due_date: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> Tuple[PackageRequest, PackagePurchase, Optional[BillingRecord]]:
        """Approve a pending request by creating its purchase and booking the payment.

        ``amount`` defaults to the full discounted price. The request is claimed
        before anything is written, so two admins confirming the same request
        cannot both create a purchase. Any failure returns it to PENDING.
        """

        request = self._pending_request(request_id)
        definition = self._repository.get_package_definition(request.package_definition_id)
        if definition is None:
            raise NotFound("package definition", request.package_definition_id)
        if not definition.is_active:
            raise InactivePackage(definition.definition_id)
        _, price = _apply_discount(definition.price, discount)
        payment = price if amount is None else _to_amount(amount)
        if price > 0 and (payment <= 0 or payment > price + self._tolerance):
            raise OverpaymentError(request_id, payment, price)

        now = self._now()
        claimed = self._repository.transition_package_request(
            request_id,
            from_status=PackageRequestStatus.PENDING,
            to_status=PackageRequestStatus.APPROVED,
            updated_at=now,
        )
        if claimed is None:
            raise RequestNotPending(request_id, self._current_request_status(request_id))

        purchase: Optional[PackagePurchase] = None
        record: Optional[BillingRecord] = None
        try:
            purchase = self.create_purchase(
                request.advertiser_id,
                request.package_definition_id,
                discount=discount,
                payment_due_date=payment_due_date,
                actor_id=actor_id,
            )
            if purchase.pending_amount > 0:
                purchase, record = self.record_payment(
                    purchase.purchase_id,
                    payment,
                    payment_mode=payment_mode,
                    transaction_reference=transaction_reference,
                    notes=notes,
                    actor_id=actor_id,
                )
        except Exception:
            logger.exception("Package request confirmation failed", extra={"request_id": request_id})
            if purchase is not None and record is None:
                self.cancel(purchase.purchase_id, actor_id=actor_id)
            self._repository.transition_package_request(
                request_id,
                from_status=PackageRequestStatus.APPROVED,
                to_status=PackageRequestStatus.PENDING,
                updated_at=self._now(),
            )
            raise

        approved = self._repository.transition_package_request(
            request_id,
            from_status=PackageRequestStatus.APPROVED,
            to_status=PackageRequestStatus.APPROVED,
            purchase_id=purchase.purchase_id,
            updated_at=now,
        )
        if approved is None:
            raise RuntimeError(f"package request {request_id!r} changed while it was being confirmed")

        logger.info(
            "Package request confirmed",
            extra={"request_id": request_id, "purchase_id": purchase.purchase_id},
        )
        log_audit_event(
            self._event_logger,
            LedgerAuditEvent(
                event_type=LedgerAuditEventType.REQUEST_CONFIRMED,
                purchase_id=purchase.purchase_id,
                definition_id=request.package_definition_id,
                actor_id=actor_id,
                metadata={
                    "request_id": request_id,
                    "amount": str(record.amount if record is not None else ZERO),
                    "discount": str(purchase.discount),
                },
                occurred_at=now,
            ),
        )
        return approved, purchase, record

    def reject_package_request(self, request_id: str, *, actor_id: Optional[str] = None) -> PackageRequest:
        request = self._pending_request(request_id)
        now = self._now()
        rejected = self._repository.transition_package_request(
            request_id,
            from_status=PackageRequestStatus.PENDING,
            to_status=PackageRequestStatus.REJECTED,
            updated_at=now,
        )
        if rejected is None:
            raise RequestNotPending(request_id, self._current_request_status(request_id))

        logger.info("Package request rejected", extra={"request_id": request_id})
        log_audit_event(
            self._event_logger,
            LedgerAuditEvent(
                event_type=LedgerAuditEventType.REQUEST_REJECTED,
                definition_id=request.package_definition_id,
                actor_id=actor_id,
                metadata={"request_id": request_id, "advertiser_id": request.advertiser_id},
                occurred_at=now,
            ),
        )
        return rejected

    def _pending_request(self, request_id: str) -> PackageRequest:
        request = self._repository.get_package_request(request_id)
        if request is None:
            raise NotFound("package request", request_id)
        if request.status != PackageRequestStatus.PENDING:
            raise RequestNotPending(request_id, request.status)
        return request

    def _current_request_status(self, request_id: str) -> PackageRequestStatus:
        request = self._repository.get_package_request(request_id)
        if request is None:
            raise NotFound("package request", request_id)
        return request.status

    def _qualifies_for_activation(self, pending_amount: Decimal) -> bool:
        if self._activation_policy == ActivationPolicy.FULL_PAYMENT:
            return pending_amount <= self._tolerance
        return True


def _apply_discount(list_price: Decimal, discount: Amount) -> Tuple[Decimal, Decimal]:
    reduction = _to_amount(discount)
    if reduction < 0 or reduction > list_price:
        raise ValueError(f"discount must be between 0 and {list_price}, got {reduction}")
    return reduction, list_price - reduction


def _to_amount(value: Amount) -> Decimal:
    if isinstance(value, bool) or isinstance(value, float):
        raise TypeError("payment amounts must be Decimal, int or str")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValueError(f"invalid payment amount {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"invalid payment amount {value!r}")
    return amount


__all__ = ["SubscriptionLedger", "add_months"]
