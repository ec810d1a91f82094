"""Tests for the advertiser package request and payment confirmation workflow."""
from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List

import pytest

from backend.app.packages import (
    Advertiser,
    InactivePackage,
    InMemoryPackageRepository,
    LedgerAuditEvent,
    LedgerAuditEventType,
    NotFound,
    OverpaymentError,
    PackageDefinition,
    PackageRequestStatus,
    PackageState,
    PendingRequestExists,
    RequestNotPending,
    SubscriptionLedger,
)

START = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeEventLogger:
    def __init__(self) -> None:
        self.events: List[LedgerAuditEvent] = []

    def log(self, event: LedgerAuditEvent) -> None:
        self.events.append(event)


@pytest.fixture
def request_components():
    repository = InMemoryPackageRepository()
    repository.add_advertiser(Advertiser(advertiser_id="adv_1", company_name="Acme Media", email="ads@acme.test"))
    repository.add_advertiser(Advertiser(advertiser_id="adv_2", company_name="Globex", email="ads@globex.test"))
    for definition_id, price, is_active in (
        ("pkg_standard", "9999", True),
        ("pkg_retired", "4999", False),
    ):
        repository.save_package_definition(
            PackageDefinition(
                definition_id=definition_id,
                name=definition_id.replace("pkg_", "").title(),
                duration_months=12,
                price=Decimal(price),
                is_active=is_active,
            )
        )
    clock = FakeClock(START)
    event_logger = FakeEventLogger()
    ledger = SubscriptionLedger(repository, event_logger=event_logger, clock=clock)
    return repository, clock, event_logger, ledger


def test_one_pending_request_per_advertiser(request_components):
    _, _, event_logger, ledger = request_components

    request = ledger.create_package_request("adv_1", "pkg_standard")

    assert request.status == PackageRequestStatus.PENDING
    assert request.request_id.startswith("preq_")
    assert event_logger.events[-1].event_type == LedgerAuditEventType.REQUEST_CREATED
    with pytest.raises(PendingRequestExists) as excinfo:
        ledger.create_package_request("adv_1", "pkg_standard")
    assert excinfo.value.status_code == 409

    other = ledger.create_package_request("adv_2", "pkg_standard")
    assert [r.request_id for r in ledger.list_package_requests(advertiser_id="adv_2")] == [other.request_id]


def test_request_validates_advertiser_and_definition(request_components):
    _, _, _, ledger = request_components

    with pytest.raises(NotFound):
        ledger.create_package_request("adv_missing", "pkg_standard")
    with pytest.raises(NotFound):
        ledger.create_package_request("adv_1", "pkg_missing")
    with pytest.raises(InactivePackage):
        ledger.create_package_request("adv_1", "pkg_retired")
    assert ledger.list_package_requests() == []


def test_concurrent_requests_leave_a_single_pending(request_components):
    _, _, _, ledger = request_components
    outcomes: List[str] = []
    lock = threading.Lock()

    def submit() -> None:
        try:
            ledger.create_package_request("adv_1", "pkg_standard")
            result = "created"
        except PendingRequestExists:
            result = "conflict"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=submit) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("created") == 1
    assert len(ledger.list_package_requests(status=PackageRequestStatus.PENDING)) == 1


def test_confirm_creates_purchase_and_billing_record(request_components):
    repository, clock, event_logger, ledger = request_components
    request = ledger.create_package_request("adv_1", "pkg_standard")
    clock.advance(hours=3)

    approved, purchase, record = ledger.confirm_package_request(
        request.request_id,
        discount="999",
        payment_mode="bank_transfer",
        transaction_reference="UTR-9",
        actor_id="admin-1",
    )

    assert approved.status == PackageRequestStatus.APPROVED
    assert approved.purchase_id == purchase.purchase_id
    assert purchase.state == PackageState.ACTIVE
    assert (purchase.price, purchase.discount) == (Decimal("9000"), Decimal("999"))
    assert (purchase.amount_paid, purchase.pending_amount) == (Decimal("9000"), Decimal("0"))
    assert record is not None
    assert (record.amount, record.discount) == (Decimal("9000"), Decimal("999"))
    assert record.transaction_reference == "UTR-9"
    assert repository.list_billing_records(advertiser_id="adv_1") == [record]
    assert event_logger.events[-1].event_type == LedgerAuditEventType.REQUEST_CONFIRMED
    assert event_logger.events[-1].metadata["request_id"] == request.request_id

    ledger.create_package_request("adv_1", "pkg_standard")


def test_confirm_accepts_partial_amount(request_components):
    _, _, _, ledger = request_components
    request = ledger.create_package_request("adv_1", "pkg_standard")

    _, purchase, record = ledger.confirm_package_request(request.request_id, "4000")

    assert record.amount == Decimal("4000")
    assert purchase.pending_amount == Decimal("5999")


def test_confirmed_or_rejected_requests_cannot_change_again(request_components):
    _, _, event_logger, ledger = request_components
    confirmed = ledger.create_package_request("adv_1", "pkg_standard")
    ledger.confirm_package_request(confirmed.request_id)

    with pytest.raises(RequestNotPending):
        ledger.confirm_package_request(confirmed.request_id)
    with pytest.raises(RequestNotPending):
        ledger.reject_package_request(confirmed.request_id)

    rejected = ledger.reject_package_request(ledger.create_package_request("adv_2", "pkg_standard").request_id)
    assert rejected.status == PackageRequestStatus.REJECTED
    assert rejected.purchase_id is None
    assert event_logger.events[-1].event_type == LedgerAuditEventType.REQUEST_REJECTED
    with pytest.raises(RequestNotPending) as excinfo:
        ledger.confirm_package_request(rejected.request_id)
    assert excinfo.value.request_status == PackageRequestStatus.REJECTED

    with pytest.raises(NotFound):
        ledger.reject_package_request("preq_missing")


def test_invalid_confirmation_leaves_request_pending(request_components):
    repository, _, _, ledger = request_components
    request = ledger.create_package_request("adv_1", "pkg_standard")

    with pytest.raises(OverpaymentError):
        ledger.confirm_package_request(request.request_id, "10000")
    with pytest.raises(ValueError):
        ledger.confirm_package_request(request.request_id, discount="20000")

    assert repository.get_package_request(request.request_id).status == PackageRequestStatus.PENDING
    assert repository.count_purchases_for_definition("pkg_standard") == 0


def test_failed_confirmation_releases_the_request(request_components, monkeypatch):
    repository, _, _, ledger = request_components
    request = ledger.create_package_request("adv_1", "pkg_standard")

    def failing_payment(*args, **kwargs):
        raise RuntimeError("payment gateway offline")

    monkeypatch.setattr(ledger, "record_payment", failing_payment)
    with pytest.raises(RuntimeError):
        ledger.confirm_package_request(request.request_id)

    released = repository.get_package_request(request.request_id)
    assert released.status == PackageRequestStatus.PENDING
    assert released.purchase_id is None
    purchases = ledger.list_advertiser_purchases("adv_1")
    assert [aggregate.purchase.state for aggregate in purchases] == [PackageState.CANCELLED]


def test_fully_discounted_request_needs_no_payment(request_components):
    repository, _, _, ledger = request_components
    request = ledger.create_package_request("adv_1", "pkg_standard")

    approved, purchase, record = ledger.confirm_package_request(request.request_id, discount="9999")

    assert record is None
    assert purchase.state == PackageState.ACTIVE
    assert approved.purchase_id == purchase.purchase_id
    assert repository.list_billing_records() == []
