from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List

import pytest

from backend.app.packages import (
    Advertiser,
    InMemoryPackageRepository,
    InMemoryReminderWatermarkStore,
    PackageDefinition,
    PackagePurchase,
    PackageState,
    RenewalCandidate,
    RenewalScheduler,
    RenewalUrgency,
    SubscriptionLedger,
    days_remaining,
)

NOW = datetime(2024, 6, 1, 8, 0, tzinfo=timezone.utc)


class FakeNotifier:
    def __init__(self) -> None:
        self.sent: List[RenewalCandidate] = []
        self.fail_for: set[str] = set()

    def send_renewal_reminder(self, candidate: RenewalCandidate) -> None:
        if candidate.purchase_id in self.fail_for:
            raise ConnectionError("smtp unavailable")
        self.sent.append(candidate)


def add_active(repository: InMemoryPackageRepository, purchase_id: str, expiry_date: datetime) -> PackagePurchase:
    return repository.insert_purchase(
        PackagePurchase(
            purchase_id=purchase_id,
            advertiser_id="adv_1",
            package_definition_id="pkg_standard",
            state=PackageState.ACTIVE,
            price=Decimal("9999"),
            amount_paid=Decimal("9999"),
            purchase_date=expiry_date - timedelta(days=365),
            activated_at=expiry_date - timedelta(days=365),
            expiry_date=expiry_date,
        )
    )


@pytest.fixture
def renewal_components():
    repository = InMemoryPackageRepository()
    repository.add_advertiser(Advertiser(advertiser_id="adv_1", company_name="Acme Media", email="ads@acme.test"))
    repository.save_package_definition(
        PackageDefinition(definition_id="pkg_standard", name="Standard", duration_months=12, price=Decimal("9999"))
    )
    clock = lambda: NOW  # noqa: E731
    ledger = SubscriptionLedger(repository, clock=clock)
    notifier = FakeNotifier()
    watermarks = InMemoryReminderWatermarkStore()
    scheduler = RenewalScheduler(
        repository,
        ledger,
        notifier=notifier,
        watermark_store=watermarks,
        clock=clock,
    )
    return repository, notifier, watermarks, scheduler


def test_days_remaining_rounds_partial_days_up():
    assert days_remaining(NOW + timedelta(days=7), NOW) == 7
    assert days_remaining(NOW + timedelta(days=6, hours=1), NOW) == 7
    assert days_remaining(NOW + timedelta(seconds=1), NOW) == 1
    assert days_remaining(NOW, NOW) == 0
    assert days_remaining(NOW - timedelta(days=1), NOW) == 0


def test_list_renewals_applies_window_and_urgency(renewal_components):
    repository, _, _, scheduler = renewal_components
    add_active(repository, "pp_seven", NOW + timedelta(days=7))
    add_active(repository, "pp_eight", NOW + timedelta(days=8))
    add_active(repository, "pp_thirty", NOW + timedelta(days=30))
    add_active(repository, "pp_thirty_one", NOW + timedelta(days=31))

    candidates = scheduler.list_renewals()

    assert [(c.purchase_id, c.days_remaining, c.urgency) for c in candidates] == [
        ("pp_seven", 7, RenewalUrgency.URGENT),
        ("pp_eight", 8, RenewalUrgency.UPCOMING),
        ("pp_thirty", 30, RenewalUrgency.UPCOMING),
    ]
    assert candidates[0].package_name == "Standard"
    assert candidates[0].advertiser.email == "ads@acme.test"


def test_list_renewals_accepts_custom_window(renewal_components):
    repository, _, _, scheduler = renewal_components
    add_active(repository, "pp_three", NOW + timedelta(days=3))
    add_active(repository, "pp_ten", NOW + timedelta(days=10))

    candidates = scheduler.list_renewals(window_days=5, urgent_threshold_days=2)

    assert [(c.purchase_id, c.urgency) for c in candidates] == [("pp_three", RenewalUrgency.UPCOMING)]
    with pytest.raises(ValueError):
        scheduler.list_renewals(window_days=-1)


def test_list_renewals_expires_overdue_and_skips_other_states(renewal_components):
    repository, _, _, scheduler = renewal_components
    add_active(repository, "pp_overdue", NOW - timedelta(hours=1))
    add_active(repository, "pp_soon", NOW + timedelta(days=2))
    repository.insert_purchase(
        PackagePurchase(
            purchase_id="pp_pending",
            advertiser_id="adv_1",
            package_definition_id="pkg_standard",
            price=Decimal("9999"),
            pending_amount=Decimal("9999"),
            purchase_date=NOW,
        )
    )

    candidates = scheduler.list_renewals()

    assert [candidate.purchase_id for candidate in candidates] == ["pp_soon"]
    assert repository.get_purchase("pp_overdue").state == PackageState.EXPIRED


def test_dispatch_reminders_sends_once_per_day(renewal_components):
    repository, notifier, _, scheduler = renewal_components
    add_active(repository, "pp_a", NOW + timedelta(days=3))
    add_active(repository, "pp_b", NOW + timedelta(days=20))

    first = scheduler.dispatch_reminders()
    second = scheduler.dispatch_reminders(now=NOW + timedelta(hours=6))
    next_day = scheduler.dispatch_reminders(now=NOW + timedelta(days=1))

    assert (first.candidates, first.reminders_sent, first.skipped_duplicates) == (2, 2, 0)
    assert (second.reminders_sent, second.skipped_duplicates) == (0, 2)
    assert next_day.reminders_sent == 2
    assert [candidate.purchase_id for candidate in notifier.sent] == ["pp_a", "pp_b", "pp_a", "pp_b"]


def test_failed_reminder_releases_watermark_for_retry(renewal_components):
    repository, notifier, watermarks, scheduler = renewal_components
    add_active(repository, "pp_a", NOW + timedelta(days=3))
    add_active(repository, "pp_b", NOW + timedelta(days=4))
    notifier.fail_for.add("pp_a")

    summary = scheduler.dispatch_reminders()

    assert (summary.reminders_sent, summary.failures) == (1, 1)
    assert watermarks.claim("pp_b", NOW.date()) is False

    notifier.fail_for.clear()
    retry = scheduler.dispatch_reminders()
    assert (retry.reminders_sent, retry.skipped_duplicates, retry.failures) == (1, 1, 0)
    assert [candidate.purchase_id for candidate in notifier.sent] == ["pp_b", "pp_a"]


def test_dispatch_requires_notifier_and_watermark_store(renewal_components):
    repository, _, _, _ = renewal_components
    ledger = SubscriptionLedger(repository, clock=lambda: NOW)
    scheduler = RenewalScheduler(repository, ledger, clock=lambda: NOW)

    assert scheduler.list_renewals() == []
    with pytest.raises(RuntimeError):
        scheduler.dispatch_reminders()
