from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from backend import package_jobs
from backend.app.packages import (
    Discrepancy,
    DiscrepancyKind,
    InMemoryPackageRepository,
    PackagePurchase,
    PackageState,
    ReminderDispatchSummary,
    SubscriptionLedger,
    load_ledger_config,
)

RUN_TIME = datetime(2024, 8, 1, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def reset_metrics():
    package_jobs._reset_metrics_for_testing()
    yield
    package_jobs.shutdown_package_jobs()
    package_jobs._reset_metrics_for_testing()


def test_run_expiry_job_updates_metrics(monkeypatch):
    repository = InMemoryPackageRepository()
    repository.insert_purchase(
        PackagePurchase(
            purchase_id="pp_old",
            advertiser_id="adv_1",
            package_definition_id="pkg_standard",
            state=PackageState.ACTIVE,
            price=Decimal("9999"),
            amount_paid=Decimal("9999"),
            purchase_date=RUN_TIME - timedelta(days=400),
            expiry_date=RUN_TIME - timedelta(days=35),
        )
    )
    ledger = SubscriptionLedger(repository, clock=lambda: RUN_TIME)
    monkeypatch.setattr(package_jobs, "get_subscription_ledger", lambda: ledger)

    assert package_jobs.run_expiry_job(now=RUN_TIME) == 1
    assert package_jobs.run_expiry_job(now=RUN_TIME) == 0

    metrics = package_jobs.get_job_metrics()[package_jobs.EXPIRY_JOB]
    assert metrics["runs"] == 2
    assert metrics["items_processed"] == 1
    assert metrics["last_run_at"] == RUN_TIME.isoformat()
    assert metrics["last_success_at"] == RUN_TIME.isoformat()
    assert metrics["last_error"] is None


def test_run_reminder_job_records_summary(monkeypatch):
    summary = ReminderDispatchSummary(candidates=4, reminders_sent=2, skipped_duplicates=1, failures=1)
    calls = []

    class FakeScheduler:
        def dispatch_reminders(self, *, now=None):
            calls.append(now)
            return summary

    monkeypatch.setattr(package_jobs, "get_renewal_scheduler", lambda: FakeScheduler())

    assert package_jobs.run_reminder_job(now=RUN_TIME) is summary
    assert calls == [RUN_TIME]
    metrics = package_jobs.get_job_metrics()[package_jobs.REMINDER_JOB]
    assert metrics["items_processed"] == 2
    assert metrics["failures"] == 1


def test_run_reconciliation_job_counts_only_problems(monkeypatch):
    findings = [
        Discrepancy(purchase_id="pp_1", kind=DiscrepancyKind.CLEAN),
        Discrepancy(purchase_id="pp_2", kind=DiscrepancyKind.ORPHAN, expected=Decimal("4999"), actual=Decimal("0")),
    ]

    class FakeEngine:
        def run_reconciliation(self):
            return findings

    monkeypatch.setattr(package_jobs, "get_reconciliation_engine", lambda: FakeEngine())

    assert package_jobs.run_reconciliation_job(now=RUN_TIME) == findings
    assert package_jobs.get_job_metrics()[package_jobs.RECONCILIATION_JOB]["items_processed"] == 1


def test_job_failure_is_recorded_and_raised(monkeypatch):
    class BrokenLedger:
        def expire_overdue(self, *, now=None):
            raise ConnectionError("database unavailable")

    monkeypatch.setattr(package_jobs, "get_subscription_ledger", lambda: BrokenLedger())

    with pytest.raises(ConnectionError):
        package_jobs.run_expiry_job(now=RUN_TIME)

    metrics = package_jobs.get_job_metrics()[package_jobs.EXPIRY_JOB]
    assert metrics["failures"] == 1
    assert metrics["last_error"] == "ConnectionError: database unavailable"
    assert metrics["last_success_at"] is None


def test_start_package_jobs_respects_configuration(monkeypatch):
    config = load_ledger_config({})
    monkeypatch.setattr(package_jobs, "get_ledger_config", lambda: replace(config, jobs_enabled=False))

    package_jobs.start_package_jobs()
    assert package_jobs._workers == {}

    monkeypatch.setattr(package_jobs, "get_ledger_config", lambda: config)
    package_jobs.start_package_jobs()
    assert sorted(package_jobs._workers) == sorted(
        [package_jobs.EXPIRY_JOB, package_jobs.REMINDER_JOB, package_jobs.RECONCILIATION_JOB]
    )

    package_jobs.shutdown_package_jobs()
    assert package_jobs._workers == {}


def test_seconds_until_next_run():
    now = datetime(2024, 8, 1, 8, 0, tzinfo=timezone.utc)

    assert package_jobs._seconds_until(9, now=now) == 3600
    assert package_jobs._seconds_until(8, now=now) == 24 * 3600
    assert package_jobs._seconds_until(0, now=now) == 16 * 3600
