"""Renewal scanning and reminder dispatch for expiring package purchases."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from .ledger import SubscriptionLedger
from .models import (
    PackageState,
    PurchaseAggregate,
    ReminderDispatchSummary,
    RenewalCandidate,
    RenewalUrgency,
)
from .protocols import PackageRepository, ReminderWatermarkStore, RenewalNotifier

logger = logging.getLogger(__name__)


def days_remaining(expiry_date: datetime, now: datetime) -> int:
    """Whole days until ``expiry_date``, rounding any partial day up."""

    delta = expiry_date - now
    if delta < timedelta(0):
        return 0
    return delta.days + (1 if delta.seconds or delta.microseconds else 0)


class RenewalScheduler:
    """Lists ACTIVE purchases approaching expiry and sends deduplicated reminders."""

    def __init__(
        self,
        repository: PackageRepository,
        ledger: SubscriptionLedger,
        *,
        notifier: Optional[RenewalNotifier] = None,
        watermark_store: Optional[ReminderWatermarkStore] = None,
        window_days: int = 30,
        urgent_threshold_days: int = 7,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._ledger = ledger
        self._notifier = notifier
        self._watermark_store = watermark_store
        self._window_days = _validate_days(window_days, "window_days")
        self._urgent_threshold_days = _validate_days(urgent_threshold_days, "urgent_threshold_days")
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def list_renewals(
        self,
        window_days: Optional[int] = None,
        urgent_threshold_days: Optional[int] = None,
        *,
        now: Optional[datetime] = None,
    ) -> List[RenewalCandidate]:
        window = self._window_days if window_days is None else _validate_days(window_days, "window_days")
        urgent_threshold = (
            self._urgent_threshold_days
            if urgent_threshold_days is None
            else _validate_days(urgent_threshold_days, "urgent_threshold_days")
        )
        current_time = now or self._clock()
        horizon = current_time + timedelta(days=window)

        self._ledger.expire_overdue(now=current_time)

        candidates: List[RenewalCandidate] = []
        for aggregate in self._repository.load_purchase_aggregates(states=[PackageState.ACTIVE]):
            candidate = self._candidate_for(aggregate, current_time, horizon, urgent_threshold)
            if candidate is not None:
                candidates.append(candidate)

        candidates.sort(key=lambda candidate: (candidate.days_remaining, candidate.purchase_id))
        return candidates

    def dispatch_reminders(
        self,
        window_days: Optional[int] = None,
        urgent_threshold_days: Optional[int] = None,
        *,
        now: Optional[datetime] = None,
    ) -> ReminderDispatchSummary:
        if self._notifier is None or self._watermark_store is None:
            raise RuntimeError("dispatch_reminders requires a notifier and a watermark store")

        current_time = now or self._clock()
        reminder_date = current_time.astimezone(timezone.utc).date()
        candidates = self.list_renewals(window_days, urgent_threshold_days, now=current_time)
        summary = ReminderDispatchSummary(candidates=len(candidates))

        for candidate in candidates:
            if not self._watermark_store.claim(candidate.purchase_id, reminder_date):
                summary.skipped_duplicates += 1
                continue
            try:
                self._notifier.send_renewal_reminder(candidate)
            except Exception:
                self._watermark_store.release(candidate.purchase_id, reminder_date)
                summary.failures += 1
                logger.exception(
                    "Renewal reminder delivery failed",
                    extra={"purchase_id": candidate.purchase_id},
                )
                continue
            summary.reminders_sent += 1

        logger.info(
            "Renewal reminders dispatched",
            extra={
                "candidates": summary.candidates,
                "reminders_sent": summary.reminders_sent,
                "skipped_duplicates": summary.skipped_duplicates,
                "failures": summary.failures,
            },
        )
        return summary

    def _candidate_for(
        self,
        aggregate: PurchaseAggregate,
        now: datetime,
        horizon: datetime,
        urgent_threshold: int,
    ) -> Optional[RenewalCandidate]:
        purchase = aggregate.purchase
        if purchase.state != PackageState.ACTIVE:
            return None
        if purchase.expiry_date is None:
            logger.warning("Active purchase has no expiry date", extra={"purchase_id": purchase.purchase_id})
            return None
        if not now <= purchase.expiry_date <= horizon:
            return None
        if aggregate.definition is None:
            logger.warning(
                "Active purchase references a missing package definition",
                extra={
                    "purchase_id": purchase.purchase_id,
                    "definition_id": purchase.package_definition_id,
                },
            )
            return None

        remaining = days_remaining(purchase.expiry_date, now)
        urgency = RenewalUrgency.URGENT if remaining <= urgent_threshold else RenewalUrgency.UPCOMING
        return RenewalCandidate(
            purchase_id=purchase.purchase_id,
            advertiser=aggregate.advertiser,
            package_name=aggregate.definition.name,
            expiry_date=purchase.expiry_date,
            days_remaining=remaining,
            urgency=urgency,
        )


def _validate_days(value: int, name: str) -> int:
    if value < 0:
        raise ValueError(f"{name} must be >= 0")
    return value


__all__ = ["RenewalScheduler", "days_remaining"]
