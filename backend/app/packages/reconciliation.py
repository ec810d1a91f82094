"""Read-only audit comparing purchase totals against the billing ledger."""
from __future__ import annotations

import logging
from collections import Counter
from decimal import Decimal
from typing import List

from .models import ZERO, Discrepancy, DiscrepancyKind, PurchaseAggregate
from .protocols import PackageRepository

logger = logging.getLogger(__name__)


class ReconciliationEngine:
    """Reports drift between recorded payments and billing records.

    Findings are returned for human remediation; the engine never writes.
    """

    def __init__(self, repository: PackageRepository, *, amount_tolerance: Decimal = Decimal("0.01")) -> None:
        if amount_tolerance < 0:
            raise ValueError("amount_tolerance must be >= 0")
        self._repository = repository
        self._tolerance = amount_tolerance

    def run_reconciliation(self, *, include_clean: bool = False) -> List[Discrepancy]:
        aggregates = self._repository.load_purchase_aggregates()
        findings: List[Discrepancy] = []
        for aggregate in aggregates:
            purchase_id = aggregate.purchase.purchase_id
            try:
                findings.extend(self._audit(aggregate, include_clean=include_clean))
            except (ArithmeticError, TypeError, ValueError) as exc:
                logger.warning(
                    "Purchase could not be reconciled",
                    extra={"purchase_id": purchase_id, "error": f"{type(exc).__name__}: {exc}"},
                )
                findings.append(
                    Discrepancy(
                        purchase_id=purchase_id,
                        kind=DiscrepancyKind.MALFORMED,
                        detail=f"{type(exc).__name__}: {exc}",
                    )
                )

        findings.sort(key=lambda finding: (finding.purchase_id, finding.kind.value))
        for finding in findings:
            if finding.kind == DiscrepancyKind.CLEAN:
                continue
            logger.warning(
                "Reconciliation discrepancy found",
                extra={
                    "purchase_id": finding.purchase_id,
                    "kind": finding.kind.value,
                    "expected": None if finding.expected is None else str(finding.expected),
                    "actual": None if finding.actual is None else str(finding.actual),
                },
            )
        counts = Counter(finding.kind.value for finding in findings)
        logger.info(
            "Reconciliation completed",
            extra={"purchases_checked": len(aggregates), "findings": dict(counts)},
        )
        return findings

    def _audit(self, aggregate: PurchaseAggregate, *, include_clean: bool) -> List[Discrepancy]:
        purchase = aggregate.purchase
        purchase_id = purchase.purchase_id
        findings: List[Discrepancy] = []

        if aggregate.definition is None:
            findings.append(
                Discrepancy(
                    purchase_id=purchase_id,
                    kind=DiscrepancyKind.MALFORMED,
                    detail=f"package definition {purchase.package_definition_id!r} is missing",
                )
            )

        foreign = [record.record_id for record in aggregate.billing_records if record.purchase_id != purchase_id]
        if foreign:
            raise ValueError(f"billing records {foreign} belong to another purchase")

        balance = purchase.amount_paid + purchase.pending_amount
        if abs(balance - purchase.price) > self._tolerance:
            findings.append(
                Discrepancy(
                    purchase_id=purchase_id,
                    kind=DiscrepancyKind.BALANCE_MISMATCH,
                    expected=purchase.price,
                    actual=balance,
                )
            )

        billed = aggregate.billed_total
        if purchase.amount_paid > 0 and not aggregate.billing_records:
            findings.append(
                Discrepancy(
                    purchase_id=purchase_id,
                    kind=DiscrepancyKind.ORPHAN,
                    expected=purchase.amount_paid,
                    actual=ZERO,
                )
            )
        elif abs(billed - purchase.amount_paid) > self._tolerance:
            findings.append(
                Discrepancy(
                    purchase_id=purchase_id,
                    kind=DiscrepancyKind.AMOUNT_MISMATCH,
                    expected=purchase.amount_paid,
                    actual=billed,
                )
            )
        elif include_clean and purchase.amount_paid > 0 and not findings:
            findings.append(
                Discrepancy(
                    purchase_id=purchase_id,
                    kind=DiscrepancyKind.CLEAN,
                    expected=purchase.amount_paid,
                    actual=billed,
                )
            )
        return findings


__all__ = ["ReconciliationEngine"]
