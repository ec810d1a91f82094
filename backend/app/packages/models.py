"""Domain models for advertiser package purchases and their billing ledger."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

ZERO = Decimal("0")


class PackageState(str, Enum):
    """Lifecycle state of a package purchase."""

    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


TERMINAL_STATES = frozenset({PackageState.EXPIRED, PackageState.CANCELLED})


class ActivationPolicy(str, Enum):
    """Rule deciding which payment moves a purchase from PENDING to ACTIVE."""

    FIRST_PAYMENT = "first_payment"
    FULL_PAYMENT = "full_payment"


class RenewalUrgency(str, Enum):
    """Urgency tier of a renewal candidate."""

    URGENT = "urgent"
    UPCOMING = "upcoming"


class DiscrepancyKind(str, Enum):
    """Findings emitted by the reconciliation audit."""

    ORPHAN = "ORPHAN"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    BALANCE_MISMATCH = "BALANCE_MISMATCH"
    MALFORMED = "MALFORMED"
    CLEAN = "CLEAN"


class PackageRequestStatus(str, Enum):
    """Review status of an advertiser's request to buy a package."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class LedgerAuditEventType(str, Enum):
    """Audit event categories emitted by the package ledger."""

    DEFINITION_CREATED = "package_definition_created"
    DEFINITION_UPDATED = "package_definition_updated"
    DEFINITION_DELETED = "package_definition_deleted"
    PURCHASE_CREATED = "package_purchase_created"
    PAYMENT_RECORDED = "payment_recorded"
    PURCHASE_ACTIVATED = "package_activated"
    PURCHASE_CANCELLED = "package_cancelled"
    PURCHASES_EXPIRED = "expiry_check_run"
    REQUEST_CREATED = "package_request_created"
    REQUEST_CONFIRMED = "payment_confirmed"
    REQUEST_REJECTED = "payment_rejected"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Advertiser(BaseModel):
    """Reference data describing the owner of package purchases."""

    advertiser_id: str
    company_name: str
    email: str

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PackageDefinition(BaseModel):
    """Catalog entry an advertiser can purchase."""

    definition_id: str
    name: str = Field(min_length=1)
    duration_months: int = Field(gt=0)
    price: Decimal = Field(ge=0)
    currency: str = Field(default="INR", min_length=3, max_length=3)
    description: Optional[str] = None
    is_active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class PackagePurchase(BaseModel):
    """An advertiser's purchase of a package definition.

    ``price`` is a snapshot of the definition price less ``discount``, taken
    when the purchase was created, so later catalog price changes never disturb
    the balance ``amount_paid + pending_amount == price``.
    """

    purchase_id: str
    advertiser_id: str
    package_definition_id: str
    state: PackageState = PackageState.PENDING
    price: Decimal = Field(ge=0)
    discount: Decimal = Field(default=ZERO, ge=0)
    amount_paid: Decimal = Field(default=ZERO, ge=0)
    pending_amount: Decimal = Field(default=ZERO, ge=0)
    purchase_date: datetime = Field(default_factory=_utcnow)
    payment_due_date: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def is_overdue(self, now: datetime) -> bool:
        """Return ``True`` when an ACTIVE purchase has passed its expiry date."""
        return (
            self.state == PackageState.ACTIVE
            and self.expiry_date is not None
            and self.expiry_date < now
        )

    def effective_state(self, now: datetime) -> PackageState:
        if self.is_overdue(now):
            return PackageState.EXPIRED
        return self.state


class BillingRecord(BaseModel):
    """Immutable entry in the billing ledger for one received payment."""

    record_id: int = Field(ge=1)
    purchase_id: str
    amount: Decimal = Field(gt=0)
    discount: Decimal = Field(default=ZERO, ge=0)
    payment_mode: Optional[str] = None
    transaction_reference: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PackageRequest(BaseModel):
    """An advertiser's request for a package, awaiting payment confirmation.

    An advertiser holds at most one PENDING request at a time. Approval links
    the request to the purchase it produced.
    """

    request_id: str
    advertiser_id: str
    package_definition_id: str
    status: PackageRequestStatus = PackageRequestStatus.PENDING
    purchase_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PurchaseAggregate(BaseModel):
    """A purchase loaded together with everything needed to audit it."""

    purchase: PackagePurchase
    definition: Optional[PackageDefinition] = None
    advertiser: Optional[Advertiser] = None
    billing_records: Tuple[BillingRecord, ...] = ()

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def billed_total(self) -> Decimal:
        return sum((record.amount for record in self.billing_records), ZERO)


class Invoice(BaseModel):
    """Presentation-ready view of a billing record."""

    invoice_number: str
    record: BillingRecord
    aggregate: PurchaseAggregate

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class RenewalCandidate(BaseModel):
    """An ACTIVE purchase expiring inside the renewal window."""

    purchase_id: str
    advertiser: Optional[Advertiser] = None
    package_name: str
    expiry_date: datetime
    days_remaining: int = Field(ge=0)
    urgency: RenewalUrgency

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Discrepancy(BaseModel):
    """A reconciliation finding for a single purchase."""

    purchase_id: str
    kind: DiscrepancyKind
    expected: Optional[Decimal] = None
    actual: Optional[Decimal] = None
    detail: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class LedgerAuditEvent(BaseModel):
    """Structured audit event for administrative review."""

    event_type: LedgerAuditEventType
    purchase_id: Optional[str] = None
    definition_id: Optional[str] = None
    actor_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


@dataclass
class ReminderDispatchSummary:
    """Aggregated results for a renewal reminder run."""

    candidates: int = 0
    reminders_sent: int = 0
    skipped_duplicates: int = 0
    failures: int = 0
