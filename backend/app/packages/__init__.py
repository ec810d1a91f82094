"""Advertiser package domain: catalog, subscription ledger, billing and renewals."""

from .billing import BillingRecorder, format_invoice_number
from .catalog import PackageCatalog
from .config import LedgerConfig, load_database_config, load_ledger_config
from .exceptions import (
    InactivePackage,
    InvalidStateTransition,
    NotFound,
    OverpaymentError,
    PackageInUse,
    PackageLedgerError,
    PendingRequestExists,
    RequestNotPending,
)
from .ledger import SubscriptionLedger, add_months
from .memory import InMemoryPackageRepository, InMemoryReminderWatermarkStore
from .models import (
    ActivationPolicy,
    Advertiser,
    BillingRecord,
    Discrepancy,
    DiscrepancyKind,
    Invoice,
    LedgerAuditEvent,
    LedgerAuditEventType,
    PackageDefinition,
    PackagePurchase,
    PackageRequest,
    PackageRequestStatus,
    PackageState,
    PurchaseAggregate,
    ReminderDispatchSummary,
    RenewalCandidate,
    RenewalUrgency,
)
from .protocols import (
    LedgerEventLogger,
    PackageRepository,
    PurchaseTransaction,
    ReminderWatermarkStore,
    RenewalNotifier,
)
from .reconciliation import ReconciliationEngine
from .renewals import RenewalScheduler, days_remaining

__all__ = [
    "ActivationPolicy",
    "Advertiser",
    "BillingRecord",
    "BillingRecorder",
    "Discrepancy",
    "DiscrepancyKind",
    "InMemoryPackageRepository",
    "InMemoryReminderWatermarkStore",
    "InactivePackage",
    "InvalidStateTransition",
    "Invoice",
    "LedgerAuditEvent",
    "LedgerAuditEventType",
    "LedgerConfig",
    "LedgerEventLogger",
    "NotFound",
    "OverpaymentError",
    "PackageCatalog",
    "PackageDefinition",
    "PackageInUse",
    "PackageLedgerError",
    "PackagePurchase",
    "PackageRepository",
    "PackageRequest",
    "PackageRequestStatus",
    "PackageState",
    "PendingRequestExists",
    "PurchaseAggregate",
    "PurchaseTransaction",
    "ReconciliationEngine",
    "ReminderDispatchSummary",
    "ReminderWatermarkStore",
    "RenewalCandidate",
    "RenewalNotifier",
    "RenewalScheduler",
    "RenewalUrgency",
    "RequestNotPending",
    "SubscriptionLedger",
    "add_months",
    "days_remaining",
    "format_invoice_number",
    "load_database_config",
    "load_ledger_config",
]
