"""Application wiring for the advertiser package ledger."""
from __future__ import annotations

import logging
from functools import lru_cache

from dotenv import load_dotenv

from ..packages import (
    LedgerAuditEvent,
    LedgerConfig,
    LedgerEventLogger,
    PackageCatalog,
    ReconciliationEngine,
    RenewalCandidate,
    RenewalNotifier,
    RenewalScheduler,
    SubscriptionLedger,
    load_database_config,
    load_ledger_config,
)
from ..packages.repository import PostgresPackageRepository, PostgresReminderWatermarkStore, connect

load_dotenv()

logger = logging.getLogger("packages")


class LoggingRenewalNotifier(RenewalNotifier):
    """Notifier that records renewal reminders to the application logger."""

    def send_renewal_reminder(self, candidate: RenewalCandidate) -> None:
        logger.info(
            "Renewal reminder purchase=%s package=%s advertiser=%s days_remaining=%s urgency=%s",
            candidate.purchase_id,
            candidate.package_name,
            candidate.advertiser.email if candidate.advertiser else None,
            candidate.days_remaining,
            candidate.urgency.value,
        )


class LoggingLedgerEventLogger(LedgerEventLogger):
    """Event logger forwarding ledger audit events to logging."""

    def log(self, event: LedgerAuditEvent) -> None:
        logger.info(
            "Ledger event %s purchase=%s definition=%s actor=%s metadata=%s",
            event.event_type.value,
            event.purchase_id,
            event.definition_id,
            event.actor_id,
            event.metadata,
        )


def _connection_factory():
    return connect(**load_database_config())


@lru_cache(maxsize=1)
def get_ledger_config() -> LedgerConfig:
    return load_ledger_config()


@lru_cache(maxsize=1)
def get_package_repository() -> PostgresPackageRepository:
    return PostgresPackageRepository(connection_factory=_connection_factory)


@lru_cache(maxsize=1)
def get_event_logger() -> LoggingLedgerEventLogger:
    return LoggingLedgerEventLogger()


@lru_cache(maxsize=1)
def get_package_catalog() -> PackageCatalog:
    config = get_ledger_config()
    return PackageCatalog(
        get_package_repository(),
        event_logger=get_event_logger(),
        default_currency=config.default_currency,
    )


@lru_cache(maxsize=1)
def get_subscription_ledger() -> SubscriptionLedger:
    config = get_ledger_config()
    return SubscriptionLedger(
        get_package_repository(),
        event_logger=get_event_logger(),
        activation_policy=config.activation_policy,
        amount_tolerance=config.amount_tolerance,
    )


@lru_cache(maxsize=1)
def get_reconciliation_engine() -> ReconciliationEngine:
    return ReconciliationEngine(
        get_package_repository(),
        amount_tolerance=get_ledger_config().amount_tolerance,
    )


@lru_cache(maxsize=1)
def get_renewal_scheduler() -> RenewalScheduler:
    config = get_ledger_config()
    return RenewalScheduler(
        get_package_repository(),
        get_subscription_ledger(),
        notifier=LoggingRenewalNotifier(),
        watermark_store=PostgresReminderWatermarkStore(connection_factory=_connection_factory),
        window_days=config.renewal_window_days,
        urgent_threshold_days=config.urgent_threshold_days,
    )


__all__ = [
    "LoggingLedgerEventLogger",
    "LoggingRenewalNotifier",
    "get_event_logger",
    "get_ledger_config",
    "get_package_catalog",
    "get_package_repository",
    "get_reconciliation_engine",
    "get_renewal_scheduler",
    "get_subscription_ledger",
]
