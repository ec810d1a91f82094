from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List

import pytest
from pydantic import ValidationError

from backend.app.packages import (
    Advertiser,
    InMemoryPackageRepository,
    LedgerAuditEvent,
    LedgerAuditEventType,
    NotFound,
    PackageCatalog,
    PackageInUse,
    SubscriptionLedger,
)

NOW = datetime(2024, 4, 1, 12, 0, tzinfo=timezone.utc)


class FakeEventLogger:
    def __init__(self) -> None:
        self.events: List[LedgerAuditEvent] = []

    def log(self, event: LedgerAuditEvent) -> None:
        self.events.append(event)


@pytest.fixture
def catalog_components():
    repository = InMemoryPackageRepository()
    repository.add_advertiser(Advertiser(advertiser_id="adv_1", company_name="Acme Media", email="ads@acme.test"))
    event_logger = FakeEventLogger()
    catalog = PackageCatalog(repository, event_logger=event_logger, clock=lambda: NOW)
    return repository, event_logger, catalog


def test_create_definition_defaults_currency_and_logs(catalog_components):
    repository, event_logger, catalog = catalog_components

    definition = catalog.create_definition("Gold", 12, Decimal("9999"), description="Top placement")

    assert definition.definition_id.startswith("pkg_")
    assert definition.currency == "INR"
    assert definition.created_at == NOW
    assert repository.get_package_definition(definition.definition_id) == definition
    assert event_logger.events[-1].event_type == LedgerAuditEventType.DEFINITION_CREATED


def test_create_definition_validates_fields(catalog_components):
    _, _, catalog = catalog_components

    assert catalog.create_definition("Silver", 6, Decimal("4999"), currency="usd").currency == "USD"
    with pytest.raises(ValidationError):
        catalog.create_definition("Broken", 0, Decimal("100"))
    with pytest.raises(ValidationError):
        catalog.create_definition("Negative", 3, Decimal("-1"))
    with pytest.raises(ValidationError):
        catalog.create_definition("", 3, Decimal("100"))


def test_list_definitions_orders_by_price_and_hides_inactive(catalog_components):
    _, _, catalog = catalog_components
    gold = catalog.create_definition("Gold", 12, Decimal("9999"))
    bronze = catalog.create_definition("Bronze", 1, Decimal("999"))
    retired = catalog.create_definition("Legacy", 12, Decimal("5000"), is_active=False)

    assert [d.definition_id for d in catalog.list_definitions()] == [bronze.definition_id, gold.definition_id]
    assert [d.definition_id for d in catalog.list_definitions(include_inactive=True)] == [
        bronze.definition_id,
        retired.definition_id,
        gold.definition_id,
    ]


def test_update_definition_blocks_structural_changes_once_purchased(catalog_components):
    repository, event_logger, catalog = catalog_components
    definition = catalog.create_definition("Gold", 12, Decimal("9999"))
    ledger = SubscriptionLedger(repository, clock=lambda: NOW)
    purchase = ledger.create_purchase("adv_1", definition.definition_id)

    with pytest.raises(PackageInUse) as excinfo:
        catalog.update_definition(definition.definition_id, duration_months=6, name="Gold Plus")
    assert excinfo.value.payload["fields"] == ["duration_months", "name"]
    assert excinfo.value.status_code == 409

    repriced = catalog.update_definition(definition.definition_id, price=Decimal("11999"), is_active=False)
    assert repriced.price == Decimal("11999")
    assert repriced.is_active is False
    assert repository.get_purchase(purchase.purchase_id).price == Decimal("9999")
    assert event_logger.events[-1].metadata["updated_fields"] == "is_active,price"


def test_update_definition_without_purchases(catalog_components):
    repository, _, catalog = catalog_components
    definition = catalog.create_definition("Gold", 12, Decimal("9999"))
    later = NOW + timedelta(days=1)
    catalog = PackageCatalog(repository, clock=lambda: later)

    updated = catalog.update_definition(definition.definition_id, duration_months=6, currency="eur")

    assert updated.duration_months == 6
    assert updated.currency == "EUR"
    assert updated.created_at == NOW
    assert updated.updated_at == later
    assert catalog.update_definition(definition.definition_id, duration_months=6) == updated


def test_delete_definition(catalog_components):
    repository, event_logger, catalog = catalog_components
    used = catalog.create_definition("Gold", 12, Decimal("9999"))
    unused = catalog.create_definition("Trial", 1, Decimal("0"))
    SubscriptionLedger(repository, clock=lambda: NOW).create_purchase("adv_1", used.definition_id)

    with pytest.raises(PackageInUse):
        catalog.delete_definition(used.definition_id)

    catalog.delete_definition(unused.definition_id, actor_id="admin-1")
    assert repository.get_package_definition(unused.definition_id) is None
    assert event_logger.events[-1].event_type == LedgerAuditEventType.DEFINITION_DELETED

    with pytest.raises(NotFound):
        catalog.delete_definition(unused.definition_id)
    with pytest.raises(NotFound):
        catalog.get_definition("pkg_missing")
