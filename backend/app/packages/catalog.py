"""Package catalog management."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, List, Optional
from uuid import uuid4

from .exceptions import NotFound, PackageInUse
from .models import LedgerAuditEvent, LedgerAuditEventType, PackageDefinition
from .protocols import LedgerEventLogger, PackageRepository, log_audit_event

logger = logging.getLogger(__name__)

# Fields that stay editable after purchases reference a definition.
_MUTABLE_WHEN_REFERENCED = frozenset({"price", "is_active"})


class PackageCatalog:
    """Read-mostly store of package definitions."""

    def __init__(
        self,
        repository: PackageRepository,
        *,
        event_logger: Optional[LedgerEventLogger] = None,
        default_currency: str = "INR",
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._event_logger = event_logger
        self._default_currency = default_currency
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def list_definitions(self, *, include_inactive: bool = False) -> List[PackageDefinition]:
        definitions = self._repository.list_package_definitions(include_inactive=include_inactive)
        return sorted(definitions, key=lambda definition: (definition.price, definition.name))

    def get_definition(self, definition_id: str) -> PackageDefinition:
        definition = self._repository.get_package_definition(definition_id)
        if definition is None:
            raise NotFound("package definition", definition_id)
        return definition

    def create_definition(
        self,
        name: str,
        duration_months: int,
        price: Decimal,
        *,
        currency: Optional[str] = None,
        description: Optional[str] = None,
        is_active: bool = True,
        actor_id: Optional[str] = None,
    ) -> PackageDefinition:
        now = self._clock()
        definition = PackageDefinition(
            definition_id=f"pkg_{uuid4().hex}",
            name=name,
            duration_months=duration_months,
            price=price,
            currency=currency or self._default_currency,
            description=description,
            is_active=is_active,
            created_at=now,
            updated_at=now,
        )
        stored = self._repository.save_package_definition(definition)
        logger.info(
            "Package definition created",
            extra={"definition_id": stored.definition_id, "package_name": stored.name},
        )
        log_audit_event(
            self._event_logger,
            LedgerAuditEvent(
                event_type=LedgerAuditEventType.DEFINITION_CREATED,
                definition_id=stored.definition_id,
                actor_id=actor_id,
                metadata={"name": stored.name, "price": str(stored.price)},
                occurred_at=now,
            ),
        )
        return stored

    def update_definition(
        self,
        definition_id: str,
        *,
        name: Optional[str] = None,
        duration_months: Optional[int] = None,
        price: Optional[Decimal] = None,
        currency: Optional[str] = None,
        description: Optional[str] = None,
        is_active: Optional[bool] = None,
        actor_id: Optional[str] = None,
    ) -> PackageDefinition:
        existing = self.get_definition(definition_id)
        requested = {
            "name": name,
            "duration_months": duration_months,
            "price": price,
            "currency": currency,
            "description": description,
            "is_active": is_active,
        }
        changes: Dict[str, object] = {
            field: value
            for field, value in requested.items()
            if value is not None and value != getattr(existing, field)
        }
        if not changes:
            return existing

        restricted = set(changes) - _MUTABLE_WHEN_REFERENCED
        if restricted:
            purchase_count = self._repository.count_purchases_for_definition(definition_id)
            if purchase_count:
                raise PackageInUse(definition_id, purchase_count, sorted(restricted))

        now = self._clock()
        updated = PackageDefinition.model_validate(
            {**existing.model_dump(), **changes, "updated_at": now}
        )
        stored = self._repository.save_package_definition(updated)
        logger.info(
            "Package definition updated",
            extra={"definition_id": definition_id, "updated_fields": sorted(changes)},
        )
        log_audit_event(
            self._event_logger,
            LedgerAuditEvent(
                event_type=LedgerAuditEventType.DEFINITION_UPDATED,
                definition_id=definition_id,
                actor_id=actor_id,
                metadata={"updated_fields": ",".join(sorted(changes))},
                occurred_at=now,
            ),
        )
        return stored

    def delete_definition(self, definition_id: str, *, actor_id: Optional[str] = None) -> None:
        existing = self.get_definition(definition_id)
        purchase_count = self._repository.count_purchases_for_definition(definition_id)
        if purchase_count:
            raise PackageInUse(definition_id, purchase_count)
        if not self._repository.delete_package_definition(definition_id):
            raise NotFound("package definition", definition_id)

        logger.info("Package definition deleted", extra={"definition_id": definition_id})
        log_audit_event(
            self._event_logger,
            LedgerAuditEvent(
                event_type=LedgerAuditEventType.DEFINITION_DELETED,
                definition_id=definition_id,
                actor_id=actor_id,
                metadata={"name": existing.name},
                occurred_at=self._clock(),
            ),
        )


__all__ = ["PackageCatalog"]
