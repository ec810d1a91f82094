"""Errors raised by package ledger operations."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status

from .models import PackageRequestStatus, PackageState


@dataclass
class PackageLedgerError(Exception):
    """Base class for ledger failures surfaced to callers."""

    code: str
    message: str
    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


class NotFound(PackageLedgerError):
    """A referenced advertiser, definition, purchase or billing record is missing."""

    def __init__(self, resource: str, identifier: object) -> None:
        super().__init__(
            code="not_found",
            message=f"{resource} {identifier!r} not found",
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"resource": resource, "id": str(identifier)},
        )
        self.resource = resource
        self.identifier = identifier


class InactivePackage(PackageLedgerError):
    """The package definition is disabled for new purchases."""

    def __init__(self, definition_id: str) -> None:
        super().__init__(
            code="inactive_package",
            message=f"package definition {definition_id!r} is inactive",
            status_code=status.HTTP_409_CONFLICT,
            detail={"definition_id": definition_id},
        )
        self.definition_id = definition_id


class InvalidStateTransition(PackageLedgerError):
    """The requested action is not allowed from the purchase's current state."""

    def __init__(self, purchase_id: str, state: PackageState, action: str) -> None:
        super().__init__(
            code="invalid_state_transition",
            message=f"cannot {action} purchase {purchase_id!r} in state {state.value}",
            status_code=status.HTTP_409_CONFLICT,
            detail={"purchase_id": purchase_id, "state": state.value, "action": action},
        )
        self.purchase_id = purchase_id
        self.state = state
        self.action = action


class OverpaymentError(PackageLedgerError):
    """The payment amount is not positive or exceeds the remaining due."""

    def __init__(self, purchase_id: str, amount: Decimal, pending_amount: Decimal) -> None:
        if amount <= 0:
            message = f"payment amount must be positive, got {amount}"
        else:
            message = (
                f"payment of {amount} exceeds pending amount {pending_amount}"
                f" for purchase {purchase_id!r}"
            )
        super().__init__(
            code="overpayment",
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "purchase_id": purchase_id,
                "amount": str(amount),
                "pending_amount": str(pending_amount),
            },
        )
        self.purchase_id = purchase_id
        self.amount = amount
        self.pending_amount = pending_amount


class PackageInUse(PackageLedgerError):
    """A catalog change would alter a definition already referenced by purchases."""

    def __init__(self, definition_id: str, purchase_count: int, fields: Optional[list] = None) -> None:
        detail: Dict[str, Any] = {"definition_id": definition_id, "purchase_count": purchase_count}
        if fields:
            detail["fields"] = sorted(fields)
        super().__init__(
            code="package_in_use",
            message=f"package definition {definition_id!r} is referenced by {purchase_count} purchase(s)",
            status_code=status.HTTP_409_CONFLICT,
            detail=detail,
        )
        self.definition_id = definition_id
        self.purchase_count = purchase_count


class PendingRequestExists(PackageLedgerError):
    """The advertiser already has a package request awaiting review."""

    def __init__(self, advertiser_id: str) -> None:
        super().__init__(
            code="pending_request_exists",
            message=f"advertiser {advertiser_id!r} already has a pending package request",
            status_code=status.HTTP_409_CONFLICT,
            detail={"advertiser_id": advertiser_id},
        )
        self.advertiser_id = advertiser_id


class RequestNotPending(PackageLedgerError):
    """The package request has already been approved or rejected."""

    def __init__(self, request_id: str, request_status: PackageRequestStatus) -> None:
        super().__init__(
            code="request_not_pending",
            message=f"package request {request_id!r} is {request_status.value}, not pending",
            status_code=status.HTTP_409_CONFLICT,
            detail={"request_id": request_id, "status": request_status.value},
        )
        self.request_id = request_id
        self.request_status = request_status


__all__ = [
    "InactivePackage",
    "InvalidStateTransition",
    "NotFound",
    "OverpaymentError",
    "PackageInUse",
    "PackageLedgerError",
    "PendingRequestExists",
    "RequestNotPending",
]
