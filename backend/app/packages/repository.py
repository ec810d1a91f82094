"""PostgreSQL persistence for package ledger domain objects."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from .models import (
    Advertiser,
    BillingRecord,
    PackageDefinition,
    PackagePurchase,
    PackageRequest,
    PackageRequestStatus,
    PackageState,
    PurchaseAggregate,
)

ConnectionFactory = Callable[[], PgConnection]

PACKAGE_LEDGER_SCHEMA = """
CREATE TABLE IF NOT EXISTS advertisers (
    id TEXT PRIMARY KEY,
    company_name TEXT NOT NULL,
    email TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS package_definitions (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    duration_months INTEGER NOT NULL CHECK (duration_months > 0),
    price NUMERIC(14, 2) NOT NULL CHECK (price >= 0),
    currency CHAR(3) NOT NULL DEFAULT 'INR',
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS package_purchases (
    id TEXT PRIMARY KEY,
    advertiser_id TEXT NOT NULL REFERENCES advertisers (id),
    package_definition_id TEXT NOT NULL REFERENCES package_definitions (id),
    state TEXT NOT NULL CHECK (state IN ('PENDING', 'ACTIVE', 'EXPIRED', 'CANCELLED')),
    price NUMERIC(14, 2) NOT NULL CHECK (price >= 0),
    discount NUMERIC(14, 2) NOT NULL DEFAULT 0 CHECK (discount >= 0),
    amount_paid NUMERIC(14, 2) NOT NULL DEFAULT 0 CHECK (amount_paid >= 0),
    pending_amount NUMERIC(14, 2) NOT NULL DEFAULT 0 CHECK (pending_amount >= 0),
    purchase_date TIMESTAMPTZ NOT NULL,
    payment_due_date TIMESTAMPTZ,
    activated_at TIMESTAMPTZ,
    expiry_date TIMESTAMPTZ,
    cancelled_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS package_purchases_state_expiry_idx
    ON package_purchases (state, expiry_date);

CREATE TABLE IF NOT EXISTS billing_records (
    id BIGSERIAL PRIMARY KEY,
    package_purchase_id TEXT NOT NULL REFERENCES package_purchases (id),
    amount NUMERIC(14, 2) NOT NULL CHECK (amount > 0),
    discount NUMERIC(14, 2) NOT NULL DEFAULT 0 CHECK (discount >= 0),
    payment_mode TEXT,
    transaction_reference TEXT,
    notes TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS billing_records_purchase_idx
    ON billing_records (package_purchase_id);

CREATE OR REPLACE FUNCTION billing_records_append_only() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'billing_records is append-only';
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS billing_records_append_only ON billing_records;
CREATE TRIGGER billing_records_append_only
    BEFORE UPDATE OR DELETE ON billing_records
    FOR EACH ROW EXECUTE FUNCTION billing_records_append_only();

CREATE TABLE IF NOT EXISTS renewal_reminder_watermarks (
    package_purchase_id TEXT NOT NULL,
    reminder_date DATE NOT NULL,
    claimed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (package_purchase_id, reminder_date)
);

CREATE TABLE IF NOT EXISTS package_requests (
    id TEXT PRIMARY KEY,
    advertiser_id TEXT NOT NULL REFERENCES advertisers (id),
    package_definition_id TEXT NOT NULL REFERENCES package_definitions (id),
    status TEXT NOT NULL CHECK (status IN ('pending', 'approved', 'rejected')),
    purchase_id TEXT REFERENCES package_purchases (id),
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE UNIQUE INDEX IF NOT EXISTS package_requests_one_pending_idx
    ON package_requests (advertiser_id)
    WHERE status = 'pending';
"""


def _row_to_advertiser(row: dict) -> Advertiser:
    return Advertiser(
        advertiser_id=row["id"],
        company_name=row["company_name"],
        email=row["email"],
    )


def _row_to_definition(row: dict) -> PackageDefinition:
    return PackageDefinition(
        definition_id=row["id"],
        name=row["name"],
        description=row.get("description"),
        duration_months=int(row["duration_months"]),
        price=Decimal(row["price"]),
        currency=row["currency"],
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_purchase(row: dict) -> PackagePurchase:
    return PackagePurchase(
        purchase_id=row["id"],
        advertiser_id=row["advertiser_id"],
        package_definition_id=row["package_definition_id"],
        state=PackageState(row["state"]),
        price=Decimal(row["price"]),
        discount=Decimal(row["discount"]),
        amount_paid=Decimal(row["amount_paid"]),
        pending_amount=Decimal(row["pending_amount"]),
        purchase_date=row["purchase_date"],
        payment_due_date=row.get("payment_due_date"),
        activated_at=row.get("activated_at"),
        expiry_date=row.get("expiry_date"),
        cancelled_at=row.get("cancelled_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_billing_record(row: dict) -> BillingRecord:
    return BillingRecord(
        record_id=int(row["id"]),
        purchase_id=row["package_purchase_id"],
        amount=Decimal(row["amount"]),
        discount=Decimal(row["discount"]),
        payment_mode=row.get("payment_mode"),
        transaction_reference=row.get("transaction_reference"),
        notes=row.get("notes"),
        created_at=row["created_at"],
    )


def _row_to_request(row: dict) -> PackageRequest:
    return PackageRequest(
        request_id=row["id"],
        advertiser_id=row["advertiser_id"],
        package_definition_id=row["package_definition_id"],
        status=PackageRequestStatus(row["status"]),
        purchase_id=row.get("purchase_id"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _purchase_params(purchase: PackagePurchase) -> Dict[str, object]:
    return {
        "id": purchase.purchase_id,
        "advertiser_id": purchase.advertiser_id,
        "package_definition_id": purchase.package_definition_id,
        "state": purchase.state.value,
        "price": purchase.price,
        "discount": purchase.discount,
        "amount_paid": purchase.amount_paid,
        "pending_amount": purchase.pending_amount,
        "purchase_date": purchase.purchase_date,
        "payment_due_date": purchase.payment_due_date,
        "activated_at": purchase.activated_at,
        "expiry_date": purchase.expiry_date,
        "cancelled_at": purchase.cancelled_at,
        "created_at": purchase.created_at,
        "updated_at": purchase.updated_at,
    }


class _PostgresPurchaseTransaction:
    def __init__(self, cursor: PgCursor, purchase: Optional[PackagePurchase]) -> None:
        self._cursor = cursor
        self.purchase = purchase

    def get_package_definition(self, definition_id: str) -> Optional[PackageDefinition]:
        self._cursor.execute("SELECT * FROM package_definitions WHERE id = %s", (definition_id,))
        row = self._cursor.fetchone()
        return _row_to_definition(row) if row else None

    def save_purchase(self, purchase: PackagePurchase) -> PackagePurchase:
        if self.purchase is None or purchase.purchase_id != self.purchase.purchase_id:
            raise ValueError("transaction can only save the purchase it locked")
        self._cursor.execute(
            """
            UPDATE package_purchases
            SET state = %(state)s,
                amount_paid = %(amount_paid)s,
                pending_amount = %(pending_amount)s,
                payment_due_date = %(payment_due_date)s,
                activated_at = %(activated_at)s,
                expiry_date = %(expiry_date)s,
                cancelled_at = %(cancelled_at)s,
                updated_at = %(updated_at)s
            WHERE id = %(id)s
            RETURNING *
            """,
            _purchase_params(purchase),
        )
        row = self._cursor.fetchone()
        if not row:
            raise RuntimeError("Failed to persist package purchase")
        return _row_to_purchase(row)

    def append_billing_record(
        self,
        *,
        purchase_id: str,
        amount: Decimal,
        discount: Decimal,
        payment_mode: Optional[str],
        transaction_reference: Optional[str],
        notes: Optional[str],
        created_at: datetime,
    ) -> BillingRecord:
        self._cursor.execute(
            """
            INSERT INTO billing_records (
                package_purchase_id,
                amount,
                discount,
                payment_mode,
                transaction_reference,
                notes,
                created_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (purchase_id, amount, discount, payment_mode, transaction_reference, notes, created_at),
        )
        row = self._cursor.fetchone()
        if not row:
            raise RuntimeError("Failed to persist billing record")
        return _row_to_billing_record(row)


class PostgresPackageRepository:
    """Concrete repository persisting package ledger models in PostgreSQL."""

    def __init__(self, *, connection_factory: ConnectionFactory) -> None:
        self._connection_factory = connection_factory

    @contextmanager
    def _cursor(self, *, snapshot: bool = False) -> Iterator[PgCursor]:
        connection = self._connection_factory()
        try:
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                if snapshot:
                    cursor.execute("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ READ ONLY")
                yield cursor
                connection.commit()
            except Exception:
                connection.rollback()
                raise
            finally:
                cursor.close()
        finally:
            connection.close()

    def create_schema(self) -> None:
        with self._cursor() as cursor:
            cursor.execute(PACKAGE_LEDGER_SCHEMA)

    def get_advertiser(self, advertiser_id: str) -> Optional[Advertiser]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM advertisers WHERE id = %s", (advertiser_id,))
            row = cursor.fetchone()
            return _row_to_advertiser(row) if row else None

    def get_package_definition(self, definition_id: str) -> Optional[PackageDefinition]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM package_definitions WHERE id = %s", (definition_id,))
            row = cursor.fetchone()
            return _row_to_definition(row) if row else None

    def list_package_definitions(self, *, include_inactive: bool = False) -> Sequence[PackageDefinition]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM package_definitions
                WHERE %s OR is_active
                ORDER BY price ASC, name ASC
                """,
                (include_inactive,),
            )
            return [_row_to_definition(row) for row in cursor.fetchall() or []]

    def save_package_definition(self, definition: PackageDefinition) -> PackageDefinition:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO package_definitions (
                    id,
                    name,
                    description,
                    duration_months,
                    price,
                    currency,
                    is_active,
                    created_at,
                    updated_at
                )
                VALUES (%(id)s, %(name)s, %(description)s, %(duration_months)s, %(price)s,
                        %(currency)s, %(is_active)s, %(created_at)s, %(updated_at)s)
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name,
                    description = EXCLUDED.description,
                    duration_months = EXCLUDED.duration_months,
                    price = EXCLUDED.price,
                    currency = EXCLUDED.currency,
                    is_active = EXCLUDED.is_active,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                {
                    "id": definition.definition_id,
                    "name": definition.name,
                    "description": definition.description,
                    "duration_months": definition.duration_months,
                    "price": definition.price,
                    "currency": definition.currency,
                    "is_active": definition.is_active,
                    "created_at": definition.created_at,
                    "updated_at": definition.updated_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist package definition")
            return _row_to_definition(row)

    def delete_package_definition(self, definition_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM package_definitions WHERE id = %s", (definition_id,))
            return cursor.rowcount > 0

    def count_purchases_for_definition(self, definition_id: str) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT COUNT(*) AS purchase_count FROM package_purchases WHERE package_definition_id = %s",
                (definition_id,),
            )
            row = cursor.fetchone()
            return int(row["purchase_count"]) if row else 0

    def insert_purchase(self, purchase: PackagePurchase) -> PackagePurchase:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO package_purchases (
                    id,
                    advertiser_id,
                    package_definition_id,
                    state,
                    price,
                    discount,
                    amount_paid,
                    pending_amount,
                    purchase_date,
                    payment_due_date,
                    activated_at,
                    expiry_date,
                    cancelled_at,
                    created_at,
                    updated_at
                )
                VALUES (%(id)s, %(advertiser_id)s, %(package_definition_id)s, %(state)s,
                        %(price)s, %(discount)s, %(amount_paid)s, %(pending_amount)s,
                        %(purchase_date)s, %(payment_due_date)s, %(activated_at)s,
                        %(expiry_date)s, %(cancelled_at)s, %(created_at)s, %(updated_at)s)
                RETURNING *
                """,
                _purchase_params(purchase),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist package purchase")
            return _row_to_purchase(row)

    def get_purchase(self, purchase_id: str) -> Optional[PackagePurchase]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM package_purchases WHERE id = %s", (purchase_id,))
            row = cursor.fetchone()
            return _row_to_purchase(row) if row else None

    @contextmanager
    def purchase_transaction(self, purchase_id: str) -> Iterator[_PostgresPurchaseTransaction]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM package_purchases WHERE id = %s FOR UPDATE", (purchase_id,))
            row = cursor.fetchone()
            yield _PostgresPurchaseTransaction(cursor, _row_to_purchase(row) if row else None)

    def expire_purchases(
        self,
        *,
        now: datetime,
        purchase_ids: Optional[Iterable[str]] = None,
    ) -> Sequence[str]:
        ids = list(purchase_ids) if purchase_ids is not None else None
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE package_purchases
                SET state = %s, updated_at = %s
                WHERE state = %s
                  AND expiry_date < %s
                  AND (%s::text[] IS NULL OR id = ANY(%s::text[]))
                RETURNING id
                """,
                (
                    PackageState.EXPIRED.value,
                    now,
                    PackageState.ACTIVE.value,
                    now,
                    ids,
                    ids,
                ),
            )
            return sorted(row["id"] for row in cursor.fetchall() or [])

    def load_purchase_aggregates(
        self,
        *,
        purchase_ids: Optional[Iterable[str]] = None,
        advertiser_id: Optional[str] = None,
        states: Optional[Iterable[PackageState]] = None,
    ) -> Sequence[PurchaseAggregate]:
        ids = list(purchase_ids) if purchase_ids is not None else None
        state_values = [state.value for state in states] if states is not None else None
        with self._cursor(snapshot=True) as cursor:
            cursor.execute(
                """
                SELECT *
                FROM package_purchases
                WHERE (%(ids)s::text[] IS NULL OR id = ANY(%(ids)s::text[]))
                  AND (%(advertiser_id)s::text IS NULL OR advertiser_id = %(advertiser_id)s)
                  AND (%(states)s::text[] IS NULL OR state = ANY(%(states)s::text[]))
                ORDER BY id
                """,
                {"ids": ids, "advertiser_id": advertiser_id, "states": state_values},
            )
            purchases = [_row_to_purchase(row) for row in cursor.fetchall() or []]
            if not purchases:
                return []

            purchase_keys = [purchase.purchase_id for purchase in purchases]
            definition_keys = sorted({purchase.package_definition_id for purchase in purchases})
            advertiser_keys = sorted({purchase.advertiser_id for purchase in purchases})

            cursor.execute("SELECT * FROM package_definitions WHERE id = ANY(%s)", (definition_keys,))
            definitions = {row["id"]: _row_to_definition(row) for row in cursor.fetchall() or []}
            cursor.execute("SELECT * FROM advertisers WHERE id = ANY(%s)", (advertiser_keys,))
            advertisers = {row["id"]: _row_to_advertiser(row) for row in cursor.fetchall() or []}
            cursor.execute(
                "SELECT * FROM billing_records WHERE package_purchase_id = ANY(%s) ORDER BY id",
                (purchase_keys,),
            )
            records: Dict[str, List[BillingRecord]] = {}
            for row in cursor.fetchall() or []:
                record = _row_to_billing_record(row)
                records.setdefault(record.purchase_id, []).append(record)

        return [
            PurchaseAggregate(
                purchase=purchase,
                definition=definitions.get(purchase.package_definition_id),
                advertiser=advertisers.get(purchase.advertiser_id),
                billing_records=tuple(records.get(purchase.purchase_id, ())),
            )
            for purchase in purchases
        ]

    def list_billing_records(
        self,
        *,
        advertiser_id: Optional[str] = None,
        purchase_id: Optional[str] = None,
    ) -> Sequence[BillingRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT br.*
                FROM billing_records AS br
                JOIN package_purchases AS pp ON pp.id = br.package_purchase_id
                WHERE (%(advertiser_id)s::text IS NULL OR pp.advertiser_id = %(advertiser_id)s)
                  AND (%(purchase_id)s::text IS NULL OR br.package_purchase_id = %(purchase_id)s)
                ORDER BY br.id
                """,
                {"advertiser_id": advertiser_id, "purchase_id": purchase_id},
            )
            return [_row_to_billing_record(row) for row in cursor.fetchall() or []]

    def get_billing_record(self, record_id: int) -> Optional[BillingRecord]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM billing_records WHERE id = %s", (record_id,))
            row = cursor.fetchone()
            return _row_to_billing_record(row) if row else None

    def insert_package_request(self, request: PackageRequest) -> Optional[PackageRequest]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO package_requests (
                    id,
                    advertiser_id,
                    package_definition_id,
                    status,
                    purchase_id,
                    created_at,
                    updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (advertiser_id) WHERE status = 'pending' DO NOTHING
                RETURNING *
                """,
                (
                    request.request_id,
                    request.advertiser_id,
                    request.package_definition_id,
                    request.status.value,
                    request.purchase_id,
                    request.created_at,
                    request.updated_at,
                ),
            )
            row = cursor.fetchone()
            return _row_to_request(row) if row else None

    def get_package_request(self, request_id: str) -> Optional[PackageRequest]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM package_requests WHERE id = %s", (request_id,))
            row = cursor.fetchone()
            return _row_to_request(row) if row else None

    def list_package_requests(
        self,
        *,
        status: Optional[PackageRequestStatus] = None,
        advertiser_id: Optional[str] = None,
    ) -> Sequence[PackageRequest]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM package_requests
                WHERE (%(status)s::text IS NULL OR status = %(status)s)
                  AND (%(advertiser_id)s::text IS NULL OR advertiser_id = %(advertiser_id)s)
                ORDER BY created_at DESC
                """,
                {"status": status.value if status is not None else None, "advertiser_id": advertiser_id},
            )
            return [_row_to_request(row) for row in cursor.fetchall() or []]

    def transition_package_request(
        self,
        request_id: str,
        *,
        from_status: PackageRequestStatus,
        to_status: PackageRequestStatus,
        purchase_id: Optional[str] = None,
        updated_at: datetime,
    ) -> Optional[PackageRequest]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE package_requests
                SET status = %s,
                    purchase_id = COALESCE(%s, purchase_id),
                    updated_at = %s
                WHERE id = %s AND status = %s
                RETURNING *
                """,
                (to_status.value, purchase_id, updated_at, request_id, from_status.value),
            )
            row = cursor.fetchone()
            return _row_to_request(row) if row else None


class PostgresReminderWatermarkStore:
    """Reminder watermarks persisted with insert-if-absent semantics."""

    def __init__(self, *, connection_factory: ConnectionFactory) -> None:
        self._connection_factory = connection_factory

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        connection = self._connection_factory()
        try:
            cursor = connection.cursor()
            try:
                yield cursor
                connection.commit()
            except Exception:
                connection.rollback()
                raise
            finally:
                cursor.close()
        finally:
            connection.close()

    def claim(self, purchase_id: str, reminder_date: date) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO renewal_reminder_watermarks (package_purchase_id, reminder_date)
                VALUES (%s, %s)
                ON CONFLICT (package_purchase_id, reminder_date) DO NOTHING
                """,
                (purchase_id, reminder_date),
            )
            return cursor.rowcount > 0

    def release(self, purchase_id: str, reminder_date: date) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                "DELETE FROM renewal_reminder_watermarks WHERE package_purchase_id = %s AND reminder_date = %s",
                (purchase_id, reminder_date),
            )


def connect(**db_config: object) -> PgConnection:
    """Open a new psycopg2 connection from keyword settings."""

    return psycopg2.connect(**db_config)


__all__ = [
    "PACKAGE_LEDGER_SCHEMA",
    "PostgresPackageRepository",
    "PostgresReminderWatermarkStore",
    "connect",
]
