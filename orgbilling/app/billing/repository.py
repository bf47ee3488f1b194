"""PostgreSQL persistence for entitlements, subscriptions, and payments."""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Iterable, Iterator, Optional, Tuple

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...app_context import get_conn
from ..entitlements.models import Entitlement, Module
from ..pricing.models import BillingPeriod, ModulePrice
from ..subscriptions.models import Subscription, SubscriptionPeriod, SubscriptionStatus
from .models import BillingContact, Payment, PaymentStatus


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_module(row: dict) -> Module:
    return Module(
        module_id=row["id"],
        key=row["key"],
        name=row["name"],
        is_active=bool(row["is_active"]),
    )


def _row_to_entitlement(row: dict) -> Entitlement:
    return Entitlement(
        organization_id=row["organization_id"],
        module_id=row["module_id"],
        enabled=bool(row["is_enabled"]),
        plan=row.get("plan"),
        seats=row.get("seats"),
        expires_at=row.get("expires_at"),
        trial_ends_at=row.get("trial_ends_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_subscription(row: dict) -> Subscription:
    return Subscription(
        subscription_id=row["id"],
        organization_id=row["organization_id"],
        module_id=row["module_id"],
        plan=row["plan"],
        billing_period=BillingPeriod(row["billing_period"]),
        status=SubscriptionStatus(row["status"]),
        current_period_start=row["current_period_start"],
        current_period_end=row["current_period_end"],
        cancel_at_period_end=bool(row["cancel_at_period_end"]),
        canceled_at=row.get("canceled_at"),
        trial_ends_at=row.get("trial_ends_at"),
        grace_period_expires_at=row.get("grace_period_expires_at"),
        seats=row.get("seats"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_payment(row: dict) -> Payment:
    return Payment(
        payment_id=row["id"],
        organization_id=row["organization_id"],
        module_id=row.get("module_id"),
        subscription_id=row.get("subscription_id"),
        amount_minor_units=int(row["amount_minor_units"]),
        currency=row["currency"],
        status=PaymentStatus(row["status"]),
        provider=row["provider"],
        provider_ref=row["provider_ref"],
        invoice_url=row.get("invoice_url"),
        expires_at=row.get("expires_at"),
        paid_at=row.get("paid_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_price(row: dict) -> ModulePrice:
    return ModulePrice(
        module_id=row["module_id"],
        plan=row["plan"],
        billing_period=BillingPeriod(row["billing_period"]),
        amount_minor_units=int(row["amount_minor_units"]),
        currency=row["currency"],
        max_seats=row.get("max_seats"),
        created_at=row["created_at"],
    )


def _lock_clause(for_update: bool) -> str:
    return "FOR UPDATE" if for_update else ""


class PostgresBillingRepository:
    """Concrete repository persisting billing models in PostgreSQL.

    A repository created without a connection opens and commits one connection
    per call. :meth:`transaction` yields a repository bound to a single
    connection so several writes commit atomically.
    """

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def transaction(self) -> Iterator["PostgresBillingRepository"]:
        if self._conn is not None:
            yield self
            return
        with managed_connection() as (connection, _):
            yield PostgresBillingRepository(conn=connection)

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    # Modules and pricing -------------------------------------------------

    def get_module(self, module_id: str) -> Optional[Module]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM modules WHERE id = %s LIMIT 1", (module_id,))
            row = cursor.fetchone()
            return _row_to_module(row) if row else None

    def get_module_by_key(self, key: str) -> Optional[Module]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM modules WHERE key = %s LIMIT 1", (key,))
            row = cursor.fetchone()
            return _row_to_module(row) if row else None

    def lookup_price(
        self,
        module_id: str,
        plan: str,
        billing_period: BillingPeriod,
    ) -> Optional[ModulePrice]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM module_prices
                WHERE module_id = %s AND plan = %s AND billing_period = %s
                LIMIT 1
                """,
                (module_id, plan, BillingPeriod(billing_period).value),
            )
            row = cursor.fetchone()
            return _row_to_price(row) if row else None

    def list_prices(self, module_id: str) -> list[ModulePrice]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM module_prices
                WHERE module_id = %s
                ORDER BY plan ASC, billing_period ASC
                """,
                (module_id,),
            )
            return [_row_to_price(row) for row in cursor.fetchall() or []]

    # Entitlements --------------------------------------------------------

    def get_entitlement(
        self,
        organization_id: str,
        module_id: str,
        *,
        for_update: bool = False,
    ) -> Optional[Entitlement]:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT *
                FROM org_modules
                WHERE organization_id = %s AND module_id = %s
                LIMIT 1
                {_lock_clause(for_update)}
                """,
                (organization_id, module_id),
            )
            row = cursor.fetchone()
            return _row_to_entitlement(row) if row else None

    def save_entitlement(self, entitlement: Entitlement) -> Entitlement:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO org_modules (
                    organization_id,
                    module_id,
                    is_enabled,
                    plan,
                    seats,
                    expires_at,
                    trial_ends_at
                )
                VALUES (%(organization_id)s, %(module_id)s, %(is_enabled)s, %(plan)s,
                        %(seats)s, %(expires_at)s, %(trial_ends_at)s)
                ON CONFLICT (organization_id, module_id) DO UPDATE SET
                    is_enabled = EXCLUDED.is_enabled,
                    plan = EXCLUDED.plan,
                    seats = EXCLUDED.seats,
                    expires_at = EXCLUDED.expires_at,
                    trial_ends_at = EXCLUDED.trial_ends_at,
                    updated_at = NOW()
                RETURNING *
                """,
                {
                    "organization_id": entitlement.organization_id,
                    "module_id": entitlement.module_id,
                    "is_enabled": entitlement.enabled,
                    "plan": entitlement.plan,
                    "seats": entitlement.seats,
                    "expires_at": entitlement.expires_at,
                    "trial_ends_at": entitlement.trial_ends_at,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist entitlement")
            return _row_to_entitlement(row)

    def list_entitlements(self, organization_id: str) -> list[Entitlement]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM org_modules WHERE organization_id = %s ORDER BY created_at ASC",
                (organization_id,),
            )
            return [_row_to_entitlement(row) for row in cursor.fetchall() or []]

    def list_trial_entitlements(self) -> list[Entitlement]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM org_modules
                WHERE is_enabled = TRUE AND trial_ends_at IS NOT NULL
                ORDER BY trial_ends_at ASC
                """
            )
            return [_row_to_entitlement(row) for row in cursor.fetchall() or []]

    # Subscriptions -------------------------------------------------------

    def get_subscription(self, subscription_id: str, *, for_update: bool = False) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT *
                FROM subscriptions
                WHERE id = %s
                LIMIT 1
                {_lock_clause(for_update)}
                """,
                (subscription_id,),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def find_lineage_subscription(
        self,
        organization_id: str,
        module_id: str,
        *,
        for_update: bool = False,
    ) -> Optional[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT *
                FROM subscriptions
                WHERE organization_id = %s AND module_id = %s AND status <> %s
                ORDER BY created_at DESC
                LIMIT 1
                {_lock_clause(for_update)}
                """,
                (organization_id, module_id, SubscriptionStatus.CANCELED.value),
            )
            row = cursor.fetchone()
            return _row_to_subscription(row) if row else None

    def _subscription_params(self, subscription: Subscription) -> dict:
        return {
            "id": subscription.subscription_id,
            "organization_id": subscription.organization_id,
            "module_id": subscription.module_id,
            "plan": subscription.plan,
            "billing_period": subscription.billing_period.value,
            "status": subscription.status.value,
            "current_period_start": subscription.current_period_start,
            "current_period_end": subscription.current_period_end,
            "cancel_at_period_end": subscription.cancel_at_period_end,
            "canceled_at": subscription.canceled_at,
            "trial_ends_at": subscription.trial_ends_at,
            "grace_period_expires_at": subscription.grace_period_expires_at,
            "seats": subscription.seats,
        }

    def insert_subscription(self, subscription: Subscription) -> Subscription:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO subscriptions (
                    id,
                    organization_id,
                    module_id,
                    plan,
                    billing_period,
                    status,
                    current_period_start,
                    current_period_end,
                    cancel_at_period_end,
                    canceled_at,
                    trial_ends_at,
                    grace_period_expires_at,
                    seats
                )
                VALUES (%(id)s, %(organization_id)s, %(module_id)s, %(plan)s, %(billing_period)s,
                        %(status)s, %(current_period_start)s, %(current_period_end)s,
                        %(cancel_at_period_end)s, %(canceled_at)s, %(trial_ends_at)s,
                        %(grace_period_expires_at)s, %(seats)s)
                RETURNING *
                """,
                self._subscription_params(subscription),
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist subscription")
            return _row_to_subscription(row)

    def save_subscription(self, subscription: Subscription) -> Subscription:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE subscriptions
                SET plan = %(plan)s,
                    billing_period = %(billing_period)s,
                    status = %(status)s,
                    current_period_start = %(current_period_start)s,
                    current_period_end = %(current_period_end)s,
                    cancel_at_period_end = %(cancel_at_period_end)s,
                    canceled_at = %(canceled_at)s,
                    trial_ends_at = %(trial_ends_at)s,
                    grace_period_expires_at = %(grace_period_expires_at)s,
                    seats = %(seats)s,
                    updated_at = NOW()
                WHERE id = %(id)s
                RETURNING *
                """,
                self._subscription_params(subscription),
            )
            row = cursor.fetchone()
            if not row:
                raise LookupError(f"Subscription not found: {subscription.subscription_id}")
            return _row_to_subscription(row)

    def list_subscriptions(self, organization_id: str) -> list[Subscription]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM subscriptions WHERE organization_id = %s ORDER BY created_at DESC",
                (organization_id,),
            )
            return [_row_to_subscription(row) for row in cursor.fetchall() or []]

    def list_renewal_candidates(self, cutoff: datetime) -> list[str]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT id
                FROM subscriptions
                WHERE status = %s
                  AND cancel_at_period_end = FALSE
                  AND current_period_end <= %s
                ORDER BY current_period_end ASC
                """,
                (SubscriptionStatus.ACTIVE.value, cutoff),
            )
            return [row["id"] for row in cursor.fetchall() or []]

    def list_due_cancellations(self, now: datetime) -> list[str]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT id
                FROM subscriptions
                WHERE status = %s
                  AND cancel_at_period_end = TRUE
                  AND current_period_end <= %s
                ORDER BY current_period_end ASC
                """,
                (SubscriptionStatus.ACTIVE.value, now),
            )
            return [row["id"] for row in cursor.fetchall() or []]

    def record_period(self, period: SubscriptionPeriod) -> SubscriptionPeriod:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO subscription_periods (subscription_id, period_start, period_end, payment_id)
                VALUES (%s, %s, %s, %s)
                """,
                (period.subscription_id, period.period_start, period.period_end, period.payment_id),
            )
            return period

    # Payments ------------------------------------------------------------

    def insert_payment(self, payment: Payment) -> Tuple[Payment, bool]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO payments (
                    id,
                    organization_id,
                    module_id,
                    subscription_id,
                    amount_minor_units,
                    currency,
                    status,
                    provider,
                    provider_ref,
                    invoice_url,
                    expires_at,
                    paid_at
                )
                VALUES (%(id)s, %(organization_id)s, %(module_id)s, %(subscription_id)s,
                        %(amount_minor_units)s, %(currency)s, %(status)s, %(provider)s,
                        %(provider_ref)s, %(invoice_url)s, %(expires_at)s, %(paid_at)s)
                ON CONFLICT (provider, provider_ref) DO NOTHING
                RETURNING *
                """,
                {
                    "id": payment.payment_id,
                    "organization_id": payment.organization_id,
                    "module_id": payment.module_id,
                    "subscription_id": payment.subscription_id,
                    "amount_minor_units": payment.amount_minor_units,
                    "currency": payment.currency,
                    "status": payment.status.value,
                    "provider": payment.provider,
                    "provider_ref": payment.provider_ref,
                    "invoice_url": payment.invoice_url,
                    "expires_at": payment.expires_at,
                    "paid_at": payment.paid_at,
                },
            )
            row = cursor.fetchone()
            if row:
                return _row_to_payment(row), True
            cursor.execute(
                "SELECT * FROM payments WHERE provider = %s AND provider_ref = %s LIMIT 1",
                (payment.provider, payment.provider_ref),
            )
            existing = cursor.fetchone()
            if not existing:
                raise RuntimeError("Failed to persist payment")
            return _row_to_payment(existing), False

    def get_payment(self, provider: str, provider_ref: str, *, for_update: bool = False) -> Optional[Payment]:
        with self._cursor() as cursor:
            cursor.execute(
                f"""
                SELECT *
                FROM payments
                WHERE provider = %s AND provider_ref = %s
                LIMIT 1
                {_lock_clause(for_update)}
                """,
                (provider, provider_ref),
            )
            row = cursor.fetchone()
            return _row_to_payment(row) if row else None

    def save_payment(self, payment: Payment) -> Payment:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE payments
                SET subscription_id = %s,
                    status = %s,
                    invoice_url = %s,
                    expires_at = %s,
                    paid_at = %s,
                    updated_at = NOW()
                WHERE id = %s
                RETURNING *
                """,
                (
                    payment.subscription_id,
                    payment.status.value,
                    payment.invoice_url,
                    payment.expires_at,
                    payment.paid_at,
                    payment.payment_id,
                ),
            )
            row = cursor.fetchone()
            if not row:
                raise LookupError(f"Payment not found: {payment.payment_id}")
            return _row_to_payment(row)

    def find_open_payment(self, subscription_id: str, now: datetime) -> Optional[Payment]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM payments
                WHERE subscription_id = %s
                  AND status = %s
                  AND (expires_at IS NULL OR expires_at > %s)
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (subscription_id, PaymentStatus.PENDING.value, now),
            )
            row = cursor.fetchone()
            return _row_to_payment(row) if row else None

    def list_payments(self, organization_id: str, *, limit: int = 50) -> list[Payment]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM payments
                WHERE organization_id = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (organization_id, limit),
            )
            return [_row_to_payment(row) for row in cursor.fetchall() or []]

    # Contacts ------------------------------------------------------------

    def get_billing_contact(self, organization_id: str) -> Optional[BillingContact]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT id, name, billing_email, billing_contact_name
                FROM organizations
                WHERE id = %s
                LIMIT 1
                """,
                (organization_id,),
            )
            row = cursor.fetchone()
            if not row or not row.get("billing_email"):
                return None
            return BillingContact(
                organization_id=row["id"],
                email=row["billing_email"],
                name=row.get("billing_contact_name"),
                organization_name=row.get("name"),
            )


__all__ = ["PostgresBillingRepository", "managed_connection"]
