"""
Subscription Store
==================

Durable subscription records plus the append-only payment history ledger.

All mutations are single-row: inserts, or UPDATEs keyed by subscription id.
The post-charge write is conditional: it only lands if the row is not
cancelled and still carries the due time the charge was computed from, so
a concurrent cancel or a competing charge is never overwritten.

Before any ledger call a charge takes a lease on the row
(``in_flight_until``); the outcome write releases it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.engine import Engine
from sqlmodel import select

from app.core.database import get_engine, get_session_context, sqlite_retry
from app.models.subscription import (
    ACTIVE,
    CANCELLED,
    CHARGEABLE_STATUSES,
    PaymentHistory,
    Subscription,
)

logger = logging.getLogger(__name__)


class SubscriptionStore:
    """Repository over the subscriptions and payment_history tables."""

    def __init__(self, engine: Optional[Engine] = None):
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine or get_engine()

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def create(self, subscription: Subscription) -> Subscription:
        def _insert() -> Subscription:
            with get_session_context(self.engine) as session:
                session.add(subscription)
                session.commit()
                session.refresh(subscription)
                session.expunge(subscription)
                return subscription

        return sqlite_retry(_insert)

    def get(self, subscription_id: str) -> Optional[Subscription]:
        with get_session_context(self.engine) as session:
            return session.get(Subscription, subscription_id)

    def get_by_delegated_key(self, delegated_key_id: str) -> Optional[Subscription]:
        with get_session_context(self.engine) as session:
            stmt = select(Subscription).where(Subscription.delegated_key_id == delegated_key_id)
            return session.exec(stmt).first()

    def find_current_for_user(self, user_address: str) -> Optional[Subscription]:
        """Most recent live (active or past_due) subscription for an address."""
        with get_session_context(self.engine) as session:
            stmt = (
                select(Subscription)
                .where(Subscription.user_address == user_address.lower())
                .where(Subscription.status.in_(CHARGEABLE_STATUSES))
                .order_by(Subscription.next_charge_due_at.desc())
                .limit(1)
            )
            return session.exec(stmt).first()

    def find_due(self, now: int, statuses: Sequence[str] = (ACTIVE,)) -> List[Subscription]:
        with get_session_context(self.engine) as session:
            stmt = (
                select(Subscription)
                .where(Subscription.status.in_(list(statuses)))
                .where(Subscription.next_charge_due_at <= now)
                .order_by(Subscription.next_charge_due_at.asc())
            )
            return list(session.exec(stmt).all())

    def claim_charge(self, subscription_id: str, *, expected_due_at: int, now: float, lease_until: float) -> bool:
        """Take the charge lease for the interval due at *expected_due_at*.

        Runs before the ledger call. Only one UPDATE can match, so two
        processes never charge the same interval. Returns False when a live
        lease exists or the row no longer matches.
        """
        stmt = (
            sa.update(Subscription)
            .where(Subscription.id == subscription_id)
            .where(Subscription.status != CANCELLED)
            .where(Subscription.next_charge_due_at == expected_due_at)
            .where(sa.or_(Subscription.in_flight_until.is_(None), Subscription.in_flight_until < now))
            .values(in_flight_until=lease_until)
        )
        claimed = self._execute_update(stmt) == 1
        if not claimed:
            logger.info(
                "charge_claim_rejected",
                extra={"subscription_id": subscription_id, "expected_due_at": expected_due_at},
            )
        return claimed

    def release_claim(self, subscription_id: str, lease_until: float) -> None:
        """Drop our lease if it is still ours (the outcome write normally clears it already)."""
        stmt = (
            sa.update(Subscription)
            .where(Subscription.id == subscription_id)
            .where(Subscription.in_flight_until == lease_until)
            .values(in_flight_until=None)
        )
        self._execute_update(stmt)

    def apply_charge_result(
        self,
        subscription_id: str,
        *,
        status: str,
        expected_due_at: int,
        next_charge_due_at: Optional[int] = None,
        key_registered: Optional[bool] = None,
    ) -> bool:
        """Write a charge outcome and release the lease. False when the guard rejected the write."""
        values: dict = {"status": status, "in_flight_until": None, "updated_at": datetime.now(timezone.utc)}
        if next_charge_due_at is not None:
            values["next_charge_due_at"] = next_charge_due_at
        if key_registered is not None:
            values["key_registered"] = key_registered

        stmt = (
            sa.update(Subscription)
            .where(Subscription.id == subscription_id)
            .where(Subscription.status != CANCELLED)
            .where(Subscription.next_charge_due_at == expected_due_at)
            .values(**values)
        )

        applied = self._execute_update(stmt) == 1
        if not applied:
            logger.warning(
                "charge_result_write_skipped",
                extra={"subscription_id": subscription_id, "status": status, "expected_due_at": expected_due_at},
            )
        return applied

    def cancel(self, subscription_id: str) -> bool:
        """Mark cancelled. Returns False only when the subscription does not exist."""
        stmt = (
            sa.update(Subscription)
            .where(Subscription.id == subscription_id)
            .values(status=CANCELLED, updated_at=datetime.now(timezone.utc))
        )
        return self._execute_update(stmt) == 1

    def _execute_update(self, stmt) -> int:
        def _update() -> int:
            with get_session_context(self.engine) as session:
                result = session.execute(stmt)
                session.commit()
                return result.rowcount

        return sqlite_retry(_update)

    # ------------------------------------------------------------------
    # Payment history (append-only)
    # ------------------------------------------------------------------

    def append_history(
        self,
        delegated_key_id: str,
        *,
        amount: str,
        outcome: str,
        recorded_at: float,
        transaction_ref: str = "",
    ) -> PaymentHistory:
        entry = PaymentHistory(
            delegated_key_id=delegated_key_id,
            amount=amount,
            outcome=outcome,
            transaction_ref=transaction_ref,
            recorded_at=recorded_at,
        )

        def _insert() -> PaymentHistory:
            with get_session_context(self.engine) as session:
                session.add(entry)
                session.commit()
                session.refresh(entry)
                session.expunge(entry)
                return entry

        return sqlite_retry(_insert)

    def history(self, delegated_key_id: str, limit: int = 20) -> List[PaymentHistory]:
        """Newest first."""
        with get_session_context(self.engine) as session:
            stmt = (
                select(PaymentHistory)
                .where(PaymentHistory.delegated_key_id == delegated_key_id)
                .order_by(PaymentHistory.recorded_at.desc(), PaymentHistory.id.desc())
                .limit(limit)
            )
            return list(session.exec(stmt).all())
