"""
Subscription Models
===================

SQLModel tables for recurring-billing state:
- Subscription: one row per subscription, mutated only by the billing engine.
- DelegatedKeyRecord: encrypted delegated private keys, read only by the key vault.
- PaymentHistory: append-only charge ledger keyed by delegated key id.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import BigInteger, Index
from sqlmodel import Column, Field, SQLModel, Text

# Subscription statuses
ACTIVE = "active"
PAST_DUE = "past_due"
CANCELLED = "cancelled"

CHARGEABLE_STATUSES = (ACTIVE, PAST_DUE)

# Derived lifecycle phase for a subscription whose key was never registered
PENDING_ACTIVATION = "pending_activation"

# Payment outcomes
SUCCESS = "success"
FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Subscription(SQLModel, table=True):
    """
    A user's recurring subscription.

    ``next_charge_due_at`` (epoch seconds) is the single source of truth
    for scheduling. ``key_registered`` flips to True together with the
    first confirmed charge, after which the key authorization is never
    attached again. ``in_flight_until`` is the cross-process charge lease:
    a charge may only start once it is NULL or expired.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (Index("ix_subscriptions_status_due", "status", "next_charge_due_at"),)

    id: str = Field(default_factory=lambda: uuid4().hex, primary_key=True, max_length=32)
    user_address: str = Field(index=True, max_length=64)
    plan_id: str = Field(max_length=64)
    status: str = Field(default=ACTIVE, max_length=32)
    delegated_key_id: str = Field(unique=True, index=True, max_length=64)
    authorization_payload: str = Field(sa_column=Column(Text, nullable=False))
    authorization_signature: str = Field(sa_column=Column(Text, nullable=False))
    key_registered: bool = Field(default=False)
    next_charge_due_at: int = Field(sa_column=Column(BigInteger, nullable=False))
    # Charge lease (epoch seconds); set while some worker has a charge in flight
    in_flight_until: Optional[float] = Field(default=None)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def phase(self) -> str:
        """Status as shown to users; surfaces an unregistered key as pending_activation."""
        if self.status != CANCELLED and not self.key_registered:
            return PENDING_ACTIVATION
        return self.status


class DelegatedKeyRecord(SQLModel, table=True):
    """Delegated private key, Fernet-encrypted at rest."""

    __tablename__ = "delegated_keys"

    delegated_key_id: str = Field(primary_key=True, max_length=64)
    encrypted_private_key: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(default_factory=_utcnow)


class PaymentHistory(SQLModel, table=True):
    """Append-only record of one charge attempt."""

    __tablename__ = "payment_history"

    id: Optional[int] = Field(default=None, primary_key=True)
    delegated_key_id: str = Field(index=True, max_length=64)
    amount: str = Field(max_length=64)
    transaction_ref: str = Field(default="", max_length=128)
    outcome: str = Field(max_length=16)
    recorded_at: float = Field(index=True)
