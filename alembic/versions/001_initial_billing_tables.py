"""initial subscription, delegated key and payment history tables

Revision ID: 001_initial
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- subscriptions ---
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(32), primary_key=True),
        sa.Column("user_address", sa.String(64), nullable=False),
        sa.Column("plan_id", sa.String(64), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("delegated_key_id", sa.String(64), nullable=False),
        sa.Column("authorization_payload", sa.Text, nullable=False),
        sa.Column("authorization_signature", sa.Text, nullable=False),
        sa.Column("key_registered", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("next_charge_due_at", sa.BigInteger, nullable=False),
        sa.Column("in_flight_until", sa.Float, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_subscriptions_user_address", "subscriptions", ["user_address"])
    op.create_index("ix_subscriptions_delegated_key_id", "subscriptions", ["delegated_key_id"], unique=True)
    op.create_index("ix_subscriptions_status_due", "subscriptions", ["status", "next_charge_due_at"])

    # --- delegated_keys ---
    op.create_table(
        "delegated_keys",
        sa.Column("delegated_key_id", sa.String(64), primary_key=True),
        sa.Column("encrypted_private_key", sa.Text, nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )

    # --- payment_history (append-only) ---
    op.create_table(
        "payment_history",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("delegated_key_id", sa.String(64), nullable=False),
        sa.Column("amount", sa.String(64), nullable=False),
        sa.Column("transaction_ref", sa.String(128), nullable=False, server_default=""),
        sa.Column("outcome", sa.String(16), nullable=False),
        sa.Column("recorded_at", sa.Float, nullable=False),
    )
    op.create_index("ix_payment_history_delegated_key_id", "payment_history", ["delegated_key_id"])
    op.create_index("ix_payment_history_recorded_at", "payment_history", ["recorded_at"])


def downgrade() -> None:
    op.drop_table("payment_history")
    op.drop_table("delegated_keys")
    op.drop_table("subscriptions")
