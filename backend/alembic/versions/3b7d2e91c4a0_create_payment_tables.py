"""create payment tables

Revision ID: 3b7d2e91c4a0
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3b7d2e91c4a0"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    """Create plans, billing profiles, payment tables, and the event ledger."""
    op.create_table(
        "plans",
        sa.Column("id", sa.String(length=50), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("price_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("price_currency", sa.String(length=3), nullable=False, server_default="usd"),
        sa.Column("billing_interval", sa.String(length=20), nullable=False, server_default="one_time"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "billing_profiles",
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("provider_customer_id", sa.String(length=255), nullable=True),
        sa.Column("current_plan_id", sa.String(length=50), nullable=True),
        sa.Column("subscription_status", sa.String(length=20), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["current_plan_id"], ["plans.id"]),
        sa.PrimaryKeyConstraint("owner_id"),
    )
    op.create_index(
        "ix_billing_profiles_provider_customer_id",
        "billing_profiles",
        ["provider_customer_id"],
        unique=True,
    )

    op.create_table(
        "payment_methods",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("provider_instrument_id", sa.String(length=255), nullable=False),
        sa.Column("method_type", sa.String(length=50), nullable=False, server_default="card"),
        sa.Column("brand", sa.String(length=50), nullable=True),
        sa.Column("last4", sa.String(length=4), nullable=True),
        sa.Column("exp_month", sa.Integer(), nullable=True),
        sa.Column("exp_year", sa.Integer(), nullable=True),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider_instrument_id"),
    )
    op.create_index("ix_payment_methods_owner_id", "payment_methods", ["owner_id"])
    op.create_index(
        "uq_payment_methods_owner_default",
        "payment_methods",
        ["owner_id"],
        unique=True,
        postgresql_where=sa.text("is_default"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("provider_intent_id", sa.String(length=255), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="usd"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("description", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider_intent_id"),
    )
    op.create_index("ix_transactions_owner_id", "transactions", ["owner_id"])

    op.create_table(
        "subscriptions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("owner_id", sa.String(length=255), nullable=False),
        sa.Column("plan_id", sa.String(length=50), nullable=False),
        sa.Column("kind", sa.String(length=20), nullable=False, server_default="one_time"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("provider_intent_id", sa.String(length=255), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["plan_id"], ["plans.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider_intent_id"),
    )
    op.create_index("ix_subscriptions_owner_id", "subscriptions", ["owner_id"])

    op.create_table(
        "processed_events",
        sa.Column("provider_event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("provider_event_id"),
    )

    op.create_table(
        "unresolved_events",
        sa.Column("provider_event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("customer_ref", sa.String(length=255), nullable=True),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("provider_event_id"),
    )
    op.create_index("ix_unresolved_events_customer_ref", "unresolved_events", ["customer_ref"])


def downgrade() -> None:
    """Drop all payment tables."""
    op.drop_index("ix_unresolved_events_customer_ref", table_name="unresolved_events")
    op.drop_table("unresolved_events")
    op.drop_table("processed_events")
    op.drop_index("ix_subscriptions_owner_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_index("ix_transactions_owner_id", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("uq_payment_methods_owner_default", table_name="payment_methods")
    op.drop_index("ix_payment_methods_owner_id", table_name="payment_methods")
    op.drop_table("payment_methods")
    op.drop_index("ix_billing_profiles_provider_customer_id", table_name="billing_profiles")
    op.drop_table("billing_profiles")
    op.drop_table("plans")
