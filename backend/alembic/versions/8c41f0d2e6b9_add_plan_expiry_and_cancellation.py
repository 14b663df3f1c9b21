"""add plan expiry and cancellation

Revision ID: 8c41f0d2e6b9
Revises: 3b7d2e91c4a0
Create Date: 2026-10-18 12:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "8c41f0d2e6b9"
down_revision: str | Sequence[str] | None = "3b7d2e91c4a0"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Entitlement expiry on billing profiles, cancel-at-period-end on subscriptions."""
    op.add_column(
        "billing_profiles",
        sa.Column("entitlement_expires_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.add_column(
        "subscriptions",
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
    )


def downgrade() -> None:
    op.drop_column("subscriptions", "cancel_at_period_end")
    op.drop_column("billing_profiles", "entitlement_expires_at")
