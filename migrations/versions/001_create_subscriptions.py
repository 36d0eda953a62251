"""Create subscriptions table.

Revision ID: 001_create_subscriptions
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "001_create_subscriptions"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "subscriptions",
        sa.Column("owner_id", sa.String(128), nullable=False),
        sa.Column("project_id", sa.String(128), nullable=False),
        sa.Column("project_name", sa.String(100), nullable=False),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column(
            "tier",
            sa.Enum("free", "pro", "executive", name="quota_tier"),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum(
                "inactive",
                "active_free",
                "active_pro",
                "active_executive",
                name="subscription_status",
            ),
            nullable=False,
        ),
        sa.Column("credential_id", sa.String(128), nullable=False),
        sa.Column("usage_plan_id", sa.String(128), nullable=False),
        sa.Column("api_key", sa.String(256), nullable=True),
        sa.Column("card_token", sa.String(256), nullable=True),
        sa.Column("card_expiry", sa.String(16), nullable=True),
        sa.Column("next_payment_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("current_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("owner_id", "project_id"),
    )

    # Renewal scans: due subscriptions of one status, oldest first
    op.create_index(
        "ix_subscriptions_status_next_payment",
        "subscriptions",
        ["status", "next_payment_date"],
    )
    # Free tier quota counting per owner
    op.create_index(
        "ix_subscriptions_owner_status",
        "subscriptions",
        ["owner_id", "status"],
    )


def downgrade() -> None:
    op.drop_index("ix_subscriptions_owner_status", table_name="subscriptions")
    op.drop_index("ix_subscriptions_status_next_payment", table_name="subscriptions")
    op.drop_table("subscriptions")
    sa.Enum(name="subscription_status").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="quota_tier").drop(op.get_bind(), checkfirst=True)
