"""Create websites, billing_reconciliation_runs and rate_limit_counters.

Revision ID: 001
Revises:
Create Date: 2026-09-02 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # -----------------------------------------------------------------------
    # websites
    # -----------------------------------------------------------------------
    op.create_table(
        "websites",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("request_id", sa.String(64), nullable=False, unique=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("project_type", sa.String(64), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="CREATED"),
        sa.Column("contact_email", sa.String(320), nullable=True),
        sa.Column("contact_name", sa.String(256), nullable=True),
        sa.Column("domain", sa.String(253), nullable=True),
        sa.Column("deployment_url", sa.String(1024), nullable=True),
        sa.Column("deployed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("billing_status", sa.String(16), nullable=True),
        sa.Column("billing_plan", sa.String(128), nullable=True),
        sa.Column("billing_price", sa.Float(), nullable=True),
        sa.Column("billing_cycle", sa.String(16), nullable=True),
        sa.Column("billing_activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("billing_due_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("billing_grace_ends_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("billing_last_payment_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("billing_suspended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("billing_payment_history", JSONB(), nullable=True),
        sa.Column("billing_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.CheckConstraint(
            "billing_status IS NULL OR billing_status IN ('PENDING', 'ACTIVE', 'OVERDUE', 'SUSPENDED')",
            name="ck_websites_billing_status",
        ),
        sa.CheckConstraint("billing_price IS NULL OR billing_price >= 0", name="ck_websites_billing_price"),
    )
    op.create_index("ix_websites_user_status", "websites", ["user_id", "status"])
    op.create_index("ix_websites_billing_status", "websites", ["billing_status"])
    op.create_index("ix_websites_billing_due_at", "websites", ["billing_due_at"])
    op.create_index("ix_websites_billing_grace_ends_at", "websites", ["billing_grace_ends_at"])

    # -----------------------------------------------------------------------
    # billing_reconciliation_runs
    # -----------------------------------------------------------------------
    op.create_table(
        "billing_reconciliation_runs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("trigger", sa.String(32), nullable=False),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("candidates", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pending_to_suspended", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("active_to_overdue", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("errors", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("conflicts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("notification_failures", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_billing_recon_runs_run_at", "billing_reconciliation_runs", ["run_at"])

    # -----------------------------------------------------------------------
    # rate_limit_counters
    # -----------------------------------------------------------------------
    op.create_table(
        "rate_limit_counters",
        sa.Column("key", sa.String(256), nullable=False),
        sa.Column("window_start", sa.BigInteger(), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key", "window_start"),
    )
    op.create_index("ix_rate_limit_counters_expires_at", "rate_limit_counters", ["expires_at"])


def downgrade() -> None:
    op.drop_index("ix_rate_limit_counters_expires_at")
    op.drop_table("rate_limit_counters")
    op.drop_index("ix_billing_recon_runs_run_at")
    op.drop_table("billing_reconciliation_runs")
    op.drop_index("ix_websites_billing_grace_ends_at")
    op.drop_index("ix_websites_billing_due_at")
    op.drop_index("ix_websites_billing_status")
    op.drop_index("ix_websites_user_status")
    op.drop_table("websites")
