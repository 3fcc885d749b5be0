"""add indexes for order reconciliation scans

Revision ID: 0002_reconciliation_indexes
Revises: 0001_payments
Create Date: 2026-10-14
"""

from alembic import op


revision = "0002_reconciliation_indexes"
down_revision = "0001_payments"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_index(
        "ix_payments_status_updated_at",
        "payments",
        ["status", "updated_at"],
    )
    op.create_index(
        "ix_payments_user_id_created_at",
        "payments",
        ["user_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_payments_user_id_created_at", table_name="payments")
    op.drop_index("ix_payments_status_updated_at", table_name="payments")
