"""create credit ledger schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "credit_balances",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("subscription_credits", sa.Integer(), nullable=False),
        sa.Column("subscription_monthly_allocation", sa.Integer(), nullable=False),
        sa.Column("subscription_resets_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("extra_credits_remaining", sa.Integer(), nullable=False),
        sa.Column("last_updated", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.CheckConstraint("subscription_credits >= 0", name="ck_credit_balances_subscription_non_negative"),
        sa.CheckConstraint("extra_credits_remaining >= 0", name="ck_credit_balances_extra_non_negative"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_credit_balances_account_id"), "credit_balances", ["account_id"], unique=True)

    op.create_table(
        "credit_ledger",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("original_transaction_id", sa.String(), nullable=True),
        sa.Column("product_id", sa.String(), nullable=True),
        sa.Column("platform", sa.String(), nullable=True),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("consumed", sa.Integer(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("receipt_data", sa.Text(), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_reason", sa.String(), nullable=True),
        sa.Column("device_id", sa.String(), nullable=True),
        sa.Column("provider", sa.String(), nullable=True),
        sa.Column("provider_user_id", sa.String(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index(op.f("ix_credit_ledger_account_id"), "credit_ledger", ["account_id"], unique=False)
    op.create_index(op.f("ix_credit_ledger_event_type"), "credit_ledger", ["event_type"], unique=False)
    op.create_index(
        op.f("ix_credit_ledger_original_transaction_id"),
        "credit_ledger",
        ["original_transaction_id"],
        unique=False,
    )
    op.create_index("ix_credit_ledger_account_occurred", "credit_ledger", ["account_id", "occurred_at"], unique=False)
    op.create_index("ix_credit_ledger_bonus_identity", "credit_ledger", ["provider", "provider_user_id"], unique=False)
    op.create_index(
        "uq_credit_ledger_welcome_bonus_device",
        "credit_ledger",
        ["device_id"],
        unique=True,
        postgresql_where=sa.text("event_type = 'welcome_bonus'"),
        sqlite_where=sa.text("event_type = 'welcome_bonus'"),
    )

    op.create_table(
        "usage_counters",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("usage_date", sa.Date(), nullable=False),
        sa.Column("text_count", sa.Integer(), nullable=False),
        sa.Column("image_count", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("account_id", "usage_date", name="uq_usage_counters_account_date"),
    )
    op.create_index(op.f("ix_usage_counters_account_id"), "usage_counters", ["account_id"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_usage_counters_account_id"), table_name="usage_counters")
    op.drop_table("usage_counters")
    op.drop_index("uq_credit_ledger_welcome_bonus_device", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_bonus_identity", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_account_occurred", table_name="credit_ledger")
    op.drop_index(op.f("ix_credit_ledger_original_transaction_id"), table_name="credit_ledger")
    op.drop_index(op.f("ix_credit_ledger_event_type"), table_name="credit_ledger")
    op.drop_index(op.f("ix_credit_ledger_account_id"), table_name="credit_ledger")
    op.drop_table("credit_ledger")
    op.drop_index(op.f("ix_credit_balances_account_id"), table_name="credit_balances")
    op.drop_table("credit_balances")
