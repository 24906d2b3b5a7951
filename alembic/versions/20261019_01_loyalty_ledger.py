"""Loyalty programs, balance snapshots, ledger, redemptions, and kickbacks.

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


TRANSACTION_TYPES = ("EARNED", "BONUS", "ADJUSTED", "REDEEMED", "REFUNDED", "EXPIRED")
REDEMPTION_STATUSES = ("ACTIVE", "CANCELLED")


def upgrade() -> None:
    uuid = sa.dialects.postgresql.UUID(as_uuid=True)

    op.create_table(
        "loyalty_programs",
        sa.Column("id", uuid, primary_key=True),
        sa.Column("merchant_id", uuid, nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("points_per_dollar", sa.Numeric(10, 4), nullable=False),
        sa.Column("minimum_purchase", sa.Numeric(12, 2), nullable=False),
        sa.Column("minimum_redemption", sa.Integer(), nullable=False),
        sa.Column("redemption_value", sa.Numeric(10, 4), nullable=False),
        sa.Column("point_expiration_days", sa.Integer(), nullable=True),
        sa.Column("allow_combine_with_deals", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("earn_on_discounted", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("merchant_id", name="uq_loyalty_programs_merchant_id"),
        sa.CheckConstraint("points_per_dollar > 0", name="ck_loyalty_programs_points_per_dollar"),
        sa.CheckConstraint("minimum_purchase >= 0", name="ck_loyalty_programs_minimum_purchase"),
        sa.CheckConstraint("minimum_redemption > 0", name="ck_loyalty_programs_minimum_redemption"),
        sa.CheckConstraint("redemption_value > 0", name="ck_loyalty_programs_redemption_value"),
    )
    op.create_index("ix_loyalty_programs_merchant_id", "loyalty_programs", ["merchant_id"])

    op.create_table(
        "user_merchant_loyalty",
        sa.Column("id", uuid, primary_key=True),
        sa.Column("user_id", uuid, nullable=False),
        sa.Column("merchant_id", uuid, nullable=False),
        sa.Column("loyalty_program_id", uuid, nullable=False),
        sa.Column("current_balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_redeemed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_earned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_redeemed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tier", sa.String(), nullable=True),
        sa.Column("transaction_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["loyalty_program_id"], ["loyalty_programs.id"]),
        sa.UniqueConstraint("user_id", "merchant_id", name="uq_user_merchant_loyalty_user_merchant"),
        sa.CheckConstraint("current_balance >= 0", name="ck_user_merchant_loyalty_balance"),
        sa.CheckConstraint("lifetime_earned >= 0", name="ck_user_merchant_loyalty_lifetime_earned"),
        sa.CheckConstraint("lifetime_redeemed >= 0", name="ck_user_merchant_loyalty_lifetime_redeemed"),
    )
    op.create_index("ix_user_merchant_loyalty_user_id", "user_merchant_loyalty", ["user_id"])
    op.create_index("ix_user_merchant_loyalty_merchant_id", "user_merchant_loyalty", ["merchant_id"])

    op.create_table(
        "kickback_events",
        sa.Column("id", uuid, primary_key=True),
        sa.Column("merchant_id", uuid, nullable=False),
        sa.Column("user_id", uuid, nullable=False),
        sa.Column("deal_id", sa.String(), nullable=True),
        sa.Column("source_amount_spent", sa.Numeric(12, 2), nullable=False),
        sa.Column("kickback_rate", sa.Numeric(6, 4), nullable=False),
        sa.Column("amount_earned", sa.Numeric(12, 2), nullable=False),
        sa.Column("invitee_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount_earned >= 0", name="ck_kickback_events_amount"),
        sa.CheckConstraint("invitee_count >= 0", name="ck_kickback_events_invitees"),
    )
    op.create_index("ix_kickback_events_merchant_user", "kickback_events", ["merchant_id", "user_id"])

    op.create_table(
        "loyalty_point_transactions",
        sa.Column("id", uuid, primary_key=True),
        sa.Column("user_id", uuid, nullable=False),
        sa.Column("merchant_id", uuid, nullable=False),
        sa.Column("loyalty_program_id", uuid, nullable=False),
        sa.Column("user_loyalty_id", uuid, nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column(
            "type",
            sa.Enum(*TRANSACTION_TYPES, name="loyalty_transaction_type"),
            nullable=False,
        ),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("balance_before", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("order_id", sa.String(), nullable=True),
        sa.Column("redemption_id", uuid, nullable=True),
        sa.Column("kickback_event_id", uuid, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["loyalty_program_id"], ["loyalty_programs.id"]),
        sa.ForeignKeyConstraint(["user_loyalty_id"], ["user_merchant_loyalty.id"]),
        sa.ForeignKeyConstraint(["kickback_event_id"], ["kickback_events.id"]),
        sa.UniqueConstraint("user_loyalty_id", "sequence", name="uq_loyalty_point_transactions_sequence"),
        sa.UniqueConstraint("kickback_event_id", name="uq_loyalty_point_transactions_kickback"),
        sa.CheckConstraint("balance_after = balance_before + points", name="ck_loyalty_point_transactions_fold"),
        sa.CheckConstraint("points <> 0", name="ck_loyalty_point_transactions_points"),
    )
    op.create_index(
        "ix_loyalty_point_transactions_merchant_created",
        "loyalty_point_transactions",
        ["merchant_id", "created_at"],
    )
    op.create_index(
        "ix_loyalty_point_transactions_user_merchant",
        "loyalty_point_transactions",
        ["user_id", "merchant_id"],
    )
    op.create_index("ix_loyalty_point_transactions_order_id", "loyalty_point_transactions", ["order_id"])
    op.create_index("ix_loyalty_point_transactions_redemption_id", "loyalty_point_transactions", ["redemption_id"])

    op.create_table(
        "loyalty_redemptions",
        sa.Column("id", uuid, primary_key=True),
        sa.Column("user_id", uuid, nullable=False),
        sa.Column("merchant_id", uuid, nullable=False),
        sa.Column("loyalty_program_id", uuid, nullable=False),
        sa.Column("user_loyalty_id", uuid, nullable=False),
        sa.Column("points_redeemed", sa.Integer(), nullable=False),
        sa.Column("discount_value", sa.Numeric(12, 2), nullable=False),
        sa.Column("redemption_transaction_id", uuid, nullable=False),
        sa.Column("order_id", sa.String(), nullable=True),
        sa.Column(
            "status",
            sa.Enum(*REDEMPTION_STATUSES, name="loyalty_redemption_status"),
            nullable=False,
            server_default="ACTIVE",
        ),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["loyalty_program_id"], ["loyalty_programs.id"]),
        sa.ForeignKeyConstraint(["user_loyalty_id"], ["user_merchant_loyalty.id"]),
        sa.ForeignKeyConstraint(["redemption_transaction_id"], ["loyalty_point_transactions.id"]),
        sa.CheckConstraint("points_redeemed > 0", name="ck_loyalty_redemptions_points"),
    )
    op.create_index("ix_loyalty_redemptions_user_id", "loyalty_redemptions", ["user_id"])
    op.create_index("ix_loyalty_redemptions_merchant_id", "loyalty_redemptions", ["merchant_id"])


def downgrade() -> None:
    op.drop_index("ix_loyalty_redemptions_merchant_id", table_name="loyalty_redemptions")
    op.drop_index("ix_loyalty_redemptions_user_id", table_name="loyalty_redemptions")
    op.drop_table("loyalty_redemptions")

    op.drop_index("ix_loyalty_point_transactions_redemption_id", table_name="loyalty_point_transactions")
    op.drop_index("ix_loyalty_point_transactions_order_id", table_name="loyalty_point_transactions")
    op.drop_index("ix_loyalty_point_transactions_user_merchant", table_name="loyalty_point_transactions")
    op.drop_index("ix_loyalty_point_transactions_merchant_created", table_name="loyalty_point_transactions")
    op.drop_table("loyalty_point_transactions")

    op.drop_index("ix_kickback_events_merchant_user", table_name="kickback_events")
    op.drop_table("kickback_events")

    op.drop_index("ix_user_merchant_loyalty_merchant_id", table_name="user_merchant_loyalty")
    op.drop_index("ix_user_merchant_loyalty_user_id", table_name="user_merchant_loyalty")
    op.drop_table("user_merchant_loyalty")

    op.drop_index("ix_loyalty_programs_merchant_id", table_name="loyalty_programs")
    op.drop_table("loyalty_programs")

    op.execute("DROP TYPE IF EXISTS loyalty_redemption_status")
    op.execute("DROP TYPE IF EXISTS loyalty_transaction_type")
