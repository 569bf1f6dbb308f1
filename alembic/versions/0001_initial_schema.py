"""Initial schema: order lifecycle tables plus the platform tables it reads.

Revision ID: 0001
Revises: None
Create Date: 2026-10-19
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # ── wallet ──
    op.create_table(
        "wallet",
        sa.Column("member_id", sa.String(64), primary_key=True),
        sa.Column("merchant_id", sa.String(64), nullable=True),
        sa.Column("points", sa.Integer(), server_default="0"),
        sa.Column("cash_balance_cents", sa.Integer(), server_default="0"),
        sa.Column("member_tier", sa.String(64), nullable=True),
        sa.Column("sweep_percentage", sa.Float(), nullable=True),
        sa.Column("election_type", sa.String(20), nullable=True),
        sa.Column("broker", sa.String(64), nullable=True),
        sa.Column("member_timezone", sa.String(64), nullable=True),
        sa.Column("first_name", sa.String(100), nullable=True),
        sa.Column("middle_name", sa.String(100), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=True),
        sa.Column("member_email", sa.String(255), nullable=True),
    )

    # ── member_stock_picks ──
    op.create_table(
        "member_stock_picks",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("member_id", sa.String(64), nullable=False),
        sa.Column("symbol", sa.String(16), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true")),
    )
    op.create_index("ix_member_stock_picks_member_id", "member_stock_picks", ["member_id"])

    # ── merchant ──
    tier_columns = []
    for i in range(1, 7):
        tier_columns.append(sa.Column(f"tier{i}_name", sa.String(64), nullable=True))
        tier_columns.append(sa.Column(f"tier{i}_conversion_rate", sa.Float(), nullable=True))
    op.create_table(
        "merchant",
        sa.Column("merchant_id", sa.String(64), primary_key=True),
        sa.Column("merchant_name", sa.String(255), nullable=True),
        sa.Column("conversion_rate", sa.Float(), nullable=True),
        *tier_columns,
    )

    # ── broker_master ──
    op.create_table(
        "broker_master",
        sa.Column("broker_id", sa.String(64), primary_key=True),
        sa.Column("broker_name", sa.String(64), nullable=False, unique=True),
        sa.Column("webhook_url", sa.String(512), nullable=True),
        sa.Column("encrypted_api_key", sa.Text(), nullable=True),
    )

    # ── broker_credentials ──
    op.create_table(
        "broker_credentials",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("member_id", sa.String(64), nullable=False, unique=True),
        sa.Column("broker", sa.String(64), nullable=True),
        sa.Column("broker_account_id", sa.String(64), nullable=True),
        sa.Column("broker_account_number", sa.String(64), nullable=True),
        sa.Column("broker_account_status", sa.String(32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
    )

    # ── orders ──
    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("member_id", sa.String(64), nullable=False),
        sa.Column("merchant_id", sa.String(64), nullable=True),
        sa.Column("basket_id", sa.String(128), nullable=True),
        sa.Column("symbol", sa.String(16), nullable=False),
        sa.Column("shares", sa.Float(), server_default="0"),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("points_used", sa.Integer(), server_default="0"),
        sa.Column("broker", sa.String(64), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("order_type", sa.String(20), server_default="market"),
        sa.Column("source", sa.String(40), server_default="points_redemption"),
        sa.Column("member_timezone", sa.String(64), nullable=True),
        sa.Column("scheduled_execution_date", sa.Date(), nullable=True),
        sa.Column("market_status_at_creation", sa.String(20), nullable=True),
        sa.Column("immediate_pickup", sa.Boolean(), server_default=sa.text("false")),
        sa.Column("member_notified", sa.Boolean(), server_default=sa.text("false")),
        sa.Column("paid_flag", sa.Boolean(), server_default=sa.text("false")),
        sa.Column("journal_status", sa.String(20), nullable=True),
        sa.Column("broker_journal_id", sa.String(64), nullable=True),
        sa.Column("journaled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("broker_order_id", sa.String(64), nullable=True),
        sa.Column("broker_order_status", sa.String(32), nullable=True),
        sa.Column("broker_ref", sa.String(128), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("placed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
    )
    op.create_index("idx_orders_scheduled", "orders", ["scheduled_execution_date", "status"])
    op.create_index("idx_orders_member_status", "orders", ["member_id", "status"])

    # ── prepare_batches ──
    op.create_table(
        "prepare_batches",
        sa.Column("batch_id", sa.String(40), primary_key=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="staged"),
        sa.Column("filter_member_id", sa.String(64), nullable=True),
        sa.Column("filter_merchant_id", sa.String(64), nullable=True),
        sa.Column("total_members", sa.Integer(), server_default="0"),
        sa.Column("total_orders", sa.Integer(), server_default="0"),
        sa.Column("total_amount_cents", sa.Integer(), server_default="0"),
        sa.Column("total_points", sa.Integer(), server_default="0"),
        sa.Column("members_skipped", sa.Integer(), server_default="0"),
        sa.Column("missing_prices", sa.Integer(), server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("discarded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
    )

    # ── prepared_orders ──
    op.create_table(
        "prepared_orders",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column(
            "batch_id",
            sa.String(40),
            sa.ForeignKey("prepare_batches.batch_id"),
            nullable=False,
        ),
        sa.Column("basket_id", sa.String(128), nullable=False),
        sa.Column("member_id", sa.String(64), nullable=False),
        sa.Column("merchant_id", sa.String(64), nullable=True),
        sa.Column("symbol", sa.String(16), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("price", sa.Float(), nullable=True),
        sa.Column("shares", sa.Float(), server_default="0"),
        sa.Column("points_used", sa.Integer(), server_default="0"),
        sa.Column("broker", sa.String(64), nullable=True),
        sa.Column("member_timezone", sa.String(64), nullable=True),
        sa.Column("member_tier", sa.String(64), nullable=True),
        sa.Column("conversion_rate", sa.Float(), nullable=False),
        sa.Column("sweep_percentage", sa.Float(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="staged"),
    )
    op.create_index("ix_prepared_orders_batch_id", "prepared_orders", ["batch_id"])

    # ── broker_notifications ──
    op.create_table(
        "broker_notifications",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("broker_id", sa.String(64), nullable=True),
        sa.Column("broker_name", sa.String(64), nullable=False),
        sa.Column("event_type", sa.String(40), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("merchant_id", sa.String(64), nullable=True),
        sa.Column("batch_id", sa.String(40), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("response_code", sa.Integer(), nullable=True),
        sa.Column("response_body", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
    )
    op.create_index("ix_broker_notifications_batch_id", "broker_notifications", ["batch_id"])

    # ── sweep_log ──
    op.create_table(
        "sweep_log",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("batch_id", sa.String(40), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("merchants_processed", sa.Integer(), server_default="0"),
        sa.Column("orders_processed", sa.Integer(), server_default="0"),
        sa.Column("orders_confirmed", sa.Integer(), server_default="0"),
        sa.Column("orders_failed", sa.Integer(), server_default="0"),
        sa.Column("brokers_notified", sa.JSON(), nullable=True),
        sa.Column("errors", sa.JSON(), nullable=True),
        sa.Column("log_data", sa.JSON(), nullable=True),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
    )
    op.create_index("ix_sweep_log_batch_id", "sweep_log", ["batch_id"])

    # ── transaction_ledger ──
    op.create_table(
        "transaction_ledger",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("client_tx_id", sa.String(128), nullable=False, unique=True),
        sa.Column("member_id", sa.String(64), nullable=False),
        sa.Column("merchant_id", sa.String(64), nullable=True),
        sa.Column("order_id", sa.Integer(), nullable=True),
        sa.Column("tx_type", sa.String(32), nullable=False),
        sa.Column("amount_cents", sa.Integer(), server_default="0"),
        sa.Column("points", sa.Integer(), server_default="0"),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()")),
    )
    op.create_index("ix_transaction_ledger_member_id", "transaction_ledger", ["member_id"])


def downgrade() -> None:
    op.drop_table("transaction_ledger")
    op.drop_table("sweep_log")
    op.drop_table("broker_notifications")
    op.drop_table("prepared_orders")
    op.drop_table("prepare_batches")
    op.drop_table("orders")
    op.drop_table("broker_credentials")
    op.drop_table("broker_master")
    op.drop_table("merchant")
    op.drop_table("member_stock_picks")
    op.drop_table("wallet")
