"""SQLAlchemy ORM models for the StockLoyal order lifecycle.

The core owns ``orders``, ``prepare_batches``, ``prepared_orders``,
``broker_notifications``, ``sweep_log`` and ``transaction_ledger``. The
remaining tables (wallet, picks, merchant, broker master/credentials) are
maintained by other parts of the platform and are read here.

All money columns are integer cents. Conversion rates are dollars per point.

Usage:
    from stockloyal.common.models import Order, OrderStatus

    order = Order(member_id="m-1", symbol="AAPL", amount_cents=500)
    db.add(order)
    await db.flush()
"""

from __future__ import annotations

import enum
from datetime import UTC, date, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Declarative base shared by every table."""


# ─── Enums ───


class OrderStatus(str, enum.Enum):
    """Lifecycle states of an order (see orders.state_machine for edges)."""

    PENDING = "pending"
    QUEUED = "queued"
    VALIDATING = "validating"
    JOURNALING = "journaling"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"
    PLACED = "placed"
    CONFIRMED = "confirmed"
    APPROVED = "approved"
    FUNDED = "funded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class BatchStatus(str, enum.Enum):
    """States of a prepare batch and of each staged row in it."""

    STAGED = "staged"
    APPROVED = "approved"
    DISCARDED = "discarded"


class NotificationStatus(str, enum.Enum):
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


def _enum_type(enum_cls: type[enum.Enum]) -> SAEnum:
    """Store enum *values* (lowercase strings) in a plain VARCHAR column."""
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
    )


# ─── Core Tables ───


class Order(Base):
    """A single buy order for one symbol on behalf of one member."""

    __tablename__ = "orders"
    __table_args__ = (
        Index("idx_orders_scheduled", "scheduled_execution_date", "status"),
        Index("idx_orders_member_status", "member_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    member_id: Mapped[str] = mapped_column(String(64), nullable=False)
    merchant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    basket_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    symbol: Mapped[str] = mapped_column(String(16), nullable=False)
    shares: Mapped[float] = mapped_column(Float, default=0.0)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    points_used: Mapped[int] = mapped_column(Integer, default=0)
    broker: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[OrderStatus] = mapped_column(
        _enum_type(OrderStatus), default=OrderStatus.PENDING, nullable=False
    )
    order_type: Mapped[str] = mapped_column(String(20), default="market")
    source: Mapped[str] = mapped_column(String(40), default="points_redemption")
    member_timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Market-aware scheduling
    scheduled_execution_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    market_status_at_creation: Mapped[str | None] = mapped_column(String(20), nullable=True)
    immediate_pickup: Mapped[bool] = mapped_column(Boolean, default=False)
    member_notified: Mapped[bool] = mapped_column(Boolean, default=False)

    # Funding
    paid_flag: Mapped[bool] = mapped_column(Boolean, default=False)
    journal_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    broker_journal_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    journaled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Brokerage execution
    broker_order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    broker_order_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    broker_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    placed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class PrepareBatch(Base):
    """Header row for one staged bulk-order generation run."""

    __tablename__ = "prepare_batches"

    batch_id: Mapped[str] = mapped_column(String(40), primary_key=True)
    status: Mapped[BatchStatus] = mapped_column(
        _enum_type(BatchStatus), default=BatchStatus.STAGED, nullable=False
    )
    filter_member_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    filter_merchant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    total_members: Mapped[int] = mapped_column(Integer, default=0)
    total_orders: Mapped[int] = mapped_column(Integer, default=0)
    total_amount_cents: Mapped[int] = mapped_column(Integer, default=0)
    total_points: Mapped[int] = mapped_column(Integer, default=0)
    members_skipped: Mapped[int] = mapped_column(Integer, default=0)
    missing_prices: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    discarded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class PreparedOrder(Base):
    """One staged order row (member x pick) inside a prepare batch."""

    __tablename__ = "prepared_orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[str] = mapped_column(
        String(40), ForeignKey("prepare_batches.batch_id"), nullable=False, index=True
    )
    basket_id: Mapped[str] = mapped_column(String(128), nullable=False)
    member_id: Mapped[str] = mapped_column(String(64), nullable=False)
    merchant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    symbol: Mapped[str] = mapped_column(String(16), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[float | None] = mapped_column(Float, nullable=True)
    shares: Mapped[float] = mapped_column(Float, default=0.0)
    points_used: Mapped[int] = mapped_column(Integer, default=0)
    broker: Mapped[str | None] = mapped_column(String(64), nullable=True)
    member_timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    member_tier: Mapped[str | None] = mapped_column(String(64), nullable=True)
    conversion_rate: Mapped[float] = mapped_column(Float, nullable=False)
    sweep_percentage: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[BatchStatus] = mapped_column(
        _enum_type(BatchStatus), default=BatchStatus.STAGED, nullable=False
    )


# ─── Tables Read by the Core ───


class Wallet(Base):
    """Member loyalty wallet: point balance, tier, and sweep election."""

    __tablename__ = "wallet"

    member_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    merchant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    points: Mapped[int] = mapped_column(Integer, default=0)
    cash_balance_cents: Mapped[int] = mapped_column(Integer, default=0)
    member_tier: Mapped[str | None] = mapped_column(String(64), nullable=True)
    sweep_percentage: Mapped[float | None] = mapped_column(Float, nullable=True)
    election_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    broker: Mapped[str | None] = mapped_column(String(64), nullable=True)
    member_timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    middle_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    member_email: Mapped[str | None] = mapped_column(String(255), nullable=True)


class MemberStockPick(Base):
    __tablename__ = "member_stock_picks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    member_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    symbol: Mapped[str] = mapped_column(String(16), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class Merchant(Base):
    """Merchant conversion configuration with up to six named tiers."""

    __tablename__ = "merchant"

    merchant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    merchant_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    conversion_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    tier1_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tier1_conversion_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    tier2_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tier2_conversion_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    tier3_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tier3_conversion_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    tier4_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tier4_conversion_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    tier5_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tier5_conversion_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    tier6_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tier6_conversion_rate: Mapped[float | None] = mapped_column(Float, nullable=True)


class BrokerMaster(Base):
    """Registered broker partner and its sweep webhook endpoint."""

    __tablename__ = "broker_master"

    broker_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    broker_name: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    webhook_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    encrypted_api_key: Mapped[str | None] = mapped_column(Text, nullable=True)


class BrokerCredential(Base):
    """Link between a member and their brokerage account."""

    __tablename__ = "broker_credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    member_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    broker: Mapped[str | None] = mapped_column(String(64), nullable=True)
    broker_account_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    broker_account_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    broker_account_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


# ─── Audit Tables ───


class BrokerNotification(Base):
    """One webhook attempt (or skip) for a merchant/broker sweep group."""

    __tablename__ = "broker_notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    broker_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    broker_name: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[NotificationStatus] = mapped_column(
        _enum_type(NotificationStatus), nullable=False
    )
    merchant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    batch_id: Mapped[str | None] = mapped_column(String(40), nullable=True, index=True)
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    response_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class SweepLog(Base):
    """Summary row written once per sweep run."""

    __tablename__ = "sweep_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    merchants_processed: Mapped[int] = mapped_column(Integer, default=0)
    orders_processed: Mapped[int] = mapped_column(Integer, default=0)
    orders_confirmed: Mapped[int] = mapped_column(Integer, default=0)
    orders_failed: Mapped[int] = mapped_column(Integer, default=0)
    brokers_notified: Mapped[list | None] = mapped_column(JSON, nullable=True)
    errors: Mapped[list | None] = mapped_column(JSON, nullable=True)
    log_data: Mapped[list | None] = mapped_column(JSON, nullable=True)
    duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)


class TransactionLedger(Base):
    """Append-only money movement ledger; ``client_tx_id`` makes writes idempotent."""

    __tablename__ = "transaction_ledger"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    client_tx_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    member_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    merchant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    order_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tx_type: Mapped[str] = mapped_column(String(32), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, default=0)
    points: Mapped[int] = mapped_column(Integer, default=0)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
