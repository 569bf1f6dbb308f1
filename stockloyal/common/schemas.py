"""Pydantic schemas: the interface contracts between all modules.

Every operation of the lifecycle pipeline returns one of these types, and
the API layer serializes them directly.

RULES:
- Cross-module results use these types, never ad-hoc dicts.
- If you need a new shared type, add it HERE.
- All monetary values use CENTS (int).
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

DelayReason = Literal["weekend", "holiday", "pre_market", "after_hours"]
NotificationStatusType = Literal["sent", "failed", "skipped"]


# ─── Trading Calendar ───


class MarketStatus(BaseModel):
    """Snapshot of market state, computed in America/New_York."""

    is_open: bool
    is_extended: bool
    is_trading_day: bool
    next_trading_day: date | None = None
    next_open_time: str | None = None  # ISO-8601 with Eastern offset
    next_close_time: str | None = None
    delay_reason: DelayReason | None = None
    message: str
    message_short: str
    checked_at: datetime


# ─── Order Scheduler ───


class CreateOrderRequest(BaseModel):
    """Single point-redemption order submitted by a member."""

    member_id: str = Field(min_length=1)
    symbol: str = Field(min_length=1, max_length=16)
    amount_cents: int = Field(gt=0)
    merchant_id: str | None = None
    source: str = "points_redemption"

    @field_validator("symbol")
    @classmethod
    def symbol_upper(cls, v: str) -> str:
        return v.strip().upper()


class ScheduledOrderResult(BaseModel):
    """Returned to the member right after an order is accepted."""

    order_id: int
    status: str
    scheduled_date: date
    market_status: MarketStatus
    member_message: str
    member_message_short: str
    is_immediate: bool


class OrderRecord(BaseModel):
    """An order row as exposed by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    member_id: str
    merchant_id: str | None = None
    basket_id: str | None = None
    symbol: str
    amount_cents: int
    shares: float = 0.0
    points_used: int = 0
    broker: str | None = None
    status: str
    order_type: str
    source: str
    scheduled_execution_date: date | None = None
    market_status_at_creation: str | None = None
    immediate_pickup: bool = False
    member_notified: bool = False
    paid_flag: bool = False
    journal_status: str | None = None
    broker_order_id: str | None = None
    broker_order_status: str | None = None
    broker_ref: str | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    placed_at: datetime | None = None
    executed_at: datetime | None = None
    journaled_at: datetime | None = None

    @field_validator("status", mode="before")
    @classmethod
    def enum_value(cls, v: object) -> object:
        return getattr(v, "value", v)


class OrderError(BaseModel):
    order_id: int
    error: str


class ProcessResult(BaseModel):
    """Outcome of one scheduled-order processing run."""

    processed: int = 0
    total: int = 0
    skipped: int = 0
    reason: str | None = None
    errors: list[OrderError] = Field(default_factory=list)


# ─── Batch Preparation ───


class MerchantBreakdown(BaseModel):
    merchant_id: str | None
    merchant_name: str | None = None
    members: int = 0
    orders: int = 0
    amount_cents: int = 0
    points: int = 0


class PreviewResult(BaseModel):
    """Read-only estimate of what prepare() would stage right now."""

    eligible_members: int
    total_picks: int
    estimated_amount_cents: int
    estimated_points: int
    members_skipped: int
    by_merchant: list[MerchantBreakdown] = Field(default_factory=list)


class PrepareRequest(BaseModel):
    member_id: str | None = None
    merchant_id: str | None = None
    fetch_prices: bool = False


class PrepareResult(BaseModel):
    """Header totals of a freshly staged batch."""

    batch_id: str
    status: str = "staged"
    total_members: int
    total_orders: int
    total_amount_cents: int
    total_points: int
    members_skipped: int
    missing_prices: int = 0
    duration_seconds: float = 0.0


class BrokerBreakdown(BaseModel):
    broker: str | None
    members: int = 0
    orders: int = 0
    amount_cents: int = 0


class TierBreakdown(BaseModel):
    member_tier: str | None
    conversion_rate: float
    members: int = 0
    orders: int = 0
    amount_cents: int = 0
    points: int = 0


class SymbolBreakdown(BaseModel):
    symbol: str
    orders: int = 0
    amount_cents: int = 0


class BatchSummary(BaseModel):
    """Batch header as stored in prepare_batches."""

    batch_id: str
    status: str
    filter_member_id: str | None = None
    filter_merchant_id: str | None = None
    total_members: int
    total_orders: int
    total_amount_cents: int
    total_points: int
    members_skipped: int
    missing_prices: int = 0
    created_at: datetime | None = None
    approved_at: datetime | None = None
    discarded_at: datetime | None = None
    notes: str | None = None


class BatchStats(BaseModel):
    batch: BatchSummary
    by_merchant: list[MerchantBreakdown] = Field(default_factory=list)
    by_broker: list[BrokerBreakdown] = Field(default_factory=list)
    by_tier: list[TierBreakdown] = Field(default_factory=list)
    top_symbols: list[SymbolBreakdown] = Field(default_factory=list)
    missing_prices: int = 0


class MemberRollup(BaseModel):
    member_id: str
    merchant_id: str | None = None
    broker: str | None = None
    member_tier: str | None = None
    basket_id: str
    orders: int
    amount_cents: int
    points: int
    symbols: list[str] = Field(default_factory=list)


class DrilldownPage(BaseModel):
    batch_id: str
    page: int
    per_page: int
    total: int
    total_pages: int
    members: list[MemberRollup] = Field(default_factory=list)


class ApproveResult(BaseModel):
    batch_id: str
    status: str = "approved"
    orders_created: int
    total_amount_cents: int
    duration_seconds: float = 0.0


class DiscardResult(BaseModel):
    batch_id: str
    status: str = "discarded"
    orders_discarded: int


class CancelResult(BaseModel):
    orders_cancelled: int


# ─── Sweep ───


class SweepGroupResult(BaseModel):
    """Result for one merchant/broker group within a sweep run."""

    merchant_id: str | None
    broker: str | None
    orders_placed: int = 0
    orders_failed: int = 0
    total_amount_cents: int = 0
    notification_status: NotificationStatusType
    acknowledged: bool = False
    broker_ref: str | None = None
    error: str | None = None


class SweepResult(BaseModel):
    batch_id: str
    merchants_processed: int = 0
    orders_processed: int = 0
    orders_confirmed: int = 0
    orders_failed: int = 0
    brokers_notified: list[str] = Field(default_factory=list)
    picks_cleared: int = 0
    groups: list[SweepGroupResult] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    duration_seconds: float = 0.0


# ─── Journal ───


class MemberJournalResult(BaseModel):
    member_id: str
    account_id: str | None = None
    amount_cents: int
    orders: int
    status: Literal["funded", "skipped", "failed"]
    journal_id: str | None = None
    error: str | None = None


class JournalResult(BaseModel):
    members_funded: int = 0
    journals_created: int = 0
    total_journaled_cents: int = 0
    results: list[MemberJournalResult] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class JournalRequest(BaseModel):
    member_ids: list[str] | None = None
