"""Batch preparation engine: stage, review, and approve bulk sweep orders.

Workflow:
    preview_counts()  read-only estimate of what prepare() would stage
    prepare()         stage one row per (member, active pick) in prepared_orders
    stats()           breakdowns of a staged batch for review
    drilldown()       paginated member rollups of a batch
    approve()         copy staged rows into orders as ``pending`` sweep orders
    discard()         retire a staged batch (rows kept for audit)

Batch states: staged -> approved | discarded. Only a staged batch moves.

Amount math (per member):
    rate         = matching tier rate > 0, else merchant rate > 0, else default
    pct          = wallet sweep_percentage if > 0 else 100
    sweep_points = floor(points * pct / 100)
    per pick:      amount = round(sweep_points * rate / picks, 2)   (half-up)
                   points_used = floor(sweep_points / picks)

preview_counts() and prepare() share ``_compute_rows`` so their totals agree.

Usage:
    from stockloyal.orders.batch_prep import BatchPreparer

    preparer = BatchPreparer(db)
    staged = await preparer.prepare(merchant_id="merchant-001")
    await preparer.approve(staged.batch_id)
"""

from __future__ import annotations

import math
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from uuid import uuid4

from sqlalchemy import DateTime, func, insert, literal, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from stockloyal.broker.exceptions import BrokerError
from stockloyal.common.config import get_settings
from stockloyal.common.exceptions import ValidationError
from stockloyal.common.logging import get_logger
from stockloyal.common.metrics import BATCHES_TOTAL
from stockloyal.common.models import (
    BatchStatus,
    MemberStockPick,
    Merchant,
    Order,
    OrderStatus,
    PreparedOrder,
    PrepareBatch,
    Wallet,
)
from stockloyal.common.schemas import (
    ApproveResult,
    BatchStats,
    BatchSummary,
    BrokerBreakdown,
    CancelResult,
    DiscardResult,
    DrilldownPage,
    MemberRollup,
    MerchantBreakdown,
    PrepareResult,
    PreviewResult,
    SymbolBreakdown,
    TierBreakdown,
)
from stockloyal.orders.exceptions import BatchConflictError, BatchNotFoundError
from stockloyal.orders.state_machine import transition_batch

logger = get_logger("BATCH")

BATCH_ID_PATTERN = re.compile(r"^PREP-\d{8}-\d{6}-[0-9A-Za-z]{6}$")
TIER_COUNT = 6
TOP_SYMBOLS = 20
DEFAULT_TIMEZONE = "America/New_York"

PriceFetcher = Callable[[list[str]], Awaitable[dict[str, float]]]

_CENT = Decimal("0.01")


# ─── Pure Calculations ───


def effective_rate(member_tier: str | None, merchant: Merchant | None, default_rate: float) -> float:
    """Tier rate when the tier name matches exactly and is positive, else merchant base, else default."""
    if merchant is None:
        return default_rate
    if member_tier:
        for i in range(1, TIER_COUNT + 1):
            name = getattr(merchant, f"tier{i}_name")
            rate = getattr(merchant, f"tier{i}_conversion_rate")
            if name and name == member_tier and rate is not None and rate > 0:
                return float(rate)
    if merchant.conversion_rate is not None and merchant.conversion_rate > 0:
        return float(merchant.conversion_rate)
    return default_rate


def effective_sweep_pct(sweep_percentage: float | None) -> float:
    """Stored percentage when positive, otherwise 100 (sweep everything)."""
    if sweep_percentage is not None and sweep_percentage > 0:
        return float(sweep_percentage)
    return 100.0


def sweep_points(points: int, pct: float) -> int:
    return int((Decimal(points) * Decimal(str(pct)) / 100).to_integral_value(rounding=ROUND_FLOOR))


def pick_amount_cents(swept: int, rate: float, pick_count: int) -> int:
    """round(swept * rate / pick_count, 2) in dollars, returned as cents."""
    dollars = (Decimal(swept) * Decimal(str(rate)) / Decimal(pick_count)).quantize(
        _CENT, rounding=ROUND_HALF_UP
    )
    return int(dollars * 100)


def new_batch_id(now: datetime | None = None) -> str:
    now = now or datetime.now(UTC)
    return f"PREP-{now:%Y%m%d-%H%M%S}-{uuid4().hex[:6]}"


@dataclass
class StagedRow:
    """One computed order line before it is written to prepared_orders."""

    member_id: str
    merchant_id: str | None
    merchant_name: str | None
    symbol: str
    amount_cents: int
    points_used: int
    broker: str | None
    member_timezone: str
    member_tier: str | None
    conversion_rate: float
    sweep_percentage: float
    price: float | None = None
    shares: float = 0.0


@dataclass
class _Computation:
    rows: list[StagedRow]
    skipped_members: set[str]


# ─── Engine ───


class BatchPreparer:
    """Stages, reviews, approves, and discards prepare batches.

    Write operations (prepare, approve, discard, cancel_pending_orders)
    commit their own transaction and roll back on any failure.

    Args:
        db: Async database session.
        default_rate: Dollars per point when no tier/merchant rate applies.
    """

    def __init__(self, db: AsyncSession, default_rate: float | None = None) -> None:
        self.db = db
        self.default_rate = (
            default_rate if default_rate is not None else get_settings().default_conversion_rate
        )

    # ─── Shared Computation ───

    async def _compute_rows(
        self, member_id: str | None = None, merchant_id: str | None = None
    ) -> _Computation:
        """One set-oriented read of picks x wallet x merchant x pick counts."""
        pick_counts = (
            select(MemberStockPick.member_id, func.count().label("cnt"))
            .where(MemberStockPick.is_active.is_(True))
            .group_by(MemberStockPick.member_id)
            .subquery()
        )
        stmt = (
            select(MemberStockPick.member_id, MemberStockPick.symbol, Wallet, Merchant, pick_counts.c.cnt)
            .join(Wallet, Wallet.member_id == MemberStockPick.member_id)
            .outerjoin(Merchant, Merchant.merchant_id == Wallet.merchant_id)
            .join(pick_counts, pick_counts.c.member_id == MemberStockPick.member_id)
            .where(MemberStockPick.is_active.is_(True))
            .order_by(MemberStockPick.member_id, MemberStockPick.id)
        )
        if member_id:
            stmt = stmt.where(MemberStockPick.member_id == member_id)
        if merchant_id:
            stmt = stmt.where(Wallet.merchant_id == merchant_id)

        rows: list[StagedRow] = []
        skipped: set[str] = set()
        for pick_member, symbol, wallet, merchant, cnt in (await self.db.execute(stmt)).all():
            if (wallet.points or 0) <= 0:
                skipped.add(pick_member)
                continue
            rate = effective_rate(wallet.member_tier, merchant, self.default_rate)
            pct = effective_sweep_pct(wallet.sweep_percentage)
            swept = sweep_points(wallet.points, pct)
            rows.append(
                StagedRow(
                    member_id=pick_member,
                    merchant_id=wallet.merchant_id,
                    merchant_name=(merchant.merchant_name if merchant else None) or wallet.merchant_id,
                    symbol=symbol,
                    amount_cents=pick_amount_cents(swept, rate, cnt),
                    points_used=swept // cnt,
                    broker=wallet.broker,
                    member_timezone=wallet.member_timezone or DEFAULT_TIMEZONE,
                    member_tier=wallet.member_tier,
                    conversion_rate=rate,
                    sweep_percentage=pct,
                )
            )
        return _Computation(rows=rows, skipped_members=skipped)

    # ─── Preview ───

    async def preview_counts(self, merchant_id: str | None = None) -> PreviewResult:
        """Estimate a prepare() run without writing anything."""
        computed = await self._compute_rows(merchant_id=merchant_id)
        return PreviewResult(
            eligible_members=len({r.member_id for r in computed.rows}),
            total_picks=len(computed.rows),
            estimated_amount_cents=sum(r.amount_cents for r in computed.rows),
            estimated_points=sum(r.points_used for r in computed.rows),
            members_skipped=len(computed.skipped_members),
            by_merchant=_merchant_breakdown(computed.rows),
        )

    # ─── Prepare ───

    async def prepare(
        self,
        member_id: str | None = None,
        merchant_id: str | None = None,
        price_fetcher: PriceFetcher | None = None,
    ) -> PrepareResult:
        """Stage one prepared order per eligible (member, active pick).

        Args:
            member_id: Restrict to one member.
            merchant_id: Restrict to one merchant's members.
            price_fetcher: Optional async callable returning latest prices by
                symbol; fills ``price`` and ``shares`` on staged rows.

        Returns:
            Header totals of the new ``staged`` batch.
        """
        started = time.perf_counter()
        batch_id = new_batch_id()

        try:
            computed = await self._compute_rows(member_id=member_id, merchant_id=merchant_id)
            rows = computed.rows
            if rows and price_fetcher is not None:
                await self._apply_prices(batch_id, rows, price_fetcher)

            batch = PrepareBatch(
                batch_id=batch_id,
                status=BatchStatus.STAGED,
                filter_member_id=member_id,
                filter_merchant_id=merchant_id,
                total_members=len({r.member_id for r in rows}),
                total_orders=len(rows),
                total_amount_cents=sum(r.amount_cents for r in rows),
                total_points=sum(r.points_used for r in rows),
                members_skipped=len(computed.skipped_members),
                missing_prices=sum(1 for r in rows if r.price is None) if price_fetcher is not None else 0,
            )
            self.db.add(batch)
            await self.db.flush()

            if rows:
                await self.db.execute(
                    insert(PreparedOrder),
                    [
                        {
                            "batch_id": batch_id,
                            "basket_id": f"{batch_id}-{r.member_id}",
                            "member_id": r.member_id,
                            "merchant_id": r.merchant_id,
                            "symbol": r.symbol,
                            "amount_cents": r.amount_cents,
                            "price": r.price,
                            "shares": r.shares,
                            "points_used": r.points_used,
                            "broker": r.broker,
                            "member_timezone": r.member_timezone,
                            "member_tier": r.member_tier,
                            "conversion_rate": r.conversion_rate,
                            "sweep_percentage": r.sweep_percentage,
                            "status": BatchStatus.STAGED,
                        }
                        for r in rows
                    ],
                )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.error("Prepare failed", extra={"data": {"batch_id": batch_id}})
            raise

        duration = round(time.perf_counter() - started, 2)
        BATCHES_TOTAL.labels(action="prepared").inc()
        logger.info(
            "Batch staged",
            extra={
                "data": {
                    "batch_id": batch_id,
                    "members": batch.total_members,
                    "orders": batch.total_orders,
                    "amount_cents": batch.total_amount_cents,
                    "skipped": batch.members_skipped,
                    "missing_prices": batch.missing_prices,
                    "duration_seconds": duration,
                }
            },
        )
        return PrepareResult(
            batch_id=batch_id,
            total_members=batch.total_members,
            total_orders=batch.total_orders,
            total_amount_cents=batch.total_amount_cents,
            total_points=batch.total_points,
            members_skipped=batch.members_skipped,
            missing_prices=batch.missing_prices,
            duration_seconds=duration,
        )

    async def _apply_prices(
        self, batch_id: str, rows: list[StagedRow], price_fetcher: PriceFetcher
    ) -> None:
        symbols = sorted({r.symbol for r in rows})
        try:
            prices = await price_fetcher(symbols)
        except BrokerError as exc:
            logger.warning(
                "Price fetch failed, shares left at 0",
                extra={"data": {"batch_id": batch_id, "error": str(exc)}},
            )
            return

        for row in rows:
            price = prices.get(row.symbol)
            if price and price > 0:
                row.price = float(price)
                row.shares = round(row.amount_cents / 100 / row.price, 6)

        missing = [s for s in symbols if s not in prices]
        if missing:
            logger.warning(
                "No price for some symbols, shares left at 0",
                extra={"data": {"batch_id": batch_id, "symbols": missing}},
            )

    # ─── Review ───

    async def stats(self, batch_id: str) -> BatchStats:
        """Header plus breakdowns by merchant, broker, tier/rate, and top symbols."""
        batch = await self._get_batch(batch_id)
        where = PreparedOrder.batch_id == batch_id

        merchant_rows = await self.db.execute(
            select(
                PreparedOrder.merchant_id,
                Merchant.merchant_name,
                func.count(func.distinct(PreparedOrder.member_id)),
                func.count(),
                func.coalesce(func.sum(PreparedOrder.amount_cents), 0),
                func.coalesce(func.sum(PreparedOrder.points_used), 0),
            )
            .outerjoin(Merchant, Merchant.merchant_id == PreparedOrder.merchant_id)
            .where(where)
            .group_by(PreparedOrder.merchant_id, Merchant.merchant_name)
            .order_by(func.sum(PreparedOrder.amount_cents).desc())
        )
        broker_rows = await self.db.execute(
            select(
                PreparedOrder.broker,
                func.count(func.distinct(PreparedOrder.member_id)),
                func.count(),
                func.coalesce(func.sum(PreparedOrder.amount_cents), 0),
            )
            .where(where)
            .group_by(PreparedOrder.broker)
            .order_by(func.sum(PreparedOrder.amount_cents).desc())
        )
        tier_rows = await self.db.execute(
            select(
                PreparedOrder.member_tier,
                PreparedOrder.conversion_rate,
                func.count(func.distinct(PreparedOrder.member_id)),
                func.count(),
                func.coalesce(func.sum(PreparedOrder.amount_cents), 0),
                func.coalesce(func.sum(PreparedOrder.points_used), 0),
            )
            .where(where)
            .group_by(PreparedOrder.member_tier, PreparedOrder.conversion_rate)
            .order_by(func.sum(PreparedOrder.amount_cents).desc())
        )
        symbol_rows = await self.db.execute(
            select(
                PreparedOrder.symbol,
                func.count().label("orders"),
                func.coalesce(func.sum(PreparedOrder.amount_cents), 0),
            )
            .where(where)
            .group_by(PreparedOrder.symbol)
            .order_by(func.count().desc(), PreparedOrder.symbol)
            .limit(TOP_SYMBOLS)
        )
        return BatchStats(
            batch=_summary(batch),
            by_merchant=[
                MerchantBreakdown(
                    merchant_id=m_id,
                    merchant_name=name or m_id,
                    members=members,
                    orders=orders,
                    amount_cents=int(amount),
                    points=int(points),
                )
                for m_id, name, members, orders, amount, points in merchant_rows.all()
            ],
            by_broker=[
                BrokerBreakdown(broker=b, members=members, orders=orders, amount_cents=int(amount))
                for b, members, orders, amount in broker_rows.all()
            ],
            by_tier=[
                TierBreakdown(
                    member_tier=tier,
                    conversion_rate=rate,
                    members=members,
                    orders=orders,
                    amount_cents=int(amount),
                    points=int(points),
                )
                for tier, rate, members, orders, amount, points in tier_rows.all()
            ],
            top_symbols=[
                SymbolBreakdown(symbol=s, orders=orders, amount_cents=int(amount))
                for s, orders, amount in symbol_rows.all()
            ],
            missing_prices=batch.missing_prices,
        )

    async def drilldown(
        self,
        batch_id: str,
        page: int = 1,
        per_page: int = 50,
        merchant_id: str | None = None,
        broker: str | None = None,
    ) -> DrilldownPage:
        """Member rollups for a batch, largest total amount first."""
        await self._get_batch(batch_id)
        page = max(page, 1)
        per_page = max(min(per_page, 500), 1)

        filters = [PreparedOrder.batch_id == batch_id]
        if merchant_id:
            filters.append(PreparedOrder.merchant_id == merchant_id)
        if broker:
            filters.append(PreparedOrder.broker == broker)

        total = await self.db.scalar(
            select(func.count(func.distinct(PreparedOrder.member_id))).where(*filters)
        )
        total = int(total or 0)

        amount_sum = func.sum(PreparedOrder.amount_cents)
        rollups = (
            await self.db.execute(
                select(
                    PreparedOrder.member_id,
                    PreparedOrder.merchant_id,
                    PreparedOrder.broker,
                    PreparedOrder.member_tier,
                    PreparedOrder.basket_id,
                    func.count(),
                    amount_sum,
                    func.sum(PreparedOrder.points_used),
                )
                .where(*filters)
                .group_by(
                    PreparedOrder.member_id,
                    PreparedOrder.merchant_id,
                    PreparedOrder.broker,
                    PreparedOrder.member_tier,
                    PreparedOrder.basket_id,
                )
                .order_by(amount_sum.desc(), PreparedOrder.member_id)
                .limit(per_page)
                .offset((page - 1) * per_page)
            )
        ).all()

        member_ids = [r[0] for r in rollups]
        symbols: dict[str, list[str]] = {m: [] for m in member_ids}
        if member_ids:
            symbol_rows = await self.db.execute(
                select(PreparedOrder.member_id, PreparedOrder.symbol)
                .where(*filters, PreparedOrder.member_id.in_(member_ids))
                .distinct()
                .order_by(PreparedOrder.member_id, PreparedOrder.symbol)
            )
            for m_id, symbol in symbol_rows.all():
                symbols[m_id].append(symbol)

        return DrilldownPage(
            batch_id=batch_id,
            page=page,
            per_page=per_page,
            total=total,
            total_pages=math.ceil(total / per_page) if total else 0,
            members=[
                MemberRollup(
                    member_id=m_id,
                    merchant_id=merchant,
                    broker=brk,
                    member_tier=tier,
                    basket_id=basket,
                    orders=count,
                    amount_cents=int(amount or 0),
                    points=int(points or 0),
                    symbols=symbols.get(m_id, []),
                )
                for m_id, merchant, brk, tier, basket, count, amount, points in rollups
            ],
        )

    async def batches(self, limit: int = 50) -> list[BatchSummary]:
        """Most recent batches first."""
        result = await self.db.execute(
            select(PrepareBatch).order_by(PrepareBatch.created_at.desc()).limit(max(limit, 1))
        )
        return [_summary(b) for b in result.scalars().all()]

    # ─── Approve / Discard ───

    async def approve(self, batch_id: str) -> ApproveResult:
        """Turn every staged row into a ``pending`` sweep order in one transaction.

        Raises:
            ValidationError: Malformed batch id.
            BatchNotFoundError: Unknown batch.
            BatchConflictError: Batch is not ``staged``.
        """
        started = time.perf_counter()
        try:
            batch = await self._get_batch(batch_id, for_update=True)
            if batch.status != BatchStatus.STAGED:
                raise BatchConflictError(
                    f"Batch is {BatchStatus(batch.status).value}, only staged batches can be approved",
                    context={"batch_id": batch_id},
                )

            staged = PreparedOrder.batch_id == batch_id
            staged_status = PreparedOrder.status == BatchStatus.STAGED
            count = await self.db.scalar(select(func.count()).select_from(PreparedOrder).where(staged, staged_status))
            total_amount = await self.db.scalar(
                select(func.coalesce(func.sum(PreparedOrder.amount_cents), 0)).where(staged, staged_status)
            )

            now = datetime.now(UTC)
            stamp = literal(now, DateTime(timezone=True))
            source = select(
                PreparedOrder.member_id,
                PreparedOrder.merchant_id,
                PreparedOrder.basket_id,
                PreparedOrder.symbol,
                PreparedOrder.shares,
                PreparedOrder.amount_cents,
                PreparedOrder.points_used,
                PreparedOrder.broker,
                PreparedOrder.member_timezone,
                literal(OrderStatus.PENDING.value),
                literal("sweep"),
                literal("prepare_batch"),
                literal(False),
                literal(False),
                literal(False),
                stamp,
                stamp,
            ).where(staged, staged_status)
            await self.db.execute(
                insert(Order).from_select(
                    [
                        "member_id",
                        "merchant_id",
                        "basket_id",
                        "symbol",
                        "shares",
                        "amount_cents",
                        "points_used",
                        "broker",
                        "member_timezone",
                        "status",
                        "order_type",
                        "source",
                        "immediate_pickup",
                        "member_notified",
                        "paid_flag",
                        "created_at",
                        "updated_at",
                    ],
                    source,
                )
            )
            await self.db.execute(
                update(PreparedOrder).where(staged, staged_status).values(status=BatchStatus.APPROVED)
            )
            transition_batch(batch, BatchStatus.APPROVED)
            batch.approved_at = now
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        duration = round(time.perf_counter() - started, 2)
        BATCHES_TOTAL.labels(action="approved").inc()
        logger.info(
            "Batch approved",
            extra={"data": {"batch_id": batch_id, "orders_created": count, "duration_seconds": duration}},
        )
        return ApproveResult(
            batch_id=batch_id,
            orders_created=int(count or 0),
            total_amount_cents=int(total_amount or 0),
            duration_seconds=duration,
        )

    async def discard(self, batch_id: str) -> DiscardResult:
        """Retire a staged batch; its rows stay in place as ``discarded``."""
        try:
            batch = await self._get_batch(batch_id, for_update=True)
            if batch.status != BatchStatus.STAGED:
                raise BatchConflictError(
                    f"Batch is {BatchStatus(batch.status).value}, only staged batches can be discarded",
                    context={"batch_id": batch_id},
                )
            result = await self.db.execute(
                update(PreparedOrder)
                .where(PreparedOrder.batch_id == batch_id, PreparedOrder.status == BatchStatus.STAGED)
                .values(status=BatchStatus.DISCARDED)
            )
            transition_batch(batch, BatchStatus.DISCARDED)
            batch.discarded_at = datetime.now(UTC)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        BATCHES_TOTAL.labels(action="discarded").inc()
        logger.info(
            "Batch discarded",
            extra={"data": {"batch_id": batch_id, "rows": result.rowcount}},
        )
        return DiscardResult(batch_id=batch_id, orders_discarded=int(result.rowcount or 0))

    async def cancel_pending_orders(self) -> CancelResult:
        """Cancel every still-pending sweep order (operator cleanup of a bad approval)."""
        try:
            result = await self.db.execute(
                update(Order)
                .where(Order.status == OrderStatus.PENDING, Order.order_type == "sweep")
                .values(status=OrderStatus.CANCELLED, updated_at=datetime.now(UTC))
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        cancelled = int(result.rowcount or 0)
        logger.warning("Pending sweep orders cancelled", extra={"data": {"count": cancelled}})
        return CancelResult(orders_cancelled=cancelled)

    # ─── Helpers ───

    async def _get_batch(self, batch_id: str, for_update: bool = False) -> PrepareBatch:
        if not batch_id or not BATCH_ID_PATTERN.match(batch_id):
            raise ValidationError("Invalid batch id", context={"batch_id": batch_id})
        stmt = select(PrepareBatch).where(PrepareBatch.batch_id == batch_id)
        if for_update:
            stmt = stmt.with_for_update()
        batch = (await self.db.execute(stmt)).scalar_one_or_none()
        if batch is None:
            raise BatchNotFoundError("Batch not found", context={"batch_id": batch_id})
        return batch


def _merchant_breakdown(rows: list[StagedRow]) -> list[MerchantBreakdown]:
    groups: dict[str | None, MerchantBreakdown] = {}
    members: dict[str | None, set[str]] = {}
    for r in rows:
        entry = groups.setdefault(
            r.merchant_id, MerchantBreakdown(merchant_id=r.merchant_id, merchant_name=r.merchant_name)
        )
        entry.orders += 1
        entry.amount_cents += r.amount_cents
        entry.points += r.points_used
        members.setdefault(r.merchant_id, set()).add(r.member_id)
    for merchant_id, entry in groups.items():
        entry.members = len(members[merchant_id])
    return sorted(groups.values(), key=lambda e: (-e.members, str(e.merchant_id)))


def _summary(batch: PrepareBatch) -> BatchSummary:
    return BatchSummary(
        batch_id=batch.batch_id,
        status=BatchStatus(batch.status).value,
        filter_member_id=batch.filter_member_id,
        filter_merchant_id=batch.filter_merchant_id,
        total_members=batch.total_members,
        total_orders=batch.total_orders,
        total_amount_cents=batch.total_amount_cents,
        total_points=batch.total_points,
        members_skipped=batch.members_skipped,
        missing_prices=batch.missing_prices,
        created_at=batch.created_at,
        approved_at=batch.approved_at,
        discarded_at=batch.discarded_at,
        notes=batch.notes,
    )
