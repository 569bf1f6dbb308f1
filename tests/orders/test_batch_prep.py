"""Tests for the batch preparation engine: math, staging, review, approval."""

from __future__ import annotations

import pytest
from sqlalchemy import func, select

from stockloyal.broker.exceptions import BrokerConnectionError
from stockloyal.common.exceptions import ValidationError
from stockloyal.common.models import BatchStatus, MemberStockPick, Merchant, Order, OrderStatus, PreparedOrder
from stockloyal.orders.batch_prep import (
    BATCH_ID_PATTERN,
    BatchPreparer,
    effective_rate,
    effective_sweep_pct,
    new_batch_id,
    pick_amount_cents,
    sweep_points,
)
from stockloyal.orders.exceptions import BatchConflictError, BatchNotFoundError
from tests.factories import make_member, make_merchant, make_order


async def _seed(db) -> None:
    """Two eligible members, one with zero points, one on another merchant.

    m-gold: 1000 pts, 50% sweep, Gold tier at 0.015, two picks -> 375c / 250 pts each
    m-base: 333 pts, no election, base rate 0.01, three picks -> 111c / 111 pts each
    m-zero: 0 pts -> skipped
    m-other: 200 pts on merchant-002 (no rates) -> default 0.01, one pick -> 200c
    """
    await make_merchant(db, "merchant-001", conversion_rate=0.01, tiers={"Silver": 0.012, "Gold": 0.015})
    await make_merchant(db, "merchant-002", conversion_rate=None)
    await make_member(db, "m-gold", points=1000, picks=["AAPL", "MSFT"], member_tier="Gold", sweep_percentage=50)
    await make_member(db, "m-base", points=333, picks=["AAPL", "TSLA", "VOO"])
    await make_member(db, "m-zero", points=0, picks=["NVDA"])
    await make_member(db, "m-other", points=200, picks=["AMZN"], merchant_id="merchant-002", broker="Public")
    await db.commit()


class TestCalculations:
    def test_tier_rate_wins_when_name_matches(self):
        merchant = Merchant(merchant_id="x", conversion_rate=0.01, tier2_name="Gold", tier2_conversion_rate=0.015)
        assert effective_rate("Gold", merchant, 0.005) == 0.015

    def test_tier_match_is_exact(self):
        merchant = Merchant(merchant_id="x", conversion_rate=0.01, tier1_name="Gold", tier1_conversion_rate=0.015)
        assert effective_rate("gold", merchant, 0.005) == 0.01

    def test_zero_tier_rate_falls_back_to_base(self):
        merchant = Merchant(merchant_id="x", conversion_rate=0.02, tier1_name="Gold", tier1_conversion_rate=0)
        assert effective_rate("Gold", merchant, 0.005) == 0.02

    def test_no_merchant_uses_default(self):
        assert effective_rate("Gold", None, 0.005) == 0.005

    def test_sweep_pct_zero_means_everything(self):
        assert effective_sweep_pct(0) == 100.0
        assert effective_sweep_pct(None) == 100.0
        assert effective_sweep_pct(25) == 25.0

    def test_sweep_points_floor(self):
        assert sweep_points(999, 50) == 499
        assert sweep_points(1000, 33.3) == 333

    def test_amount_rounds_half_up_to_cents(self):
        assert pick_amount_cents(1000, 0.0125, 3) == 417
        assert pick_amount_cents(1, 0.005, 1) == 1
        assert pick_amount_cents(500, 0.015, 2) == 375

    def test_batch_id_format(self):
        assert BATCH_ID_PATTERN.match(new_batch_id())


class TestPrepare:
    @pytest.mark.asyncio
    async def test_stages_rows_with_expected_amounts(self, db):
        await _seed(db)

        result = await BatchPreparer(db, default_rate=0.01).prepare()

        assert result.total_members == 3
        assert result.total_orders == 6
        assert result.members_skipped == 1
        assert result.total_amount_cents == 375 * 2 + 111 * 3 + 200
        assert result.total_points == 250 * 2 + 111 * 3 + 200
        assert result.missing_prices == 0

        rows = (
            await db.execute(select(PreparedOrder).where(PreparedOrder.member_id == "m-gold"))
        ).scalars().all()
        assert {r.symbol for r in rows} == {"AAPL", "MSFT"}
        for row in rows:
            assert row.amount_cents == 375
            assert row.points_used == 250
            assert row.conversion_rate == 0.015
            assert row.sweep_percentage == 50
            assert row.status == BatchStatus.STAGED
            assert row.basket_id == f"{result.batch_id}-m-gold"
            assert row.member_timezone == "America/New_York"

    @pytest.mark.asyncio
    async def test_member_points_never_exceed_swept(self, db):
        await _seed(db)
        await BatchPreparer(db, default_rate=0.01).prepare()

        used = await db.scalar(
            select(func.sum(PreparedOrder.points_used)).where(PreparedOrder.member_id == "m-base")
        )
        assert used <= 333

    @pytest.mark.asyncio
    async def test_preview_matches_prepare(self, db):
        await _seed(db)
        preparer = BatchPreparer(db, default_rate=0.01)

        preview = await preparer.preview_counts()
        staged = await preparer.prepare()

        assert preview.eligible_members == staged.total_members
        assert preview.total_picks == staged.total_orders
        assert preview.estimated_amount_cents == staged.total_amount_cents
        assert preview.estimated_points == staged.total_points
        assert preview.members_skipped == staged.members_skipped
        assert {m.merchant_id for m in preview.by_merchant} == {"merchant-001", "merchant-002"}

    @pytest.mark.asyncio
    async def test_merchant_filter(self, db):
        await _seed(db)
        result = await BatchPreparer(db, default_rate=0.01).prepare(merchant_id="merchant-002")
        assert result.total_orders == 1
        assert result.total_amount_cents == 200
        assert result.members_skipped == 0

    @pytest.mark.asyncio
    async def test_member_filter(self, db):
        await _seed(db)
        result = await BatchPreparer(db, default_rate=0.01).prepare(member_id="m-base")
        assert result.total_members == 1
        assert result.total_orders == 3

    @pytest.mark.asyncio
    async def test_inactive_picks_ignored(self, db):
        await make_merchant(db)
        await make_member(db, "m-1", points=100, picks=["AAPL"])
        db.add(MemberStockPick(member_id="m-1", symbol="MSFT", is_active=False))
        await db.commit()

        result = await BatchPreparer(db, default_rate=0.01).prepare()
        assert result.total_orders == 1
        assert result.total_amount_cents == 100

    @pytest.mark.asyncio
    async def test_empty_batch_still_recorded(self, db):
        result = await BatchPreparer(db, default_rate=0.01).prepare()
        assert result.total_orders == 0
        assert BATCH_ID_PATTERN.match(result.batch_id)

    @pytest.mark.asyncio
    async def test_price_fetcher_fills_shares(self, db):
        await _seed(db)

        async def prices(symbols):
            return {"AAPL": 200.0}

        preparer = BatchPreparer(db, default_rate=0.01)
        result = await preparer.prepare(member_id="m-gold", price_fetcher=prices)

        assert result.missing_prices == 1
        assert (await preparer.stats(result.batch_id)).missing_prices == 1
        aapl = (
            await db.execute(select(PreparedOrder).where(PreparedOrder.symbol == "AAPL"))
        ).scalar_one()
        assert aapl.price == 200.0
        assert aapl.shares == pytest.approx(0.01875)

    @pytest.mark.asyncio
    async def test_unpriced_batch_reports_no_missing_prices(self, db):
        await _seed(db)
        preparer = BatchPreparer(db, default_rate=0.01)

        result = await preparer.prepare()

        assert result.missing_prices == 0
        assert (await preparer.stats(result.batch_id)).missing_prices == 0

    @pytest.mark.asyncio
    async def test_price_fetch_failure_leaves_shares_zero(self, db):
        await _seed(db)

        async def failing(symbols):
            raise BrokerConnectionError("data feed down")

        result = await BatchPreparer(db, default_rate=0.01).prepare(member_id="m-gold", price_fetcher=failing)
        assert result.total_orders == 2
        assert result.missing_prices == 2


class TestReview:
    @pytest.mark.asyncio
    async def test_stats_breakdowns(self, db):
        await _seed(db)
        preparer = BatchPreparer(db, default_rate=0.01)
        staged = await preparer.prepare()

        stats = await preparer.stats(staged.batch_id)

        assert stats.batch.status == "staged"
        assert stats.batch.total_orders == 6
        by_broker = {b.broker: b for b in stats.by_broker}
        assert by_broker["Public"].amount_cents == 200
        assert by_broker["Alpaca"].members == 2
        gold = next(t for t in stats.by_tier if t.member_tier == "Gold")
        assert gold.conversion_rate == 0.015
        assert gold.orders == 2
        assert stats.top_symbols[0].symbol == "AAPL"
        assert stats.top_symbols[0].orders == 2
        merchant_one = next(m for m in stats.by_merchant if m.merchant_id == "merchant-001")
        assert merchant_one.merchant_name == "Merchant merchant-001"

    @pytest.mark.asyncio
    async def test_drilldown_pages_by_amount(self, db):
        await _seed(db)
        preparer = BatchPreparer(db, default_rate=0.01)
        staged = await preparer.prepare(merchant_id="merchant-001")

        first = await preparer.drilldown(staged.batch_id, page=1, per_page=1)
        second = await preparer.drilldown(staged.batch_id, page=2, per_page=1)

        assert first.total == 2
        assert first.total_pages == 2
        assert first.members[0].member_id == "m-gold"
        assert first.members[0].amount_cents == 750
        assert first.members[0].symbols == ["AAPL", "MSFT"]
        assert second.members[0].member_id == "m-base"

    @pytest.mark.asyncio
    async def test_drilldown_clamps_paging(self, db):
        await _seed(db)
        preparer = BatchPreparer(db, default_rate=0.01)
        staged = await preparer.prepare()

        page = await preparer.drilldown(staged.batch_id, page=0, per_page=10_000)
        assert page.page == 1
        assert page.per_page == 500

    @pytest.mark.asyncio
    async def test_batches_lists_recent(self, db):
        preparer = BatchPreparer(db, default_rate=0.01)
        staged = await preparer.prepare()
        listed = await preparer.batches()
        assert [b.batch_id for b in listed] == [staged.batch_id]

    @pytest.mark.asyncio
    async def test_malformed_id_rejected(self, db):
        with pytest.raises(ValidationError):
            await BatchPreparer(db).stats("PREP-bad")

    @pytest.mark.asyncio
    async def test_unknown_batch(self, db):
        with pytest.raises(BatchNotFoundError):
            await BatchPreparer(db).stats("PREP-20250101-000000-abcdef")


class TestApproveDiscard:
    @pytest.mark.asyncio
    async def test_approve_creates_pending_sweep_orders(self, db):
        await _seed(db)
        preparer = BatchPreparer(db, default_rate=0.01)
        staged = await preparer.prepare()

        result = await preparer.approve(staged.batch_id)

        assert result.orders_created == 6
        assert result.total_amount_cents == staged.total_amount_cents
        orders = (await db.execute(select(Order))).scalars().all()
        assert len(orders) == 6
        assert {o.status for o in orders} == {OrderStatus.PENDING}
        assert {o.order_type for o in orders} == {"sweep"}
        assert {o.source for o in orders} == {"prepare_batch"}
        gold = [o for o in orders if o.member_id == "m-gold"]
        assert {o.basket_id for o in gold} == {f"{staged.batch_id}-m-gold"}
        assert all(o.points_used == 250 for o in gold)

        stats = await preparer.stats(staged.batch_id)
        assert stats.batch.status == "approved"
        assert stats.batch.approved_at is not None
        row_statuses = (await db.execute(select(PreparedOrder.status).distinct())).scalars().all()
        assert row_statuses == [BatchStatus.APPROVED]

    @pytest.mark.asyncio
    async def test_approve_twice_conflicts(self, db):
        await _seed(db)
        preparer = BatchPreparer(db, default_rate=0.01)
        staged = await preparer.prepare()
        await preparer.approve(staged.batch_id)

        with pytest.raises(BatchConflictError):
            await preparer.approve(staged.batch_id)
        count = await db.scalar(select(func.count()).select_from(Order))
        assert count == 6

    @pytest.mark.asyncio
    async def test_discard_then_approve_conflicts(self, db):
        await _seed(db)
        preparer = BatchPreparer(db, default_rate=0.01)
        staged = await preparer.prepare()

        discarded = await preparer.discard(staged.batch_id)
        assert discarded.orders_discarded == 6

        with pytest.raises(BatchConflictError):
            await preparer.approve(staged.batch_id)
        assert await db.scalar(select(func.count()).select_from(Order)) == 0

    @pytest.mark.asyncio
    async def test_cancel_pending_sweep_orders_only(self, db):
        await make_order(db, order_type="sweep")
        await make_order(db, order_type="sweep", status=OrderStatus.PLACED)
        await make_order(db, order_type="market")
        await db.commit()

        result = await BatchPreparer(db).cancel_pending_orders()

        assert result.orders_cancelled == 1
        statuses = (await db.execute(select(Order.order_type, Order.status).order_by(Order.id))).all()
        assert statuses == [
            ("sweep", OrderStatus.CANCELLED),
            ("sweep", OrderStatus.PLACED),
            ("market", OrderStatus.PENDING),
        ]
