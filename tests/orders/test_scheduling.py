"""Tests for market-aware order creation and the scheduled processing run."""

from __future__ import annotations

from datetime import date

import pytest
from sqlalchemy import select

from stockloyal.broker.exceptions import BrokerApiError, BrokerOrderRejectedError
from stockloyal.common.exceptions import ValidationError
from stockloyal.common.models import Order, OrderStatus
from stockloyal.orders.scheduling import create_scheduled_order, process_scheduled_orders
from tests.factories import make_credential, make_order
from tests.orders.conftest import calendar_at


class TestCreateScheduledOrder:
    @pytest.mark.asyncio
    async def test_open_market_schedules_today(self, db, open_calendar):
        result = await create_scheduled_order(db, open_calendar, "m-1", " aapl ", 2500, merchant_id="merchant-001")

        assert result.is_immediate
        assert result.scheduled_date == date(2025, 1, 8)
        assert result.status == "pending"
        assert result.member_message == "Your $25.00 investment in AAPL is being processed now."

        order = await db.get(Order, result.order_id)
        assert order.symbol == "AAPL"
        assert order.immediate_pickup is True
        assert order.market_status_at_creation == "market_open"
        assert order.status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_weekend_schedules_monday(self, db, closed_calendar):
        result = await create_scheduled_order(db, closed_calendar, "m-1", "MSFT", 1000)

        assert not result.is_immediate
        assert result.scheduled_date == date(2025, 1, 13)
        assert result.market_status.delay_reason == "weekend"
        assert result.member_message.startswith("The market is closed for the weekend.")
        assert "Monday, Jan 13" in result.member_message

    @pytest.mark.asyncio
    async def test_after_hours_says_tomorrow(self, db, broker_client):
        calendar = calendar_at(broker_client, 2025, 1, 9, 17, 0)
        result = await create_scheduled_order(db, calendar, "m-1", "MSFT", 1000)

        assert result.scheduled_date == date(2025, 1, 10)
        assert "tomorrow (Friday)" in result.member_message

    @pytest.mark.asyncio
    async def test_pre_market_runs_same_day(self, db, broker_client):
        calendar = calendar_at(broker_client, 2025, 1, 8, 7, 0)
        result = await create_scheduled_order(db, calendar, "m-1", "MSFT", 1000)
        assert result.scheduled_date == date(2025, 1, 8)
        assert result.market_status.delay_reason == "pre_market"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("member_id", "symbol", "amount"),
        [("", "AAPL", 100), ("m-1", "", 100), ("m-1", "AAPL", 0)],
    )
    async def test_rejects_bad_input(self, db, open_calendar, member_id, symbol, amount):
        with pytest.raises(ValidationError):
            await create_scheduled_order(db, open_calendar, member_id, symbol, amount)


class TestProcessScheduledOrders:
    @pytest.mark.asyncio
    async def test_noop_when_market_closed(self, db, closed_calendar, broker_client):
        await make_order(db, scheduled_execution_date=date(2025, 1, 10))

        result = await process_scheduled_orders(db, closed_calendar, broker_client, "firm-001")

        assert result.reason == "Market is not open"
        assert result.total == 0
        broker_client.create_order.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_processes_due_orders_and_isolates_failures(self, db, open_calendar, broker_client):
        await make_credential(db, "m-1", account_id="acct-1")
        good = await make_order(db, member_id="m-1", scheduled_execution_date=date(2025, 1, 8))
        no_account = await make_order(db, member_id="m-2", scheduled_execution_date=date(2025, 1, 7))
        future = await make_order(db, member_id="m-1", scheduled_execution_date=date(2025, 1, 9))

        result = await process_scheduled_orders(db, open_calendar, broker_client, "firm-001")

        assert result.total == 2
        assert result.processed == 1
        assert [e.order_id for e in result.errors] == [no_account.id]
        assert good.status == OrderStatus.SUBMITTED
        assert no_account.status == OrderStatus.FAILED
        assert "no brokerage account" in no_account.error_message
        assert future.status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_broker_failure_marks_failed_without_retry(self, db, open_calendar, broker_client):
        broker_client.create_journal.side_effect = BrokerApiError("journal rejected")
        await make_credential(db, "m-1")
        order = await make_order(db, member_id="m-1", scheduled_execution_date=date(2025, 1, 8))

        result = await process_scheduled_orders(db, open_calendar, broker_client, "firm-001")

        assert result.processed == 0
        assert order.status == OrderStatus.FAILED
        assert order.error_message == "journal rejected"
        assert broker_client.create_journal.await_count == 1

    @pytest.mark.asyncio
    async def test_immediate_pickup_goes_first(self, db, open_calendar, broker_client):
        await make_credential(db, "m-old", account_id="acct-old")
        await make_credential(db, "m-now", account_id="acct-now")
        await make_order(db, member_id="m-old", scheduled_execution_date=date(2025, 1, 7))
        await make_order(db, member_id="m-now", scheduled_execution_date=date(2025, 1, 8), immediate_pickup=True)

        await process_scheduled_orders(db, open_calendar, broker_client, "firm-001")

        accounts = [call.args[0] for call in broker_client.create_order.await_args_list]
        assert accounts == ["acct-now", "acct-old"]

    @pytest.mark.asyncio
    async def test_already_executed_orders_skipped(self, db, open_calendar, broker_client):
        await make_credential(db, "m-1")
        await make_order(
            db,
            member_id="m-1",
            scheduled_execution_date=date(2025, 1, 8),
            executed_at=open_calendar.now(),
        )
        result = await process_scheduled_orders(db, open_calendar, broker_client, "firm-001")
        assert result.total == 0


class TestStageTrail:
    @pytest.mark.asyncio
    async def test_stages_committed_as_they_run(self, db, open_calendar, broker_client):
        await make_credential(db, "m-1")
        order = await make_order(db, member_id="m-1", scheduled_execution_date=date(2025, 1, 8))
        order_id = order.id

        await process_scheduled_orders(db, open_calendar, broker_client, "firm-001")
        await db.rollback()

        status = await db.scalar(select(Order.status).where(Order.id == order_id))
        assert status == OrderStatus.SUBMITTED

    @pytest.mark.asyncio
    async def test_order_stopped_midway_is_not_picked_up_again(self, db, open_calendar, broker_client):
        broker_client.create_order.side_effect = BrokerOrderRejectedError("insufficient buying power")
        await make_credential(db, "m-1")
        order = await make_order(db, member_id="m-1", scheduled_execution_date=date(2025, 1, 8))
        order_id = order.id

        await process_scheduled_orders(db, open_calendar, broker_client, "firm-001")
        await db.rollback()
        status, journal_id = (
            await db.execute(select(Order.status, Order.broker_journal_id).where(Order.id == order_id))
        ).one()
        again = await process_scheduled_orders(db, open_calendar, broker_client, "firm-001")

        assert status == OrderStatus.FAILED
        assert journal_id == "jnl-1"
        assert again.total == 0
        assert broker_client.create_journal.await_count == 1
