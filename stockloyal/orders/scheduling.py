"""Market-aware order creation and the scheduled-order processing run.

A member redemption always lands as a ``pending`` order with a
``scheduled_execution_date``: today when the market is open, otherwise the
next trading day. Nothing executes synchronously; open-market orders are
flagged ``immediate_pickup`` so the next processing run takes them first.

The processing run locks due orders with SELECT ... FOR UPDATE SKIP LOCKED
and claims them as ``validating`` in one commit, so two overlapping workers
never execute the same order. Every later stage commits on its own, so a
crash after money moved leaves the order in the stage it reached instead of
back in ``pending``.

Usage:
    from stockloyal.orders.scheduling import create_scheduled_order, process_scheduled_orders

    result = await create_scheduled_order(db, calendar, "m-1", "AAPL", 2500)
    run = await process_scheduled_orders(db, calendar, broker_client)
"""

from __future__ import annotations

from datetime import date, timedelta

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from stockloyal.broker.client import BrokerClient
from stockloyal.broker.models import cents_to_amount
from stockloyal.common.config import get_settings
from stockloyal.common.exceptions import StockLoyalError, ValidationError
from stockloyal.common.logging import get_logger
from stockloyal.common.metrics import ORDERS_PROCESSED_TOTAL, ORDERS_SCHEDULED_TOTAL
from stockloyal.common.models import BrokerCredential, Order, OrderStatus
from stockloyal.common.schemas import MarketStatus, OrderError, ProcessResult, ScheduledOrderResult
from stockloyal.market.calendar import TradingCalendar
from stockloyal.orders.exceptions import SchedulingError
from stockloyal.orders.executor import execute_order_pipeline
from stockloyal.orders.state_machine import can_transition, transition

logger = get_logger("SCHEDULER")

_DELAY_COPY = {
    "weekend": "The market is closed for the weekend.",
    "holiday": "The market is closed today for a holiday.",
    "after_hours": "The market has closed for today.",
    "pre_market": "The market hasn't opened yet.",
}


# ─── Order Creation ───


async def create_scheduled_order(
    db: AsyncSession,
    calendar: TradingCalendar,
    member_id: str,
    symbol: str,
    amount_cents: int,
    merchant_id: str | None = None,
    source: str = "points_redemption",
) -> ScheduledOrderResult:
    """Insert one pending order scheduled for the right trading day.

    Args:
        db: Async database session (caller commits).
        calendar: Trading calendar resolver.
        member_id: Member placing the order.
        symbol: Ticker to buy.
        amount_cents: Notional amount in cents.
        merchant_id: Merchant whose points funded the order.
        source: Free-form origin tag.

    Returns:
        The new order id plus member-facing messaging.

    Raises:
        ValidationError: Missing member/symbol or non-positive amount.
        SchedulingError: No next trading day could be resolved.
    """
    if not member_id or not symbol:
        raise ValidationError("member_id and symbol are required")
    if amount_cents <= 0:
        raise ValidationError("amount must be positive", context={"amount_cents": amount_cents})

    # One status fetch drives both the date and the messaging
    market_status = await calendar.get_market_status()
    is_immediate = market_status.is_open
    today = calendar.now().date()
    scheduled_date = today if is_immediate else market_status.next_trading_day
    if scheduled_date is None:
        raise SchedulingError(
            "No upcoming trading day found", context={"member_id": member_id, "symbol": symbol}
        )

    label = "market_open" if is_immediate else (market_status.delay_reason or "closed")
    symbol = symbol.strip().upper()

    order = Order(
        member_id=member_id,
        merchant_id=merchant_id,
        symbol=symbol,
        amount_cents=amount_cents,
        status=OrderStatus.PENDING,
        order_type="market",
        source=source,
        scheduled_execution_date=scheduled_date,
        market_status_at_creation=label,
        immediate_pickup=is_immediate,
    )
    db.add(order)
    await db.flush()

    ORDERS_SCHEDULED_TOTAL.labels(market_status=label).inc()
    logger.info(
        "Order scheduled",
        extra={
            "data": {
                "order_id": order.id,
                "member_id": member_id,
                "symbol": symbol,
                "amount_cents": amount_cents,
                "scheduled_date": str(scheduled_date),
                "market_status": label,
            }
        },
    )

    return ScheduledOrderResult(
        order_id=order.id,
        status=OrderStatus.PENDING.value,
        scheduled_date=scheduled_date,
        market_status=market_status,
        member_message=build_confirmation_message(
            symbol, amount_cents, market_status, scheduled_date, today
        ),
        member_message_short=market_status.message_short,
        is_immediate=is_immediate,
    )


def build_confirmation_message(
    symbol: str,
    amount_cents: int,
    market_status: MarketStatus,
    scheduled_date: date,
    today: date,
) -> str:
    """Member-facing confirmation copy for a just-created order."""
    amount = f"${int(amount_cents) / 100:,.2f}"
    if market_status.is_open:
        return f"Your {amount} investment in {symbol} is being processed now."

    reason = _DELAY_COPY.get(market_status.delay_reason or "", "The market is currently closed.")
    return (
        f"{reason} Your {amount} investment in {symbol} has been received and will be "
        f"executed when trading opens on {_scheduled_label(scheduled_date, today)}."
    )


def _scheduled_label(scheduled: date, today: date) -> str:
    if scheduled == today + timedelta(days=1):
        return f"tomorrow ({scheduled:%A})"
    return f"{scheduled:%A}, {scheduled:%b} {scheduled.day}"


# ─── Processing Run ───


async def process_scheduled_orders(
    db: AsyncSession,
    calendar: TradingCalendar,
    broker_client: BrokerClient,
    firm_account_id: str | None = None,
) -> ProcessResult:
    """Execute every due pending order, oldest first with open-market orders ahead.

    Due orders are locked with FOR UPDATE SKIP LOCKED, claimed as
    ``validating`` and committed, so no later run selects them again. Each
    order then commits after every stage. Per-order failures mark that order
    ``failed`` with its error message and the run continues.

    Returns:
        Counts of processed/total orders and one error entry per failure.
    """
    market_status = await calendar.get_market_status()
    if not market_status.is_open:
        logger.debug("Scheduled order run skipped: market closed", extra={"data": {}})
        return ProcessResult(reason="Market is not open")

    firm_account = firm_account_id if firm_account_id is not None else get_settings().firm_account_id
    claimed = await _claim_due_orders(db, calendar.now().date())

    result = ProcessResult(total=len(claimed))
    submitted_cents = 0
    for order_id, account_id in claimed:
        order = await db.get(Order, order_id, populate_existing=True)
        try:
            await execute_order_pipeline(db, order, account_id, broker_client, firm_account)
        except Exception as exc:
            message = exc.message if isinstance(exc, StockLoyalError) else str(exc)
            if isinstance(exc, SQLAlchemyError):
                await db.rollback()
                order = await db.get(Order, order_id, populate_existing=True)
            result.errors.append(OrderError(order_id=order_id, error=message))
            ORDERS_PROCESSED_TOTAL.labels(outcome="failed").inc()
            logger.error(
                "Order pipeline failed",
                extra={
                    "data": {
                        "order_id": order_id,
                        "member_id": order.member_id,
                        "stage": OrderStatus(order.status).value,
                        "error": str(exc),
                    }
                },
            )
            if can_transition(order.status, OrderStatus.FAILED):
                transition(order, OrderStatus.FAILED, error_message=message)
                await db.commit()
            continue

        result.processed += 1
        submitted_cents += order.amount_cents
        ORDERS_PROCESSED_TOTAL.labels(outcome="submitted").inc()

    logger.info(
        "Scheduled order run complete",
        extra={
            "data": {
                "processed": result.processed,
                "total": result.total,
                "errors": len(result.errors),
                "dollars_submitted": cents_to_amount(submitted_cents),
            }
        },
    )
    return result


async def _claim_due_orders(db: AsyncSession, today: date) -> list[tuple[int, str | None]]:
    """Lock due pending orders, move them to ``validating``, and commit.

    Returns:
        (order id, brokerage account id) pairs in execution order.
    """
    stmt = (
        select(Order, BrokerCredential.broker_account_id)
        .outerjoin(BrokerCredential, BrokerCredential.member_id == Order.member_id)
        .where(
            Order.status == OrderStatus.PENDING,
            Order.scheduled_execution_date <= today,
            Order.executed_at.is_(None),
        )
        .order_by(Order.immediate_pickup.desc(), Order.created_at.asc(), Order.id.asc())
        .with_for_update(skip_locked=True, of=Order)
    )
    rows = (await db.execute(stmt)).all()
    for order, _ in rows:
        transition(order, OrderStatus.VALIDATING)
    await db.commit()
    return [(order.id, account_id) for order, account_id in rows]
