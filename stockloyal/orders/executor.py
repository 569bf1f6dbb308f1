"""Five-stage execution pipeline for a single scheduled order.

Stages (each one a validated state transition, committed before the next
external call so a crash leaves the order where it stopped):
    1. validating: the member must have a linked brokerage account
    2. journaling: JNLC cash journal, firm sweep account -> member account
    3. submitting: notional market buy, time_in_force=day
    4. submitted : broker order id/status and executed_at recorded
    5. member_notified flag set

There is no retry here. The caller marks the order ``failed`` when any
stage raises, and failed orders are terminal. An order that stopped in
``journaling`` or ``submitting`` may have moved money and is left for an
operator; it is never picked up again.

Usage:
    from stockloyal.orders.executor import execute_order_pipeline

    await execute_order_pipeline(db, order, account_id, broker_client, firm_account_id)
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from stockloyal.broker.client import BrokerClient
from stockloyal.broker.models import BrokerOrder, JournalRequest, OrderRequest, cents_to_amount
from stockloyal.common.exceptions import ValidationError
from stockloyal.common.logging import get_logger
from stockloyal.common.models import Order, OrderStatus
from stockloyal.orders.exceptions import MissingBrokerAccountError
from stockloyal.orders.ledger import record_entry
from stockloyal.orders.state_machine import transition

logger = get_logger("ORDER")


async def execute_order_pipeline(
    db: AsyncSession,
    order: Order,
    account_id: str | None,
    broker_client: BrokerClient,
    firm_account_id: str,
) -> BrokerOrder:
    """Run one pending order through journaling and submission.

    Args:
        db: Async database session. Committed after every stage.
        order: A ``pending`` order, or one already claimed as ``validating``.
        account_id: The member's brokerage account id, if linked.
        broker_client: Brokerage API client.
        firm_account_id: Sweep account that funds the journal.

    Returns:
        The brokerage's order record.

    Raises:
        MissingBrokerAccountError: The member has no brokerage account.
        ValidationError: No firm account is configured.
        BrokerError: The journal or order call failed.
        InvalidTransitionError: The order was neither ``pending`` nor ``validating``.
    """
    # Stage 1: validate
    if order.status != OrderStatus.VALIDATING:
        transition(order, OrderStatus.VALIDATING)
        await db.commit()
    if not account_id:
        raise MissingBrokerAccountError(
            f"Member {order.member_id} has no brokerage account",
            context={"order_id": order.id, "member_id": order.member_id},
        )
    if not firm_account_id:
        raise ValidationError("Firm sweep account is not configured", context={"order_id": order.id})

    amount = cents_to_amount(order.amount_cents)

    # Stage 2: journal cash into the member account
    transition(order, OrderStatus.JOURNALING)
    await db.commit()
    journal = await broker_client.create_journal(
        JournalRequest(
            from_account=firm_account_id,
            to_account=account_id,
            amount=amount,
            description=f"StockLoyal order {order.id} funding",
        )
    )
    order.broker_journal_id = journal.id
    await record_entry(
        db,
        f"jnlc-order-{order.id}",
        member_id=order.member_id,
        merchant_id=order.merchant_id,
        order_id=order.id,
        tx_type="jnlc",
        amount_cents=order.amount_cents,
        note=f"journal {journal.id}",
    )

    # Stage 3: submit the buy
    transition(order, OrderStatus.SUBMITTING)
    await db.commit()
    broker_order = await broker_client.create_order(
        account_id,
        OrderRequest(symbol=order.symbol, notional=amount, client_order_id=f"sl-order-{order.id}"),
    )

    # Stage 4: record the brokerage response
    order.broker_order_id = broker_order.id
    order.broker_order_status = broker_order.status
    order.executed_at = datetime.now(UTC)
    transition(order, OrderStatus.SUBMITTED)
    await record_entry(
        db,
        f"buy-order-{order.id}",
        member_id=order.member_id,
        merchant_id=order.merchant_id,
        order_id=order.id,
        tx_type="buy",
        amount_cents=order.amount_cents,
        points=order.points_used or 0,
        note=f"{order.symbol} order {broker_order.id}",
    )
    await db.commit()

    # Stage 5: notify member
    order.member_notified = True
    await db.commit()

    logger.info(
        "Order submitted to brokerage",
        extra={
            "data": {
                "order_id": order.id,
                "member_id": order.member_id,
                "symbol": order.symbol,
                "amount_cents": order.amount_cents,
                "broker_order_id": broker_order.id,
            }
        },
    )
    return broker_order
