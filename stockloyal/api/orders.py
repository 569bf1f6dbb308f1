"""Order endpoints: market status, member order intake, and manual processing runs."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from stockloyal.api.deps import get_broker_client, get_calendar
from stockloyal.broker.client import BrokerClient
from stockloyal.common.database import get_db
from stockloyal.common.exceptions import NotFoundError
from stockloyal.common.logging import get_logger
from stockloyal.common.models import Order
from stockloyal.common.schemas import (
    CreateOrderRequest,
    MarketStatus,
    OrderRecord,
    ProcessResult,
    ScheduledOrderResult,
)
from stockloyal.market.calendar import TradingCalendar
from stockloyal.orders.scheduling import create_scheduled_order, process_scheduled_orders

logger = get_logger("API")

router = APIRouter()


@router.get("/market-status", response_model=MarketStatus)
async def market_status(calendar: TradingCalendar = Depends(get_calendar)) -> MarketStatus:
    return await calendar.get_market_status()


@router.post("", response_model=ScheduledOrderResult, status_code=201)
async def create_order(
    request: CreateOrderRequest,
    db: AsyncSession = Depends(get_db),
    calendar: TradingCalendar = Depends(get_calendar),
) -> ScheduledOrderResult:
    """Accept a member redemption and schedule it for the right trading day."""
    result = await create_scheduled_order(
        db,
        calendar,
        member_id=request.member_id,
        symbol=request.symbol,
        amount_cents=request.amount_cents,
        merchant_id=request.merchant_id,
        source=request.source,
    )
    await db.commit()
    return result


@router.post("/process", response_model=ProcessResult)
async def run_processing(
    db: AsyncSession = Depends(get_db),
    calendar: TradingCalendar = Depends(get_calendar),
    broker: BrokerClient = Depends(get_broker_client),
) -> ProcessResult:
    """Run one scheduled-order pass now (same work as the beat task)."""
    try:
        result = await process_scheduled_orders(db, calendar, broker)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "Manual processing run",
        extra={"data": {"processed": result.processed, "total": result.total}},
    )
    return result


@router.get("/{order_id}", response_model=OrderRecord)
async def get_order(order_id: int, db: AsyncSession = Depends(get_db)) -> OrderRecord:
    order = await db.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found", context={"order_id": order_id})
    return OrderRecord.model_validate(order)
