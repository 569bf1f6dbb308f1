"""Prepare-batch endpoints: preview, stage, review, approve, discard.

Admins stage a batch, inspect its breakdowns, then approve it into pending
sweep orders or discard it. The preparer commits its own writes.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from stockloyal.api.deps import get_broker_client
from stockloyal.broker.client import BrokerClient
from stockloyal.common.database import get_db
from stockloyal.common.logging import get_logger
from stockloyal.common.schemas import (
    ApproveResult,
    BatchStats,
    BatchSummary,
    CancelResult,
    DiscardResult,
    DrilldownPage,
    PrepareRequest,
    PrepareResult,
    PreviewResult,
)
from stockloyal.orders.batch_prep import BatchPreparer

logger = get_logger("API")

router = APIRouter()


@router.get("", response_model=list[BatchSummary])
async def list_batches(
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> list[BatchSummary]:
    return await BatchPreparer(db).batches(limit=limit)


@router.get("/preview", response_model=PreviewResult)
async def preview(
    merchant_id: str | None = None,
    db: AsyncSession = Depends(get_db),
) -> PreviewResult:
    """Estimate what a prepare run would stage, without writing."""
    return await BatchPreparer(db).preview_counts(merchant_id=merchant_id)


@router.post("", response_model=PrepareResult, status_code=201)
async def prepare(
    request: PrepareRequest,
    db: AsyncSession = Depends(get_db),
    broker: BrokerClient = Depends(get_broker_client),
) -> PrepareResult:
    """Stage a new batch; optionally price it with latest trades."""
    fetcher = broker.get_latest_prices if request.fetch_prices else None
    result = await BatchPreparer(db).prepare(
        member_id=request.member_id,
        merchant_id=request.merchant_id,
        price_fetcher=fetcher,
    )
    logger.info(
        "Batch prepared via API",
        extra={"data": {"batch_id": result.batch_id, "orders": result.total_orders}},
    )
    return result


@router.post("/cancel-pending", response_model=CancelResult)
async def cancel_pending(db: AsyncSession = Depends(get_db)) -> CancelResult:
    return await BatchPreparer(db).cancel_pending_orders()


@router.get("/{batch_id}/stats", response_model=BatchStats)
async def batch_stats(batch_id: str, db: AsyncSession = Depends(get_db)) -> BatchStats:
    return await BatchPreparer(db).stats(batch_id)


@router.get("/{batch_id}/members", response_model=DrilldownPage)
async def batch_members(
    batch_id: str,
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=500),
    merchant_id: str | None = None,
    broker: str | None = None,
    db: AsyncSession = Depends(get_db),
) -> DrilldownPage:
    return await BatchPreparer(db).drilldown(
        batch_id, page=page, per_page=per_page, merchant_id=merchant_id, broker=broker
    )


@router.post("/{batch_id}/approve", response_model=ApproveResult)
async def approve(batch_id: str, db: AsyncSession = Depends(get_db)) -> ApproveResult:
    return await BatchPreparer(db).approve(batch_id)


@router.post("/{batch_id}/discard", response_model=DiscardResult)
async def discard(batch_id: str, db: AsyncSession = Depends(get_db)) -> DiscardResult:
    return await BatchPreparer(db).discard(batch_id)
