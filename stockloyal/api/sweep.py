"""Manual sweep trigger (the daily beat task runs the same dispatcher)."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from stockloyal.api.deps import get_webhook_client
from stockloyal.broker.webhook import BrokerWebhookClient
from stockloyal.common.database import get_db
from stockloyal.common.schemas import SweepResult
from stockloyal.orders.sweep import SweepDispatcher

router = APIRouter()


@router.post("", response_model=SweepResult)
async def run_sweep(
    merchant_id: str | None = None,
    db: AsyncSession = Depends(get_db),
    webhook: BrokerWebhookClient = Depends(get_webhook_client),
) -> SweepResult:
    return await SweepDispatcher(db, webhook).run(merchant_id=merchant_id)
