"""Fund journaling endpoints: run a journal pass and look up a journal's status."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from stockloyal.api.deps import get_broker_client
from stockloyal.broker.client import BrokerClient
from stockloyal.broker.models import JournalEntry
from stockloyal.common.database import get_db
from stockloyal.common.schemas import JournalRequest, JournalResult
from stockloyal.orders.journal import FundJournaler

router = APIRouter()


@router.post("", response_model=JournalResult)
async def run_journal(
    request: JournalRequest | None = None,
    db: AsyncSession = Depends(get_db),
    broker: BrokerClient = Depends(get_broker_client),
) -> JournalResult:
    """Journal all (or the listed) members with paid, approved orders."""
    member_ids = request.member_ids if request else None
    return await FundJournaler(db, broker).run_journal(member_ids=member_ids)


@router.get("/{journal_id}", response_model=JournalEntry)
async def journal_status(
    journal_id: str,
    db: AsyncSession = Depends(get_db),
    broker: BrokerClient = Depends(get_broker_client),
) -> JournalEntry:
    return await FundJournaler(db, broker).check_journal_status(journal_id)
