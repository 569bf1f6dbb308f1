"""Celery tasks that drive the order lifecycle on a schedule.

Task schedule (America/New_York, Mon-Fri):
    - process_scheduled_orders: 09:31, then every 5 minutes 09:00-15:55
    - run_sweep:                09:00
    - run_journal:              16:30

No task retries automatically. Order runs commit each claimed order as it
moves through its stages, so an order that moved money is never pending
again. Sweep and journal runs have external side effects per group/member.

Uses asgiref.sync.async_to_sync for calling async functions from Celery tasks.
"""

from __future__ import annotations

from datetime import UTC, datetime

from asgiref.sync import async_to_sync
from celery import shared_task

from stockloyal.broker.client import BrokerClient
from stockloyal.broker.webhook import BrokerWebhookClient
from stockloyal.common.database import get_task_session
from stockloyal.common.logging import get_logger
from stockloyal.market.calendar import CalendarCache, TradingCalendar
from stockloyal.orders.journal import FundJournaler
from stockloyal.orders.scheduling import process_scheduled_orders as _process_orders
from stockloyal.orders.sweep import SweepDispatcher

logger = get_logger("SCHEDULER")

# One calendar cache per worker process
_calendar_cache = CalendarCache()


# ─── Celery Tasks ───


@shared_task
def process_scheduled_orders() -> dict:
    """Execute due pending orders while the market is open. Not retried.

    Returns:
        Dict with task execution metadata and the run result.
    """
    start_time = datetime.now(UTC)
    logger.info("Starting scheduled order run", extra={"data": {}})

    try:
        result = async_to_sync(_run_scheduled_orders)()
    except Exception as exc:
        logger.error(
            "Scheduled order run failed",
            extra={"data": {"error": str(exc)}},
        )
        raise

    elapsed = (datetime.now(UTC) - start_time).total_seconds()
    return {"status": "completed", "elapsed_seconds": round(elapsed, 1), **result}


@shared_task
def run_sweep(merchant_id: str | None = None) -> dict:
    """Place pending orders and notify brokers. Not retried."""
    start_time = datetime.now(UTC)
    logger.info("Starting sweep", extra={"data": {"merchant_id": merchant_id}})

    result = async_to_sync(_run_sweep)(merchant_id)

    elapsed = (datetime.now(UTC) - start_time).total_seconds()
    return {"status": "completed", "elapsed_seconds": round(elapsed, 1), **result}


@shared_task
def run_journal(member_ids: list[str] | None = None) -> dict:
    """Fund member accounts for paid, approved orders. Not retried."""
    start_time = datetime.now(UTC)
    logger.info("Starting journal run", extra={"data": {"members": member_ids}})

    result = async_to_sync(_run_journal)(member_ids)

    elapsed = (datetime.now(UTC) - start_time).total_seconds()
    return {"status": "completed", "elapsed_seconds": round(elapsed, 1), **result}


# ─── Async Implementations ───


async def _run_scheduled_orders() -> dict:
    """Stages commit as they go; the final commit only covers the run tail."""
    session = await get_task_session()
    try:
        async with BrokerClient() as broker:
            calendar = TradingCalendar(client=broker, cache=_calendar_cache)
            result = await _process_orders(session, calendar, broker)
        await session.commit()
        return result.model_dump(mode="json")
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def _run_sweep(merchant_id: str | None) -> dict:
    session = await get_task_session()
    try:
        async with BrokerWebhookClient() as webhook:
            result = await SweepDispatcher(session, webhook).run(merchant_id=merchant_id)
        return result.model_dump(mode="json", exclude={"groups"})
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def _run_journal(member_ids: list[str] | None) -> dict:
    session = await get_task_session()
    try:
        async with BrokerClient() as broker:
            result = await FundJournaler(session, broker).run_journal(member_ids=member_ids)
        return result.model_dump(mode="json", exclude={"results"})
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()
