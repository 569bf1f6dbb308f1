"""API test fixtures: httpx.AsyncClient with dependency overrides.

Handlers commit, so the app gets its own sessions bound to the per-test
engine from the root conftest. Seed data through ``db`` and commit it
before issuing requests.
"""

from __future__ import annotations

from datetime import date
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stockloyal.api.deps import get_broker_client, get_calendar, get_webhook_client
from stockloyal.broker.models import BrokerOrder, JournalEntry, WebhookAck
from stockloyal.broker.webhook import WebhookDelivery
from stockloyal.common.database import get_db
from stockloyal.main import app
from stockloyal.market.calendar import CalendarCache, TradingCalendar
from tests.factories import et, make_calendar

TRADING_DAYS = make_calendar(*(date(2025, 1, d) for d in (6, 7, 8, 9, 10, 13, 14)))


@pytest.fixture
def api_broker() -> AsyncMock:
    broker = AsyncMock()
    broker.get_calendar = AsyncMock(return_value=list(TRADING_DAYS))
    broker.create_journal = AsyncMock(return_value=JournalEntry(id="jnl-1", status="executed"))
    broker.create_order = AsyncMock(return_value=BrokerOrder(id="ord-1", status="accepted"))
    broker.get_journal = AsyncMock(return_value=JournalEntry(id="jnl-1", status="executed"))
    return broker


@pytest.fixture
def api_webhook() -> AsyncMock:
    webhook = AsyncMock()
    body = {"acknowledged": True, "broker_batch_id": "BRK-1"}
    webhook.send = AsyncMock(
        return_value=WebhookDelivery(status_code=200, body=str(body), ack=WebhookAck.from_body(body))
    )
    return webhook


@pytest.fixture
def market_now():
    """Wednesday Jan 8 2025, 11:00 ET (market open). Tests may replace it."""
    return et(2025, 1, 8, 11, 0)


@pytest_asyncio.fixture
async def client(engine, api_broker, api_webhook, market_now):
    """Async client wired to the test engine and mocked brokerage."""
    session_factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    async def _override_db():
        async with session_factory() as session:
            yield session

    async def _override_broker():
        yield api_broker

    async def _override_webhook():
        yield api_webhook

    async def _override_calendar():
        return TradingCalendar(client=api_broker, cache=CalendarCache(ttl_seconds=3600), now_fn=lambda: market_now)

    app.dependency_overrides[get_db] = _override_db
    app.dependency_overrides[get_broker_client] = _override_broker
    app.dependency_overrides[get_webhook_client] = _override_webhook
    app.dependency_overrides[get_calendar] = _override_calendar

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
