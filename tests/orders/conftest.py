"""Shared fixtures for order lifecycle tests."""

from __future__ import annotations

from datetime import date
from unittest.mock import AsyncMock

import pytest

from stockloyal.broker.models import BrokerOrder, JournalEntry
from stockloyal.market.calendar import CalendarCache, TradingCalendar
from tests.factories import et, make_calendar

TRADING_DAYS = make_calendar(*(date(2025, 1, d) for d in (6, 7, 8, 9, 10, 13, 14)))


@pytest.fixture
def broker_client() -> AsyncMock:
    """Brokerage stand-in whose journal and order calls succeed."""
    client = AsyncMock()
    client.get_calendar = AsyncMock(return_value=list(TRADING_DAYS))
    client.create_journal = AsyncMock(return_value=JournalEntry(id="jnl-1", status="executed"))
    client.create_order = AsyncMock(return_value=BrokerOrder(id="ord-1", status="accepted"))
    return client


def calendar_at(client: AsyncMock, *args: int) -> TradingCalendar:
    """A TradingCalendar pinned to ``et(*args)`` reading ``client``'s feed."""
    now = et(*args)
    return TradingCalendar(client=client, cache=CalendarCache(ttl_seconds=3600), now_fn=lambda: now)


@pytest.fixture
def open_calendar(broker_client) -> TradingCalendar:
    """Wednesday Jan 8 2025, 11:00 ET."""
    return calendar_at(broker_client, 2025, 1, 8, 11, 0)


@pytest.fixture
def closed_calendar(broker_client) -> TradingCalendar:
    """Saturday Jan 11 2025, 10:00 ET."""
    return calendar_at(broker_client, 2025, 1, 11, 10, 0)
