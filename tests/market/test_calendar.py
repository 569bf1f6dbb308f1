"""Tests for the trading-calendar resolver and its cache.

Time is pinned through ``now_fn`` and the feed is an AsyncMock returning
CalendarDay lists, so every case is deterministic.
"""

from __future__ import annotations

from datetime import date
from unittest.mock import AsyncMock

import pytest

from stockloyal.broker.exceptions import BrokerConnectionError
from stockloyal.common.metrics import CALENDAR_FALLBACKS_TOTAL
from stockloyal.market.calendar import (
    CalendarCache,
    TradingCalendar,
    fallback_calendar,
    friendly_date,
)
from tests.factories import et, make_calendar

# Week of Jan 6 2025: Mon 6 .. Fri 10, next Monday 13
WEEK = make_calendar(*(date(2025, 1, d) for d in (6, 7, 8, 9, 10, 13, 14)))


def _calendar(now, sessions=WEEK) -> tuple[TradingCalendar, AsyncMock]:
    feed = AsyncMock()
    feed.get_calendar = AsyncMock(return_value=list(sessions))
    return TradingCalendar(client=feed, cache=CalendarCache(ttl_seconds=3600), now_fn=lambda: now), feed


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestCalendarCache:
    def test_hit_within_ttl(self):
        clock = FakeClock()
        cache = CalendarCache(ttl_seconds=60, clock=clock)
        cache.set(date(2025, 1, 6), date(2025, 1, 7), WEEK)
        clock.now += 59
        assert cache.get(date(2025, 1, 6), date(2025, 1, 7)) == WEEK

    def test_expires_after_ttl(self):
        clock = FakeClock()
        cache = CalendarCache(ttl_seconds=60, clock=clock)
        cache.set(date(2025, 1, 6), date(2025, 1, 7), WEEK)
        clock.now += 60
        assert cache.get(date(2025, 1, 6), date(2025, 1, 7)) is None
        assert len(cache) == 0

    def test_keyed_by_range(self):
        cache = CalendarCache(ttl_seconds=60)
        cache.set(date(2025, 1, 6), date(2025, 1, 7), WEEK)
        assert cache.get(date(2025, 1, 6), date(2025, 1, 8)) is None


class TestMarketStatus:
    @pytest.mark.asyncio
    async def test_open_midday(self):
        calendar, _ = _calendar(et(2025, 1, 8, 11, 0))
        status = await calendar.get_market_status()
        assert status.is_open
        assert status.is_trading_day
        assert status.delay_reason is None
        assert status.next_trading_day == date(2025, 1, 8)

    @pytest.mark.asyncio
    async def test_pre_market(self):
        calendar, _ = _calendar(et(2025, 1, 8, 8, 0))
        status = await calendar.get_market_status()
        assert not status.is_open
        assert status.is_extended
        assert status.delay_reason == "pre_market"
        assert status.next_trading_day == date(2025, 1, 8)
        assert "9:30 AM ET" in status.message

    @pytest.mark.asyncio
    async def test_after_hours_points_to_tomorrow(self):
        calendar, _ = _calendar(et(2025, 1, 8, 17, 0))
        status = await calendar.get_market_status()
        assert status.delay_reason == "after_hours"
        assert status.next_trading_day == date(2025, 1, 9)
        assert "tomorrow" in status.message

    @pytest.mark.asyncio
    async def test_close_is_exclusive(self):
        calendar, _ = _calendar(et(2025, 1, 8, 16, 0))
        status = await calendar.get_market_status()
        assert not status.is_open
        assert status.delay_reason == "after_hours"

    @pytest.mark.asyncio
    async def test_weekend(self):
        calendar, _ = _calendar(et(2025, 1, 11, 10, 0))
        status = await calendar.get_market_status()
        assert status.delay_reason == "weekend"
        assert not status.is_trading_day
        assert status.next_trading_day == date(2025, 1, 13)
        assert "Monday, Jan 13" in status.message

    @pytest.mark.asyncio
    async def test_holiday(self):
        sessions = [d for d in WEEK if d.date != date(2025, 1, 9)]
        calendar, _ = _calendar(et(2025, 1, 9, 11, 0), sessions)
        status = await calendar.get_market_status()
        assert status.delay_reason == "holiday"
        assert status.next_trading_day == date(2025, 1, 10)

    @pytest.mark.asyncio
    async def test_early_close(self):
        sessions = make_calendar(date(2025, 1, 8), date(2025, 1, 9), close_time="13:00")
        calendar, _ = _calendar(et(2025, 1, 8, 14, 0), sessions)
        status = await calendar.get_market_status()
        assert not status.is_open
        assert status.delay_reason == "after_hours"

    @pytest.mark.asyncio
    async def test_feed_is_cached(self):
        calendar, feed = _calendar(et(2025, 1, 8, 11, 0))
        await calendar.get_market_status()
        await calendar.get_market_status()
        assert feed.get_calendar.await_count == 1


class TestFallback:
    @pytest.mark.asyncio
    async def test_feed_failure_uses_weekdays(self):
        feed = AsyncMock()
        feed.get_calendar = AsyncMock(side_effect=BrokerConnectionError("down"))
        calendar = TradingCalendar(client=feed, cache=CalendarCache(ttl_seconds=3600), now_fn=lambda: et(2025, 1, 11))
        before = CALENDAR_FALLBACKS_TOTAL._value.get()

        status = await calendar.get_market_status()

        assert status.delay_reason == "weekend"
        assert status.next_trading_day == date(2025, 1, 13)
        assert CALENDAR_FALLBACKS_TOTAL._value.get() - before == 1
        assert len(calendar.cache) == 0

    @pytest.mark.asyncio
    async def test_no_client_uses_weekdays(self):
        calendar = TradingCalendar(client=None, now_fn=lambda: et(2025, 1, 8, 11, 0))
        assert (await calendar.get_market_status()).is_open

    def test_fallback_calendar_skips_weekends(self):
        days = fallback_calendar(date(2025, 1, 10), date(2025, 1, 13))
        assert [d.date for d in days] == [date(2025, 1, 10), date(2025, 1, 13)]


class TestExecutionDates:
    @pytest.mark.asyncio
    async def test_scheduled_date_today_when_open(self):
        calendar, _ = _calendar(et(2025, 1, 8, 11, 0))
        assert await calendar.get_scheduled_execution_date() == date(2025, 1, 8)

    @pytest.mark.asyncio
    async def test_scheduled_date_next_day_when_closed(self):
        calendar, _ = _calendar(et(2025, 1, 10, 18, 0))
        assert await calendar.get_scheduled_execution_date() == date(2025, 1, 13)

    @pytest.mark.asyncio
    async def test_next_trading_day_after(self):
        calendar, _ = _calendar(et(2025, 1, 8))
        assert await calendar.get_next_trading_day_after(date(2025, 1, 10)) == date(2025, 1, 13)


class TestFriendlyDate:
    def test_labels(self):
        today = date(2025, 1, 8)
        assert friendly_date(today, today) == "today"
        assert friendly_date(date(2025, 1, 9), today) == "tomorrow"
        assert friendly_date(date(2025, 1, 13), today) == "Monday, Jan 13"
