"""Market-hours awareness: is the market open, and when does it next trade?

All reasoning happens in America/New_York. Trading sessions come from the
brokerage calendar feed; when the feed is unavailable a weekday 09:30-16:00
schedule (no holidays) is used instead and is not cached, so the next call
retries the feed.

Usage:
    from stockloyal.market.calendar import CalendarCache, TradingCalendar

    calendar = TradingCalendar(client=broker_client, cache=CalendarCache(ttl_seconds=3600))
    status = await calendar.get_market_status()
    if not status.is_open:
        print(status.message)
"""

from __future__ import annotations

import time as _time
from collections.abc import Callable
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from stockloyal.broker.client import BrokerClient
from stockloyal.broker.exceptions import BrokerError
from stockloyal.broker.models import CalendarDay
from stockloyal.common.config import get_settings
from stockloyal.common.logging import get_logger
from stockloyal.common.metrics import CALENDAR_FALLBACKS_TOTAL
from stockloyal.common.schemas import DelayReason, MarketStatus

logger = get_logger("CALENDAR")

ET = ZoneInfo("America/New_York")

REGULAR_OPEN = time(9, 30)
REGULAR_CLOSE = time(16, 0)
EXTENDED_OPEN = time(4, 0)
EXTENDED_CLOSE = time(20, 0)

# Window fetched around "today" for a status check
LOOKBACK_DAYS = 1
LOOKAHEAD_DAYS = 7
# Window searched by get_next_trading_day_after
NEXT_DAY_SEARCH_DAYS = 10


# ─── Cache ───


class CalendarCache:
    """Date-range keyed cache of calendar sessions with a TTL.

    Args:
        ttl_seconds: How long a fetched range stays valid.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(self, ttl_seconds: int | None = None, clock: Callable[[], float] = _time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else get_settings().calendar_cache_ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[float, list[CalendarDay]]] = {}

    @staticmethod
    def key(start: date, end: date) -> str:
        return f"{start.isoformat()}_{end.isoformat()}"

    def get(self, start: date, end: date) -> list[CalendarDay] | None:
        entry = self._entries.get(self.key(start, end))
        if entry is None:
            return None
        stored_at, days = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[self.key(start, end)]
            return None
        return days

    def set(self, start: date, end: date, days: list[CalendarDay]) -> None:
        self._entries[self.key(start, end)] = (self._clock(), days)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def fallback_calendar(start: date, end: date) -> list[CalendarDay]:
    """Monday-Friday regular sessions between two dates, inclusive."""
    days: list[CalendarDay] = []
    current = start
    while current <= end:
        if current.isoweekday() <= 5:
            days.append(CalendarDay(date=current, open="09:30", close="16:00"))
        current += timedelta(days=1)
    return days


def friendly_date(target: date, today: date) -> str:
    """``today``, ``tomorrow``, or ``Monday, Jan 6``."""
    if target == today:
        return "today"
    if target == today + timedelta(days=1):
        return "tomorrow"
    return f"{target:%A}, {target:%b} {target.day}"


def _session_time(hhmm: str) -> time:
    hour, minute = hhmm.split(":")[:2]
    return time(int(hour), int(minute))


def _at(day: date, hhmm: str) -> datetime:
    return datetime.combine(day, _session_time(hhmm), tzinfo=ET)


# ─── Resolver ───


class TradingCalendar:
    """Resolves market status and execution dates against the trading calendar.

    Args:
        client: Brokerage client used for the calendar feed. When None the
            weekday fallback is always used.
        cache: Shared CalendarCache; a private one is created when omitted.
        now_fn: Returns the current time. Injectable so tests can pin time.
    """

    def __init__(
        self,
        client: BrokerClient | None = None,
        cache: CalendarCache | None = None,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self.client = client
        self.cache = cache if cache is not None else CalendarCache()
        self._now_fn = now_fn or (lambda: datetime.now(ET))

    def now(self) -> datetime:
        """Current time in Eastern."""
        current = self._now_fn()
        if current.tzinfo is None:
            return current.replace(tzinfo=ET)
        return current.astimezone(ET)

    # ─── Public API ───

    async def get_market_status(self) -> MarketStatus:
        """Compute the full market status snapshot for right now."""
        now = self.now()
        today = now.date()
        sessions = await self._fetch_range(
            today - timedelta(days=LOOKBACK_DAYS), today + timedelta(days=LOOKAHEAD_DAYS)
        )
        by_date = {s.date: s for s in sessions}

        today_session = by_date.get(today)
        is_trading_day = today_session is not None
        is_open = False
        is_extended = False
        if today_session is not None:
            is_open = _at(today, today_session.open) <= now < _at(today, today_session.close)
            is_extended = not is_open and (
                datetime.combine(today, EXTENDED_OPEN, tzinfo=ET)
                <= now
                < datetime.combine(today, EXTENDED_CLOSE, tzinfo=ET)
            )

        next_session = self._next_session(sessions, today_session, now)
        delay_reason = self._delay_reason(now, is_trading_day, is_open)

        next_open_time = next_close_time = None
        if next_session is not None:
            next_open_time = _at(next_session.date, next_session.open).isoformat()
            next_close_time = _at(next_session.date, next_session.close).isoformat()

        next_day = next_session.date if next_session else None
        status = MarketStatus(
            is_open=is_open,
            is_extended=is_extended,
            is_trading_day=is_trading_day,
            next_trading_day=next_day,
            next_open_time=next_open_time,
            next_close_time=next_close_time,
            delay_reason=delay_reason,
            message=self._member_message(next_day, delay_reason, is_open, today),
            message_short=self._short_message(next_day, is_open, today),
            checked_at=now,
        )
        logger.debug(
            "Market status resolved",
            extra={
                "data": {
                    "is_open": is_open,
                    "delay_reason": delay_reason,
                    "next_trading_day": str(next_day),
                }
            },
        )
        return status

    async def get_scheduled_execution_date(self) -> date | None:
        """Today when the market is open, otherwise the next trading day."""
        status = await self.get_market_status()
        if status.is_open:
            return self.now().date()
        return status.next_trading_day

    async def get_next_trading_day_after(self, from_date: date) -> date | None:
        """First trading day strictly after ``from_date``."""
        sessions = await self._fetch_range(
            from_date + timedelta(days=1), from_date + timedelta(days=NEXT_DAY_SEARCH_DAYS)
        )
        for session in sessions:
            if session.date > from_date:
                return session.date
        return None

    async def is_trading_day(self, day: date) -> bool:
        sessions = await self._fetch_range(day, day)
        return any(s.date == day for s in sessions)

    # ─── Feed ───

    async def _fetch_range(self, start: date, end: date) -> list[CalendarDay]:
        cached = self.cache.get(start, end)
        if cached is not None:
            return cached

        if self.client is None:
            return fallback_calendar(start, end)

        try:
            sessions = await self.client.get_calendar(start, end)
        except (BrokerError, ValueError) as exc:
            CALENDAR_FALLBACKS_TOTAL.inc()
            logger.warning(
                "Calendar feed unavailable, using weekday fallback",
                extra={"data": {"start": str(start), "end": str(end), "error": str(exc)}},
            )
            return fallback_calendar(start, end)

        sessions = sorted(sessions, key=lambda s: s.date)
        self.cache.set(start, end, sessions)
        return sessions

    # ─── Helpers ───

    @staticmethod
    def _next_session(
        sessions: list[CalendarDay], today_session: CalendarDay | None, now: datetime
    ) -> CalendarDay | None:
        today = now.date()
        if today_session is not None and now < _at(today, today_session.close):
            return today_session
        for session in sessions:
            if session.date > today:
                return session
        return None

    @staticmethod
    def _delay_reason(now: datetime, is_trading_day: bool, is_open: bool) -> DelayReason | None:
        if is_open:
            return None
        if now.isoweekday() >= 6:
            return "weekend"
        if not is_trading_day:
            return "holiday"
        if now.time() < REGULAR_OPEN:
            return "pre_market"
        return "after_hours"

    @staticmethod
    def _member_message(
        next_day: date | None, delay_reason: DelayReason | None, is_open: bool, today: date
    ) -> str:
        if is_open:
            return "The market is open. Your order will be processed shortly."

        label = friendly_date(next_day, today) if next_day else "the next trading day"
        if delay_reason == "weekend":
            return (
                "The market is closed for the weekend. Your order has been received "
                f"and will be executed when trading opens on {label}."
            )
        if delay_reason == "holiday":
            return (
                "The market is closed today for a holiday. Your order has been received "
                f"and will be executed when trading resumes on {label}."
            )
        if delay_reason == "after_hours":
            return (
                "The market has closed for today. Your order has been received "
                f"and will be executed when trading opens on {label}."
            )
        if delay_reason == "pre_market":
            return (
                "The market hasn't opened yet today. Your order has been received "
                "and will be executed when trading begins at 9:30 AM ET."
            )
        return f"Your order has been received and will be executed on {label}."

    @staticmethod
    def _short_message(next_day: date | None, is_open: bool, today: date) -> str:
        if is_open:
            return "Market open — processing now"
        label = friendly_date(next_day, today) if next_day else "next trading day"
        return f"Market closed — executes {label}"
