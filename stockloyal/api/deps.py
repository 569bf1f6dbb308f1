"""FastAPI dependencies for external collaborators.

Each dependency yields a client for the request lifecycle and closes it
afterwards. Tests replace them through ``app.dependency_overrides``.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from fastapi import Depends

from stockloyal.broker.client import BrokerClient
from stockloyal.broker.webhook import BrokerWebhookClient
from stockloyal.market.calendar import CalendarCache, TradingCalendar

# Shared across requests so the calendar feed is hit at most once per TTL
_calendar_cache = CalendarCache()


async def get_broker_client() -> AsyncGenerator[BrokerClient, None]:
    """Provide a BrokerClient configured from settings."""
    client = BrokerClient()
    try:
        yield client
    finally:
        await client.close()


async def get_webhook_client() -> AsyncGenerator[BrokerWebhookClient, None]:
    client = BrokerWebhookClient()
    try:
        yield client
    finally:
        await client.close()


async def get_calendar(broker: BrokerClient = Depends(get_broker_client)) -> TradingCalendar:
    return TradingCalendar(client=broker, cache=_calendar_cache)
