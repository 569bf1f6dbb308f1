"""Brokerage REST API client: accounts, orders, positions, journals, calendar.

Wraps the brokerage's Basic-auth REST endpoints and maps HTTP error codes
to the BrokerError hierarchy. The order scheduler, fund journaler, trading
calendar, and batch price lookup all go through this class.

SECURITY:
- The API key and secret are NEVER logged or included in error messages.

Usage:
    from stockloyal.broker.client import BrokerClient

    client = BrokerClient()  # reads broker_* settings
    journal = await client.create_journal(request)
    await client.close()
"""

from __future__ import annotations

import time
from datetime import date

import httpx

from stockloyal.broker.exceptions import (
    BrokerApiError,
    BrokerAuthError,
    BrokerConnectionError,
    BrokerOrderRejectedError,
    BrokerRateLimitError,
)
from stockloyal.broker.models import (
    BrokerAccount,
    BrokerOrder,
    BrokerPosition,
    CalendarDay,
    CreateAccountRequest,
    JournalEntry,
    JournalRequest,
    OrderRequest,
)
from stockloyal.common.config import get_settings
from stockloyal.common.logging import get_logger
from stockloyal.common.metrics import BROKER_REQUEST_DURATION_SECONDS

logger = get_logger("BROKER")

# Write endpoints whose 4xx responses mean "rejected", not "broken"
_WRITE_PATH_MARKERS = ("/orders", "/journals", "/accounts")


class BrokerClient:
    """Async brokerage API client with Basic auth and error mapping.

    Args:
        base_url: Broker API root (defaults to ``broker_base_url``).
        data_url: Market data API root (defaults to ``broker_data_url``).
        api_key: API key id (defaults to ``broker_api_key``).
        api_secret: API secret (defaults to ``broker_api_secret``).
        timeout: Per-request timeout in seconds.
        http_client: Optional pre-built httpx.AsyncClient (tests inject a
            MockTransport-backed client here).
    """

    def __init__(
        self,
        base_url: str | None = None,
        data_url: str | None = None,
        api_key: str | None = None,
        api_secret: str | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url or settings.broker_base_url).rstrip("/")
        self.data_url = (data_url or settings.broker_data_url).rstrip("/")
        self._auth = httpx.BasicAuth(
            api_key if api_key is not None else settings.broker_api_key,
            api_secret if api_secret is not None else settings.broker_api_secret,
        )
        self.client = http_client or httpx.AsyncClient(
            timeout=timeout or settings.broker_timeout_seconds,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> BrokerClient:
        return self

    async def __aexit__(self, *exc_info) -> None:  # noqa: ANN002
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self.client.aclose()

    # ─── Core Request Method ───

    async def _request(
        self,
        method: str,
        path: str,
        params: dict | None = None,
        json_data: dict | None = None,
        root: str | None = None,
        timeout: float | None = None,
    ) -> dict | list | None:
        """Make an authenticated request and return the parsed JSON body.

        Args:
            method: HTTP method (GET, POST, DELETE).
            path: Endpoint path starting with / (e.g., /v1/journals).
            params: Optional query parameters.
            json_data: Optional JSON body (for POST).
            root: Override the API root (market data lives on a separate host).
            timeout: Override the client timeout for this call.

        Returns:
            Parsed JSON response, or None for an empty body.

        Raises:
            BrokerAuthError: 401/403 response.
            BrokerRateLimitError: 429 response.
            BrokerOrderRejectedError: other 4xx on an order/journal/account write.
            BrokerApiError: Any other non-2xx response.
            BrokerConnectionError: Network failure or timeout.
        """
        url = f"{root or self.base_url}{path}"
        kwargs: dict = {"params": params, "json": json_data, "auth": self._auth}
        if timeout is not None:
            kwargs["timeout"] = timeout

        start = time.perf_counter()
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.RequestError as exc:
            raise BrokerConnectionError(
                f"Network error: {type(exc).__name__}",
                context={"path": path, "method": method},
            ) from exc
        finally:
            BROKER_REQUEST_DURATION_SECONDS.labels(method=method).observe(
                time.perf_counter() - start
            )

        status = response.status_code
        if status in (401, 403):
            raise BrokerAuthError(
                "Authentication failed",
                context={"path": path, "status": status},
            )

        if status == 429:
            raise BrokerRateLimitError(
                "Rate limit exceeded",
                context={"path": path, "retry_after": response.headers.get("Retry-After")},
            )

        if status >= 400:
            message = _error_message(response)
            if status < 500 and method != "GET" and any(m in path for m in _WRITE_PATH_MARKERS):
                raise BrokerOrderRejectedError(
                    message, context={"path": path, "status": status}
                )
            raise BrokerApiError(message, context={"path": path, "status": status})

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise BrokerApiError(
                "Response body is not JSON",
                context={"path": path, "status": status},
            ) from exc

    # ─── Calendar ───

    async def get_calendar(self, start: date, end: date) -> list[CalendarDay]:
        """Fetch trading sessions between two dates (inclusive).

        Raises:
            BrokerApiError: The feed answered with something other than a list.
        """
        data = await self._request(
            "GET",
            "/v1/calendar",
            params={"start": start.isoformat(), "end": end.isoformat()},
            timeout=get_settings().calendar_timeout_seconds,
        )
        if not isinstance(data, list):
            raise BrokerApiError(
                "Calendar response is not a list",
                context={"start": str(start), "end": str(end)},
            )
        return [CalendarDay.model_validate(entry) for entry in data]

    # ─── Accounts ───

    async def find_account_by_email(self, email: str) -> BrokerAccount | None:
        """Look up an existing brokerage account by contact email."""
        data = await self._request("GET", "/v1/accounts", params={"query": email})
        if not isinstance(data, list):
            return None
        for entry in data:
            contact_email = (entry.get("contact") or {}).get("email_address") or entry.get("email")
            if contact_email and contact_email.lower() == email.lower():
                return _to_account(entry)
        return None

    async def get_account(self, account_id: str) -> BrokerAccount:
        data = await self._request("GET", f"/v1/accounts/{account_id}")
        return _to_account(data or {})

    async def create_account(self, request: CreateAccountRequest) -> BrokerAccount:
        """Open a new brokerage account with the given KYC payload."""
        data = await self._request(
            "POST", "/v1/accounts", json_data=request.model_dump(exclude_none=True)
        )
        account = _to_account(data or {})
        logger.info(
            "Brokerage account created",
            extra={"data": {"account_id": account.id, "status": account.status}},
        )
        return account

    # ─── Trading ───

    async def create_order(self, account_id: str, order: OrderRequest) -> BrokerOrder:
        data = await self._request(
            "POST",
            f"/v1/trading/accounts/{account_id}/orders",
            json_data=order.model_dump(exclude_none=True),
        )
        result = BrokerOrder.model_validate(data or {})
        logger.info(
            "Order submitted",
            extra={
                "data": {
                    "account_id": account_id,
                    "symbol": order.symbol,
                    "notional": order.notional,
                    "broker_order_id": result.id,
                    "status": result.status,
                }
            },
        )
        return result

    async def get_order(self, account_id: str, order_id: str) -> BrokerOrder:
        data = await self._request("GET", f"/v1/trading/accounts/{account_id}/orders/{order_id}")
        return BrokerOrder.model_validate(data or {})

    async def cancel_order(self, account_id: str, order_id: str) -> None:
        await self._request("DELETE", f"/v1/trading/accounts/{account_id}/orders/{order_id}")
        logger.info(
            "Order cancelled",
            extra={"data": {"account_id": account_id, "broker_order_id": order_id}},
        )

    async def get_positions(self, account_id: str) -> list[BrokerPosition]:
        data = await self._request("GET", f"/v1/trading/accounts/{account_id}/positions")
        return [BrokerPosition.model_validate(p) for p in (data or [])]

    # ─── Funding ───

    async def create_journal(self, request: JournalRequest) -> JournalEntry:
        """Move cash between accounts. A 2xx without an ``id`` is a failure.

        Raises:
            BrokerApiError: The brokerage accepted the call but returned no journal id.
        """
        data = await self._request("POST", "/v1/journals", json_data=request.model_dump())
        if not isinstance(data, dict) or not data.get("id"):
            raise BrokerApiError(
                "Journal response missing id",
                context={"to_account": request.to_account, "amount": request.amount},
            )
        return JournalEntry.model_validate(data)

    async def get_journal(self, journal_id: str) -> JournalEntry:
        data = await self._request("GET", f"/v1/journals/{journal_id}")
        return JournalEntry.model_validate(data or {})

    # ─── Market Data ───

    async def get_latest_prices(self, symbols: list[str]) -> dict[str, float]:
        """Latest trade price per symbol. Symbols without a trade are omitted."""
        if not symbols:
            return {}
        data = await self._request(
            "GET",
            "/v2/stocks/trades/latest",
            params={"symbols": ",".join(sorted(set(symbols)))},
            root=self.data_url,
        )
        trades = (data or {}).get("trades", {}) if isinstance(data, dict) else {}
        prices: dict[str, float] = {}
        for symbol, trade in trades.items():
            price = (trade or {}).get("p")
            if price:
                prices[symbol] = float(price)
        return prices


# ─── Helpers ───


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"API error {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or f"API error {response.status_code}")
    return f"API error {response.status_code}"


def _to_account(data: dict) -> BrokerAccount:
    return BrokerAccount(
        id=str(data.get("id", "")),
        account_number=data.get("account_number"),
        status=data.get("status"),
        email=(data.get("contact") or {}).get("email_address"),
    )
