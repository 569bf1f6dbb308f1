"""Outbound sweep notifications to a broker partner's registered webhook.

Each broker exposes one HTTPS endpoint that receives a ``sweep_batch``
payload and answers with an acknowledgment body. The dispatcher records
whatever comes back; this client only performs the POST and parses the ack.

Usage:
    from stockloyal.broker.webhook import BrokerWebhookClient

    async with BrokerWebhookClient() as webhook:
        delivery = await webhook.send(url, api_key, batch_id, payload)
        if delivery.ack.acknowledged:
            ...
"""

from __future__ import annotations

import httpx
from pydantic import BaseModel

from stockloyal.broker.exceptions import BrokerConnectionError
from stockloyal.broker.models import WebhookAck
from stockloyal.common.config import get_settings
from stockloyal.common.logging import get_logger

logger = get_logger("BROKER")

# Response bodies are stored for audit; cap what we keep
MAX_STORED_BODY = 4000


class WebhookDelivery(BaseModel):
    """HTTP outcome of a single webhook POST."""

    status_code: int
    body: str
    ack: WebhookAck

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300 and self.ack.acknowledged


class BrokerWebhookClient:
    """POSTs sweep payloads with Bearer + X-API-Key authentication.

    Args:
        timeout: Total request timeout in seconds.
        connect_timeout: Connection timeout in seconds.
        http_client: Optional pre-built httpx.AsyncClient.
    """

    def __init__(
        self,
        timeout: float | None = None,
        connect_timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = get_settings()
        total = timeout or settings.webhook_timeout_seconds
        connect = connect_timeout or settings.webhook_connect_timeout_seconds
        self.client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(total, connect=connect),
        )

    async def __aenter__(self) -> BrokerWebhookClient:
        return self

    async def __aexit__(self, *exc_info) -> None:  # noqa: ANN002
        await self.close()

    async def close(self) -> None:
        await self.client.aclose()

    async def send(self, url: str, api_key: str | None, batch_id: str, payload: dict) -> WebhookDelivery:
        """POST one sweep payload and parse the broker's acknowledgment.

        Non-2xx responses are returned (not raised) so the caller can audit them.

        Raises:
            BrokerConnectionError: The endpoint could not be reached or timed out.
        """
        headers = {
            "Content-Type": "application/json",
            "X-Batch-ID": batch_id,
            "X-Event-Type": str(payload.get("event_type", "sweep_batch")),
        }
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
            headers["X-API-Key"] = api_key

        try:
            response = await self.client.post(url, json=payload, headers=headers)
        except httpx.RequestError as exc:
            raise BrokerConnectionError(
                f"Webhook unreachable: {type(exc).__name__}",
                context={"url": url, "batch_id": batch_id},
            ) from exc

        try:
            body = response.json()
        except ValueError:
            body = None
        ack = WebhookAck.from_body(body) if isinstance(body, dict) else WebhookAck()

        logger.info(
            "Webhook responded",
            extra={
                "data": {
                    "url": url,
                    "batch_id": batch_id,
                    "status": response.status_code,
                    "acknowledged": ack.acknowledged,
                }
            },
        )
        return WebhookDelivery(
            status_code=response.status_code,
            body=response.text[:MAX_STORED_BODY],
            ack=ack,
        )
