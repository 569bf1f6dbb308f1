"""Tests for the batch, sweep, and journal endpoints."""

from __future__ import annotations

import pytest
from sqlalchemy import func, select

from stockloyal.broker.exceptions import BrokerApiError
from stockloyal.common.models import Order, OrderStatus
from tests.factories import make_broker, make_credential, make_member, make_merchant, make_order


async def _seed(db) -> None:
    await make_merchant(db, tiers={"Gold": 0.015})
    await make_member(db, "m-1", points=1000, picks=["AAPL", "MSFT"], member_tier="Gold", sweep_percentage=50)
    await make_member(db, "m-2", points=0, picks=["TSLA"])
    await db.commit()


class TestBatchFlow:
    @pytest.mark.asyncio
    async def test_preview_prepare_approve(self, client, db):
        await _seed(db)

        preview = (await client.get("/api/batches/preview")).json()
        assert preview["total_picks"] == 2
        assert preview["estimated_amount_cents"] == 750
        assert preview["members_skipped"] == 1

        resp = await client.post("/api/batches", json={})
        assert resp.status_code == 201
        batch_id = resp.json()["batch_id"]
        assert resp.json()["total_amount_cents"] == 750

        stats = (await client.get(f"/api/batches/{batch_id}/stats")).json()
        assert stats["batch"]["status"] == "staged"
        assert stats["by_tier"][0]["conversion_rate"] == 0.015

        members = (await client.get(f"/api/batches/{batch_id}/members")).json()
        assert members["total"] == 1
        assert members["members"][0]["symbols"] == ["AAPL", "MSFT"]

        approved = await client.post(f"/api/batches/{batch_id}/approve")
        assert approved.status_code == 200
        assert approved.json()["orders_created"] == 2

        count = await db.scalar(select(func.count()).select_from(Order).where(Order.order_type == "sweep"))
        assert count == 2

    @pytest.mark.asyncio
    async def test_second_approve_is_409(self, client, db):
        await _seed(db)
        batch_id = (await client.post("/api/batches", json={})).json()["batch_id"]
        await client.post(f"/api/batches/{batch_id}/approve")

        resp = await client.post(f"/api/batches/{batch_id}/approve")

        assert resp.status_code == 409
        assert resp.json()["error"] == "BatchConflictError"

    @pytest.mark.asyncio
    async def test_discard(self, client, db):
        await _seed(db)
        batch_id = (await client.post("/api/batches", json={})).json()["batch_id"]

        resp = await client.post(f"/api/batches/{batch_id}/discard")

        assert resp.json() == {"batch_id": batch_id, "status": "discarded", "orders_discarded": 2}
        listed = (await client.get("/api/batches")).json()
        assert listed[0]["status"] == "discarded"

    @pytest.mark.asyncio
    async def test_malformed_batch_id_is_400(self, client):
        resp = await client.get("/api/batches/not-a-batch/stats")
        assert resp.status_code == 400
        assert resp.json()["error"] == "ValidationError"

    @pytest.mark.asyncio
    async def test_unknown_batch_is_404(self, client):
        resp = await client.get("/api/batches/PREP-20250101-000000-abcdef/stats")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_prepare_with_prices(self, client, db, api_broker):
        api_broker.get_latest_prices.return_value = {"AAPL": 250.0, "MSFT": 375.0}
        await _seed(db)

        resp = await client.post("/api/batches", json={"fetch_prices": True})

        assert resp.json()["missing_prices"] == 0
        api_broker.get_latest_prices.assert_awaited_once_with(["AAPL", "MSFT"])

    @pytest.mark.asyncio
    async def test_cancel_pending(self, client, db):
        await make_order(db, order_type="sweep")
        await db.commit()

        resp = await client.post("/api/batches/cancel-pending")

        assert resp.json() == {"orders_cancelled": 1}


class TestSweepEndpoint:
    @pytest.mark.asyncio
    async def test_sweep_places_and_notifies(self, client, db, api_webhook):
        await make_broker(db)
        order = await make_order(db, order_type="sweep")
        await db.commit()

        resp = await client.post("/api/sweep")

        body = resp.json()
        assert resp.status_code == 200
        assert body["orders_confirmed"] == 1
        assert body["brokers_notified"] == ["Alpaca"]
        api_webhook.send.assert_awaited_once()
        await db.refresh(order)
        assert order.status == OrderStatus.PLACED
        assert order.broker_ref == "BRK-1"


class TestJournalEndpoint:
    @pytest.mark.asyncio
    async def test_run_journal(self, client, db):
        await make_credential(db, "m-1")
        await make_order(db, member_id="m-1", amount_cents=1500, status=OrderStatus.APPROVED, paid_flag=True)
        await db.commit()

        resp = await client.post("/api/journal", json={"member_ids": ["m-1"]})

        assert resp.status_code == 200
        assert resp.json()["members_funded"] == 1
        assert resp.json()["total_journaled_cents"] == 1500

    @pytest.mark.asyncio
    async def test_run_journal_without_body(self, client):
        resp = await client.post("/api/journal")
        assert resp.status_code == 200
        assert resp.json()["members_funded"] == 0

    @pytest.mark.asyncio
    async def test_journal_status(self, client, api_broker):
        resp = await client.get("/api/journal/jnl-1")
        assert resp.json()["status"] == "executed"
        api_broker.get_journal.assert_awaited_once_with("jnl-1")

    @pytest.mark.asyncio
    async def test_broker_failure_is_502(self, client, api_broker):
        api_broker.get_journal.side_effect = BrokerApiError("journal lookup failed")
        resp = await client.get("/api/journal/jnl-1")
        assert resp.status_code == 502
        assert resp.json()["detail"] == "journal lookup failed"
