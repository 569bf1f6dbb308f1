"""Tests for idempotent ledger writes."""

from __future__ import annotations

import pytest
from sqlalchemy import func, select

from stockloyal.common.models import TransactionLedger
from stockloyal.orders.ledger import record_entry


@pytest.mark.asyncio
async def test_first_write_creates_row(db):
    created = await record_entry(db, "jnlc-order-1", member_id="m-1", tx_type="jnlc", amount_cents=500)
    assert created is True

    row = (await db.execute(select(TransactionLedger))).scalar_one()
    assert row.client_tx_id == "jnlc-order-1"
    assert row.amount_cents == 500


@pytest.mark.asyncio
async def test_duplicate_is_noop(db):
    await record_entry(db, "jnlc-order-1", member_id="m-1", tx_type="jnlc", amount_cents=500)
    again = await record_entry(db, "jnlc-order-1", member_id="m-1", tx_type="jnlc", amount_cents=999)

    assert again is False
    count = (await db.execute(select(func.count()).select_from(TransactionLedger))).scalar_one()
    assert count == 1
    amount = (await db.execute(select(TransactionLedger.amount_cents))).scalar_one()
    assert amount == 500
