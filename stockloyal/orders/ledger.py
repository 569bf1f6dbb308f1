"""Idempotent transaction ledger writes.

Every money movement the pipeline performs is mirrored in
``transaction_ledger`` under a caller-chosen ``client_tx_id``. Writing the
same id twice is a no-op, so a re-run job never double-books.

Usage:
    from stockloyal.orders.ledger import record_entry

    created = await record_entry(db, f"jnlc-order-{order.id}", member_id=..., tx_type="jnlc", amount_cents=500)
"""

from __future__ import annotations

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from stockloyal.common.logging import get_logger
from stockloyal.common.models import TransactionLedger

logger = get_logger("ORDER")

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


async def record_entry(
    db: AsyncSession,
    client_tx_id: str,
    *,
    member_id: str,
    tx_type: str,
    amount_cents: int = 0,
    points: int = 0,
    merchant_id: str | None = None,
    order_id: int | None = None,
    note: str | None = None,
) -> bool:
    """Insert a ledger row unless ``client_tx_id`` already exists.

    Returns:
        True if a row was written, False if the id was already present.
    """
    dialect = db.get_bind().dialect.name
    insert_fn = _DIALECT_INSERTS.get(dialect)
    if insert_fn is None:
        raise NotImplementedError(f"Ledger writes not supported on {dialect}")

    stmt = (
        insert_fn(TransactionLedger)
        .values(
            client_tx_id=client_tx_id,
            member_id=member_id,
            merchant_id=merchant_id,
            order_id=order_id,
            tx_type=tx_type,
            amount_cents=amount_cents,
            points=points,
            note=note,
        )
        .on_conflict_do_nothing(index_elements=["client_tx_id"])
    )
    result = await db.execute(stmt)
    created = (result.rowcount or 0) > 0
    if not created:
        logger.info(
            "Duplicate ledger entry ignored",
            extra={"data": {"client_tx_id": client_tx_id}},
        )
    return created
