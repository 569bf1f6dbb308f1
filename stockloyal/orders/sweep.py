"""Sweep dispatcher: hand pending sweep orders to broker partners.

One run:
    1. select ``pending``/``queued`` orders (optionally one merchant)
    2. group by merchant, then by broker
    3. per group, a conditional UPDATE moves still-eligible rows to ``placed``
       and commits before any network call
    4. POST one ``sweep_batch`` payload to the broker's registered webhook
    5. record one broker_notifications row per group (sent | failed | skipped)
    6. clear active picks of one-time-election members in placed groups
    7. write one sweep_log row

A webhook failure never rolls placement back: orders stay ``placed`` and the
notification row records the failure for follow-up.

Usage:
    from stockloyal.orders.sweep import SweepDispatcher

    async with BrokerWebhookClient() as webhook:
        result = await SweepDispatcher(db, webhook).run()
"""

from __future__ import annotations

import time
from collections import defaultdict
from datetime import UTC, datetime
from uuid import uuid4

from cryptography.fernet import InvalidToken
from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from stockloyal.broker.exceptions import BrokerError
from stockloyal.broker.webhook import BrokerWebhookClient
from stockloyal.common.encryption import decrypt_api_key
from stockloyal.common.logging import get_logger
from stockloyal.common.metrics import SWEEP_GROUPS_TOTAL
from stockloyal.common.models import (
    BrokerMaster,
    BrokerNotification,
    MemberStockPick,
    NotificationStatus,
    Order,
    OrderStatus,
    SweepLog,
    Wallet,
)
from stockloyal.common.schemas import SweepGroupResult, SweepResult
from stockloyal.orders.state_machine import sources_for

logger = get_logger("SWEEP")

EVENT_TYPE = "sweep_batch"
ONE_TIME_ELECTION = "one-time"
UNKNOWN_BROKER = "Unknown"


def new_sweep_id(now: datetime | None = None) -> str:
    now = now or datetime.now(UTC)
    return f"SWEEP_{now:%Y%m%d_%H%M%S}_{uuid4().hex[:6]}"


def _dollars(cents: int) -> float:
    return round(int(cents) / 100, 2)


def build_sweep_payload(
    batch_id: str,
    merchant_id: str | None,
    broker: str,
    orders: list[Order],
    now: datetime,
) -> dict:
    """Group placed orders into member baskets for the broker's webhook.

    Amounts are dollars (2 dp); points are integers.
    """
    baskets: dict[str, dict] = {}
    for order in orders:
        key = order.basket_id or f"{batch_id}-{order.member_id}"
        basket = baskets.setdefault(
            key,
            {
                "basket_id": key,
                "member_id": order.member_id,
                "orders": [],
                "subtotal_amount": 0.0,
                "subtotal_points": 0,
            },
        )
        basket["orders"].append(
            {
                "order_id": order.id,
                "symbol": order.symbol,
                "shares": float(order.shares or 0),
                "amount": _dollars(order.amount_cents),
                "points_used": int(order.points_used or 0),
                "order_type": order.order_type or "market",
            }
        )
        basket["subtotal_amount"] = round(basket["subtotal_amount"] + _dollars(order.amount_cents), 2)
        basket["subtotal_points"] += int(order.points_used or 0)

    total_cents = sum(o.amount_cents for o in orders)
    return {
        "event_type": EVENT_TYPE,
        "batch_id": batch_id,
        "merchant_id": merchant_id,
        "broker": broker,
        "sweep_date": now.date().isoformat(),
        "baskets": list(baskets.values()),
        "total_amount": _dollars(total_cents),
        "total_points": sum(int(o.points_used or 0) for o in orders),
        "total_orders": len(orders),
        "timestamp": now.isoformat(),
    }


class SweepDispatcher:
    """Places pending orders and notifies each broker once per merchant group.

    Args:
        db: Async database session. The dispatcher commits per group.
        webhook_client: Client used to POST sweep payloads.
    """

    def __init__(self, db: AsyncSession, webhook_client: BrokerWebhookClient) -> None:
        self.db = db
        self.webhook = webhook_client

    async def run(self, merchant_id: str | None = None) -> SweepResult:
        started_at = datetime.now(UTC)
        started = time.perf_counter()
        batch_id = new_sweep_id(started_at)
        result = SweepResult(batch_id=batch_id)

        stmt = (
            select(Order.id, Order.merchant_id, Order.broker)
            .where(Order.status.in_([OrderStatus.PENDING, OrderStatus.QUEUED]))
            .order_by(Order.merchant_id, Order.broker, Order.created_at, Order.id)
        )
        if merchant_id:
            stmt = stmt.where(Order.merchant_id == merchant_id)
        rows = (await self.db.execute(stmt)).all()

        # merchant -> broker -> order ids, insertion ordered
        groups: dict[str | None, dict[str, list[int]]] = defaultdict(lambda: defaultdict(list))
        for order_id, order_merchant, broker in rows:
            groups[order_merchant][broker or UNKNOWN_BROKER].append(order_id)

        logger.info(
            "Sweep started",
            extra={"data": {"batch_id": batch_id, "orders": len(rows), "merchants": len(groups)}},
        )

        placed_members: set[str] = set()
        for group_merchant, by_broker in groups.items():
            result.merchants_processed += 1
            for broker, order_ids in by_broker.items():
                group, members = await self._process_group(batch_id, group_merchant, broker, order_ids)
                result.groups.append(group)
                result.orders_processed += len(order_ids)
                result.orders_confirmed += group.orders_placed
                result.orders_failed += group.orders_failed
                if group.notification_status == NotificationStatus.SENT.value:
                    result.brokers_notified.append(broker)
                if group.error:
                    result.errors.append(f"Broker {broker} (merchant {group_merchant}): {group.error}")
                placed_members.update(members)

        result.picks_cleared = await self._clear_one_time_picks(placed_members)
        result.duration_seconds = round(time.perf_counter() - started, 3)

        self.db.add(
            SweepLog(
                batch_id=batch_id,
                started_at=started_at,
                completed_at=datetime.now(UTC),
                merchants_processed=result.merchants_processed,
                orders_processed=result.orders_processed,
                orders_confirmed=result.orders_confirmed,
                orders_failed=result.orders_failed,
                brokers_notified=result.brokers_notified,
                errors=result.errors,
                log_data=[g.model_dump(mode="json") for g in result.groups],
                duration_seconds=result.duration_seconds,
            )
        )
        await self.db.commit()

        logger.info(
            "Sweep complete",
            extra={
                "data": {
                    "batch_id": batch_id,
                    "merchants": result.merchants_processed,
                    "orders_processed": result.orders_processed,
                    "orders_confirmed": result.orders_confirmed,
                    "orders_failed": result.orders_failed,
                    "brokers_notified": result.brokers_notified,
                    "picks_cleared": result.picks_cleared,
                    "duration_seconds": result.duration_seconds,
                }
            },
        )
        return result

    # ─── Per Group ───

    async def _process_group(
        self,
        batch_id: str,
        merchant_id: str | None,
        broker: str,
        order_ids: list[int],
    ) -> tuple[SweepGroupResult, set[str]]:
        placed_at = datetime.now(UTC)
        try:
            update_result = await self.db.execute(
                update(Order)
                .where(Order.id.in_(order_ids), Order.status.in_(sources_for(OrderStatus.PLACED)))
                .values(status=OrderStatus.PLACED, placed_at=placed_at, updated_at=placed_at)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except Exception as exc:
            await self.db.rollback()
            logger.error(
                "Placement update failed",
                extra={"data": {"batch_id": batch_id, "merchant_id": merchant_id, "broker": broker, "error": str(exc)}},
            )
            SWEEP_GROUPS_TOTAL.labels(outcome="placement_failed").inc()
            return (
                SweepGroupResult(
                    merchant_id=merchant_id,
                    broker=broker,
                    orders_failed=len(order_ids),
                    notification_status=NotificationStatus.SKIPPED.value,
                    error=f"placement failed: {exc}",
                ),
                set(),
            )

        if update_result.rowcount != len(order_ids):
            logger.warning(
                "Some orders were no longer eligible",
                extra={
                    "data": {
                        "batch_id": batch_id,
                        "selected": len(order_ids),
                        "placed": update_result.rowcount,
                    }
                },
            )

        placed = list(
            (
                await self.db.execute(
                    select(Order)
                    .where(
                        Order.id.in_(order_ids),
                        Order.status == OrderStatus.PLACED,
                        Order.placed_at == placed_at,
                    )
                    .order_by(Order.member_id, Order.id)
                    .execution_options(populate_existing=True)
                )
            )
            .scalars()
            .all()
        )
        group = SweepGroupResult(
            merchant_id=merchant_id,
            broker=broker,
            orders_placed=len(placed),
            total_amount_cents=sum(o.amount_cents for o in placed),
            notification_status=NotificationStatus.SKIPPED.value,
        )
        members = {o.member_id for o in placed}
        if not placed:
            return group, members

        payload = build_sweep_payload(batch_id, merchant_id, broker, placed, placed_at)
        await self._notify(batch_id, merchant_id, broker, placed, payload, group)
        SWEEP_GROUPS_TOTAL.labels(outcome=group.notification_status).inc()
        return group, members

    async def _notify(
        self,
        batch_id: str,
        merchant_id: str | None,
        broker: str,
        placed: list[Order],
        payload: dict,
        group: SweepGroupResult,
    ) -> None:
        """POST the payload and record exactly one notification row for the group."""
        notification = BrokerNotification(
            broker_name=broker,
            event_type=EVENT_TYPE,
            merchant_id=merchant_id,
            batch_id=batch_id,
            payload=payload,
            status=NotificationStatus.SKIPPED,
        )

        config = (
            await self.db.execute(
                select(BrokerMaster)
                .where(or_(BrokerMaster.broker_name == broker, BrokerMaster.broker_id == broker))
                .limit(1)
            )
        ).scalar_one_or_none()

        if config is None or not config.webhook_url:
            reason = "No broker configuration" if config is None else "No webhook URL configured"
            notification.broker_id = config.broker_id if config else None
            notification.error_message = reason
            group.error = reason
            logger.warning(
                "Broker notification skipped",
                extra={"data": {"batch_id": batch_id, "broker": broker, "reason": reason}},
            )
        else:
            notification.broker_id = config.broker_id
            await self._deliver(config, batch_id, broker, placed, payload, group, notification)

        group.notification_status = NotificationStatus(notification.status).value
        self.db.add(notification)
        await self.db.commit()

    async def _deliver(
        self,
        config: BrokerMaster,
        batch_id: str,
        broker: str,
        placed: list[Order],
        payload: dict,
        group: SweepGroupResult,
        notification: BrokerNotification,
    ) -> None:
        try:
            api_key = decrypt_api_key(config.encrypted_api_key) if config.encrypted_api_key else None
        except InvalidToken:
            notification.status = NotificationStatus.FAILED
            notification.error_message = "Stored broker API key could not be decrypted"
            group.error = notification.error_message
            logger.error(
                "Broker API key decrypt failed",
                extra={"data": {"batch_id": batch_id, "broker": broker}},
            )
            return

        try:
            delivery = await self.webhook.send(config.webhook_url, api_key, batch_id, payload)
        except BrokerError as exc:
            notification.status = NotificationStatus.FAILED
            notification.error_message = exc.message
            group.error = exc.message
            logger.error(
                "Broker webhook failed",
                extra={"data": {"batch_id": batch_id, "broker": broker, "error": exc.message}},
            )
            return

        notification.response_code = delivery.status_code
        notification.response_body = delivery.body
        if not delivery.ok:
            notification.status = NotificationStatus.FAILED
            notification.error_message = (
                f"HTTP {delivery.status_code}"
                if not 200 <= delivery.status_code < 300
                else "Broker did not acknowledge the batch"
            )
            group.error = notification.error_message
            logger.error(
                "Broker rejected sweep batch",
                extra={
                    "data": {
                        "batch_id": batch_id,
                        "broker": broker,
                        "status": delivery.status_code,
                        "error": notification.error_message,
                    }
                },
            )
            return

        notification.status = NotificationStatus.SENT
        group.acknowledged = True
        group.broker_ref = delivery.ack.broker_ref
        if delivery.ack.broker_ref:
            await self.db.execute(
                update(Order)
                .where(Order.id.in_([o.id for o in placed]))
                .values(broker_ref=delivery.ack.broker_ref)
                .execution_options(synchronize_session=False)
            )
        logger.info(
            "Broker acknowledged sweep batch",
            extra={
                "data": {
                    "batch_id": batch_id,
                    "broker": broker,
                    "orders": len(placed),
                    "broker_ref": delivery.ack.broker_ref,
                }
            },
        )

    # ─── Picks ───

    async def _clear_one_time_picks(self, member_ids: set[str]) -> int:
        """Delete active picks of placed members whose election is one-time."""
        if not member_ids:
            return 0
        one_time = (
            (
                await self.db.execute(
                    select(Wallet.member_id).where(
                        Wallet.member_id.in_(sorted(member_ids)),
                        Wallet.election_type == ONE_TIME_ELECTION,
                    )
                )
            )
            .scalars()
            .all()
        )
        if not one_time:
            return 0
        deleted = await self.db.execute(
            delete(MemberStockPick)
            .where(MemberStockPick.member_id.in_(one_time), MemberStockPick.is_active.is_(True))
            .execution_options(synchronize_session=False)
        )
        cleared = int(deleted.rowcount or 0)
        logger.info(
            "One-time picks cleared",
            extra={"data": {"members": len(one_time), "picks": cleared}},
        )
        return cleared
