"""Fund journaling: move settled cash from the firm sweep account to members.

Picks up ``approved`` orders that have been paid (``paid_flag``), groups them
by member, and posts one JNLC journal per member for the combined amount.

Per member:
    - reuse the stored brokerage account when its status is ACTIVE,
      otherwise look one up by email (used only when ACTIVE) or provision
      a new one
    - totals under the brokerage minimum are skipped untouched
    - success moves the orders to ``funded``; any failure, account
      resolution included, rolls back that member and marks its orders
      ``journal_status="failed"``, and the run moves on

Each member is committed on its own, so one bad member never undoes another.

Usage:
    from stockloyal.orders.journal import FundJournaler

    async with BrokerClient() as broker:
        result = await FundJournaler(db, broker).run_journal()
"""

from __future__ import annotations

import hashlib
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from stockloyal.broker.client import BrokerClient
from stockloyal.broker.exceptions import AccountProvisioningError
from stockloyal.broker.models import (
    AccountContact,
    AccountIdentity,
    CreateAccountRequest,
    JournalEntry,
    JournalRequest,
    build_agreements,
    cents_to_amount,
)
from stockloyal.common.config import get_settings
from stockloyal.common.exceptions import StockLoyalError, ValidationError
from stockloyal.common.logging import get_logger
from stockloyal.common.metrics import JOURNALS_TOTAL
from stockloyal.common.models import BrokerCredential, Order, OrderStatus, Wallet
from stockloyal.common.schemas import JournalResult, MemberJournalResult
from stockloyal.orders.ledger import record_entry
from stockloyal.orders.state_machine import transition

logger = get_logger("JOURNAL")

ACTIVE = "ACTIVE"

# Sandbox-only KYC used when a member has no brokerage account yet
PLACEHOLDER_PHONE = "5551234567"
PLACEHOLDER_STREET = "123 Main St"
PLACEHOLDER_CITY = "New York"
PLACEHOLDER_STATE = "NY"
PLACEHOLDER_POSTAL = "10001"
PLACEHOLDER_DOB = "1990-01-01"
PLACEHOLDER_TAX_ID = "000-00-0000"
PLACEHOLDER_IP = "127.0.0.1"


def fund_tx_id(member_id: str, order_ids: list[int]) -> str:
    """Ledger key for one member journal, derived from the orders it funds."""
    digest = hashlib.sha256(",".join(str(i) for i in sorted(order_ids)).encode()).hexdigest()[:16]
    return f"jnlc-fund-{member_id}-{digest}"


@dataclass
class _MemberGroup:
    member_id: str
    credential: BrokerCredential | None
    wallet: Wallet | None
    orders: list[Order] = field(default_factory=list)

    @property
    def amount_cents(self) -> int:
        return sum(o.amount_cents for o in self.orders)

    @property
    def display_name(self) -> str:
        if self.wallet is None:
            return ""
        parts = (self.wallet.first_name, self.wallet.last_name)
        return " ".join(p.strip() for p in parts if p and p.strip())


class FundJournaler:
    """Creates per-member JNLC journals for paid, approved orders.

    Args:
        db: Async database session. Commits once per member.
        broker_client: Brokerage API client.
        firm_account_id: Source account; defaults to settings.
        minimum_cents: Smallest journal the brokerage accepts.
    """

    def __init__(
        self,
        db: AsyncSession,
        broker_client: BrokerClient,
        firm_account_id: str | None = None,
        minimum_cents: int | None = None,
    ) -> None:
        settings = get_settings()
        self.db = db
        self.broker = broker_client
        self.firm_account_id = firm_account_id if firm_account_id is not None else settings.firm_account_id
        self.minimum_cents = minimum_cents if minimum_cents is not None else settings.journal_minimum_cents
        self.allow_placeholder_kyc = settings.allow_placeholder_kyc

    async def run_journal(self, member_ids: list[str] | None = None) -> JournalResult:
        """Journal every member with paid, approved orders.

        Raises:
            ValidationError: No firm sweep account is configured.
        """
        if not self.firm_account_id:
            raise ValidationError("Firm sweep account is not configured")

        groups = await self._load_groups(member_ids)
        result = JournalResult()
        if not groups:
            logger.info("No eligible orders to journal", extra={"data": {}})
            return result

        stale = False
        for member_id in list(groups):
            group = groups[member_id]
            if stale:
                # A failed member rolled the session back; reload before reuse
                group = (await self._load_groups([member_id])).get(member_id)
                if group is None:
                    continue
            outcome = await self._journal_member(group)
            stale = stale or outcome.status == "failed"
            result.results.append(outcome)
            JOURNALS_TOTAL.labels(outcome=outcome.status).inc()
            if outcome.status == "funded":
                result.members_funded += 1
                result.journals_created += 1
                result.total_journaled_cents += outcome.amount_cents
            elif outcome.status == "failed":
                result.errors.append(f"Member {group.member_id}: {outcome.error}")

        logger.info(
            "Journal run complete",
            extra={
                "data": {
                    "members": len(groups),
                    "members_funded": result.members_funded,
                    "total_journaled": cents_to_amount(result.total_journaled_cents),
                    "errors": len(result.errors),
                }
            },
        )
        return result

    async def check_journal_status(self, journal_id: str) -> JournalEntry:
        """Fetch one journal record from the brokerage."""
        if not journal_id or not journal_id.strip():
            raise ValidationError("journal_id is required")
        return await self.broker.get_journal(journal_id.strip())

    # ─── Selection ───

    async def _load_groups(self, member_ids: list[str] | None) -> OrderedDict[str, _MemberGroup]:
        stmt = (
            select(Order, BrokerCredential, Wallet)
            .outerjoin(BrokerCredential, BrokerCredential.member_id == Order.member_id)
            .outerjoin(Wallet, Wallet.member_id == Order.member_id)
            .where(Order.status == OrderStatus.APPROVED, Order.paid_flag.is_(True))
            .order_by(Order.member_id, Order.id)
            .execution_options(populate_existing=True)
        )
        if member_ids:
            stmt = stmt.where(Order.member_id.in_(member_ids))

        groups: OrderedDict[str, _MemberGroup] = OrderedDict()
        for order, credential, wallet in (await self.db.execute(stmt)).all():
            group = groups.get(order.member_id)
            if group is None:
                group = groups[order.member_id] = _MemberGroup(order.member_id, credential, wallet)
            group.orders.append(order)
        return groups

    # ─── Per Member ───

    async def _journal_member(self, group: _MemberGroup) -> MemberJournalResult:
        amount_cents = group.amount_cents
        order_ids = [o.id for o in group.orders]
        outcome = MemberJournalResult(
            member_id=group.member_id,
            amount_cents=amount_cents,
            orders=len(order_ids),
            status="failed",
        )

        try:
            account_id = await self._ensure_account(group)
            outcome.account_id = account_id
            await self.db.commit()

            if amount_cents < self.minimum_cents:
                outcome.status = "skipped"
                logger.info(
                    "Journal skipped: below minimum",
                    extra={
                        "data": {
                            "member_id": group.member_id,
                            "amount": cents_to_amount(amount_cents),
                            "minimum": cents_to_amount(self.minimum_cents),
                        }
                    },
                )
                return outcome

            name = group.display_name or group.member_id
            journal = await self.broker.create_journal(
                JournalRequest(
                    from_account=self.firm_account_id,
                    to_account=account_id,
                    amount=cents_to_amount(amount_cents),
                    description=f"StockLoyal points conversion: {name} ({group.member_id})",
                )
            )

            journaled_at = datetime.now(UTC)
            for order in group.orders:
                transition(order, OrderStatus.FUNDED)
                order.journal_status = "completed"
                order.broker_journal_id = journal.id
                order.journaled_at = journaled_at
            await record_entry(
                self.db,
                fund_tx_id(group.member_id, order_ids),
                member_id=group.member_id,
                tx_type="jnlc",
                amount_cents=amount_cents,
                note=f"journal {journal.id}, {len(order_ids)} orders",
            )
            await self.db.commit()
        except Exception as exc:
            message = exc.message if isinstance(exc, StockLoyalError) else str(exc)
            await self._mark_failed(order_ids, message)
            outcome.status = "failed"
            outcome.error = message
            logger.error(
                "Journal failed",
                extra={
                    "data": {
                        "member_id": group.member_id,
                        "amount": cents_to_amount(amount_cents),
                        "error": message,
                    }
                },
            )
            return outcome

        outcome.status = "funded"
        outcome.journal_id = journal.id
        logger.info(
            "Member funded",
            extra={
                "data": {
                    "member_id": group.member_id,
                    "account_id": account_id,
                    "journal_id": journal.id,
                    "amount": cents_to_amount(amount_cents),
                    "orders": len(order_ids),
                }
            },
        )
        return outcome

    async def _mark_failed(self, order_ids: list[int], message: str) -> None:
        """Discard the member's uncommitted work and flag its orders."""
        await self.db.rollback()
        orders = (
            await self.db.execute(
                select(Order).where(Order.id.in_(order_ids)).execution_options(populate_existing=True)
            )
        ).scalars().all()
        for order in orders:
            order.journal_status = "failed"
            order.error_message = message
        await self.db.commit()

    async def _ensure_account(self, group: _MemberGroup) -> str:
        """Return an ACTIVE brokerage account id, provisioning one if needed."""
        credential = group.credential
        if (
            credential is not None
            and credential.broker_account_id
            and (credential.broker_account_status or "").upper() == ACTIVE
        ):
            return credential.broker_account_id

        email = (group.wallet.member_email if group.wallet else None) or f"{group.member_id}@stockloyal.com"
        account = await self.broker.find_account_by_email(email)
        if account is not None and (account.status or "").upper() != ACTIVE:
            raise AccountProvisioningError(
                f"Brokerage account for member is {account.status or 'UNKNOWN'}, not ACTIVE",
                context={"member_id": group.member_id, "account_id": account.id},
            )
        if account is None:
            if not self.allow_placeholder_kyc:
                raise AccountProvisioningError(
                    "Member has no active brokerage account and auto-provisioning is disabled",
                    context={"member_id": group.member_id},
                )
            account = await self.broker.create_account(self._placeholder_request(group, email))
            logger.warning(
                "Brokerage account provisioned with placeholder KYC",
                extra={"data": {"member_id": group.member_id, "account_id": account.id}},
            )

        if not account.id:
            raise AccountProvisioningError(
                "Brokerage returned no account id", context={"member_id": group.member_id}
            )

        status = (account.status or "").upper() or None
        if credential is None:
            credential = BrokerCredential(member_id=group.member_id)
            self.db.add(credential)
            group.credential = credential
        credential.broker = credential.broker or (group.wallet.broker if group.wallet else None)
        credential.broker_account_id = account.id
        credential.broker_account_number = account.account_number
        credential.broker_account_status = status
        await self.db.flush()
        return account.id

    def _placeholder_request(self, group: _MemberGroup, email: str) -> CreateAccountRequest:
        wallet = group.wallet
        return CreateAccountRequest(
            contact=AccountContact(
                email_address=email,
                phone_number=PLACEHOLDER_PHONE,
                street_address=[PLACEHOLDER_STREET],
                city=PLACEHOLDER_CITY,
                state=PLACEHOLDER_STATE,
                postal_code=PLACEHOLDER_POSTAL,
            ),
            identity=AccountIdentity(
                given_name=(wallet.first_name if wallet else None) or "Member",
                middle_name=wallet.middle_name if wallet else None,
                family_name=(wallet.last_name if wallet else None) or group.member_id,
                date_of_birth=PLACEHOLDER_DOB,
                tax_id=PLACEHOLDER_TAX_ID,
            ),
            agreements=build_agreements(PLACEHOLDER_IP, datetime.now(UTC)),
        )
