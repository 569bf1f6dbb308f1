"""Pydantic models for brokerage API requests and responses.

Amounts go over the wire as decimal-dollar strings ("12.50"); inside the
application they are integer cents. Use ``cents_to_amount`` at the edge.

Usage:
    from stockloyal.broker.models import JournalRequest, cents_to_amount

    req = JournalRequest(
        from_account="firm-001",
        to_account="acct-123",
        amount=cents_to_amount(1250),
        description="StockLoyal points conversion: Jane Doe (m-1)",
    )
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ─── Helper Functions ───


def cents_to_amount(cents: int) -> str:
    """Format integer cents as the brokerage's decimal string (1250 -> "12.50")."""
    return f"{Decimal(cents) / 100:.2f}"


def amount_to_cents(amount: str | float | Decimal) -> int:
    """Parse a decimal-dollar amount into integer cents, rounding half-up."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# ─── Calendar ───


class CalendarDay(BaseModel):
    """One trading session from the brokerage calendar feed."""

    model_config = ConfigDict(extra="ignore")

    date: date
    open: str = "09:30"
    close: str = "16:00"

    @field_validator("open", "close")
    @classmethod
    def hhmm(cls, v: str) -> str:
        # The feed sometimes returns HH:MM:SS
        return v[:5]


# ─── Accounts ───


class BrokerAccount(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    account_number: str | None = None
    status: str | None = None
    email: str | None = None


class AccountContact(BaseModel):
    email_address: str
    phone_number: str = ""
    street_address: list[str]
    city: str
    state: str = ""
    postal_code: str = ""
    country: str = "USA"


class AccountIdentity(BaseModel):
    given_name: str
    middle_name: str | None = None
    family_name: str
    date_of_birth: str  # YYYY-MM-DD
    tax_id: str | None = None
    tax_id_type: str | None = "USA_SSN"
    country_of_citizenship: str = "USA"
    country_of_birth: str = "USA"
    country_of_tax_residence: str = "USA"
    funding_source: list[str] = Field(default_factory=lambda: ["employment_income"])


class AccountDisclosures(BaseModel):
    is_control_person: bool = False
    is_affiliated_exchange_or_finra: bool = False
    is_politically_exposed: bool = False
    immediate_family_exposed: bool = False


class AccountAgreement(BaseModel):
    agreement: str
    signed_at: str
    ip_address: str


class CreateAccountRequest(BaseModel):
    """Body of POST /v1/accounts."""

    contact: AccountContact
    identity: AccountIdentity
    disclosures: AccountDisclosures = Field(default_factory=AccountDisclosures)
    agreements: list[AccountAgreement]


def build_agreements(ip_address: str, signed_at: datetime) -> list[AccountAgreement]:
    """Customer, account, and margin agreements signed at the same instant."""
    stamp = signed_at.strftime("%Y-%m-%dT%H:%M:%SZ")
    return [
        AccountAgreement(agreement=name, signed_at=stamp, ip_address=ip_address)
        for name in ("customer_agreement", "account_agreement", "margin_agreement")
    ]


# ─── Trading ───


class OrderRequest(BaseModel):
    """Notional market buy, the only order shape the pipeline submits."""

    symbol: str
    notional: str
    side: str = "buy"
    type: str = "market"
    time_in_force: str = "day"
    client_order_id: str | None = None


class BrokerOrder(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    status: str | None = None
    symbol: str | None = None
    notional: str | None = None
    filled_qty: str | None = None
    filled_avg_price: str | None = None
    client_order_id: str | None = None


class BrokerPosition(BaseModel):
    model_config = ConfigDict(extra="ignore")

    symbol: str
    qty: str
    market_value: str | None = None
    avg_entry_price: str | None = None


# ─── Funding ───


class JournalRequest(BaseModel):
    """Body of POST /v1/journals for a cash (JNLC) journal."""

    from_account: str
    entry_type: str = "JNLC"
    to_account: str
    amount: str
    description: str


class JournalEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    status: str | None = None
    entry_type: str | None = None
    from_account: str | None = None
    to_account: str | None = None
    net_amount: str | None = None
    settle_date: str | None = None


# ─── Broker Webhook ───


class WebhookAck(BaseModel):
    """Normalized acknowledgment parsed from a broker webhook response body."""

    acknowledged: bool = False
    acknowledged_at: str | None = None
    broker_ref: str | None = None
    raw: dict = Field(default_factory=dict)

    @classmethod
    def from_body(cls, body: dict) -> WebhookAck:
        """Accept either ``acknowledged`` or ``success`` as the ack flag."""
        flag = bool(body.get("acknowledged") or body.get("success"))
        ref = body.get("broker_batch_id") or body.get("broker_order_id") or body.get("request_id")
        return cls(
            acknowledged=flag,
            acknowledged_at=body.get("acknowledged_at"),
            broker_ref=str(ref) if ref is not None else None,
            raw=body,
        )
