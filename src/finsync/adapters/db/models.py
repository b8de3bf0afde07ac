from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal

from sqlalchemy import (
    TIMESTAMP,
    Boolean,
    Date,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    false,
    text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)

SyncStatus = Literal["never_synced", "syncing", "synced", "error"]
ConnectionStatus = Literal["active", "error"]
ProcessingStatus = Literal["processing", "ready", "error"]
BudgetPeriod = Literal[
    "rolling", "weekly", "biweekly", "monthly", "quarterly", "yearly"
]


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""

    pass


class Connection(Base):
    """One link to a financial institution, owned by a user."""

    __tablename__ = "connections"

    connection_id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    credential_handle: Mapped[str] = mapped_column(Text, nullable=False)
    institution_name: Mapped[str | None] = mapped_column(String, nullable=True)
    environment: Mapped[str] = mapped_column(
        String, nullable=False, server_default=text("'sandbox'")
    )
    status: Mapped[str] = mapped_column(
        String, nullable=False, server_default=text("'active'")
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    # Relationships
    accounts: Mapped[list[Account]] = relationship(
        "Account",
        back_populates="connection",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Account(Base):
    """Account under a connection. Upserted on every balance refresh."""

    __tablename__ = "accounts"
    __table_args__ = (
        UniqueConstraint("user_id", "account_id", name="uq_accounts_user_account"),
    )

    account_id: Mapped[str] = mapped_column(String, primary_key=True)
    connection_id: Mapped[str] = mapped_column(
        String,
        ForeignKey("connections.connection_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    official_name: Mapped[str | None] = mapped_column(String, nullable=True)
    type: Mapped[str | None] = mapped_column(String, nullable=True)
    subtype: Mapped[str | None] = mapped_column(String, nullable=True)
    current_balance_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    available_balance_cents: Mapped[int | None] = mapped_column(
        Integer, nullable=True
    )
    iso_currency_code: Mapped[str | None] = mapped_column(String, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    # Relationships
    connection: Mapped[Connection] = relationship(
        "Connection", back_populates="accounts"
    )
    sync_state: Mapped[SyncState | None] = relationship(
        "SyncState",
        back_populates="account",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class SyncState(Base):
    """Per-account pagination cursor and sync status."""

    __tablename__ = "account_sync_state"

    account_id: Mapped[str] = mapped_column(
        String,
        ForeignKey("accounts.account_id", ondelete="CASCADE"),
        primary_key=True,
    )
    cursor: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String, nullable=False, server_default=text("'never_synced'"), index=True
    )
    total_synced: Mapped[int] = mapped_column(
        Integer, nullable=False, server_default=text("0")
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    # Relationships
    account: Mapped[Account] = relationship("Account", back_populates="sync_state")


class Transaction(Base):
    """Canonical transaction keyed by the provider's transaction id."""

    __tablename__ = "transactions"

    transaction_id: Mapped[str] = mapped_column(String, primary_key=True)
    account_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    connection_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    posted_on: Mapped[date] = mapped_column(Date, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    merchant_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    iso_currency_code: Mapped[str | None] = mapped_column(String, nullable=True)
    provider_category: Mapped[str | None] = mapped_column(String, nullable=True)
    pending: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=false()
    )
    category: Mapped[str | None] = mapped_column(String, nullable=True)
    categorized_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    account_name: Mapped[str | None] = mapped_column(String, nullable=True)
    institution_name: Mapped[str | None] = mapped_column(String, nullable=True)
    removed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )


class Budget(Base):
    """User-defined spending rule with a natural-language filter."""

    __tablename__ = "budgets"

    budget_id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String, nullable=False)
    filter_prompt: Mapped[str] = mapped_column(Text, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    period: Mapped[str] = mapped_column(String, nullable=False)
    rolling_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    anchor_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    processing_status: Mapped[str] = mapped_column(
        String, nullable=False, server_default=text("'processing'")
    )
    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )


class TransactionBudget(Base):
    """Transaction-Budget junction table (the budget association set)."""

    __tablename__ = "transaction_budgets"

    transaction_id: Mapped[str] = mapped_column(
        String,
        ForeignKey("transactions.transaction_id", ondelete="CASCADE"),
        primary_key=True,
    )
    budget_id: Mapped[str] = mapped_column(
        String,
        ForeignKey("budgets.budget_id", ondelete="CASCADE"),
        primary_key=True,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )


class CategorizationRules(Base):
    """Free-text categorization rules a user has given the classifier."""

    __tablename__ = "categorization_rules"

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    rules_text: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )


@dataclass
class TransactionUpsert:
    """Row data for one added or modified transaction."""

    transaction_id: str
    account_id: str
    posted_on: date
    name: str
    amount_cents: int
    merchant_name: str | None = None
    iso_currency_code: str | None = None
    provider_category: str | None = None
    pending: bool = False
    category: str | None = None
    account_name: str | None = None
    institution_name: str | None = None


@dataclass
class SaveOutcome:
    inserted: int
    updated: int
    unchanged: int

    @property
    def changed(self) -> int:
        return self.inserted + self.updated


@dataclass
class PageApplyOutcome:
    saved: SaveOutcome
    removed: int
    total_synced: int


@dataclass
class BudgetMatchOutcome:
    added: int
    removed: int


def to_cents(amount: float | Decimal) -> int:
    """Convert a provider amount to integer cents, rounding half up."""
    quantized = (Decimal(str(amount)) * 100).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return int(quantized)


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))
