"""Provider-neutral contract for the paginated transaction feed."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol


@dataclass(frozen=True, slots=True)
class FeedTransaction:
    """One transaction entry as delivered by the feed.

    ``amount`` keeps the provider's sign convention (positive = money out).
    """

    transaction_id: str
    account_id: str
    date: str
    name: str
    amount: float
    merchant_name: str | None = None
    iso_currency_code: str | None = None
    provider_category: str | None = None
    pending: bool = False


@dataclass(frozen=True, slots=True)
class FeedPage:
    added: list[FeedTransaction] = field(default_factory=list)
    modified: list[FeedTransaction] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    next_cursor: str | None = None
    has_more: bool = False


@dataclass(frozen=True, slots=True)
class FeedAccount:
    account_id: str
    name: str
    official_name: str | None = None
    type: str | None = None
    subtype: str | None = None
    current_balance: float | None = None
    available_balance: float | None = None
    iso_currency_code: str | None = None


class PaginatedFeed(Protocol):
    """Cursor-paginated source of transaction deltas and account balances."""

    async def fetch_page(
        self,
        credential: str,
        cursor: str | None,
        page_size: int,
        account_id: str | None = None,
    ) -> FeedPage:
        """Fetch the page following ``cursor`` (``None`` = full history)."""
        ...

    async def list_accounts(self, credential: str) -> list[FeedAccount]:
        """Return current accounts and balances for a credential."""
        ...
