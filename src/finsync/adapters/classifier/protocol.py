from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from finsync.adapters.db.models import from_cents

if TYPE_CHECKING:
    from finsync.adapters.db.models import Transaction
    from finsync.infra.clients.feed import FeedTransaction


@dataclass(frozen=True, slots=True)
class ClassifiableTransaction:
    """The fields of a transaction the classifier is allowed to see."""

    id: str
    name: str
    amount: float
    date: str
    merchant_name: str | None = None
    category: str | None = None
    provider_category: str | None = None

    @classmethod
    def from_feed(cls, txn: FeedTransaction) -> ClassifiableTransaction:
        return cls(
            id=txn.transaction_id,
            name=txn.name,
            amount=txn.amount,
            date=txn.date,
            merchant_name=txn.merchant_name,
            provider_category=txn.provider_category,
        )

    @classmethod
    def from_row(cls, txn: Transaction) -> ClassifiableTransaction:
        return cls(
            id=txn.transaction_id,
            name=txn.name,
            amount=float(from_cents(txn.amount_cents)),
            date=txn.posted_on.isoformat(),
            merchant_name=txn.merchant_name,
            category=txn.category,
            provider_category=txn.provider_category,
        )


@dataclass(frozen=True, slots=True)
class CategoryAssignment:
    id: str
    category: str


@dataclass(frozen=True, slots=True)
class BudgetMatch:
    id: str
    matches: bool


class ClassifierGateway(Protocol):
    """Text classifier used for categorization and budget matching.

    Implementations raise ``ClassifierError`` on any failure. Ids missing
    from a result are treated as unclassified (or unmatched) by callers.
    """

    async def classify(
        self,
        transactions: Sequence[ClassifiableTransaction],
        rules_text: str | None = None,
    ) -> list[CategoryAssignment]: ...

    async def match_budget(
        self,
        transactions: Sequence[ClassifiableTransaction],
        filter_text: str,
    ) -> list[BudgetMatch]: ...
