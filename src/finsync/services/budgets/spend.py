from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal

from finsync.adapters.db.facade import DB
from finsync.adapters.db.models import Budget, Transaction, from_cents
from finsync.errors import ConfigurationError
from finsync.services.budgets.periods import DateWindow, window_for_budget

SpendStatus = Literal["under", "near", "over"]

NEAR_THRESHOLD = Decimal(70)
OVER_THRESHOLD = Decimal(100)


@dataclass
class BudgetSummary:
    budget_id: str
    title: str
    period: str
    window: DateWindow
    amount: Decimal
    spent: Decimal
    remaining: Decimal
    percentage: int
    status: SpendStatus
    transaction_count: int
    transactions: list[Transaction] | None = None


@dataclass
class BudgetSummaryError:
    budget_id: str
    title: str
    error: str


def spend_status(percentage: Decimal) -> SpendStatus:
    """Tier an unrounded percentage: under < 70 <= near < 100 <= over."""
    if percentage >= OVER_THRESHOLD:
        return "over"
    if percentage >= NEAR_THRESHOLD:
        return "near"
    return "under"


class BudgetSpendAggregator:
    """Computes spend against a budget over its current period window.

    Reads only stored associations; the classifier is never called here.
    """

    def __init__(self, db: DB) -> None:
        self._db = db

    def summarize(
        self,
        budget: Budget,
        now: datetime | None = None,
        *,
        include_transactions: bool = False,
    ) -> BudgetSummary:
        """Summarize one budget.

        Args:
            budget: Budget to summarize
            now: Reference instant for the period window
            include_transactions: Attach the contributing transactions

        Raises:
            ConfigurationError: Invalid period settings or non-positive amount
        """
        window = window_for_budget(budget, now)
        if budget.amount_cents <= 0:
            raise ConfigurationError(
                f"Budget {budget.budget_id} has a non-positive amount"
            )

        txns = self._db.list_budget_transactions(
            budget.user_id, budget.budget_id, window.start, window.end
        )
        amount = from_cents(budget.amount_cents)
        spent = from_cents(sum(txn.amount_cents for txn in txns))
        raw_percentage = spent / amount * 100

        return BudgetSummary(
            budget_id=budget.budget_id,
            title=budget.title,
            period=budget.period,
            window=window,
            amount=amount,
            spent=spent,
            remaining=amount - spent,
            percentage=int(
                raw_percentage.quantize(Decimal("1"), rounding=ROUND_HALF_UP)
            ),
            status=spend_status(raw_percentage),
            transaction_count=len(txns),
            transactions=txns if include_transactions else None,
        )

    def summarize_user(
        self, user_id: str, now: datetime | None = None
    ) -> list[BudgetSummary | BudgetSummaryError]:
        """Summarize every budget of a user.

        A budget with invalid settings is reported in place instead of
        aborting the whole list.
        """
        summaries: list[BudgetSummary | BudgetSummaryError] = []
        for budget in self._db.list_budgets(user_id):
            try:
                summaries.append(self.summarize(budget, now))
            except ConfigurationError as e:
                summaries.append(
                    BudgetSummaryError(
                        budget_id=budget.budget_id, title=budget.title, error=str(e)
                    )
                )
        return summaries
