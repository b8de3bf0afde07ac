from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field

import loguru
from loguru import logger

from finsync.adapters.classifier.protocol import (
    ClassifiableTransaction,
    ClassifierGateway,
)
from finsync.adapters.db.facade import DB
from finsync.adapters.db.models import Budget, BudgetMatchOutcome, Transaction
from finsync.errors import ClassifierError


@dataclass
class LabelingOutcome:
    """Per-budget results of a labeling pass."""

    transactions: int = 0
    matched: dict[str, int] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)
    links_added: int = 0
    links_removed: int = 0

    @property
    def budgets_labeled(self) -> int:
        return len(self.matched)


class BudgetLabelingLogger:
    """Handles all logging for budget labeling."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def pass_start(self, user_id: str, budgets: int, transactions: int) -> None:
        self._logger.bind(user_id=user_id, budgets=budgets).info(
            "Labeling {} transactions against {} budgets for user {}",
            transactions,
            budgets,
            user_id,
        )

    def budget_labeled(
        self, budget: Budget, matched: int, outcome: BudgetMatchOutcome
    ) -> None:
        self._logger.bind(budget_id=budget.budget_id, matched=matched).info(
            "Budget {!r}: {} matched ({} links added, {} removed)",
            budget.title,
            matched,
            outcome.added,
            outcome.removed,
        )

    def budget_failed(self, budget: Budget, error: Exception) -> None:
        self._logger.bind(budget_id=budget.budget_id).error(
            "Labeling failed for budget {!r}: {}; run `finsync relabel {}` to retry",
            budget.title,
            error,
            budget.user_id,
        )


class BudgetLabeler:
    """Keeps each transaction's budget association set in line with budgets.

    A labeling pass asks the classifier whether each transaction matches a
    budget's filter; matches gain the budget id and evaluated non-matches
    lose it. Associations with other budgets are never touched.
    """

    def __init__(
        self,
        db: DB,
        classifier: ClassifierGateway,
        *,
        timeout_seconds: float = 120.0,
    ) -> None:
        self._db = db
        self._classifier = classifier
        self._timeout_seconds = timeout_seconds
        self._logger = BudgetLabelingLogger()

    async def label_for_new_transactions(
        self, user_id: str, transactions: Sequence[Transaction]
    ) -> LabelingOutcome:
        """Evaluate freshly synced transactions against every user budget.

        A classifier failure marks only that budget as errored; the
        remaining budgets are still labeled.
        """
        live = [txn for txn in transactions if txn.removed_at is None]
        return await self._label_budgets(
            user_id, self._db.list_budgets(user_id), live, mark_ready=False
        )

    async def label_for_budget(self, user_id: str, budget: Budget) -> int:
        """Re-evaluate every live transaction of the user against one budget.

        Returns:
            Number of transactions matched

        Raises:
            ClassifierError: Classification failed; nothing was written
        """
        candidates = self._candidates(self._db.list_transactions(user_id))
        matched, _ = await self._label_one(budget, candidates)
        return matched

    async def label_all_budgets(self, user_id: str) -> LabelingOutcome:
        """Full re-label of every budget against all live transactions."""
        return await self._label_budgets(
            user_id,
            self._db.list_budgets(user_id),
            self._db.list_transactions(user_id),
            mark_ready=True,
        )

    async def _label_budgets(
        self,
        user_id: str,
        budgets: list[Budget],
        transactions: Sequence[Transaction],
        *,
        mark_ready: bool,
    ) -> LabelingOutcome:
        outcome = LabelingOutcome(transactions=len(transactions))
        if not budgets:
            return outcome

        candidates = self._candidates(transactions)
        self._logger.pass_start(user_id, len(budgets), len(candidates))
        if not candidates and not mark_ready:
            return outcome

        for budget in budgets:
            try:
                matched, links = await self._label_one(budget, candidates)
            except ClassifierError as e:
                self._logger.budget_failed(budget, e)
                outcome.failed[budget.budget_id] = str(e)
                self._db.set_budget_status(budget.budget_id, "error", str(e))
                continue

            outcome.matched[budget.budget_id] = matched
            outcome.links_added += links.added
            outcome.links_removed += links.removed
            if mark_ready:
                self._db.set_budget_status(budget.budget_id, "ready")

        return outcome

    async def _label_one(
        self, budget: Budget, candidates: list[ClassifiableTransaction]
    ) -> tuple[int, BudgetMatchOutcome]:
        if not candidates:
            return 0, BudgetMatchOutcome(added=0, removed=0)

        try:
            results = await asyncio.wait_for(
                self._classifier.match_budget(candidates, budget.filter_prompt),
                timeout=self._timeout_seconds,
            )
        except TimeoutError as e:
            raise ClassifierError(
                f"Budget match timed out after {self._timeout_seconds}s"
            ) from e

        evaluated = {txn.id for txn in candidates}
        matched_ids = {r.id for r in results if r.matches and r.id in evaluated}
        links = self._db.apply_budget_matches(
            budget.budget_id, matched_ids=matched_ids, evaluated_ids=evaluated
        )
        self._logger.budget_labeled(budget, len(matched_ids), links)
        return len(matched_ids), links

    def _candidates(
        self, transactions: Sequence[Transaction]
    ) -> list[ClassifiableTransaction]:
        return [ClassifiableTransaction.from_row(txn) for txn in transactions]
