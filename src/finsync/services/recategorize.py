from __future__ import annotations

import asyncio

from loguru import logger

from finsync.adapters.classifier.protocol import (
    ClassifiableTransaction,
    ClassifierGateway,
)
from finsync.adapters.db.facade import DB
from finsync.adapters.db.models import Transaction
from finsync.errors import ClassifierError
from finsync.services.budgets.labeling import BudgetLabeler
from finsync.services.jobs import JobHandle, JobQueue


class RecategorizationService:
    """Re-runs categorization when a user's rules change.

    This is the only path that replaces a category already assigned to a
    transaction.
    """

    def __init__(
        self,
        db: DB,
        classifier: ClassifierGateway,
        labeler: BudgetLabeler,
        jobs: JobQueue,
        *,
        timeout_seconds: float = 120.0,
    ) -> None:
        self._db = db
        self._classifier = classifier
        self._labeler = labeler
        self._jobs = jobs
        self._timeout_seconds = timeout_seconds

    async def update_rules(self, user_id: str, rules_text: str) -> JobHandle:
        """Save new rules and queue a full recategorize plus budget re-label."""
        self._db.save_rules(user_id, rules_text)

        async def recategorize() -> None:
            updated = await self._classify_and_store(
                user_id, self._db.list_transactions(user_id)
            )
            outcome = await self._labeler.label_all_budgets(user_id)
            logger.bind(user_id=user_id).info(
                "Recategorized {} transactions and re-labeled {} budgets "
                "({} failed) for user {}",
                updated,
                outcome.budgets_labeled,
                len(outcome.failed),
                user_id,
            )

        return self._jobs.submit(f"recategorize:{user_id}", recategorize)

    async def categorize_uncategorized(self, user_id: str) -> int:
        """Classify live transactions that still lack a category.

        Returns:
            Number of transactions that received a category

        Raises:
            ClassifierError: Classification failed
        """
        pending = self._db.list_transactions(user_id, uncategorized_only=True)
        return await self._classify_and_store(user_id, pending)

    async def _classify_and_store(
        self, user_id: str, transactions: list[Transaction]
    ) -> int:
        if not transactions:
            return 0
        candidates = [ClassifiableTransaction.from_row(txn) for txn in transactions]
        try:
            assignments = await asyncio.wait_for(
                self._classifier.classify(candidates, self._db.get_rules(user_id)),
                timeout=self._timeout_seconds,
            )
        except TimeoutError as e:
            raise ClassifierError(
                f"Categorization timed out after {self._timeout_seconds}s"
            ) from e

        requested = {txn.transaction_id for txn in transactions}
        return self._db.update_transaction_categories(
            {a.id: a.category for a in assignments if a.id in requested}
        )
