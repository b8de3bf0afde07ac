from __future__ import annotations

import asyncio
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

from loguru import logger

from finsync.adapters.db.facade import DB
from finsync.adapters.db.models import Budget, to_cents
from finsync.errors import ConfigurationError, JobQueueFullError, NotFoundError
from finsync.services.budgets.labeling import BudgetLabeler
from finsync.services.budgets.periods import resolve_window
from finsync.services.jobs import JobHandle, JobQueue


class BudgetService:
    """Budget create/update/delete with background re-labeling.

    Saves return as soon as the budget is stored with
    ``processing_status="processing"``; a queued job then labels the user's
    transactions and flips the status to ``ready`` or ``error``.
    """

    def __init__(self, db: DB, labeler: BudgetLabeler, jobs: JobQueue) -> None:
        self._db = db
        self._labeler = labeler
        self._jobs = jobs
        self._relabel_jobs: dict[str, JobHandle] = {}
        self._generations: dict[str, int] = {}
        self._relabel_locks: dict[str, asyncio.Lock] = {}

    def relabel_job(self, budget_id: str) -> JobHandle | None:
        """Most recent re-label job submitted for a budget, if any."""
        return self._relabel_jobs.get(budget_id)

    async def create_budget(
        self,
        user_id: str,
        title: str,
        filter_prompt: str,
        amount: Decimal | float | str,
        period: str,
        rolling_days: int | None = None,
        anchor_date: date | None = None,
    ) -> Budget:
        """Validate and store a budget, then queue its first labeling pass.

        Raises:
            ConfigurationError: Non-positive amount or invalid period settings
            JobQueueFullError: The re-label job could not be queued; the budget
                is left in ``error``
        """
        amount_cents = _validate(
            title, filter_prompt, amount, period, rolling_days, anchor_date
        )
        budget = self._db.create_budget(
            user_id=user_id,
            title=title.strip(),
            filter_prompt=filter_prompt.strip(),
            amount_cents=amount_cents,
            period=period,
            rolling_days=rolling_days if period == "rolling" else None,
            anchor_date=anchor_date if period != "rolling" else None,
        )
        self._submit_relabel(user_id, budget)
        return budget

    async def update_budget(
        self, user_id: str, budget_id: str, **changes: Any
    ) -> Budget:
        """Apply changes, reset to ``processing`` and queue a re-label.

        Accepts ``title``, ``filter_prompt``, ``amount``, ``period``,
        ``rolling_days`` and ``anchor_date``.

        Raises:
            NotFoundError: No such budget for this user
            ConfigurationError: The merged settings are invalid
            JobQueueFullError: The re-label job could not be queued; the budget
                is left in ``error``
        """
        current = self._db.get_budget(user_id, budget_id)
        if current is None:
            raise NotFoundError(f"Budget {budget_id} not found for user {user_id}")

        unknown = set(changes) - {
            "title",
            "filter_prompt",
            "amount",
            "period",
            "rolling_days",
            "anchor_date",
        }
        if unknown:
            raise ConfigurationError(f"Unknown budget fields: {sorted(unknown)}")

        title = changes.get("title", current.title)
        filter_prompt = changes.get("filter_prompt", current.filter_prompt)
        amount = changes.get("amount", Decimal(current.amount_cents) / 100)
        period = changes.get("period", current.period)
        rolling_days = changes.get("rolling_days", current.rolling_days)
        anchor_date = changes.get("anchor_date", current.anchor_date)

        amount_cents = _validate(
            title, filter_prompt, amount, period, rolling_days, anchor_date
        )
        budget = self._db.update_budget(
            user_id,
            budget_id,
            {
                "title": title.strip(),
                "filter_prompt": filter_prompt.strip(),
                "amount_cents": amount_cents,
                "period": period,
                "rolling_days": rolling_days if period == "rolling" else None,
                "anchor_date": anchor_date if period != "rolling" else None,
            },
        )
        self._submit_relabel(user_id, budget)
        return budget

    async def delete_budget(self, user_id: str, budget_id: str) -> None:
        """Delete a budget and its transaction associations.

        Raises:
            NotFoundError: No such budget for this user
        """
        if not self._db.delete_budget(user_id, budget_id):
            raise NotFoundError(f"Budget {budget_id} not found for user {user_id}")
        self._relabel_jobs.pop(budget_id, None)
        self._generations.pop(budget_id, None)
        self._relabel_locks.pop(budget_id, None)

    def _submit_relabel(self, user_id: str, budget: Budget) -> None:
        budget_id = budget.budget_id
        generation = self._generations.get(budget_id, 0) + 1

        async def relabel() -> None:
            await self._relabel(user_id, budget_id, generation)

        try:
            handle = self._jobs.submit(f"relabel-budget:{budget_id}", relabel)
        except JobQueueFullError as e:
            self._db.set_budget_status(budget_id, "error", str(e))
            raise
        self._generations[budget_id] = generation
        self._relabel_jobs[budget_id] = handle

    async def _relabel(self, user_id: str, budget_id: str, generation: int) -> None:
        # One pass per budget at a time; a pass started for an older save
        # never marks the budget ready.
        lock = self._relabel_locks.setdefault(budget_id, asyncio.Lock())
        async with lock:
            if self._generations.get(budget_id) != generation:
                logger.bind(budget_id=budget_id).debug(
                    "Skipping superseded re-label of budget {}", budget_id
                )
                return
            budget = self._db.get_budget(user_id, budget_id)
            if budget is None:
                return
            try:
                matched = await self._labeler.label_for_budget(user_id, budget)
            except Exception as e:
                if self._generations.get(budget_id) == generation:
                    self._db.set_budget_status(budget_id, "error", str(e))
                raise
            if self._generations.get(budget_id) != generation:
                return
            self._db.set_budget_status(budget_id, "ready")
            logger.bind(budget_id=budget_id).info(
                "Budget {!r} ready: {} transactions matched", budget.title, matched
            )


def _validate(
    title: str,
    filter_prompt: str,
    amount: Decimal | float | str,
    period: str,
    rolling_days: int | None,
    anchor_date: date | None,
) -> int:
    """Check budget settings and return the amount in cents."""
    if not title or not title.strip():
        raise ConfigurationError("Budget title is required")
    if not filter_prompt or not filter_prompt.strip():
        raise ConfigurationError("Budget filter prompt is required")
    try:
        amount_value = Decimal(str(amount))
    except InvalidOperation as e:
        raise ConfigurationError(f"Invalid budget amount: {amount!r}") from e
    if not amount_value.is_finite() or amount_value <= 0:
        raise ConfigurationError("Budget amount must be greater than zero")

    amount_cents = to_cents(amount_value)
    if amount_cents <= 0:
        raise ConfigurationError("Budget amount must be at least one cent")

    resolve_window(period, rolling_days if period == "rolling" else anchor_date)
    return amount_cents
