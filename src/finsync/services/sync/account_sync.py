from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import date
from typing import TYPE_CHECKING

import loguru
from loguru import logger

from finsync.adapters.classifier.protocol import (
    ClassifiableTransaction,
    ClassifierGateway,
)
from finsync.adapters.db.facade import DB
from finsync.adapters.db.models import TransactionUpsert, to_cents
from finsync.config import MAX_PAGE_SIZE, RemovalPolicy
from finsync.errors import ClassifierError, FeedError
from finsync.infra.clients.feed import FeedPage, FeedTransaction, PaginatedFeed
from finsync.infra.clients.plaid import MUTATION_DURING_PAGINATION
from finsync.services.sync.locks import AccountLockRegistry

if TYPE_CHECKING:
    from finsync.services.budgets.labeling import BudgetLabeler, LabelingOutcome


@dataclass
class AccountSyncResult:
    """Summary of one completed account sync."""

    account_id: str
    pages: int
    added: int
    modified: int
    removed: int
    categorized: int
    total_synced: int
    cursor: str | None
    labeling: LabelingOutcome | None = None


class AccountSyncLogger:
    """Handles all logging for the account sync orchestrator."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def sync_start(self, account_id: str, cursor: str | None) -> None:
        cursor_label = cursor or "initial"
        self._logger.bind(account_id=account_id, cursor=cursor_label).info(
            "Starting sync for account {} (cursor: {})", account_id, cursor_label
        )

    def page_applied(
        self,
        account_id: str,
        page_num: int,
        page: FeedPage,
        changed: int,
        total_synced: int,
    ) -> None:
        self._logger.bind(
            account_id=account_id,
            page=page_num,
            added=len(page.added),
            modified=len(page.modified),
            removed=len(page.removed),
            changed=changed,
        ).info(
            "Page {} for account {}: {} added, {} modified, {} removed "
            "({} rows changed, {} total)",
            page_num,
            account_id,
            len(page.added),
            len(page.modified),
            len(page.removed),
            changed,
            total_synced,
        )

    def classifier_failed(self, account_id: str, count: int, error: Exception) -> None:
        self._logger.bind(account_id=account_id, count=count).warning(
            "Classifier failed for {} transactions on account {}, "
            "storing uncategorized: {}",
            count,
            account_id,
            error,
        )

    def sync_complete(self, result: AccountSyncResult) -> None:
        self._logger.bind(
            account_id=result.account_id,
            pages=result.pages,
            total_synced=result.total_synced,
        ).info(
            "Sync complete for account {}: {} pages, {} added, {} modified, "
            "{} removed",
            result.account_id,
            result.pages,
            result.added,
            result.modified,
            result.removed,
        )

    def sync_failed(self, account_id: str, error: Exception) -> None:
        if isinstance(error, FeedError) and error.code == MUTATION_DURING_PAGINATION:
            self._logger.bind(account_id=account_id).warning(
                "Feed mutated during pagination for account {}; "
                "next run resumes from the last persisted cursor",
                account_id,
            )
            return
        self._logger.bind(account_id=account_id).error(
            "Sync failed for account {}: {}", account_id, error
        )

    def error_not_recorded(self, account_id: str, error: Exception) -> None:
        self._logger.bind(account_id=account_id).error(
            "Could not record sync error for account {}: {}", account_id, error
        )

    def labeling_failed(self, account_id: str, error: Exception) -> None:
        self._logger.bind(account_id=account_id).warning(
            "Budget labeling failed after sync of account {}: {}", account_id, error
        )


class AccountSyncOrchestrator:
    """Drives one account through the feed, page by page.

    Each page is persisted together with its cursor in a single database
    transaction, so an interrupted sync resumes from the last page that was
    written. Classification and budget labeling never fail a sync.
    """

    def __init__(
        self,
        db: DB,
        feed: PaginatedFeed,
        classifier: ClassifierGateway,
        *,
        labeler: BudgetLabeler | None = None,
        locks: AccountLockRegistry | None = None,
        page_size: int = MAX_PAGE_SIZE,
        feed_timeout_seconds: float = 30.0,
        classifier_timeout_seconds: float = 120.0,
        removal_policy: RemovalPolicy = "soft",
    ) -> None:
        self._db = db
        self._feed = feed
        self._classifier = classifier
        self._labeler = labeler
        self._locks = locks or AccountLockRegistry()
        self._page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        self._feed_timeout_seconds = feed_timeout_seconds
        self._classifier_timeout_seconds = classifier_timeout_seconds
        self._removal_policy = removal_policy
        self._logger = AccountSyncLogger()

    @property
    def locks(self) -> AccountLockRegistry:
        return self._locks

    async def sync_account(
        self,
        account_id: str,
        credential: str,
        user_id: str,
        connection_id: str,
        *,
        wait: bool = True,
    ) -> AccountSyncResult:
        """Sync one account to the end of the feed.

        Args:
            account_id: Account to sync
            credential: Opaque feed credential for the account's connection
            user_id: Owner of the account
            connection_id: Connection the account belongs to
            wait: Wait for a running sync of the same account; when False,
                raise ``SyncInProgressError`` instead

        Returns:
            AccountSyncResult for the run

        Raises:
            FeedError: Provider failure or timeout; state is recorded as error
            PersistenceError: Storage failure; state is recorded as error
            SyncInProgressError: ``wait`` is False and the account is busy
        """
        async with self._locks.hold(account_id, wait=wait):
            try:
                result, touched_ids = await self._run_pages(
                    account_id, credential, user_id, connection_id
                )
            except Exception as e:
                self._logger.sync_failed(account_id, e)
                self._record_error(account_id, e)
                raise

            self._logger.sync_complete(result)
            result.labeling = await self._label(account_id, user_id, touched_ids)
            return result

    async def _run_pages(
        self,
        account_id: str,
        credential: str,
        user_id: str,
        connection_id: str,
    ) -> tuple[AccountSyncResult, list[str]]:
        self._db.ensure_sync_state(account_id)
        state = self._db.begin_sync(account_id)
        cursor = state.cursor
        total_synced = state.total_synced
        self._logger.sync_start(account_id, cursor)

        account_name, institution_name = self._display_names(account_id, connection_id)
        rules_text = self._db.get_rules(user_id)

        # Insertion-ordered set of ids added or modified during this run
        touched: dict[str, None] = {}
        pages = added = modified = removed = categorized = 0

        while True:
            page = await self._fetch_page(credential, cursor, account_id)
            pages += 1

            categories = await self._classify_new(account_id, page.added, rules_text)
            categorized += len(categories)

            upserts = [
                self._to_upsert(txn, categories.get(txn.transaction_id))
                for txn in [*page.added, *page.modified]
            ]
            for upsert in upserts:
                upsert.account_name = account_name
                upsert.institution_name = institution_name

            outcome = self._db.apply_sync_page(
                account_id=account_id,
                user_id=user_id,
                connection_id=connection_id,
                upserts=upserts,
                removed_ids=page.removed,
                next_cursor=page.next_cursor,
                removal_policy=self._removal_policy,
            )
            total_synced = outcome.total_synced
            self._logger.page_applied(
                account_id,
                pages,
                page,
                outcome.saved.changed + outcome.removed,
                total_synced,
            )

            for upsert in upserts:
                touched[upsert.transaction_id] = None
            for txn_id in page.removed:
                touched.pop(txn_id, None)
            added += len(page.added)
            modified += len(page.modified)
            removed += outcome.removed

            if not page.has_more:
                cursor = page.next_cursor
                break
            if page.next_cursor is None or page.next_cursor == cursor:
                raise FeedError(
                    f"Feed reported more pages for account {account_id} "
                    "without advancing the cursor"
                )
            cursor = page.next_cursor

        self._db.mark_sync_complete(account_id)
        result = AccountSyncResult(
            account_id=account_id,
            pages=pages,
            added=added,
            modified=modified,
            removed=removed,
            categorized=categorized,
            total_synced=total_synced,
            cursor=cursor,
        )
        return result, list(touched)

    async def _fetch_page(
        self, credential: str, cursor: str | None, account_id: str
    ) -> FeedPage:
        try:
            return await asyncio.wait_for(
                self._feed.fetch_page(credential, cursor, self._page_size, account_id),
                timeout=self._feed_timeout_seconds,
            )
        except TimeoutError as e:
            raise FeedError(
                f"Feed page fetch timed out after {self._feed_timeout_seconds}s"
            ) from e

    async def _classify_new(
        self,
        account_id: str,
        added: list[FeedTransaction],
        rules_text: str | None,
    ) -> dict[str, str]:
        """Categorize added entries that storage has not categorized yet."""
        if not added:
            return {}
        already = self._db.find_categorized_ids([t.transaction_id for t in added])
        pending = {
            txn.transaction_id: ClassifiableTransaction.from_feed(txn)
            for txn in added
            if txn.transaction_id not in already
        }
        if not pending:
            return {}

        try:
            assignments = await asyncio.wait_for(
                self._classifier.classify(list(pending.values()), rules_text),
                timeout=self._classifier_timeout_seconds,
            )
        except (ClassifierError, TimeoutError) as e:
            self._logger.classifier_failed(account_id, len(pending), e)
            return {}

        return {a.id: a.category for a in assignments if a.id in pending}

    def _to_upsert(
        self, txn: FeedTransaction, category: str | None
    ) -> TransactionUpsert:
        try:
            posted_on = date.fromisoformat(txn.date)
        except ValueError as e:
            raise FeedError(
                f"Transaction {txn.transaction_id} has an invalid date {txn.date!r}"
            ) from e
        return TransactionUpsert(
            transaction_id=txn.transaction_id,
            account_id=txn.account_id,
            posted_on=posted_on,
            name=txn.name,
            amount_cents=to_cents(txn.amount),
            merchant_name=txn.merchant_name,
            iso_currency_code=txn.iso_currency_code,
            provider_category=txn.provider_category,
            pending=txn.pending,
            category=category,
        )

    def _display_names(
        self, account_id: str, connection_id: str
    ) -> tuple[str | None, str | None]:
        account = self._db.get_account(account_id)
        connection = self._db.get_connection(connection_id)
        return (
            account.name if account is not None else None,
            connection.institution_name if connection is not None else None,
        )

    def _record_error(self, account_id: str, error: Exception) -> None:
        try:
            self._db.ensure_sync_state(account_id)
            self._db.mark_sync_error(account_id, str(error) or type(error).__name__)
        except Exception as record_error:  # noqa: BLE001
            self._logger.error_not_recorded(account_id, record_error)

    async def _label(
        self, account_id: str, user_id: str, touched_ids: list[str]
    ) -> LabelingOutcome | None:
        if self._labeler is None or not touched_ids:
            return None
        try:
            transactions = self._db.get_transactions_by_ids(touched_ids)
            return await self._labeler.label_for_new_transactions(
                user_id, transactions
            )
        except Exception as e:  # noqa: BLE001
            self._logger.labeling_failed(account_id, e)
            return None
