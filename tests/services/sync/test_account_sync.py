from __future__ import annotations

import asyncio
from collections.abc import Sequence

import pytest

from finsync.adapters.classifier.protocol import (
    BudgetMatch,
    ClassifiableTransaction,
    CategoryAssignment,
)
from finsync.adapters.db.facade import DB
from finsync.adapters.db.models import Transaction
from finsync.errors import ClassifierError, FeedError, SyncInProgressError
from finsync.infra.clients.feed import FeedAccount, FeedPage, FeedTransaction
from finsync.infra.clients.plaid import MUTATION_DURING_PAGINATION
from finsync.services.budgets.labeling import LabelingOutcome
from finsync.services.sync.account_sync import (
    AccountSyncOrchestrator,
    AccountSyncResult,
)


def create_db() -> DB:
    """Create in-memory database instance."""
    db = DB("sqlite:///:memory:")
    db.create_schema()
    db.upsert_connection(
        connection_id="conn_1",
        user_id="user_1",
        credential_handle="access-1",
        institution_name="First Bank",
    )
    db.upsert_accounts(
        user_id="user_1",
        connection_id="conn_1",
        accounts=[FeedAccount(account_id="acc_1", name="Checking")],
    )
    return db


def make_txn(
    txn_id: str, name: str = "Coffee Shop", amount: float = 4.5
) -> FeedTransaction:
    return FeedTransaction(
        transaction_id=txn_id,
        account_id="acc_1",
        date="2025-01-02",
        name=name,
        amount=amount,
    )


class MockFeed:
    """Serves pre-built pages keyed by the cursor they follow."""

    def __init__(
        self,
        pages: dict[str | None, FeedPage],
        failures: dict[str | None, Exception] | None = None,
        delay: float = 0.0,
    ) -> None:
        self.pages = pages
        self.failures = failures or {}
        self.delay = delay
        self.calls: list[str | None] = []

    async def fetch_page(
        self,
        credential: str,
        cursor: str | None,
        page_size: int,
        account_id: str | None = None,
    ) -> FeedPage:
        self.calls.append(cursor)
        if self.delay:
            await asyncio.sleep(self.delay)
        if cursor in self.failures:
            raise self.failures.pop(cursor)
        return self.pages[cursor]

    async def list_accounts(self, credential: str) -> list[FeedAccount]:
        return []


class MockClassifier:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.classify_calls: list[list[str]] = []
        self.rules_seen: list[str | None] = []

    async def classify(
        self,
        transactions: Sequence[ClassifiableTransaction],
        rules_text: str | None = None,
    ) -> list[CategoryAssignment]:
        self.classify_calls.append([t.id for t in transactions])
        self.rules_seen.append(rules_text)
        if self.fail:
            raise ClassifierError("model unavailable")
        return [CategoryAssignment(id=t.id, category="Dining") for t in transactions]

    async def match_budget(
        self, transactions: Sequence[ClassifiableTransaction], filter_text: str
    ) -> list[BudgetMatch]:
        return []


class MockLabeler:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[tuple[str, list[str]]] = []

    async def label_for_new_transactions(
        self, user_id: str, transactions: Sequence[Transaction]
    ) -> LabelingOutcome:
        self.calls.append((user_id, [t.transaction_id for t in transactions]))
        if self.fail:
            raise ClassifierError("labeling down")
        return LabelingOutcome(transactions=len(transactions))


def create_orchestrator(
    db: DB,
    feed: MockFeed,
    classifier: MockClassifier | None = None,
    labeler: MockLabeler | None = None,
    **kwargs: object,
) -> AccountSyncOrchestrator:
    return AccountSyncOrchestrator(
        db,
        feed,
        classifier or MockClassifier(),
        labeler=labeler,  # type: ignore[arg-type]
        **kwargs,  # type: ignore[arg-type]
    )


def run_sync(
    orchestrator: AccountSyncOrchestrator, *, wait: bool = True
) -> AccountSyncResult:
    return asyncio.run(
        orchestrator.sync_account("acc_1", "access-1", "user_1", "conn_1", wait=wait)
    )


def test_sync_walks_pages_and_persists_final_cursor() -> None:
    # input
    db = create_db()
    feed = MockFeed(
        {
            None: FeedPage(
                added=[make_txn("t1"), make_txn("t2")],
                next_cursor="c1",
                has_more=True,
            ),
            "c1": FeedPage(
                added=[make_txn("t3")],
                modified=[make_txn("t1", amount=5.25)],
                removed=["t2"],
                next_cursor="c2",
                has_more=False,
            ),
        }
    )

    # act
    output = run_sync(create_orchestrator(db, feed))

    # assert
    assert feed.calls == [None, "c1"]
    assert output.pages == 2
    assert output.added == 3
    assert output.modified == 1
    assert output.removed == 1
    assert output.cursor == "c2"
    assert output.total_synced == 5
    state = db.get_sync_state("acc_1")
    assert state is not None
    assert state.status == "synced"
    assert state.cursor == "c2"
    stored = {t.transaction_id: t for t in db.list_transactions("user_1")}
    assert set(stored) == {"t1", "t3"}
    assert stored["t1"].amount_cents == 525
    assert stored["t1"].category == "Dining"
    assert stored["t1"].account_name == "Checking"
    assert stored["t1"].institution_name == "First Bank"


def test_failed_page_resumes_from_last_persisted_cursor() -> None:
    # input
    db = create_db()
    feed = MockFeed(
        {
            None: FeedPage(added=[make_txn("t1")], next_cursor="c1", has_more=True),
            "c1": FeedPage(added=[make_txn("t2")], next_cursor="c2"),
        },
        failures={
            "c1": FeedError(
                "Mutation during pagination", code=MUTATION_DURING_PAGINATION
            )
        },
    )
    orchestrator = create_orchestrator(db, feed)

    # act
    with pytest.raises(FeedError):
        run_sync(orchestrator)
    errored = db.get_sync_state("acc_1")
    output = run_sync(orchestrator)

    # assert
    assert errored is not None
    assert errored.status == "error"
    assert errored.cursor == "c1"
    assert errored.last_error == "Mutation during pagination"
    assert feed.calls == [None, "c1", "c1"]
    assert output.pages == 1
    assert output.total_synced == 2
    assert [t.transaction_id for t in db.list_transactions("user_1")] == ["t1", "t2"]


def test_replayed_page_does_not_double_count_or_reclassify() -> None:
    # input
    db = create_db()
    classifier = MockClassifier()
    page = FeedPage(added=[make_txn("t1"), make_txn("t2")], next_cursor="c1")
    feed = MockFeed({None: page, "c1": page})
    orchestrator = create_orchestrator(db, feed, classifier)

    # act
    first = run_sync(orchestrator)
    second = run_sync(orchestrator)

    # assert
    assert first.total_synced == 2
    assert second.total_synced == 2
    assert second.categorized == 0
    assert classifier.classify_calls == [["t1", "t2"]]
    assert len(db.list_transactions("user_1")) == 2


def test_classifier_failure_stores_transactions_uncategorized() -> None:
    # input
    db = create_db()
    db.save_rules("user_1", "Coffee is Dining")
    classifier = MockClassifier(fail=True)
    feed = MockFeed({None: FeedPage(added=[make_txn("t1")], next_cursor="c1")})

    # act
    output = run_sync(create_orchestrator(db, feed, classifier))

    # assert
    assert output.categorized == 0
    assert classifier.rules_seen == ["Coffee is Dining"]
    [txn] = db.list_transactions("user_1", uncategorized_only=True)
    assert txn.transaction_id == "t1"
    state = db.get_sync_state("acc_1")
    assert state is not None
    assert state.status == "synced"


def test_stalled_cursor_is_reported_as_feed_error() -> None:
    # input
    db = create_db()
    feed = MockFeed(
        {None: FeedPage(added=[make_txn("t1")], next_cursor=None, has_more=True)}
    )

    # act + assert
    with pytest.raises(FeedError, match="without advancing"):
        run_sync(create_orchestrator(db, feed))
    state = db.get_sync_state("acc_1")
    assert state is not None
    assert state.status == "error"


def test_feed_timeout_is_reported_as_feed_error() -> None:
    # input
    db = create_db()
    feed = MockFeed({None: FeedPage()}, delay=0.5)
    orchestrator = create_orchestrator(db, feed, feed_timeout_seconds=0.01)

    # act + assert
    with pytest.raises(FeedError, match="timed out"):
        run_sync(orchestrator)
    state = db.get_sync_state("acc_1")
    assert state is not None
    assert state.status == "error"


def test_labeler_receives_touched_live_transactions() -> None:
    # input
    db = create_db()
    labeler = MockLabeler()
    feed = MockFeed(
        {
            None: FeedPage(
                added=[make_txn("t1"), make_txn("t2")], next_cursor="c1", has_more=True
            ),
            "c1": FeedPage(removed=["t1"], next_cursor="c2"),
        }
    )

    # act
    output = run_sync(create_orchestrator(db, feed, labeler=labeler))

    # assert
    assert labeler.calls == [("user_1", ["t2"])]
    assert output.labeling is not None
    assert output.labeling.transactions == 1


def test_labeling_failure_does_not_fail_sync() -> None:
    # input
    db = create_db()
    labeler = MockLabeler(fail=True)
    feed = MockFeed({None: FeedPage(added=[make_txn("t1")], next_cursor="c1")})

    # act
    output = run_sync(create_orchestrator(db, feed, labeler=labeler))

    # assert
    assert output.labeling is None
    state = db.get_sync_state("acc_1")
    assert state is not None
    assert state.status == "synced"


def test_busy_account_without_wait_raises() -> None:
    # input
    db = create_db()
    feed = MockFeed({None: FeedPage(next_cursor="c1")})
    orchestrator = create_orchestrator(db, feed)

    # act
    async def run() -> None:
        async with orchestrator.locks.hold("acc_1"):
            await orchestrator.sync_account(
                "acc_1", "access-1", "user_1", "conn_1", wait=False
            )

    # assert
    with pytest.raises(SyncInProgressError):
        asyncio.run(run())
    assert feed.calls == []
