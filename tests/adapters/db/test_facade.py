from __future__ import annotations

from datetime import date

import pytest

from finsync.adapters.db.facade import DB
from finsync.adapters.db.models import TransactionUpsert, from_cents, to_cents
from finsync.errors import InvalidSyncTransitionError, NotFoundError
from finsync.infra.clients.feed import FeedAccount


def create_db() -> DB:
    """Create in-memory database instance."""
    db = DB("sqlite:///:memory:")
    db.create_schema()
    return db


def seed_account(
    db: DB,
    *,
    user_id: str = "user_1",
    connection_id: str = "conn_1",
    account_id: str = "acc_1",
    environment: str = "sandbox",
) -> None:
    db.upsert_connection(
        connection_id=connection_id,
        user_id=user_id,
        credential_handle=f"access-{connection_id}",
        institution_name="First Bank",
        environment=environment,
    )
    db.upsert_accounts(
        user_id=user_id,
        connection_id=connection_id,
        accounts=[FeedAccount(account_id=account_id, name="Checking")],
    )


def make_upsert(
    txn_id: str,
    *,
    amount_cents: int = 1000,
    name: str = "Coffee",
    category: str | None = None,
    posted_on: date = date(2025, 1, 2),
) -> TransactionUpsert:
    return TransactionUpsert(
        transaction_id=txn_id,
        account_id="acc_1",
        posted_on=posted_on,
        name=name,
        amount_cents=amount_cents,
        category=category,
    )


def apply_page(
    db: DB,
    upserts: list[TransactionUpsert],
    removed: list[str] | None = None,
    cursor: str | None = "c1",
    policy: str = "soft",
):  # noqa: ANN201
    return db.apply_sync_page(
        account_id="acc_1",
        user_id="user_1",
        connection_id="conn_1",
        upserts=upserts,
        removed_ids=removed or [],
        next_cursor=cursor,
        removal_policy=policy,  # type: ignore[arg-type]
    )


def start_sync(db: DB) -> None:
    seed_account(db)
    db.ensure_sync_state("acc_1")
    db.begin_sync("acc_1")


# Sync state machine


def test_ensure_sync_state_is_idempotent() -> None:
    # input
    db = create_db()
    seed_account(db)

    # act
    first = db.ensure_sync_state("acc_1")
    second = db.ensure_sync_state("acc_1")

    # assert
    assert first is True
    assert second is False
    state = db.get_sync_state("acc_1")
    assert state is not None
    assert state.status == "never_synced"
    assert state.cursor is None
    assert state.total_synced == 0


def test_full_sync_lifecycle_preserves_cursor() -> None:
    # input
    db = create_db()
    start_sync(db)

    # act
    apply_page(db, [make_upsert("t1")], cursor="c1")
    db.mark_sync_complete("acc_1")
    resumed = db.begin_sync("acc_1")

    # assert
    assert resumed.status == "syncing"
    assert resumed.cursor == "c1"
    account = db.get_account("acc_1")
    assert account is not None
    assert account.last_synced_at is not None


def test_error_state_can_restart_and_keeps_message_until_success() -> None:
    # input
    db = create_db()
    start_sync(db)

    # act
    db.mark_sync_error("acc_1", "boom")
    errored = db.get_sync_state("acc_1")
    db.begin_sync("acc_1")
    completed = db.mark_sync_complete("acc_1")

    # assert
    assert errored is not None
    assert errored.status == "error"
    assert errored.last_error == "boom"
    assert completed.status == "synced"
    assert completed.last_error is None


@pytest.mark.parametrize("target", ["synced", "error"])
def test_never_synced_cannot_skip_syncing(target: str) -> None:
    # input
    db = create_db()
    seed_account(db)
    db.ensure_sync_state("acc_1")

    # act + assert
    with pytest.raises(InvalidSyncTransitionError) as excinfo:
        if target == "synced":
            db.mark_sync_complete("acc_1")
        else:
            db.mark_sync_error("acc_1", "nope")
    assert excinfo.value.current == "never_synced"
    assert excinfo.value.target == target


def test_missing_sync_state_raises_not_found() -> None:
    db = create_db()
    with pytest.raises(NotFoundError):
        db.begin_sync("acc_missing")


# Sync pages


def test_apply_sync_page_counts_only_changed_rows() -> None:
    # input
    db = create_db()
    start_sync(db)
    page = [make_upsert("t1"), make_upsert("t2")]

    # act
    first = apply_page(db, page, cursor="c1")
    replay = apply_page(db, page, cursor="c1")

    # assert
    assert first.saved.inserted == 2
    assert first.total_synced == 2
    assert replay.saved.inserted == 0
    assert replay.saved.updated == 0
    assert replay.saved.unchanged == 2
    assert replay.total_synced == 2
    state = db.get_sync_state("acc_1")
    assert state is not None
    assert state.cursor == "c1"
    assert state.status == "syncing"


def test_modification_never_overwrites_assigned_category() -> None:
    # input
    db = create_db()
    start_sync(db)
    apply_page(db, [make_upsert("t1", category="Dining")], cursor="c1")

    # act
    outcome = apply_page(
        db,
        [make_upsert("t1", amount_cents=1250, name="Coffee & Bagel")],
        cursor="c2",
    )

    # assert
    assert outcome.saved.updated == 1
    [txn] = db.get_transactions_by_ids(["t1"])
    assert txn.category == "Dining"
    assert txn.amount_cents == 1250
    assert txn.name == "Coffee & Bagel"


def test_uncategorized_row_accepts_category_from_later_page() -> None:
    # input
    db = create_db()
    start_sync(db)
    apply_page(db, [make_upsert("t1")], cursor="c1")

    # act
    apply_page(db, [make_upsert("t1", category="Groceries")], cursor="c2")

    # assert
    [txn] = db.get_transactions_by_ids(["t1"])
    assert txn.category == "Groceries"
    assert txn.categorized_at is not None


def test_soft_removal_hides_row_and_drops_associations() -> None:
    # input
    db = create_db()
    start_sync(db)
    apply_page(db, [make_upsert("t1"), make_upsert("t2")], cursor="c1")
    budget = db.create_budget(
        user_id="user_1",
        title="Coffee",
        filter_prompt="Coffee shops",
        amount_cents=5000,
        period="rolling",
        rolling_days=30,
    )
    db.apply_budget_matches(
        budget.budget_id, matched_ids=["t1", "t2"], evaluated_ids=["t1", "t2"]
    )

    # act
    outcome = apply_page(db, [], removed=["t1", "unknown"], cursor="c2")
    replay = apply_page(db, [], removed=["t1"], cursor="c2")

    # assert
    assert outcome.removed == 1
    assert replay.removed == 0
    assert [t.transaction_id for t in db.get_transactions_by_ids(["t1", "t2"])] == [
        "t2"
    ]
    assert db.get_budget_ids(["t1", "t2"]) == {"t1": set(), "t2": {budget.budget_id}}
    assert [t.transaction_id for t in db.list_transactions("user_1")] == ["t2"]


def test_hard_removal_deletes_row() -> None:
    # input
    db = create_db()
    start_sync(db)
    apply_page(db, [make_upsert("t1")], cursor="c1")

    # act
    outcome = apply_page(db, [], removed=["t1"], cursor="c2", policy="hard")

    # assert
    assert outcome.removed == 1
    assert db.find_categorized_ids(["t1"]) == set()
    assert db.list_transactions("user_1") == []


def test_update_transaction_categories_overwrites() -> None:
    # input
    db = create_db()
    start_sync(db)
    apply_page(db, [make_upsert("t1", category="Dining")], cursor="c1")

    # act
    updated = db.update_transaction_categories({"t1": "Coffee", "missing": "X"})

    # assert
    assert updated == 1
    [txn] = db.get_transactions_by_ids(["t1"])
    assert txn.category == "Coffee"


# Budget associations


def test_apply_budget_matches_touches_only_one_budget() -> None:
    # input
    db = create_db()
    start_sync(db)
    apply_page(db, [make_upsert("t1"), make_upsert("t2")], cursor="c1")
    food = db.create_budget(
        user_id="user_1",
        title="Food",
        filter_prompt="Food",
        amount_cents=10000,
        period="rolling",
        rolling_days=30,
    )
    coffee = db.create_budget(
        user_id="user_1",
        title="Coffee",
        filter_prompt="Coffee",
        amount_cents=2000,
        period="rolling",
        rolling_days=30,
    )
    db.apply_budget_matches(
        food.budget_id, matched_ids=["t1", "t2"], evaluated_ids=["t1", "t2"]
    )
    db.apply_budget_matches(
        coffee.budget_id, matched_ids=["t1"], evaluated_ids=["t1", "t2"]
    )

    # act
    repeat = db.apply_budget_matches(
        coffee.budget_id, matched_ids=["t1"], evaluated_ids=["t1", "t2"]
    )
    unmatch = db.apply_budget_matches(
        food.budget_id, matched_ids=["t1"], evaluated_ids=["t2"]
    )

    # assert
    assert repeat.added == 0
    assert repeat.removed == 0
    assert unmatch.removed == 1
    assert db.get_budget_ids(["t1", "t2"]) == {
        "t1": {food.budget_id, coffee.budget_id},
        "t2": set(),
    }


def test_delete_budget_removes_associations() -> None:
    # input
    db = create_db()
    start_sync(db)
    apply_page(db, [make_upsert("t1")], cursor="c1")
    budget = db.create_budget(
        user_id="user_1",
        title="Food",
        filter_prompt="Food",
        amount_cents=10000,
        period="rolling",
        rolling_days=30,
    )
    db.apply_budget_matches(budget.budget_id, matched_ids=["t1"], evaluated_ids=["t1"])

    # act
    deleted = db.delete_budget("user_1", budget.budget_id)
    deleted_again = db.delete_budget("user_1", budget.budget_id)

    # assert
    assert deleted is True
    assert deleted_again is False
    assert db.get_budget_ids(["t1"]) == {"t1": set()}


# Connections and accounts


def test_delete_connection_cascades_accounts_state_and_transactions() -> None:
    # input
    db = create_db()
    start_sync(db)
    apply_page(db, [make_upsert("t1")], cursor="c1")

    # act
    db.delete_connection("conn_1")

    # assert
    assert db.get_connection("conn_1") is None
    assert db.list_accounts("conn_1") == []
    assert db.get_sync_state("acc_1") is None
    assert db.list_transactions("user_1") == []


def test_upsert_accounts_refreshes_balances() -> None:
    # input
    db = create_db()
    seed_account(db)

    # act
    db.upsert_accounts(
        user_id="user_1",
        connection_id="conn_1",
        accounts=[
            FeedAccount(
                account_id="acc_1",
                name="Everyday Checking",
                current_balance=1234.56,
                available_balance=1200.0,
                iso_currency_code="USD",
            )
        ],
    )

    # assert
    [account] = db.list_accounts("conn_1")
    assert account.name == "Everyday Checking"
    assert account.current_balance_cents == 123456
    assert account.available_balance_cents == 120000


def test_list_user_ids_filters_by_environment() -> None:
    # input
    db = create_db()
    seed_account(db, user_id="user_b", connection_id="c_b", account_id="a_b")
    seed_account(db, user_id="user_a", connection_id="c_a", account_id="a_a")
    seed_account(
        db,
        user_id="user_p",
        connection_id="c_p",
        account_id="a_p",
        environment="production",
    )

    # act
    output_all = db.list_user_ids_with_connections()
    output_sandbox = db.list_user_ids_with_connections("sandbox")

    # assert
    assert output_all == ["user_a", "user_b", "user_p"]
    assert output_sandbox == ["user_a", "user_b"]


@pytest.mark.parametrize(
    ("amount", "expected_cents"),
    [(19.99, 1999), (0.1 + 0.2, 30), (-4.5, -450), (0.005, 1)],
)
def test_to_cents_rounds_half_up(amount: float, expected_cents: int) -> None:
    assert to_cents(amount) == expected_cents
    assert from_cents(expected_cents) * 100 == expected_cents
