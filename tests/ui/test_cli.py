from __future__ import annotations

from datetime import date
from pathlib import Path

import pytest
from typer.testing import CliRunner

from finsync.adapters.db.facade import DB
from finsync.adapters.db.models import TransactionUpsert
from finsync.infra.clients.feed import FeedAccount
from finsync.ui import cli

runner = CliRunner()


@pytest.fixture
def database_url(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    url = f"sqlite:///{tmp_path / 'finsync.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    monkeypatch.delenv("PLAID_ENV", raising=False)
    monkeypatch.delenv("FINSYNC_PAGE_SIZE", raising=False)
    monkeypatch.setattr(cli, "configure_logging", lambda level: None)
    return url


def test_init_db_creates_schema(database_url: str) -> None:
    # act
    result = runner.invoke(cli.app, ["init-db"])

    # assert
    assert result.exit_code == 0
    assert "Database schema created." in result.output
    assert DB(database_url).list_budgets("user_1") == []


def test_budgets_prints_spend_table(database_url: str) -> None:
    # input
    db = DB(database_url)
    db.create_schema()
    budget = db.create_budget(
        user_id="user_1",
        title="Dining",
        filter_prompt="Restaurants",
        amount_cents=20000,
        period="rolling",
        rolling_days=36500,
    )
    db.upsert_transactions(
        user_id="user_1",
        connection_id="conn_1",
        rows=[
            TransactionUpsert(
                transaction_id="t1",
                account_id="acc_1",
                posted_on=date(2025, 1, 2),
                name="Taqueria",
                amount_cents=5000,
            )
        ],
    )
    db.apply_budget_matches(budget.budget_id, matched_ids=["t1"], evaluated_ids=["t1"])

    # act
    result = runner.invoke(cli.app, ["budgets", "user_1"])

    # assert
    assert result.exit_code == 0
    assert "Dining" in result.output
    assert "50.00" in result.output
    assert "25%" in result.output


def test_status_lists_account_sync_state(database_url: str) -> None:
    # input
    db = DB(database_url)
    db.create_schema()
    db.upsert_connection(
        connection_id="conn_1", user_id="user_1", credential_handle="access-1"
    )
    db.upsert_accounts(
        user_id="user_1",
        connection_id="conn_1",
        accounts=[FeedAccount(account_id="acc_1", name="Checking")],
    )
    db.ensure_sync_state("acc_1")

    # act
    result = runner.invoke(cli.app, ["status", "user_1"])

    # assert
    assert result.exit_code == 0
    assert "acc_1" in result.output
    assert "never_synced" in result.output


def test_invalid_config_exits_with_error(
    database_url: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    # input
    monkeypatch.setenv("FINSYNC_PAGE_SIZE", "9000")

    # act
    result = runner.invoke(cli.app, ["init-db"])

    # assert
    assert result.exit_code == 1


def test_sync_connection_unknown_id_exits_with_error(database_url: str) -> None:
    # input
    DB(database_url).create_schema()

    # act
    result = runner.invoke(cli.app, ["sync-connection", "missing"])

    # assert
    assert result.exit_code == 1
