from __future__ import annotations

import asyncio
import sys

from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.table import Table
import typer

from finsync.adapters.classifier.openai_gateway import OpenAIClassifierGateway
from finsync.adapters.db.facade import DB
from finsync.config import SyncConfig, load_sync_config_from_env
from finsync.errors import FinsyncError
from finsync.infra.clients.plaid import PlaidClient, PlaidFeed
from finsync.jobs.batch_sync import BatchSyncDriver, default_sync_fn
from finsync.services.budgets.labeling import BudgetLabeler
from finsync.services.budgets.spend import BudgetSpendAggregator, BudgetSummary
from finsync.services.jobs import JobQueue
from finsync.services.recategorize import RecategorizationService
from finsync.services.sync.account_sync import AccountSyncOrchestrator
from finsync.services.sync.connection_sync import ConnectionSyncCoordinator

# Load environment variables from .env
load_dotenv()

app = typer.Typer(
    help="finsync: incremental transaction sync and budget labeling.",
    no_args_is_help=True,
)
console = Console()

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} [{level}] {name}: {message}"


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level=level)


def _config() -> SyncConfig:
    try:
        config = load_sync_config_from_env()
    except FinsyncError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(1) from None
    configure_logging(config.log_level)
    return config


def _build_engine(
    config: SyncConfig, db: DB
) -> tuple[ConnectionSyncCoordinator, BudgetLabeler, OpenAIClassifierGateway]:
    try:
        plaid = PlaidClient.from_env(
            config.plaid_env, timeout_seconds=config.feed_timeout_seconds
        )
        classifier = OpenAIClassifierGateway(
            model=config.classifier_model,
            timeout_seconds=config.classifier_timeout_seconds,
        )
    except FinsyncError as e:
        typer.echo(f"Error initializing clients: {e}", err=True)
        raise typer.Exit(1) from None

    feed = PlaidFeed(plaid, timeout_seconds=config.feed_timeout_seconds)
    labeler = BudgetLabeler(
        db, classifier, timeout_seconds=config.classifier_timeout_seconds
    )
    orchestrator = AccountSyncOrchestrator(
        db,
        feed,
        classifier,
        labeler=labeler,
        page_size=config.page_size,
        feed_timeout_seconds=config.feed_timeout_seconds,
        classifier_timeout_seconds=config.classifier_timeout_seconds,
        removal_policy=config.removal_policy,
    )
    coordinator = ConnectionSyncCoordinator(
        db,
        feed,
        orchestrator,
        max_parallel_accounts=config.max_parallel_accounts,
    )
    return coordinator, labeler, classifier


@app.command("init-db")
def init_db(url: str | None = typer.Option(None, help="Database URL")) -> None:
    """Create all tables."""
    config = _config()
    DB(url or config.database_url).create_schema()
    typer.echo("Database schema created.")


@app.command("sync-all")
def sync_all(
    env: str | None = typer.Option(
        None, help="Only sync connections in this environment (default: all)"
    ),
) -> None:
    """Sync every user's connections. Exits 1 if any user failed."""
    config = _config()
    db = DB(config.database_url)
    coordinator, _, _ = _build_engine(config, db)
    driver = BatchSyncDriver(db, ignored_user_ids=config.ignored_user_ids)

    result = asyncio.run(driver.sync_all_users(env, default_sync_fn(coordinator)))

    console.print(
        f"Users: {result.users_total} "
        f"(succeeded {result.users_succeeded}, failed {result.users_failed}, "
        f"ignored {result.users_skipped}); "
        f"connections synced: {result.connections_synced}"
    )
    for user_id, error in result.errors.items():
        console.print(f"[red]{user_id}[/red]: {error}")
    if not result.ok:
        raise typer.Exit(1)


@app.command("sync-connection")
def sync_connection(connection_id: str) -> None:
    """Sync a single connection."""
    config = _config()
    db = DB(config.database_url)
    connection = db.get_connection(connection_id)
    if connection is None:
        typer.echo(f"Connection {connection_id} not found.", err=True)
        raise typer.Exit(1)
    coordinator, _, _ = _build_engine(config, db)

    result = asyncio.run(
        coordinator.sync_connection(
            connection_id, connection.user_id, connection.credential_handle
        )
    )

    for synced in result.succeeded:
        console.print(
            f"[green]{synced.account_id}[/green]: {synced.pages} pages, "
            f"{synced.added} added, {synced.modified} modified, "
            f"{synced.removed} removed"
        )
    for account_id, error in result.failed.items():
        console.print(f"[red]{account_id}[/red]: {error}")
    if not result.ok:
        raise typer.Exit(1)


@app.command("status")
def status(user_id: str) -> None:
    """Show per-account sync state for a user."""
    config = _config()
    states = DB(config.database_url).list_sync_states(user_id)
    table = Table(title=f"Sync state for {user_id}")
    for column in ("Account", "Status", "Synced rows", "Last synced", "Error"):
        table.add_column(column)
    for state in states:
        table.add_row(
            state.account_id,
            state.status,
            str(state.total_synced),
            state.last_synced_at.isoformat() if state.last_synced_at else "-",
            state.last_error or "",
        )
    console.print(table)


@app.command("budgets")
def budgets(user_id: str) -> None:
    """Print spend against each of a user's budgets."""
    config = _config()
    summaries = BudgetSpendAggregator(DB(config.database_url)).summarize_user(user_id)
    table = Table(title=f"Budgets for {user_id}")
    for column in ("Budget", "Window", "Budgeted", "Spent", "Remaining", "%"):
        table.add_column(column)
    colors = {"under": "green", "near": "yellow", "over": "red"}
    for summary in summaries:
        if not isinstance(summary, BudgetSummary):
            table.add_row(summary.title, f"[red]{summary.error}[/red]", "", "", "", "")
            continue
        table.add_row(
            summary.title,
            f"{summary.window.start} to {summary.window.end}",
            f"{summary.amount:.2f}",
            f"{summary.spent:.2f}",
            f"{summary.remaining:.2f}",
            f"[{colors[summary.status]}]{summary.percentage}%[/]",
        )
    console.print(table)


@app.command("relabel")
def relabel(user_id: str) -> None:
    """Re-label all of a user's transactions against every budget."""
    config = _config()
    db = DB(config.database_url)
    _, labeler, _ = _build_engine(config, db)
    outcome = asyncio.run(labeler.label_all_budgets(user_id))
    console.print(
        f"Labeled {outcome.budgets_labeled} budgets "
        f"({outcome.links_added} links added, {outcome.links_removed} removed)"
    )
    for budget_id, error in outcome.failed.items():
        console.print(f"[red]{budget_id}[/red]: {error}")
    if outcome.failed:
        raise typer.Exit(1)


@app.command("set-rules")
def set_rules(user_id: str, rules: str) -> None:
    """Save categorization rules and recategorize the user's transactions."""
    config = _config()
    db = DB(config.database_url)
    _, labeler, classifier = _build_engine(config, db)

    async def run() -> str | None:
        async with JobQueue(
            max_workers=config.job_workers, max_pending=config.job_queue_size
        ) as jobs:
            service = RecategorizationService(
                db,
                classifier,
                labeler,
                jobs,
                timeout_seconds=config.classifier_timeout_seconds,
            )
            handle = await service.update_rules(user_id, rules)
            await handle.wait()
            return handle.error

    error = asyncio.run(run())
    if error is not None:
        typer.echo(f"Recategorization failed: {error}", err=True)
        raise typer.Exit(1)
    typer.echo("Rules saved and transactions recategorized.")


@app.command("categorize")
def categorize(user_id: str) -> None:
    """Categorize transactions that were stored without a category."""
    config = _config()
    db = DB(config.database_url)
    _, labeler, classifier = _build_engine(config, db)
    service = RecategorizationService(
        db,
        classifier,
        labeler,
        JobQueue(max_workers=config.job_workers, max_pending=config.job_queue_size),
        timeout_seconds=config.classifier_timeout_seconds,
    )
    try:
        count = asyncio.run(service.categorize_uncategorized(user_id))
    except FinsyncError as e:
        typer.echo(f"Categorization failed: {e}", err=True)
        raise typer.Exit(1) from None
    typer.echo(f"Categorized {count} transactions.")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
