from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, date, datetime
from typing import TYPE_CHECKING, Any
import uuid

if TYPE_CHECKING:
    from finsync.infra.clients.feed import FeedAccount

from sqlalchemy import create_engine, event
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from finsync.adapters.db.models import (
    Account,
    Base,
    Budget,
    BudgetMatchOutcome,
    CategorizationRules,
    Connection,
    PageApplyOutcome,
    SaveOutcome,
    SyncState,
    Transaction,
    TransactionBudget,
    TransactionUpsert,
    to_cents,
)
from finsync.config import RemovalPolicy
from finsync.errors import (
    InvalidSyncTransitionError,
    NotFoundError,
    PersistenceError,
)

ALLOWED_SYNC_TRANSITIONS: dict[str, frozenset[str]] = {
    "never_synced": frozenset({"syncing"}),
    "synced": frozenset({"syncing"}),
    "error": frozenset({"syncing"}),
    "syncing": frozenset({"syncing", "synced", "error"}),
}

_MUTABLE_TRANSACTION_FIELDS = (
    "account_id",
    "posted_on",
    "name",
    "merchant_name",
    "amount_cents",
    "iso_currency_code",
    "provider_category",
    "pending",
)

_BUDGET_UPDATABLE_FIELDS = frozenset(
    {"title", "filter_prompt", "amount_cents", "period", "rolling_days", "anchor_date"}
)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _enable_sqlite_foreign_keys(dbapi_connection: Any, _record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class DB:
    """Database service layer providing ORM models and helper methods."""

    def __init__(self, url: str) -> None:
        """Initialize database connection.

        Args:
            url: Database URL (e.g., "sqlite:///finsync.db")
        """
        self._url = url
        self._engine = create_engine(url, echo=False)
        if self._engine.dialect.name == "sqlite":
            event.listen(self._engine, "connect", _enable_sqlite_foreign_keys)
        self._session_factory = sessionmaker(bind=self._engine, class_=Session)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context manager for database sessions.

        Commits on success, rolls back on any error. Driver and ORM failures
        are re-raised as ``PersistenceError``.
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceError(f"Database error: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_schema(self) -> None:
        """Create every table that does not exist yet."""
        try:
            Base.metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Schema creation failed: {e}") from e

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def upsert_connection(
        self,
        *,
        connection_id: str,
        user_id: str,
        credential_handle: str,
        institution_name: str | None = None,
        environment: str = "sandbox",
    ) -> Connection:
        with self.session() as session:  # type: Session
            connection = session.get(Connection, connection_id)
            if connection is None:
                connection = Connection(
                    connection_id=connection_id,
                    user_id=user_id,
                    credential_handle=credential_handle,
                    institution_name=institution_name,
                    environment=environment,
                    status="active",
                )
                session.add(connection)
            else:
                connection.credential_handle = credential_handle
                connection.environment = environment
                if institution_name is not None:
                    connection.institution_name = institution_name
                connection.updated_at = _utcnow()
            session.flush()
            session.refresh(connection)
            session.expunge(connection)
            return connection

    def get_connection(self, connection_id: str) -> Connection | None:
        with self.session() as session:  # type: Session
            connection = session.get(Connection, connection_id)
            if connection is not None:
                session.expunge(connection)
            return connection

    def list_connections(self, user_id: str) -> list[Connection]:
        with self.session() as session:  # type: Session
            connections = (
                session.query(Connection)
                .filter(Connection.user_id == user_id)
                .order_by(Connection.created_at, Connection.connection_id)
                .all()
            )
            for connection in connections:
                session.expunge(connection)
            return connections

    def list_user_ids_with_connections(
        self, environment: str | None = None
    ) -> list[str]:
        """Distinct user ids owning at least one connection, sorted.

        Args:
            environment: Restrict to connections in this environment, or
                ``None`` for every environment.
        """
        with self.session() as session:  # type: Session
            query = session.query(Connection.user_id).distinct()
            if environment is not None:
                query = query.filter(Connection.environment == environment)
            return sorted(row[0] for row in query.all())

    def mark_connection_active(self, connection_id: str) -> None:
        self._set_connection_status(connection_id, "active", None)

    def mark_connection_error(self, connection_id: str, message: str) -> None:
        self._set_connection_status(connection_id, "error", message)

    def _set_connection_status(
        self, connection_id: str, status: str, error: str | None
    ) -> None:
        with self.session() as session:  # type: Session
            connection = session.get(Connection, connection_id)
            if connection is None:
                raise NotFoundError(f"Connection {connection_id} not found")
            connection.status = status
            connection.last_error = error
            connection.updated_at = _utcnow()

    def delete_connection(
        self, connection_id: str, *, purge_transactions: bool = True
    ) -> None:
        """Delete a connection, its accounts and their sync state.

        Args:
            connection_id: Connection to delete
            purge_transactions: Also delete the connection's transactions and
                their budget associations
        """
        with self.session() as session:  # type: Session
            connection = session.get(Connection, connection_id)
            if connection is None:
                raise NotFoundError(f"Connection {connection_id} not found")
            if purge_transactions:
                txn_ids = session.query(Transaction.transaction_id).filter(
                    Transaction.connection_id == connection_id
                )
                session.query(TransactionBudget).filter(
                    TransactionBudget.transaction_id.in_(txn_ids.scalar_subquery())
                ).delete(synchronize_session=False)
                session.query(Transaction).filter(
                    Transaction.connection_id == connection_id
                ).delete(synchronize_session=False)
            session.delete(connection)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def upsert_accounts(
        self,
        *,
        user_id: str,
        connection_id: str,
        accounts: Iterable[FeedAccount],
    ) -> int:
        """Insert or refresh accounts and balances for a connection.

        Returns:
            Number of accounts written
        """
        count = 0
        with self.session() as session:  # type: Session
            for data in accounts:
                account = session.get(Account, data.account_id)
                if account is None:
                    account = Account(
                        account_id=data.account_id,
                        connection_id=connection_id,
                        user_id=user_id,
                    )
                    session.add(account)
                else:
                    account.updated_at = _utcnow()
                account.name = data.name
                account.official_name = data.official_name
                account.type = data.type
                account.subtype = data.subtype
                account.current_balance_cents = (
                    to_cents(data.current_balance)
                    if data.current_balance is not None
                    else None
                )
                account.available_balance_cents = (
                    to_cents(data.available_balance)
                    if data.available_balance is not None
                    else None
                )
                account.iso_currency_code = data.iso_currency_code
                count += 1
        return count

    def get_account(self, account_id: str) -> Account | None:
        with self.session() as session:  # type: Session
            account = session.get(Account, account_id)
            if account is not None:
                session.expunge(account)
            return account

    def list_accounts(self, connection_id: str) -> list[Account]:
        with self.session() as session:  # type: Session
            accounts = (
                session.query(Account)
                .filter(Account.connection_id == connection_id)
                .order_by(Account.account_id)
                .all()
            )
            for account in accounts:
                session.expunge(account)
            return accounts

    # ------------------------------------------------------------------
    # Sync state
    # ------------------------------------------------------------------

    def get_sync_state(self, account_id: str) -> SyncState | None:
        with self.session() as session:  # type: Session
            state = session.get(SyncState, account_id)
            if state is not None:
                session.expunge(state)
            return state

    def list_sync_states(self, user_id: str) -> list[SyncState]:
        """Sync state of every account a user owns."""
        with self.session() as session:  # type: Session
            states = (
                session.query(SyncState)
                .join(Account, Account.account_id == SyncState.account_id)
                .filter(Account.user_id == user_id)
                .order_by(SyncState.account_id)
                .all()
            )
            for state in states:
                session.expunge(state)
            return states

    def ensure_sync_state(self, account_id: str) -> bool:
        """Create a ``never_synced`` state row if none exists.

        Returns:
            True if a row was created, False if it already existed
        """
        if self.get_sync_state(account_id) is not None:
            return False
        try:
            with self.session() as session:  # type: Session
                session.add(
                    SyncState(account_id=account_id, status="never_synced")
                )
        except PersistenceError as e:
            if isinstance(e.__cause__, IntegrityError) and (
                self.get_sync_state(account_id) is not None
            ):
                return False
            raise
        return True

    def begin_sync(self, account_id: str) -> SyncState:
        """Move an account to ``syncing``, keeping its cursor."""
        with self.session() as session:  # type: Session
            state = self._require_sync_state(session, account_id)
            self._transition(state, "syncing")
            session.flush()
            session.refresh(state)
            session.expunge(state)
            return state

    def mark_sync_complete(self, account_id: str) -> SyncState:
        """Move an account to ``synced`` and stamp both sync timestamps."""
        now = _utcnow()
        with self.session() as session:  # type: Session
            state = self._require_sync_state(session, account_id)
            self._transition(state, "synced")
            state.last_error = None
            state.last_synced_at = now
            account = session.get(Account, account_id)
            if account is not None:
                account.last_synced_at = now
            session.flush()
            session.refresh(state)
            session.expunge(state)
            return state

    def mark_sync_error(self, account_id: str, message: str) -> None:
        with self.session() as session:  # type: Session
            state = self._require_sync_state(session, account_id)
            self._transition(state, "error")
            state.last_error = message

    def _require_sync_state(self, session: Session, account_id: str) -> SyncState:
        state = session.get(SyncState, account_id)
        if state is None:
            raise NotFoundError(f"No sync state for account {account_id}")
        return state

    def _transition(self, state: SyncState, target: str) -> None:
        allowed = ALLOWED_SYNC_TRANSITIONS.get(state.status, frozenset())
        if target not in allowed:
            raise InvalidSyncTransitionError(state.account_id, state.status, target)
        state.status = target
        state.updated_at = _utcnow()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def apply_sync_page(
        self,
        *,
        account_id: str,
        user_id: str,
        connection_id: str,
        upserts: Sequence[TransactionUpsert],
        removed_ids: Sequence[str],
        next_cursor: str | None,
        removal_policy: RemovalPolicy = "soft",
    ) -> PageApplyOutcome:
        """Persist one feed page and the sync progress in a single transaction.

        Upserts are idempotent by transaction id and never overwrite an
        assigned category. ``total_synced`` grows only by rows this call
        actually changed, so a replayed page leaves it untouched.

        Args:
            account_id: Account whose cursor advances
            user_id: Owner of the transactions
            connection_id: Connection the account belongs to
            upserts: Added and modified transactions
            removed_ids: Transaction ids the feed reports as removed
            next_cursor: Cursor to persist for the next page
            removal_policy: "soft" stamps removed_at, "hard" deletes rows

        Returns:
            PageApplyOutcome with save counts, removals and the new total
        """
        with self.session() as session:  # type: Session
            state = self._require_sync_state(session, account_id)
            self._transition(state, "syncing")
            saved = self._upsert_rows(session, user_id, connection_id, upserts)
            removed = self._remove_rows(session, removed_ids, removal_policy)
            state.cursor = next_cursor
            state.total_synced = state.total_synced + saved.changed + removed
            return PageApplyOutcome(
                saved=saved, removed=removed, total_synced=state.total_synced
            )

    def upsert_transactions(
        self,
        *,
        user_id: str,
        connection_id: str,
        rows: Sequence[TransactionUpsert],
    ) -> SaveOutcome:
        with self.session() as session:  # type: Session
            return self._upsert_rows(session, user_id, connection_id, rows)

    def remove_transactions(
        self, transaction_ids: Sequence[str], policy: RemovalPolicy = "soft"
    ) -> int:
        """Remove transactions by id. Unknown or already removed ids are no-ops.

        Returns:
            Number of rows removed by this call
        """
        with self.session() as session:  # type: Session
            return self._remove_rows(session, transaction_ids, policy)

    def _upsert_rows(
        self,
        session: Session,
        user_id: str,
        connection_id: str,
        rows: Sequence[TransactionUpsert],
    ) -> SaveOutcome:
        if not rows:
            return SaveOutcome(inserted=0, updated=0, unchanged=0)

        # Last occurrence wins when a page repeats an id
        by_id = {row.transaction_id: row for row in rows}
        existing = {
            txn.transaction_id: txn
            for txn in session.query(Transaction)
            .filter(Transaction.transaction_id.in_(list(by_id)))
            .all()
        }

        now = _utcnow()
        inserted = updated = unchanged = 0
        for txn_id, row in by_id.items():
            txn = existing.get(txn_id)
            if txn is None:
                session.add(
                    Transaction(
                        transaction_id=txn_id,
                        account_id=row.account_id,
                        connection_id=connection_id,
                        user_id=user_id,
                        posted_on=row.posted_on,
                        name=row.name,
                        merchant_name=row.merchant_name,
                        amount_cents=row.amount_cents,
                        iso_currency_code=row.iso_currency_code,
                        provider_category=row.provider_category,
                        pending=row.pending,
                        category=row.category,
                        categorized_at=now if row.category else None,
                        account_name=row.account_name,
                        institution_name=row.institution_name,
                    )
                )
                inserted += 1
                continue

            changed = False
            for field_name in _MUTABLE_TRANSACTION_FIELDS:
                value = getattr(row, field_name)
                if getattr(txn, field_name) != value:
                    setattr(txn, field_name, value)
                    changed = True
            for field_name in ("account_name", "institution_name"):
                value = getattr(row, field_name)
                if value is not None and getattr(txn, field_name) != value:
                    setattr(txn, field_name, value)
                    changed = True
            if txn.category is None and row.category is not None:
                txn.category = row.category
                txn.categorized_at = now
                changed = True
            if txn.removed_at is not None:
                txn.removed_at = None
                changed = True

            if changed:
                txn.updated_at = now
                updated += 1
            else:
                unchanged += 1

        session.flush()
        return SaveOutcome(inserted=inserted, updated=updated, unchanged=unchanged)

    def _remove_rows(
        self,
        session: Session,
        transaction_ids: Sequence[str],
        policy: RemovalPolicy,
    ) -> int:
        if not transaction_ids:
            return 0
        ids = list(dict.fromkeys(transaction_ids))

        live_ids = [
            row[0]
            for row in session.query(Transaction.transaction_id)
            .filter(
                Transaction.transaction_id.in_(ids),
                Transaction.removed_at.is_(None),
            )
            .all()
        ]

        if policy == "hard":
            session.query(TransactionBudget).filter(
                TransactionBudget.transaction_id.in_(ids)
            ).delete(synchronize_session=False)
            return session.query(Transaction).filter(
                Transaction.transaction_id.in_(ids)
            ).delete(synchronize_session=False)

        if not live_ids:
            return 0
        session.query(TransactionBudget).filter(
            TransactionBudget.transaction_id.in_(live_ids)
        ).delete(synchronize_session=False)
        now = _utcnow()
        session.query(Transaction).filter(
            Transaction.transaction_id.in_(live_ids)
        ).update(
            {Transaction.removed_at: now, Transaction.updated_at: now},
            synchronize_session=False,
        )
        return len(live_ids)

    def get_transactions_by_ids(
        self, transaction_ids: Sequence[str]
    ) -> list[Transaction]:
        """Fetch live transactions by id, preserving input order.

        Unknown and removed ids are skipped.
        """
        if not transaction_ids:
            return []
        with self.session() as session:  # type: Session
            txns = (
                session.query(Transaction)
                .filter(
                    Transaction.transaction_id.in_(list(transaction_ids)),
                    Transaction.removed_at.is_(None),
                )
                .all()
            )
            for txn in txns:
                session.expunge(txn)
        txn_map = {txn.transaction_id: txn for txn in txns}
        return [
            txn_map[txn_id]
            for txn_id in dict.fromkeys(transaction_ids)
            if txn_id in txn_map
        ]

    def find_categorized_ids(self, transaction_ids: Sequence[str]) -> set[str]:
        """Subset of ids that already carry a category."""
        if not transaction_ids:
            return set()
        with self.session() as session:  # type: Session
            rows = (
                session.query(Transaction.transaction_id)
                .filter(
                    Transaction.transaction_id.in_(list(transaction_ids)),
                    Transaction.category.is_not(None),
                )
                .all()
            )
            return {row[0] for row in rows}

    def list_transactions(
        self,
        user_id: str,
        *,
        start: date | None = None,
        end: date | None = None,
        uncategorized_only: bool = False,
    ) -> list[Transaction]:
        """Live transactions for a user, oldest first.

        Args:
            user_id: Owner
            start: Inclusive lower bound on ``posted_on``
            end: Inclusive upper bound on ``posted_on``
            uncategorized_only: Only rows still lacking a category
        """
        with self.session() as session:  # type: Session
            query = session.query(Transaction).filter(
                Transaction.user_id == user_id,
                Transaction.removed_at.is_(None),
            )
            if start is not None:
                query = query.filter(Transaction.posted_on >= start)
            if end is not None:
                query = query.filter(Transaction.posted_on <= end)
            if uncategorized_only:
                query = query.filter(Transaction.category.is_(None))
            txns = query.order_by(
                Transaction.posted_on, Transaction.transaction_id
            ).all()
            for txn in txns:
                session.expunge(txn)
            return txns

    def list_budget_transactions(
        self, user_id: str, budget_id: str, start: date, end: date
    ) -> list[Transaction]:
        """Live transactions carrying ``budget_id`` posted within [start, end]."""
        with self.session() as session:  # type: Session
            txns = (
                session.query(Transaction)
                .join(
                    TransactionBudget,
                    TransactionBudget.transaction_id == Transaction.transaction_id,
                )
                .filter(
                    TransactionBudget.budget_id == budget_id,
                    Transaction.user_id == user_id,
                    Transaction.removed_at.is_(None),
                    Transaction.posted_on >= start,
                    Transaction.posted_on <= end,
                )
                .order_by(Transaction.posted_on.desc(), Transaction.transaction_id)
                .all()
            )
            for txn in txns:
                session.expunge(txn)
            return txns

    def update_transaction_categories(self, assignments: Mapping[str, str]) -> int:
        """Replace categories from a classification pass.

        This is the only write path allowed to overwrite an assigned category.

        Returns:
            Number of transactions updated
        """
        if not assignments:
            return 0
        now = _utcnow()
        with self.session() as session:  # type: Session
            txns = (
                session.query(Transaction)
                .filter(
                    Transaction.transaction_id.in_(list(assignments)),
                    Transaction.removed_at.is_(None),
                )
                .all()
            )
            for txn in txns:
                txn.category = assignments[txn.transaction_id]
                txn.categorized_at = now
                txn.updated_at = now
            return len(txns)

    def get_budget_ids(self, transaction_ids: Sequence[str]) -> dict[str, set[str]]:
        """Budget association set per transaction id (empty set if none)."""
        result: dict[str, set[str]] = {txn_id: set() for txn_id in transaction_ids}
        if not result:
            return result
        with self.session() as session:  # type: Session
            rows = (
                session.query(
                    TransactionBudget.transaction_id, TransactionBudget.budget_id
                )
                .filter(TransactionBudget.transaction_id.in_(list(result)))
                .all()
            )
        for txn_id, budget_id in rows:
            result[txn_id].add(budget_id)
        return result

    def apply_budget_matches(
        self,
        budget_id: str,
        *,
        matched_ids: Iterable[str],
        evaluated_ids: Iterable[str],
    ) -> BudgetMatchOutcome:
        """Add ``budget_id`` to matched rows and drop it from unmatched ones.

        Only this budget's associations change; other budgets' links on the
        same transactions are untouched. Existing pairs are skipped, so
        repeated passes never duplicate.

        Args:
            budget_id: Budget whose association is being updated
            matched_ids: Transactions the classifier matched to the budget
            evaluated_ids: Every transaction that was evaluated in this pass

        Returns:
            BudgetMatchOutcome with links added and removed
        """
        matched = set(matched_ids)
        unmatched = set(evaluated_ids) - matched

        with self.session() as session:  # type: Session
            added = 0
            if matched:
                live = {
                    row[0]
                    for row in session.query(Transaction.transaction_id)
                    .filter(
                        Transaction.transaction_id.in_(list(matched)),
                        Transaction.removed_at.is_(None),
                    )
                    .all()
                }
                linked = {
                    row[0]
                    for row in session.query(TransactionBudget.transaction_id)
                    .filter(
                        TransactionBudget.budget_id == budget_id,
                        TransactionBudget.transaction_id.in_(list(live)),
                    )
                    .all()
                }
                for txn_id in sorted(live - linked):
                    session.add(
                        TransactionBudget(transaction_id=txn_id, budget_id=budget_id)
                    )
                    added += 1

            removed = 0
            if unmatched:
                removed = (
                    session.query(TransactionBudget)
                    .filter(
                        TransactionBudget.budget_id == budget_id,
                        TransactionBudget.transaction_id.in_(list(unmatched)),
                    )
                    .delete(synchronize_session=False)
                )

            return BudgetMatchOutcome(added=added, removed=removed)

    # ------------------------------------------------------------------
    # Budgets
    # ------------------------------------------------------------------

    def create_budget(
        self,
        *,
        user_id: str,
        title: str,
        filter_prompt: str,
        amount_cents: int,
        period: str,
        rolling_days: int | None = None,
        anchor_date: date | None = None,
    ) -> Budget:
        with self.session() as session:  # type: Session
            budget = Budget(
                budget_id=uuid.uuid4().hex,
                user_id=user_id,
                title=title,
                filter_prompt=filter_prompt,
                amount_cents=amount_cents,
                period=period,
                rolling_days=rolling_days,
                anchor_date=anchor_date,
                processing_status="processing",
            )
            session.add(budget)
            session.flush()
            session.refresh(budget)
            session.expunge(budget)
            return budget

    def update_budget(
        self, user_id: str, budget_id: str, changes: Mapping[str, Any]
    ) -> Budget:
        """Apply field changes and reset the budget to ``processing``."""
        unknown = set(changes) - _BUDGET_UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown budget fields: {sorted(unknown)}")
        with self.session() as session:  # type: Session
            budget = self._require_budget(session, user_id, budget_id)
            for field_name, value in changes.items():
                setattr(budget, field_name, value)
            budget.processing_status = "processing"
            budget.processing_error = None
            budget.updated_at = _utcnow()
            session.flush()
            session.refresh(budget)
            session.expunge(budget)
            return budget

    def get_budget(self, user_id: str, budget_id: str) -> Budget | None:
        with self.session() as session:  # type: Session
            budget = (
                session.query(Budget)
                .filter(Budget.budget_id == budget_id, Budget.user_id == user_id)
                .first()
            )
            if budget is not None:
                session.expunge(budget)
            return budget

    def list_budgets(self, user_id: str) -> list[Budget]:
        with self.session() as session:  # type: Session
            budgets = (
                session.query(Budget)
                .filter(Budget.user_id == user_id)
                .order_by(Budget.created_at, Budget.budget_id)
                .all()
            )
            for budget in budgets:
                session.expunge(budget)
            return budgets

    def delete_budget(self, user_id: str, budget_id: str) -> bool:
        """Delete a budget and its associations. Returns False if missing."""
        with self.session() as session:  # type: Session
            budget = (
                session.query(Budget)
                .filter(Budget.budget_id == budget_id, Budget.user_id == user_id)
                .first()
            )
            if budget is None:
                return False
            session.query(TransactionBudget).filter(
                TransactionBudget.budget_id == budget_id
            ).delete(synchronize_session=False)
            session.delete(budget)
            return True

    def set_budget_status(
        self, budget_id: str, status: str, error: str | None = None
    ) -> None:
        with self.session() as session:  # type: Session
            budget = session.get(Budget, budget_id)
            if budget is None:
                raise NotFoundError(f"Budget {budget_id} not found")
            budget.processing_status = status
            budget.processing_error = error
            budget.updated_at = _utcnow()

    def _require_budget(self, session: Session, user_id: str, budget_id: str) -> Budget:
        budget = (
            session.query(Budget)
            .filter(Budget.budget_id == budget_id, Budget.user_id == user_id)
            .first()
        )
        if budget is None:
            raise NotFoundError(f"Budget {budget_id} not found for user {user_id}")
        return budget

    # ------------------------------------------------------------------
    # Categorization rules
    # ------------------------------------------------------------------

    def get_rules(self, user_id: str) -> str | None:
        with self.session() as session:  # type: Session
            rules = session.get(CategorizationRules, user_id)
            return rules.rules_text if rules is not None else None

    def save_rules(self, user_id: str, rules_text: str) -> None:
        with self.session() as session:  # type: Session
            rules = session.get(CategorizationRules, user_id)
            if rules is None:
                session.add(CategorizationRules(user_id=user_id, rules_text=rules_text))
            else:
                rules.rules_text = rules_text
                rules.updated_at = _utcnow()
