"""Batch sync across every user with linked connections."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
import time

import loguru
from loguru import logger

from finsync.adapters.db.facade import DB
from finsync.adapters.db.models import Connection
from finsync.errors import FinsyncError
from finsync.services.sync.connection_sync import ConnectionSyncCoordinator

SyncFn = Callable[[str, Connection], Awaitable[object]]


@dataclass
class BatchSyncResult:
    """Totals for one batch run."""

    environment: str | None
    users_total: int = 0
    users_succeeded: int = 0
    users_failed: int = 0
    users_skipped: int = 0
    connections_synced: int = 0
    errors: dict[str, str] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.users_failed == 0


class BatchSyncLogger:
    """Handles all logging for the batch sync driver."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def batch_start(self, environment: str | None, users: int, skipped: int) -> None:
        env_label = environment or "all"
        self._logger.bind(environment=env_label, users=users).info(
            "Starting batch sync for {} users in {} environment ({} ignored)",
            users,
            env_label,
            skipped,
        )

    def user_failed(self, user_id: str, error: Exception) -> None:
        self._logger.bind(user_id=user_id).error(
            "Batch sync failed for user {}: {}", user_id, error
        )

    def batch_complete(self, result: BatchSyncResult) -> None:
        self._logger.bind(
            succeeded=result.users_succeeded,
            failed=result.users_failed,
            duration=round(result.duration_seconds, 2),
        ).info(
            "Batch sync finished in {:.2f}s: {} users succeeded, {} failed, "
            "{} connections synced",
            result.duration_seconds,
            result.users_succeeded,
            result.users_failed,
            result.connections_synced,
        )


class BatchSyncDriver:
    """Runs ``sync_fn`` for every connection of every eligible user.

    A user's failure is logged and counted; the batch always continues and
    never exits the process.
    """

    def __init__(self, db: DB, *, ignored_user_ids: Iterable[str] = ()) -> None:
        self._db = db
        self._ignored_user_ids = frozenset(ignored_user_ids)
        self._logger = BatchSyncLogger()

    async def sync_all_users(
        self, environment: str | None, sync_fn: SyncFn
    ) -> BatchSyncResult:
        """Sync every user owning connections in ``environment``.

        Args:
            environment: Only connections in this environment; None for all
            sync_fn: Coroutine called as ``sync_fn(user_id, connection)``

        Returns:
            BatchSyncResult with totals and per-user error messages
        """
        started = time.monotonic()
        result = BatchSyncResult(environment=environment)

        user_ids = self._db.list_user_ids_with_connections(environment)
        eligible = [uid for uid in user_ids if uid not in self._ignored_user_ids]
        result.users_skipped = len(user_ids) - len(eligible)
        result.users_total = len(eligible)
        self._logger.batch_start(environment, len(eligible), result.users_skipped)

        for user_id in eligible:
            try:
                result.connections_synced += await self._sync_user(
                    user_id, environment, sync_fn
                )
            except Exception as e:  # noqa: BLE001
                self._logger.user_failed(user_id, e)
                result.users_failed += 1
                result.errors[user_id] = str(e) or type(e).__name__
            else:
                result.users_succeeded += 1

        result.duration_seconds = time.monotonic() - started
        self._logger.batch_complete(result)
        return result

    async def _sync_user(
        self, user_id: str, environment: str | None, sync_fn: SyncFn
    ) -> int:
        """Sync each of a user's connections; raise the first failure at the end."""
        connections = [
            conn
            for conn in self._db.list_connections(user_id)
            if environment is None or conn.environment == environment
        ]
        first_error: Exception | None = None
        synced = 0
        for connection in connections:
            try:
                await sync_fn(user_id, connection)
            except Exception as e:  # noqa: BLE001
                if first_error is None:
                    first_error = e
                continue
            synced += 1
        if first_error is not None:
            raise first_error
        return synced


def default_sync_fn(coordinator: ConnectionSyncCoordinator) -> SyncFn:
    """Build a ``sync_fn`` that runs the connection coordinator.

    A connection whose accounts all failed is reported as a failure.
    """

    async def sync_fn(user_id: str, connection: Connection) -> object:
        result = await coordinator.sync_connection(
            connection.connection_id, user_id, connection.credential_handle
        )
        if not result.ok:
            raise FinsyncError(
                f"Connection {connection.connection_id} failed: {result.error}"
            )
        return result

    return sync_fn
