from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import loguru
from loguru import logger

from finsync.adapters.db.facade import DB
from finsync.errors import PersistenceError
from finsync.infra.clients.feed import PaginatedFeed
from finsync.services.sync.account_sync import (
    AccountSyncOrchestrator,
    AccountSyncResult,
)


@dataclass
class ConnectionSyncResult:
    connection_id: str
    status: str
    accounts_refreshed: bool
    succeeded: list[AccountSyncResult] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "active"


class ConnectionSyncLogger:
    """Handles all logging for the connection sync coordinator."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def sync_start(self, connection_id: str, account_count: int) -> None:
        self._logger.bind(connection_id=connection_id, accounts=account_count).info(
            "Syncing connection {} ({} accounts)", connection_id, account_count
        )

    def refresh_failed(self, connection_id: str, error: Exception) -> None:
        self._logger.bind(connection_id=connection_id).warning(
            "Account refresh failed for connection {}, using stored accounts: {}",
            connection_id,
            error,
        )

    def account_failed(
        self, connection_id: str, account_id: str, error: Exception
    ) -> None:
        self._logger.bind(connection_id=connection_id, account_id=account_id).error(
            "Account {} failed during sync of connection {}: {}",
            account_id,
            connection_id,
            error,
        )

    def sync_complete(self, result: ConnectionSyncResult) -> None:
        self._logger.bind(
            connection_id=result.connection_id,
            succeeded=len(result.succeeded),
            failed=len(result.failed),
        ).info(
            "Connection {} finished with status {}: {} accounts synced, {} failed",
            result.connection_id,
            result.status,
            len(result.succeeded),
            len(result.failed),
        )

    def status_not_recorded(self, connection_id: str, error: Exception) -> None:
        self._logger.bind(connection_id=connection_id).error(
            "Could not record status for connection {}: {}", connection_id, error
        )

    def unexpected_error(self, connection_id: str, error: Exception) -> None:
        self._logger.bind(connection_id=connection_id).exception(
            "Unexpected error syncing connection {}: {}", connection_id, error
        )


class ConnectionSyncCoordinator:
    """Syncs every account of a connection, isolating account failures."""

    def __init__(
        self,
        db: DB,
        feed: PaginatedFeed,
        orchestrator: AccountSyncOrchestrator,
        *,
        max_parallel_accounts: int = 1,
    ) -> None:
        self._db = db
        self._feed = feed
        self._orchestrator = orchestrator
        self._max_parallel_accounts = max(1, max_parallel_accounts)
        self._logger = ConnectionSyncLogger()

    async def sync_connection(
        self, connection_id: str, user_id: str, credential: str
    ) -> ConnectionSyncResult:
        """Refresh accounts, then sync each one. Never raises.

        The connection ends ``active`` when at least one account synced (or
        there was nothing to sync) and ``error`` when every account failed.
        """
        try:
            return await self._sync_connection(connection_id, user_id, credential)
        except Exception as e:  # noqa: BLE001
            self._logger.unexpected_error(connection_id, e)
            message = str(e) or type(e).__name__
            self._set_status(connection_id, message)
            return ConnectionSyncResult(
                connection_id=connection_id,
                status="error",
                accounts_refreshed=False,
                error=message,
            )

    async def _sync_connection(
        self, connection_id: str, user_id: str, credential: str
    ) -> ConnectionSyncResult:
        refreshed = await self._refresh_accounts(connection_id, user_id, credential)

        accounts = self._db.list_accounts(connection_id)
        for account in accounts:
            self._db.ensure_sync_state(account.account_id)
        self._logger.sync_start(connection_id, len(accounts))

        result = ConnectionSyncResult(
            connection_id=connection_id,
            status="active",
            accounts_refreshed=refreshed,
        )
        semaphore = asyncio.Semaphore(self._max_parallel_accounts)

        async def run(account_id: str) -> None:
            async with semaphore:
                try:
                    synced = await self._orchestrator.sync_account(
                        account_id, credential, user_id, connection_id
                    )
                except Exception as e:  # noqa: BLE001
                    self._logger.account_failed(connection_id, account_id, e)
                    result.failed[account_id] = str(e) or type(e).__name__
                    result.error = result.failed[account_id]
                    return
                result.succeeded.append(synced)

        if self._max_parallel_accounts == 1:
            for account in accounts:
                await run(account.account_id)
        else:
            await asyncio.gather(*(run(account.account_id) for account in accounts))

        if accounts and not result.succeeded:
            result.status = "error"
            self._set_status(connection_id, result.error)
        else:
            self._set_status(connection_id, None)

        self._logger.sync_complete(result)
        return result

    async def _refresh_accounts(
        self, connection_id: str, user_id: str, credential: str
    ) -> bool:
        try:
            feed_accounts = await self._feed.list_accounts(credential)
            self._db.upsert_accounts(
                user_id=user_id, connection_id=connection_id, accounts=feed_accounts
            )
        except Exception as e:  # noqa: BLE001
            self._logger.refresh_failed(connection_id, e)
            self._set_status(connection_id, str(e) or type(e).__name__)
            return False
        return True

    def _set_status(self, connection_id: str, error: str | None) -> None:
        try:
            if error is None:
                self._db.mark_connection_active(connection_id)
            else:
                self._db.mark_connection_error(connection_id, error)
        except PersistenceError as e:
            self._logger.status_not_recorded(connection_id, e)
