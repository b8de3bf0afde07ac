from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from finsync.errors import SyncInProgressError


class AccountLockRegistry:
    """One ``asyncio.Lock`` per account id, created on first use.

    Process-local: deployments with several worker processes must partition
    accounts so each account is only ever synced by one process.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock

    def is_locked(self, account_id: str) -> bool:
        lock = self._locks.get(account_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, account_id: str, *, wait: bool = True) -> AsyncIterator[None]:
        """Hold the account's lock for the duration of the block.

        Args:
            account_id: Account to lock
            wait: Queue behind a running sync; when False, raise instead

        Raises:
            SyncInProgressError: ``wait`` is False and the lock is held
        """
        lock = self._lock_for(account_id)
        if not wait and lock.locked():
            raise SyncInProgressError(account_id)
        async with lock:
            yield
