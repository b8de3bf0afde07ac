"""Account and connection sync package."""

from finsync.services.sync.account_sync import (
    AccountSyncOrchestrator,
    AccountSyncResult,
)
from finsync.services.sync.connection_sync import (
    ConnectionSyncCoordinator,
    ConnectionSyncResult,
)
from finsync.services.sync.locks import AccountLockRegistry

__all__ = [
    # Per-account sync
    "AccountSyncOrchestrator",
    "AccountSyncResult",
    "AccountLockRegistry",
    # Per-connection sync
    "ConnectionSyncCoordinator",
    "ConnectionSyncResult",
]
