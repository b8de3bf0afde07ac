"""Error taxonomy shared by the sync and labeling engine."""

from __future__ import annotations


class FinsyncError(Exception):
    """Base error for finsync failures."""


class FeedError(FinsyncError):
    """Provider or network failure while fetching a page or account list."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class ClassifierError(FinsyncError):
    """Classifier gateway failure (API, timeout or unparseable response)."""


class PersistenceError(FinsyncError):
    """Storage failure. Fatal for the account sync that hit it."""


class InvalidSyncTransitionError(PersistenceError):
    """Raised when a sync state change violates the state machine."""

    def __init__(self, account_id: str, current: str, target: str) -> None:
        super().__init__(
            f"Invalid sync transition for account {account_id}: "
            f"{current} -> {target}"
        )
        self.account_id = account_id
        self.current = current
        self.target = target


class NotFoundError(PersistenceError):
    """Referenced row does not exist."""


class ConfigurationError(FinsyncError):
    """Invalid or missing configuration. Never retried."""


class SyncInProgressError(FinsyncError):
    """Another sync already holds the account."""

    def __init__(self, account_id: str) -> None:
        super().__init__(f"Sync already in progress for account {account_id}")
        self.account_id = account_id


class JobQueueFullError(FinsyncError):
    """Background job queue is at capacity."""
