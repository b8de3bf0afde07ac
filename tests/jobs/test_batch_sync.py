from __future__ import annotations

import asyncio

import pytest

from finsync.adapters.db.facade import DB
from finsync.adapters.db.models import Connection
from finsync.errors import FeedError, FinsyncError
from finsync.jobs.batch_sync import BatchSyncDriver, default_sync_fn
from finsync.services.sync.connection_sync import ConnectionSyncResult


def create_db() -> DB:
    """Create in-memory database instance."""
    db = DB("sqlite:///:memory:")
    db.create_schema()
    for connection_id, user_id, environment in [
        ("conn_a1", "user_a", "production"),
        ("conn_a2", "user_a", "production"),
        ("conn_b1", "user_b", "production"),
        ("conn_c1", "user_c", "sandbox"),
        ("conn_x1", "user_ignored", "production"),
    ]:
        db.upsert_connection(
            connection_id=connection_id,
            user_id=user_id,
            credential_handle=f"access-{connection_id}",
            environment=environment,
        )
    return db


class MockSyncFn:
    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.calls: list[tuple[str, str]] = []

    async def __call__(self, user_id: str, connection: Connection) -> object:
        self.calls.append((user_id, connection.connection_id))
        if connection.connection_id in self.failing:
            raise FeedError(f"{connection.connection_id} is broken")
        return None


class MockCoordinator:
    def __init__(self, status: str) -> None:
        self.status = status

    async def sync_connection(
        self, connection_id: str, user_id: str, credential: str
    ) -> ConnectionSyncResult:
        return ConnectionSyncResult(
            connection_id=connection_id,
            status=self.status,
            accounts_refreshed=True,
            error=None if self.status == "active" else "every account failed",
        )


def test_sync_all_users_in_environment_skips_ignored() -> None:
    # input
    db = create_db()
    sync_fn = MockSyncFn()
    driver = BatchSyncDriver(db, ignored_user_ids=["user_ignored"])

    # act
    output = asyncio.run(driver.sync_all_users("production", sync_fn))

    # assert
    assert output.ok
    assert output.users_total == 2
    assert output.users_skipped == 1
    assert output.users_succeeded == 2
    assert output.connections_synced == 3
    assert sync_fn.calls == [
        ("user_a", "conn_a1"),
        ("user_a", "conn_a2"),
        ("user_b", "conn_b1"),
    ]


def test_user_failure_is_isolated_and_remaining_connections_still_run() -> None:
    # input
    db = create_db()
    sync_fn = MockSyncFn(failing={"conn_a1"})
    driver = BatchSyncDriver(db)

    # act
    output = asyncio.run(driver.sync_all_users(None, sync_fn))

    # assert
    assert not output.ok
    assert output.users_total == 4
    assert output.users_failed == 1
    assert output.users_succeeded == 3
    assert output.errors == {"user_a": "conn_a1 is broken"}
    assert ("user_a", "conn_a2") in sync_fn.calls
    assert output.connections_synced == 3


def test_no_users_is_a_successful_empty_run() -> None:
    # input
    db = DB("sqlite:///:memory:")
    db.create_schema()

    # act
    output = asyncio.run(BatchSyncDriver(db).sync_all_users("sandbox", MockSyncFn()))

    # assert
    assert output.ok
    assert output.users_total == 0
    assert output.duration_seconds >= 0


def test_default_sync_fn_raises_for_failed_connection() -> None:
    # input
    db = create_db()
    connection = db.get_connection("conn_b1")
    assert connection is not None

    # act
    ok_fn = default_sync_fn(MockCoordinator("active"))  # type: ignore[arg-type]
    failing_fn = default_sync_fn(MockCoordinator("error"))  # type: ignore[arg-type]
    output = asyncio.run(ok_fn("user_b", connection))

    # assert
    assert isinstance(output, ConnectionSyncResult)
    with pytest.raises(FinsyncError, match="every account failed"):
        asyncio.run(failing_fn("user_b", connection))
