from __future__ import annotations

from dataclasses import dataclass, field
import os
from typing import Literal

from finsync.errors import ConfigurationError

PlaidEnv = Literal["sandbox", "development", "production"]
RemovalPolicy = Literal["soft", "hard"]

MAX_PAGE_SIZE = 500


@dataclass(frozen=True, slots=True)
class SyncConfig:
    """Engine configuration loaded at process startup."""

    database_url: str = "sqlite:///finsync.db"
    plaid_env: PlaidEnv = "sandbox"
    page_size: int = MAX_PAGE_SIZE
    feed_timeout_seconds: float = 30.0
    classifier_timeout_seconds: float = 120.0
    max_parallel_accounts: int = 1
    removal_policy: RemovalPolicy = "soft"
    job_workers: int = 2
    job_queue_size: int = 100
    classifier_model: str = "gpt-5.2"
    ignored_user_ids: frozenset[str] = field(default_factory=frozenset)
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not 1 <= self.page_size <= MAX_PAGE_SIZE:
            raise ConfigurationError(
                f"page_size must be between 1 and {MAX_PAGE_SIZE}, "
                f"got {self.page_size}"
            )
        if self.feed_timeout_seconds <= 0 or self.classifier_timeout_seconds <= 0:
            raise ConfigurationError("Timeouts must be positive")
        if self.max_parallel_accounts < 1:
            raise ConfigurationError("max_parallel_accounts must be at least 1")
        if self.job_workers < 1 or self.job_queue_size < 1:
            raise ConfigurationError("job_workers and job_queue_size must be >= 1")


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def load_sync_config_from_env() -> SyncConfig:
    """Load engine config from env and validate it."""
    plaid_env = os.environ.get("PLAID_ENV", "sandbox").strip().lower()
    if plaid_env not in {"sandbox", "development", "production"}:
        raise ConfigurationError(
            "PLAID_ENV must be one of: sandbox, development, production"
        )

    removal_policy = os.environ.get("FINSYNC_REMOVAL_POLICY", "soft").strip().lower()
    if removal_policy not in {"soft", "hard"}:
        raise ConfigurationError("FINSYNC_REMOVAL_POLICY must be one of: soft, hard")

    ignored = frozenset(
        user_id.strip()
        for user_id in os.environ.get("CRON_IGNORE_USER_IDS", "").split(",")
        if user_id.strip()
    )

    return SyncConfig(
        database_url=os.environ.get("DATABASE_URL", "sqlite:///finsync.db").strip(),
        plaid_env=plaid_env,  # type: ignore[arg-type]
        page_size=_int_env("FINSYNC_PAGE_SIZE", MAX_PAGE_SIZE),
        feed_timeout_seconds=_float_env("FINSYNC_FEED_TIMEOUT_SECONDS", 30.0),
        classifier_timeout_seconds=_float_env(
            "FINSYNC_CLASSIFIER_TIMEOUT_SECONDS", 120.0
        ),
        max_parallel_accounts=_int_env("FINSYNC_MAX_PARALLEL_ACCOUNTS", 1),
        removal_policy=removal_policy,  # type: ignore[arg-type]
        job_workers=_int_env("FINSYNC_JOB_WORKERS", 2),
        job_queue_size=_int_env("FINSYNC_JOB_QUEUE_SIZE", 100),
        classifier_model=os.environ.get(
            "FINSYNC_CLASSIFIER_MODEL", "gpt-5.2"
        ).strip(),
        ignored_user_ids=ignored,
        log_level=os.environ.get("FINSYNC_LOG_LEVEL", "INFO").strip().upper(),
    )
