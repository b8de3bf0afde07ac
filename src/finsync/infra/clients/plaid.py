from __future__ import annotations

import asyncio
import json
import os
from typing import Any, Self, cast
import urllib.error
import urllib.request

from pydantic import BaseModel, Field, ValidationError

from finsync.config import PlaidEnv
from finsync.errors import FeedError
from finsync.infra.clients.feed import FeedAccount, FeedPage, FeedTransaction

PLAID_ENV_MAP: dict[PlaidEnv, str] = {
    "sandbox": "https://sandbox.plaid.com",
    "development": "https://development.plaid.com",
    "production": "https://production.plaid.com",
}

MUTATION_DURING_PAGINATION = "TRANSACTIONS_SYNC_MUTATION_DURING_PAGINATION"


class PlaidBaseModel(BaseModel):
    """Shared base for Plaid response models with a short parse alias."""

    @classmethod
    def parse(cls, data: Any) -> Self:
        return cls.model_validate(data)


class PlaidBalances(PlaidBaseModel):
    current: float | None = None
    available: float | None = None
    iso_currency_code: str | None = None


class AccountsGetAccount(PlaidBaseModel):
    account_id: str
    name: str
    official_name: str | None = None
    subtype: str | None = None
    type: str | None = None
    balances: PlaidBalances = Field(default_factory=PlaidBalances)

    def to_feed(self) -> FeedAccount:
        return FeedAccount(
            account_id=self.account_id,
            name=self.name,
            official_name=self.official_name,
            type=self.type,
            subtype=self.subtype,
            current_balance=self.balances.current,
            available_balance=self.balances.available,
            iso_currency_code=self.balances.iso_currency_code,
        )


class AccountsGetResponse(PlaidBaseModel):
    accounts: list[AccountsGetAccount] = Field(default_factory=list)


class PlaidTransactionModel(PlaidBaseModel):
    transaction_id: str
    account_id: str
    amount: float
    iso_currency_code: str | None = None
    date: str
    name: str
    merchant_name: str | None = None
    pending: bool = False
    personal_finance_category: dict[str, Any] | None = None

    def to_feed(self) -> FeedTransaction:
        provider_category = None
        if self.personal_finance_category:
            provider_category = self.personal_finance_category.get("primary")
        return FeedTransaction(
            transaction_id=self.transaction_id,
            account_id=self.account_id,
            date=self.date,
            name=self.name,
            amount=self.amount,
            merchant_name=self.merchant_name,
            iso_currency_code=self.iso_currency_code,
            provider_category=provider_category,
            pending=self.pending,
        )


class RemovedTransactionModel(PlaidBaseModel):
    transaction_id: str


class TransactionsSyncResponse(PlaidBaseModel):
    added: list[PlaidTransactionModel] = Field(default_factory=list)
    modified: list[PlaidTransactionModel] = Field(default_factory=list)
    removed: list[RemovedTransactionModel] = Field(default_factory=list)
    next_cursor: str | None = None
    has_more: bool = False

    def to_page(self, *, fallback_cursor: str | None) -> FeedPage:
        return FeedPage(
            added=[txn.to_feed() for txn in self.added],
            modified=[txn.to_feed() for txn in self.modified],
            removed=[entry.transaction_id for entry in self.removed],
            next_cursor=self.next_cursor or fallback_cursor,
            has_more=self.has_more,
        )


class PlaidClient:
    """Blocking Plaid HTTP client covering the sync endpoints."""

    def __init__(
        self,
        *,
        client_id: str,
        secret: str,
        env: PlaidEnv = "sandbox",
        timeout_seconds: float = 30.0,
    ) -> None:
        self._client_id = client_id
        self._secret = secret
        self._env = env
        self._timeout_seconds = timeout_seconds

    @property
    def env(self) -> PlaidEnv:
        return self._env

    @classmethod
    def from_env(
        cls, env: PlaidEnv | None = None, *, timeout_seconds: float = 30.0
    ) -> PlaidClient:
        """Construct a PlaidClient from environment variables.

        Required:
        - PLAID_CLIENT_ID
        - PLAID_ENV (defaults to sandbox) unless ``env`` is given
        - PLAID_<ENV>_SECRET (e.g. PLAID_SANDBOX_SECRET)
        """
        env_str = (env or os.getenv("PLAID_ENV", "sandbox")).lower()
        if env_str not in PLAID_ENV_MAP:
            raise FeedError(
                f"Invalid PLAID_ENV={env_str!r}. "
                "Expected one of: sandbox, development, production."
            )
        plaid_env = cast(PlaidEnv, env_str)
        client_id = cls._getenv_or_die("PLAID_CLIENT_ID")
        secret = cls._getenv_or_die(f"PLAID_{plaid_env.upper()}_SECRET")
        return cls(
            client_id=client_id,
            secret=secret,
            env=plaid_env,
            timeout_seconds=timeout_seconds,
        )

    @staticmethod
    def _getenv_or_die(name: str) -> str:
        value = os.getenv(name)
        if not value:
            raise FeedError(f"Missing required environment variable: {name}")
        return value

    def _parse_json_response(self, body: str) -> dict[str, Any]:
        try:
            return cast(dict[str, Any], json.loads(body))
        except json.JSONDecodeError as e:
            raise FeedError(f"Failed to parse Plaid response as JSON: {e}") from e

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = PLAID_ENV_MAP[self._env] + path
        body = dict(payload, client_id=self._client_id, secret=self._secret)
        req = urllib.request.Request(  # noqa: S310
            url,
            data=json.dumps(body).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )

        try:
            with urllib.request.urlopen(  # noqa: S310 - external HTTPS
                req, timeout=self._timeout_seconds
            ) as resp:
                raw = resp.read().decode("utf-8")
        except urllib.error.HTTPError as e:  # pragma: no cover - network-dependent
            err_body = e.read().decode("utf-8", "ignore")
            raise FeedError(
                f"Plaid API error ({e.code}): {err_body}",
                code=_error_code(err_body),
            ) from e
        except (urllib.error.URLError, TimeoutError) as e:  # pragma: no cover
            raise FeedError(f"Network error calling Plaid API: {e}") from e

        return self._parse_json_response(raw)

    def sync_transactions(
        self,
        access_token: str,
        *,
        cursor: str | None = None,
        count: int = 500,
        account_id: str | None = None,
    ) -> FeedPage:
        """Thin wrapper around Plaid's /transactions/sync endpoint."""
        payload: dict[str, Any] = {"access_token": access_token, "count": count}
        if cursor is not None:
            payload["cursor"] = cursor
        if account_id is not None:
            payload["options"] = {"account_id": account_id}

        data = self._post("/transactions/sync", payload)
        try:
            resp = TransactionsSyncResponse.parse(data)
        except ValidationError as e:
            raise FeedError(f"Unexpected /transactions/sync payload: {e}") from e
        return resp.to_page(fallback_cursor=cursor)

    def get_accounts(self, access_token: str) -> list[FeedAccount]:
        data = self._post("/accounts/get", {"access_token": access_token})
        try:
            resp = AccountsGetResponse.parse(data)
        except ValidationError as e:
            raise FeedError(f"Unexpected /accounts/get payload: {e}") from e
        return [account.to_feed() for account in resp.accounts]


class PlaidFeed:
    """``PaginatedFeed`` backed by ``PlaidClient``.

    Blocking HTTP calls run in a worker thread, bounded by ``timeout_seconds``.
    """

    def __init__(self, client: PlaidClient, *, timeout_seconds: float = 30.0) -> None:
        self._client = client
        self._timeout_seconds = timeout_seconds

    async def fetch_page(
        self,
        credential: str,
        cursor: str | None,
        page_size: int,
        account_id: str | None = None,
    ) -> FeedPage:
        return await self._call(
            "transactions/sync",
            self._client.sync_transactions,
            credential,
            cursor=cursor,
            count=page_size,
            account_id=account_id,
        )

    async def list_accounts(self, credential: str) -> list[FeedAccount]:
        return await self._call("accounts/get", self._client.get_accounts, credential)

    async def _call(self, label: str, fn: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=self._timeout_seconds,
            )
        except TimeoutError as e:
            raise FeedError(
                f"Plaid {label} timed out after {self._timeout_seconds}s"
            ) from e


def _error_code(body: str) -> str | None:
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return None
    if isinstance(data, dict):
        code = data.get("error_code")
        return code if isinstance(code, str) else None
    return None
