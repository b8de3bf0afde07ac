from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
import json
import os
from typing import Any, TypeVar

import loguru
from loguru import logger
from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, ValidationError

from finsync.adapters.classifier.protocol import (
    BudgetMatch,
    CategoryAssignment,
    ClassifiableTransaction,
)
from finsync.errors import ClassifierError
from finsync.prompts.loader import PromptLoadError, load_finsync_prompt, render_prompt

BATCH_SIZE = 50

T = TypeVar("T")


class CategoryResult(BaseModel):
    id: str
    category: str


class CategoryResponse(BaseModel):
    results: list[CategoryResult]


class MatchResult(BaseModel):
    id: str
    matches: bool


class MatchResponse(BaseModel):
    results: list[MatchResult]


class ClassifierLogger:
    """Handles all logging for the classifier gateway."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def batch_start(self, task: str, total: int, num_batches: int) -> None:
        self._logger.bind(task=task, transaction_count=total).info(
            "Running {} for {} transactions in {} batches", task, total, num_batches
        )

    def api_call(self, task: str, batch_idx: int, size: int) -> None:
        self._logger.bind(task=task, batch_idx=batch_idx).debug(
            "Calling OpenAI API for {} batch {} ({} transactions)",
            task,
            batch_idx,
            size,
        )

    def unknown_ids(self, task: str, count: int) -> None:
        self._logger.bind(task=task).warning(
            "Dropped {} {} results with ids not in the request", count, task
        )


class OpenAIClassifierGateway:
    """``ClassifierGateway`` backed by the OpenAI Responses API.

    Transactions are sent in batches of ``batch_size``; batches run
    concurrently, limited by ``max_concurrency``. Every call is bounded by
    ``timeout_seconds``.
    """

    def __init__(
        self,
        *,
        model: str = "gpt-5.2",
        client: Any | None = None,
        batch_size: int = BATCH_SIZE,
        max_concurrency: int = 4,
        timeout_seconds: float = 120.0,
        categorize_prompt_key: str = "categorize-transactions",
        match_prompt_key: str = "match-budget",
    ) -> None:
        self._model = model
        self._batch_size = batch_size
        self._max_concurrency = max_concurrency
        self._timeout_seconds = timeout_seconds
        self._categorize_prompt_key = categorize_prompt_key
        self._match_prompt_key = match_prompt_key
        self._semaphore: asyncio.Semaphore | None = None
        self._logger = ClassifierLogger()

        if client is None:
            api_key = os.environ.get("OPENAI_API_KEY", "").strip()
            if not api_key:
                raise ClassifierError("OPENAI_API_KEY is required to call OpenAI.")
            client = AsyncOpenAI(api_key=api_key)
        self._client = client

    async def classify(
        self,
        transactions: Sequence[ClassifiableTransaction],
        rules_text: str | None = None,
    ) -> list[CategoryAssignment]:
        template = self._load_template(self._categorize_prompt_key)
        rules = rules_text.strip() if rules_text and rules_text.strip() else "(none)"

        async def run(batch: list[ClassifiableTransaction]) -> list[CategoryAssignment]:
            prompt = render_prompt(
                template,
                RULES=rules,
                TRANSACTIONS_JSON=self._format_transactions(batch),
            )
            text = await self._call_openai_api(
                prompt, schema=_category_schema(), name="categorization"
            )
            response = _parse(CategoryResponse, text)
            results = self._known(
                "classify", batch, [(r.id, r.category) for r in response.results]
            )
            return [CategoryAssignment(id=i, category=c) for i, c in results]

        return await self._run_batches("classify", list(transactions), run)

    async def match_budget(
        self,
        transactions: Sequence[ClassifiableTransaction],
        filter_text: str,
    ) -> list[BudgetMatch]:
        template = self._load_template(self._match_prompt_key)

        async def run(batch: list[ClassifiableTransaction]) -> list[BudgetMatch]:
            prompt = render_prompt(
                template,
                FILTER=filter_text,
                TRANSACTIONS_JSON=self._format_transactions(batch),
            )
            text = await self._call_openai_api(
                prompt, schema=_match_schema(), name="budget_match"
            )
            response = _parse(MatchResponse, text)
            results = self._known(
                "match_budget", batch, [(r.id, r.matches) for r in response.results]
            )
            return [BudgetMatch(id=i, matches=m) for i, m in results]

        return await self._run_batches("match_budget", list(transactions), run)

    async def _run_batches(
        self,
        task: str,
        txns: list[ClassifiableTransaction],
        run: Callable[[list[ClassifiableTransaction]], Awaitable[list[T]]],
    ) -> list[T]:
        if not txns:
            return []

        # Initialize semaphore lazily (requires event loop)
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self._max_concurrency)

        batches = [
            txns[i : i + self._batch_size]
            for i in range(0, len(txns), self._batch_size)
        ]
        self._logger.batch_start(task, len(txns), len(batches))

        async def guarded(idx: int, batch: list[ClassifiableTransaction]) -> list[T]:
            assert self._semaphore is not None
            async with self._semaphore:
                self._logger.api_call(task, idx, len(batch))
                return await run(batch)

        batch_results = await asyncio.gather(
            *(guarded(idx, batch) for idx, batch in enumerate(batches))
        )
        return [item for result in batch_results for item in result]

    def _load_template(self, key: str) -> str:
        try:
            return load_finsync_prompt(key)
        except PromptLoadError as e:
            raise ClassifierError(f"Could not load prompt {key!r}: {e}") from e

    def _format_transactions(self, txns: list[ClassifiableTransaction]) -> str:
        payload = [
            {
                "id": txn.id,
                "description": txn.name,
                "merchant": txn.merchant_name,
                "amount": txn.amount,
                "date": txn.date,
                "category": txn.category or txn.provider_category,
            }
            for txn in txns
        ]
        return json.dumps(payload, ensure_ascii=False, indent=2)

    async def _call_openai_api(
        self, prompt: str, *, schema: dict[str, object], name: str
    ) -> str:
        """Call the Responses API with a strict JSON schema output format."""
        extra_body = {
            "text": {
                "format": {
                    "type": "json_schema",
                    "name": name,
                    "schema": schema,
                    "strict": True,
                }
            }
        }
        try:
            resp = await asyncio.wait_for(
                self._client.responses.create(
                    model=self._model,
                    input=prompt,
                    extra_body=extra_body,
                ),
                timeout=self._timeout_seconds,
            )
        except TimeoutError as e:
            raise ClassifierError(
                f"OpenAI call timed out after {self._timeout_seconds}s"
            ) from e
        except OpenAIError as e:
            raise ClassifierError(f"OpenAI API error: {e}") from e

        response_text: str | None = getattr(resp, "output_text", None)
        if not response_text:
            raise ClassifierError("OpenAI response contained no output text")
        return response_text

    def _known(
        self,
        task: str,
        batch: list[ClassifiableTransaction],
        results: list[tuple[str, T]],
    ) -> list[tuple[str, T]]:
        requested = {txn.id for txn in batch}
        known = [(txn_id, value) for txn_id, value in results if txn_id in requested]
        if len(known) != len(results):
            self._logger.unknown_ids(task, len(results) - len(known))
        return known


ResponseModel = TypeVar("ResponseModel", bound=BaseModel)


def _parse(model: type[ResponseModel], response_text: str) -> ResponseModel:
    """Parse the JSON object embedded in a model response."""
    start = response_text.find("{")
    end = response_text.rfind("}") + 1
    if start == -1 or end == 0:
        raise ClassifierError(f"Could not find JSON in response: {response_text[:200]}")
    try:
        return model.model_validate_json(response_text[start:end])
    except ValidationError as e:
        raise ClassifierError(f"Failed to parse classifier response: {e}") from e


def _category_schema() -> dict[str, object]:
    return _results_schema(
        {"id": {"type": "string"}, "category": {"type": "string"}}
    )


def _match_schema() -> dict[str, object]:
    return _results_schema({"id": {"type": "string"}, "matches": {"type": "boolean"}})


def _results_schema(item_properties: dict[str, object]) -> dict[str, object]:
    """Wrap per-item properties in the ``{"results": [...]}`` envelope.

    The Responses API requires an object at the top level.
    """
    return {
        "type": "object",
        "properties": {
            "results": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": item_properties,
                    "required": list(item_properties),
                    "additionalProperties": False,
                },
            },
        },
        "required": ["results"],
        "additionalProperties": False,
    }
