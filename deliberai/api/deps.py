from functools import lru_cache
from typing import AsyncIterator

from fastapi import Depends

from deliberai.core.config import settings
from deliberai.core.circuit_breaker import PersistedCircuitBreaker
from deliberai.core.store import SQLModelStore, Store
from deliberai.db import engine
from deliberai.services.call_executor import ResilientCallExecutor
from deliberai.services.embedding_backfill import EmbeddingBackfillWorker
from deliberai.services.inference_client import InferenceClient
from deliberai.services.issue_recommendations import IssueRecommender
from deliberai.services.prompt_resolver import PromptResolver, StoreTemplateStore
from deliberai.services.relationship_evaluator import RelationshipEvaluator


@lru_cache
def get_store() -> Store:
    return SQLModelStore(engine)


def get_breaker(store: Store = Depends(get_store)) -> PersistedCircuitBreaker:
    return PersistedCircuitBreaker(
        store,
        failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
        cooldown_seconds=settings.CIRCUIT_COOLDOWN_SECONDS,
    )


def get_executor(breaker: PersistedCircuitBreaker = Depends(get_breaker)) -> ResilientCallExecutor:
    return ResilientCallExecutor(breaker, timeout_seconds=settings.MODEL_TIMEOUT_SECONDS)


def get_prompt_resolver(store: Store = Depends(get_store)) -> PromptResolver:
    return PromptResolver(StoreTemplateStore(store))


async def get_inference_client() -> AsyncIterator[InferenceClient]:
    """
    Per-request inference client.

    Raises ConfigurationError when OPENAI_API_KEY is missing; the app answers
    that with a 500 before any work is done.
    """
    client = InferenceClient.from_settings(settings)
    try:
        yield client
    finally:
        await client.aclose()


def get_relationship_evaluator(
    store: Store = Depends(get_store),
    executor: ResilientCallExecutor = Depends(get_executor),
    prompts: PromptResolver = Depends(get_prompt_resolver),
    client: InferenceClient = Depends(get_inference_client),
) -> RelationshipEvaluator:
    return RelationshipEvaluator(store, executor, prompts, client, min_score=settings.MIN_SCORE)


def get_issue_recommender(
    store: Store = Depends(get_store),
    executor: ResilientCallExecutor = Depends(get_executor),
    prompts: PromptResolver = Depends(get_prompt_resolver),
    client: InferenceClient = Depends(get_inference_client),
) -> IssueRecommender:
    return IssueRecommender(store, executor, prompts, client, min_score=settings.MIN_SCORE)


def get_backfill_worker(
    store: Store = Depends(get_store),
    executor: ResilientCallExecutor = Depends(get_executor),
    client: InferenceClient = Depends(get_inference_client),
) -> EmbeddingBackfillWorker:
    return EmbeddingBackfillWorker(
        store,
        executor,
        client,
        max_records=settings.BACKFILL_MAX_RECORDS,
        call_delay_seconds=settings.BACKFILL_CALL_DELAY_SECONDS,
        batch_pause_seconds=settings.BACKFILL_BATCH_PAUSE_SECONDS,
        max_input_chars=settings.BACKFILL_MAX_INPUT_CHARS,
    )
