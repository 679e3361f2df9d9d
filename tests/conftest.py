"""
Test fixtures for deliberai tests.

Provides an in-memory store, an in-memory SQLite engine, a controllable
clock for breaker timing, a scripted inference client, an inference API
served from httpx.MockTransport, and record generators.
"""

import pytest
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Generator, List, Optional

import httpx
from sqlmodel import SQLModel, create_engine
from sqlalchemy.pool import StaticPool

from deliberai.core.circuit_breaker import PersistedCircuitBreaker, set_notification_callback
from deliberai.core.store import InMemoryStore, SQLModelStore
from deliberai.db import create_db_and_tables
from deliberai.services.call_executor import ResilientCallExecutor
from deliberai.services.inference_client import InferenceClient

# Use in-memory SQLite for unit tests (fast, isolated)
TEST_DATABASE_URL = "sqlite://"

START_TIME = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = START_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeInferenceClient:
    """
    Scripted stand-in for InferenceClient.

    Each queued result is returned (or raised, if it is an exception) by the
    next call; when the queue is empty the default is used.
    """

    def __init__(self):
        self.chat_results: List[Any] = []
        self.embed_results: List[Any] = []
        self.chat_calls: List[Dict[str, Any]] = []
        self.embed_calls: List[str] = []
        self.default_chat = "[]"
        self.default_embedding = [0.1, 0.2, 0.3]

    async def chat(self, messages, max_tokens=None, temperature=None, json_object=False) -> str:
        self.chat_calls.append({"messages": messages, "json_object": json_object})
        result = self.chat_results.pop(0) if self.chat_results else self.default_chat
        if isinstance(result, Exception):
            raise result
        return result

    async def embed(self, text: str) -> List[float]:
        self.embed_calls.append(text)
        result = self.embed_results.pop(0) if self.embed_results else self.default_embedding
        if isinstance(result, Exception):
            raise result
        return result

    async def aclose(self) -> None:
        pass


class MockInferenceAPI:
    """OpenAI-compatible API answered by a handler; records every request."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.handler = handler
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def client(self) -> InferenceClient:
        return InferenceClient(
            api_key="sk-test",
            base_url="https://inference.test/v1",
            timeout_seconds=5.0,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(self)),
        )

    @staticmethod
    def chat_completion(content: Optional[str]) -> Dict[str, Any]:
        return {
            "id": "chatcmpl-1",
            "object": "chat.completion",
            "created": 1700000000,
            "model": "gpt-4o-mini",
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": content},
                    "finish_reason": "stop",
                }
            ],
        }

    @staticmethod
    def embedding(vector: List[float]) -> Dict[str, Any]:
        return {
            "object": "list",
            "data": [{"object": "embedding", "index": 0, "embedding": vector}],
            "model": "text-embedding-3-small",
            "usage": {"prompt_tokens": 3, "total_tokens": 3},
        }


@pytest.fixture(autouse=True)
def clear_breaker_callback() -> Generator[None, None, None]:
    """Breaker notifications are process-global; never leak them between tests."""
    yield
    set_notification_callback(None)


@pytest.fixture
def start_time() -> datetime:
    """Fixed UTC instant the fake clock and record timestamps start from."""
    return START_TIME


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def breaker(memory_store, clock) -> PersistedCircuitBreaker:
    return PersistedCircuitBreaker(memory_store, failure_threshold=3, cooldown_seconds=60.0, clock=clock)


@pytest.fixture
def executor(breaker) -> ResilientCallExecutor:
    return ResilientCallExecutor(breaker, timeout_seconds=5.0)


@pytest.fixture
def fake_client() -> FakeInferenceClient:
    return FakeInferenceClient()


@pytest.fixture
def inference_api():
    """Factory: inference_api(handler) -> MockInferenceAPI."""
    return MockInferenceAPI


@pytest.fixture(name="test_engine")
def test_engine_fixture():
    """Create a fresh in-memory SQLite engine for each test."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_db_and_tables(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def sql_store(test_engine) -> SQLModelStore:
    return SQLModelStore(test_engine)


@pytest.fixture
def make_node(start_time):
    """
    IBIS node record generator; larger `minutes` means newer.

    Usage: make_node("n1", "Rent control", "position", minutes=2)
    """

    def _make(node_id: str, title: str, node_type: str = "issue", deliberation_id: str = "d1", minutes: int = 0, **extra):
        created = start_time + timedelta(minutes=minutes)
        return {
            "id": node_id,
            "deliberation_id": deliberation_id,
            "node_type": node_type,
            "title": title,
            "description": f"About {title.lower()}",
            "embedding": None,
            "created_at": created,
            "updated_at": created,
            **extra,
        }

    return _make


@pytest.fixture
def make_knowledge(start_time):
    """Agent knowledge chunk generator; larger `minutes` means newer."""

    def _make(record_id: str, minutes: int = 0, agent_id: str = "a1", title="Doc", content="Body", embedding=None):
        return {
            "id": record_id,
            "agent_id": agent_id,
            "title": title,
            "content": content,
            "file_name": f"{record_id}.pdf",
            "embedding": embedding,
            "created_at": start_time + timedelta(minutes=minutes),
        }

    return _make
