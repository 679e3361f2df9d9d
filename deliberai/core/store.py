"""
Key-based persistence interface used by the inference core.

The core only needs four operations against named collections:

    get(collection, key)                      -> record | None
    upsert(collection, record)                -> record
    update(collection, key, patch)            -> record | None
    query(collection, filter, order, limit, fields) -> [record, ...]

Records are plain dicts keyed by "id". In a query filter, a value of None
means "IS NULL"; order is a field name, prefixed with "-" for descending;
fields, when given, limits the returned records to those keys.

Two implementations:
- InMemoryStore: dict-backed, for tests and local experiments
- SQLModelStore: maps collections onto SQLModel tables; the blocking
  Session work runs in a worker thread so the event loop is never blocked

Usage:
    store = SQLModelStore(engine)
    nodes = await store.query("ibis_nodes", {"deliberation_id": did}, order="-created_at")
"""

import copy
from abc import ABC, abstractmethod
from functools import partial
from typing import Any, Dict, List, Mapping, Optional, Sequence, Type

import anyio
from sqlalchemy import select as select_columns
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, select

from deliberai.core.errors import StoreError
from deliberai.core.typing import col, utc_now

Record = Dict[str, Any]

# Collection names
CIRCUIT_BREAKER_STATE = "circuit_breaker_state"
PROMPT_TEMPLATES = "prompt_templates"
IBIS_NODES = "ibis_nodes"
AGENT_KNOWLEDGE = "agent_knowledge"


def _parse_order(order: Optional[str]) -> tuple[Optional[str], bool]:
    if not order:
        return None, False
    if order.startswith("-"):
        return order[1:], True
    return order, False


class Store(ABC):
    """Async persistence interface keyed by collection name and record id."""

    key_field: str = "id"

    @abstractmethod
    async def get(self, collection: str, key: str) -> Optional[Record]: ...

    @abstractmethod
    async def upsert(self, collection: str, record: Mapping[str, Any]) -> Record: ...

    @abstractmethod
    async def update(self, collection: str, key: str, patch: Mapping[str, Any]) -> Optional[Record]: ...

    @abstractmethod
    async def query(
        self,
        collection: str,
        filter: Optional[Mapping[str, Any]] = None,
        order: Optional[str] = None,
        limit: Optional[int] = None,
        fields: Optional[Sequence[str]] = None,
    ) -> List[Record]: ...


class InMemoryStore(Store):
    """
    Dict-backed store.

    Upsert merges the given fields into an existing record, mirroring how the
    SQL store only touches the columns it is given. Returned records are
    copies, so callers can't mutate stored state by accident.
    """

    def __init__(self, data: Optional[Dict[str, List[Record]]] = None):
        self._collections: Dict[str, Dict[str, Record]] = {}
        for collection, records in (data or {}).items():
            for record in records:
                self._collections.setdefault(collection, {})[str(record[self.key_field])] = dict(record)

    def _table(self, collection: str) -> Dict[str, Record]:
        return self._collections.setdefault(collection, {})

    async def get(self, collection: str, key: str) -> Optional[Record]:
        record = self._table(collection).get(str(key))
        return copy.deepcopy(record) if record is not None else None

    async def upsert(self, collection: str, record: Mapping[str, Any]) -> Record:
        if self.key_field not in record:
            raise StoreError(f"upsert into {collection} requires '{self.key_field}'")
        table = self._table(collection)
        key = str(record[self.key_field])
        merged = {**table.get(key, {}), **record}
        table[key] = merged
        return copy.deepcopy(merged)

    async def update(self, collection: str, key: str, patch: Mapping[str, Any]) -> Optional[Record]:
        table = self._table(collection)
        existing = table.get(str(key))
        if existing is None:
            return None
        existing.update(patch)
        return copy.deepcopy(existing)

    async def query(
        self,
        collection: str,
        filter: Optional[Mapping[str, Any]] = None,
        order: Optional[str] = None,
        limit: Optional[int] = None,
        fields: Optional[Sequence[str]] = None,
    ) -> List[Record]:
        rows = [
            record
            for record in self._table(collection).values()
            if all(record.get(field) == value for field, value in (filter or {}).items())
        ]

        field, descending = _parse_order(order)
        if field:
            # None sorts last either way; sorted() is stable so ties keep insertion order
            present = [r for r in rows if r.get(field) is not None]
            missing = [r for r in rows if r.get(field) is None]
            present.sort(key=lambda r: r[field], reverse=descending)
            rows = present + missing

        if limit is not None:
            rows = rows[:limit]
        if fields:
            return [{f: copy.deepcopy(r.get(f)) for f in fields} for r in rows]
        return [copy.deepcopy(r) for r in rows]

    def all(self, collection: str) -> List[Record]:
        """Synchronous snapshot of a collection (test helper)."""
        return [copy.deepcopy(r) for r in self._table(collection).values()]


def _default_models() -> Dict[str, Type[SQLModel]]:
    from deliberai.models import AgentKnowledge, CircuitBreakerState, IbisNode, PromptTemplate

    return {
        CIRCUIT_BREAKER_STATE: CircuitBreakerState,
        PROMPT_TEMPLATES: PromptTemplate,
        IBIS_NODES: IbisNode,
        AGENT_KNOWLEDGE: AgentKnowledge,
    }


class SQLModelStore(Store):
    """Store backed by SQLModel tables, one table per collection."""

    def __init__(self, engine: Engine, models: Optional[Dict[str, Type[SQLModel]]] = None):
        self.engine = engine
        self.models = models or _default_models()

    def _model(self, collection: str) -> Type[SQLModel]:
        try:
            return self.models[collection]
        except KeyError:
            raise StoreError(f"Unknown collection: {collection}") from None

    async def _run(self, func, *args):
        try:
            return await anyio.to_thread.run_sync(partial(func, *args))
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e

    async def get(self, collection: str, key: str) -> Optional[Record]:
        return await self._run(self._get_sync, collection, key)

    async def upsert(self, collection: str, record: Mapping[str, Any]) -> Record:
        return await self._run(self._upsert_sync, collection, dict(record))

    async def update(self, collection: str, key: str, patch: Mapping[str, Any]) -> Optional[Record]:
        return await self._run(self._update_sync, collection, key, dict(patch))

    async def query(
        self,
        collection: str,
        filter: Optional[Mapping[str, Any]] = None,
        order: Optional[str] = None,
        limit: Optional[int] = None,
        fields: Optional[Sequence[str]] = None,
    ) -> List[Record]:
        return await self._run(self._query_sync, collection, dict(filter or {}), order, limit, fields)

    def _get_sync(self, collection: str, key: str) -> Optional[Record]:
        model = self._model(collection)
        with Session(self.engine) as session:
            row = session.get(model, key)
            return row.model_dump() if row else None

    def _upsert_sync(self, collection: str, record: Record) -> Record:
        model = self._model(collection)
        if self.key_field not in record:
            raise StoreError(f"upsert into {collection} requires '{self.key_field}'")
        with Session(self.engine) as session:
            row = session.get(model, record[self.key_field])
            if row:
                for field, value in record.items():
                    setattr(row, field, value)
            else:
                row = model(**record)
            if hasattr(row, "updated_at") and "updated_at" not in record:
                setattr(row, "updated_at", utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return row.model_dump()

    def _update_sync(self, collection: str, key: str, patch: Record) -> Optional[Record]:
        model = self._model(collection)
        with Session(self.engine) as session:
            row = session.get(model, key)
            if row is None:
                return None
            for field, value in patch.items():
                setattr(row, field, value)
            session.add(row)
            session.commit()
            session.refresh(row)
            return row.model_dump()

    def _query_sync(
        self,
        collection: str,
        filter: Record,
        order: Optional[str],
        limit: Optional[int],
        fields: Optional[Sequence[str]],
    ) -> List[Record]:
        model = self._model(collection)
        if fields:
            stmt = select_columns(*(getattr(model, f) for f in fields))
        else:
            stmt = select(model)
        for field, value in filter.items():
            column = col(getattr(model, field))
            stmt = stmt.where(column.is_(None) if value is None else column == value)

        field, descending = _parse_order(order)
        if field:
            column = col(getattr(model, field))
            stmt = stmt.order_by(column.desc() if descending else column.asc())

        if limit is not None:
            stmt = stmt.limit(limit)

        with Session(self.engine) as session:
            if fields:
                return [dict(row) for row in session.exec(stmt).mappings().all()]
            return [row.model_dump() for row in session.exec(stmt).all()]
