"""
Embedding backfill for records stored without an embedding.

Selects up to 1000 records whose embedding IS NULL, oldest first, and embeds
them one at a time:

- batches of batch_size records (default 10)
- 100ms between API calls inside a batch, 1s between batches
- a failing record is counted and skipped, whatever the failure; the run
  always completes
- a record with no text is skipped with a warning (not an error)

Because selection is "embedding IS NULL", an interrupted run is resumable:
running again picks up whatever was not persisted. force=True re-embeds
matching records that already have one. Overlapping runs against
the same scope are not prevented and will embed the same records twice.

Usage:
    worker = EmbeddingBackfillWorker(store, executor, client)
    progress = await worker.run({"agent_id": agent_id}, batch_size=10)
    progress.processed, progress.updated, progress.errors
"""

import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

import anyio
import structlog

from deliberai.core.errors import ErrorHandler
from deliberai.core.store import AGENT_KNOWLEDGE, IBIS_NODES, Store
from deliberai.core.typing import utc_now
from deliberai.schemas import BackfillProgress, EmbeddingStats
from deliberai.services.call_executor import ResilientCallExecutor
from deliberai.services.inference_client import InferenceClient

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BackfillTarget:
    collection: str
    text_fields: Tuple[str, str]  # (heading, body) joined with a blank line
    scope_field: str


TARGETS: Dict[str, BackfillTarget] = {
    AGENT_KNOWLEDGE: BackfillTarget(AGENT_KNOWLEDGE, ("title", "content"), "agent_id"),
    IBIS_NODES: BackfillTarget(IBIS_NODES, ("title", "description"), "deliberation_id"),
}


def get_target(collection: str) -> BackfillTarget:
    try:
        return TARGETS[collection]
    except KeyError:
        raise ValueError(f"Unknown collection: {collection}. Use one of: {', '.join(TARGETS)}") from None


def build_scope(
    collection: str,
    agent_id: Optional[str] = None,
    deliberation_id: Optional[str] = None,
    node_id: Optional[str] = None,
    node_type: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Record filter for a backfill or stats call.

    agent_knowledge is scoped by agent. ibis_nodes is scoped by a single node
    when node_id is given, otherwise by deliberation, optionally narrowed to
    one node type.
    """
    target = get_target(collection)
    if target.collection == AGENT_KNOWLEDGE:
        return {target.scope_field: agent_id}
    if node_id:
        return {"id": node_id, "node_type": node_type}
    return {target.scope_field: deliberation_id, "node_type": node_type}


class EmbeddingBackfillWorker:
    operation_name = "embedding_backfill"

    def __init__(
        self,
        store: Store,
        executor: ResilientCallExecutor,
        client: InferenceClient,
        max_records: int = 1000,
        call_delay_seconds: float = 0.1,
        batch_pause_seconds: float = 1.0,
        max_input_chars: int = 8000,
        sleep: Callable[[float], Awaitable[Any]] = anyio.sleep,
    ):
        self.store = store
        self.executor = executor
        self.client = client
        self.max_records = max_records
        self.call_delay_seconds = call_delay_seconds
        self.batch_pause_seconds = batch_pause_seconds
        self.max_input_chars = max_input_chars
        self._sleep = sleep

    def build_text(self, record: Mapping[str, Any], target: BackfillTarget) -> str:
        heading, body = (record.get(name) or "" for name in target.text_fields)
        text = f"{heading}\n\n{body}".strip()
        return text[: self.max_input_chars]

    @staticmethod
    def _scope(scope_filter: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        # None would mean "IS NULL" to the store; here it means "no restriction"
        return {k: v for k, v in (scope_filter or {}).items() if v is not None}

    async def run(
        self,
        scope_filter: Optional[Mapping[str, Any]] = None,
        batch_size: int = 10,
        collection: str = AGENT_KNOWLEDGE,
        force: bool = False,
    ) -> BackfillProgress:
        """
        Embed records matching scope_filter, oldest first.

        Only records without an embedding are selected unless force is set,
        in which case matching records are re-embedded.
        """
        target = get_target(collection)
        batch_size = max(1, batch_size)
        scope = self._scope(scope_filter)
        started = time.monotonic()
        log = logger.bind(collection=collection, force=force, **scope)

        records = await self.store.query(
            collection,
            scope if force else {"embedding": None, **scope},
            order="created_at",
            limit=self.max_records,
        )
        progress = BackfillProgress(total_records=len(records))

        if not records:
            log.info("No records need embedding backfill")
            progress.duration_ms = int((time.monotonic() - started) * 1000)
            return progress

        total_batches = (len(records) + batch_size - 1) // batch_size
        log.info("Starting embeddings backfill", total_records=len(records), batch_size=batch_size)

        for batch_number, offset in enumerate(range(0, len(records), batch_size), start=1):
            batch = records[offset : offset + batch_size]
            log.debug("Processing batch", batch=batch_number, total_batches=total_batches, size=len(batch))

            for index, record in enumerate(batch):
                called_api = await self._process(record, target, progress)
                if called_api and index < len(batch) - 1 and self.call_delay_seconds > 0:
                    await self._sleep(self.call_delay_seconds)

            if batch_number < total_batches and self.batch_pause_seconds > 0:
                await self._sleep(self.batch_pause_seconds)

        progress.duration_ms = int((time.monotonic() - started) * 1000)
        success_rate = (progress.updated / progress.processed * 100) if progress.processed else 0.0
        log.info(
            "Embeddings backfill completed",
            processed=progress.processed,
            updated=progress.updated,
            errors=progress.errors,
            skipped=progress.skipped,
            duration_ms=progress.duration_ms,
            success_rate=f"{success_rate:.1f}%",
        )
        return progress

    async def _process(self, record: Dict[str, Any], target: BackfillTarget, progress: BackfillProgress) -> bool:
        """Embed and persist one record. Returns True if the embedding API was called."""
        progress.processed += 1
        record_id = record["id"]

        text = self.build_text(record, target)
        if not text:
            progress.skipped += 1
            logger.warning("Skipping record with no text content", id=record_id, file_name=record.get("file_name"))
            return False

        saved = False
        with ErrorHandler("embed_record", context={"id": record_id, "collection": target.collection}):
            saved = await self._embed_and_save(record_id, text, target)

        if saved:
            progress.updated += 1
        else:
            progress.errors += 1
        return True

    async def _embed_and_save(self, record_id: str, text: str, target: BackfillTarget) -> bool:
        result = await self.executor.execute(self.operation_name, lambda: self.client.embed(text))
        if not result.ok:
            logger.error("Embedding failed for record", id=record_id, kind=result.kind.value, reason=result.reason)
            return False

        updated = await self.store.update(
            target.collection,
            record_id,
            {"embedding": result.value, "updated_at": utc_now()},
        )
        if updated is None:
            logger.error("Record disappeared before embedding was saved", id=record_id)
            return False

        logger.debug("Updated embedding", id=record_id, dimensions=len(result.value))
        return True

    async def stats(
        self,
        scope_filter: Optional[Mapping[str, Any]] = None,
        collection: str = AGENT_KNOWLEDGE,
    ) -> EmbeddingStats:
        target = get_target(collection)
        scope = self._scope(scope_filter)

        # Ids only; vectors are never loaded for counting
        total = len(await self.store.query(collection, scope, fields=["id"]))
        missing = len(await self.store.query(collection, {**scope, "embedding": None}, fields=["id"]))
        with_embeddings = total - missing
        coverage = f"{with_embeddings / total * 100:.1f}%" if total else "0%"

        return EmbeddingStats(
            collection=collection,
            scope=scope.get(target.scope_field),
            total_records=total,
            with_embeddings=with_embeddings,
            without_embeddings=missing,
            coverage=coverage,
        )
