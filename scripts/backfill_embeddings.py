#!/usr/bin/env python3
"""
Backfill embeddings for agent knowledge (or IBIS nodes) stored without one.

Runs the same worker as POST /api/v1/embeddings/backfill, against
DATABASE_URL, using OPENAI_API_KEY from the environment or .env.

Usage:
    # Show embedding coverage only
    python scripts/backfill_embeddings.py --stats

    # Backfill one agent's knowledge base
    python scripts/backfill_embeddings.py --agent-id <uuid>

    # Backfill a deliberation's nodes, 20 per batch, without the prompt
    python scripts/backfill_embeddings.py --collection ibis_nodes --deliberation-id <uuid> --batch-size 20 --yes

    # Re-embed the issues of a deliberation
    python scripts/backfill_embeddings.py --collection ibis_nodes --deliberation-id <uuid> --node-type issue --force
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import anyio

from deliberai.core.config import settings
from deliberai.core.circuit_breaker import PersistedCircuitBreaker
from deliberai.core.store import AGENT_KNOWLEDGE, SQLModelStore
from deliberai.db import create_db_and_tables, engine
from deliberai.models import NodeType
from deliberai.services.call_executor import ResilientCallExecutor
from deliberai.services.embedding_backfill import TARGETS, EmbeddingBackfillWorker, build_scope
from deliberai.services.inference_client import InferenceClient


def print_stats(stats) -> None:
    print(f"Collection: {stats.collection}" + (f" (scope {stats.scope})" if stats.scope else ""))
    print(f"  Total records:      {stats.total_records}")
    print(f"  With embeddings:    {stats.with_embeddings}")
    print(f"  Without embeddings: {stats.without_embeddings}")
    print(f"  Coverage:           {stats.coverage}")


async def run(args: argparse.Namespace) -> int:
    store = SQLModelStore(engine)
    executor = ResilientCallExecutor(
        PersistedCircuitBreaker(
            store,
            failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
            cooldown_seconds=settings.CIRCUIT_COOLDOWN_SECONDS,
        ),
        timeout_seconds=settings.MODEL_TIMEOUT_SECONDS,
    )
    client = InferenceClient.from_settings(settings)
    worker = EmbeddingBackfillWorker(
        store,
        executor,
        client,
        max_records=settings.BACKFILL_MAX_RECORDS,
        call_delay_seconds=settings.BACKFILL_CALL_DELAY_SECONDS,
        batch_pause_seconds=settings.BACKFILL_BATCH_PAUSE_SECONDS,
        max_input_chars=settings.BACKFILL_MAX_INPUT_CHARS,
    )

    scope = build_scope(
        args.collection,
        agent_id=args.agent_id,
        deliberation_id=args.deliberation_id,
        node_id=args.node_id,
        node_type=args.node_type,
    )

    try:
        stats = await worker.stats(scope, collection=args.collection)
        print_stats(stats)
        pending = stats.total_records if args.force else stats.without_embeddings
        if args.stats or pending == 0:
            return 0

        if not args.yes:
            response = input(f"\nEmbed up to {min(pending, worker.max_records)} records? (y/N): ")
            if response.lower() != "y":
                print("Aborted.")
                return 0

        progress = await worker.run(scope, batch_size=args.batch_size, collection=args.collection, force=args.force)
    finally:
        await client.aclose()

    print("\nBackfill complete!")
    print(f"  Processed: {progress.processed}/{progress.total_records}")
    print(f"  Updated:   {progress.updated}")
    print(f"  Skipped:   {progress.skipped}")
    print(f"  Errors:    {progress.errors}")
    print(f"  Duration:  {progress.duration_ms / 1000:.1f}s")

    metrics = executor.get_metrics()
    if metrics["short_circuited"]:
        print(f"  Circuit breaker rejected {metrics['short_circuited']} calls; re-run after the cooldown.")
    return 1 if progress.errors else 0


def main():
    parser = argparse.ArgumentParser(description="Backfill missing embeddings")
    parser.add_argument("--collection", choices=sorted(TARGETS), default=AGENT_KNOWLEDGE)
    parser.add_argument("--agent-id", help="Only records of this agent (agent_knowledge)")
    parser.add_argument("--deliberation-id", help="Only nodes of this deliberation (ibis_nodes)")
    parser.add_argument("--node-id", help="Only this node (ibis_nodes); overrides --deliberation-id")
    parser.add_argument("--node-type", choices=[t.value for t in NodeType], help="Only nodes of this type (ibis_nodes)")
    parser.add_argument("--force", action="store_true", help="Re-embed records that already have an embedding")
    parser.add_argument("--batch-size", type=int, default=settings.BACKFILL_BATCH_SIZE)
    parser.add_argument("--stats", action="store_true", help="Only print embedding coverage")
    parser.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")
    args = parser.parse_args()

    print("Embedding Backfill Script")
    print("-" * 30)

    create_db_and_tables()
    sys.exit(anyio.run(run, args))


if __name__ == "__main__":
    main()
