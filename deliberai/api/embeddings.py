from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends

from deliberai.api import deps
from deliberai.api.responses import error_response
from deliberai.schemas import EmbeddingBackfillRequest
from deliberai.services.embedding_backfill import EmbeddingBackfillWorker, build_scope

router = APIRouter()
logger = structlog.get_logger(__name__)


def scope_for(request: EmbeddingBackfillRequest) -> Dict[str, Any]:
    return build_scope(
        request.collection,
        agent_id=request.agent_id,
        deliberation_id=request.deliberation_id,
        node_id=request.node_id,
        node_type=request.node_type,
    )


@router.post("/backfill")
async def backfill_embeddings(
    request: EmbeddingBackfillRequest,
    worker: EmbeddingBackfillWorker = Depends(deps.get_backfill_worker),
) -> Any:
    """
    Generate embeddings for records that have none, or report coverage.

    operation="backfill" (default) embeds up to 1000 records in batches;
    operation="stats" only counts how many records have embeddings.
    Scope with agentId (agent_knowledge) or deliberationId / nodeId /
    nodeType (ibis_nodes). force=true re-embeds records that already have one.
    """
    if request.operation not in ("backfill", "stats"):
        return error_response("Invalid operation. Use 'backfill' or 'stats'", operation=worker.operation_name)

    try:
        scope = scope_for(request)
        if request.operation == "stats":
            stats = await worker.stats(scope, collection=request.collection)
            return {"success": True, **stats.model_dump()}

        logger.info(
            "Embedding backfill requested",
            collection=request.collection,
            batch_size=request.batch_size,
            force=request.force,
        )
        progress = await worker.run(
            scope,
            batch_size=request.batch_size,
            collection=request.collection,
            force=request.force,
        )
        return {
            "success": True,
            "message": f"Backfill completed: {progress.updated}/{progress.processed} records updated",
            **progress.model_dump(),
        }
    except Exception as e:
        return error_response(str(e), exc=e, operation=worker.operation_name)
