from typing import Any

from fastapi import APIRouter, Depends

from deliberai.api import deps
from deliberai.api.responses import error_response
from deliberai.schemas import RelationshipEvaluationRequest
from deliberai.services.relationship_evaluator import RelationshipEvaluator

router = APIRouter()


@router.post("/evaluate")
async def evaluate_relationships(
    request: RelationshipEvaluationRequest,
    evaluator: RelationshipEvaluator = Depends(deps.get_relationship_evaluator),
) -> Any:
    """
    Suggest relationships between a draft contribution and existing nodes.

    Always answers 200; metadata.source tells whether the list came from the
    model ("ai"), a degraded path ("fallback") or an empty deliberation ("empty").
    """
    try:
        return await evaluator.evaluate(request)
    except Exception as e:
        return error_response(str(e), exc=e, operation=evaluator.operation_name)
