from typing import Any

from fastapi import APIRouter, Depends

from deliberai.api import deps
from deliberai.api.responses import error_response
from deliberai.schemas import IssueRecommendationRequest
from deliberai.services.issue_recommendations import IssueRecommender

router = APIRouter()


@router.post("/recommendations")
async def recommend_issues(
    request: IssueRecommendationRequest,
    recommender: IssueRecommender = Depends(deps.get_issue_recommender),
) -> Any:
    """Rank the deliberation's existing issues against the user's input."""
    try:
        return await recommender.evaluate(request)
    except Exception as e:
        return error_response(str(e), exc=e, operation=recommender.operation_name)
