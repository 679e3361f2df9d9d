"""
Issue recommendations for a user's contribution.

Ranks the deliberation's existing issues by how relevant they are to what the
user wrote. Only existing issue ids survive extraction, with relevance >= 0.6.

When the breaker is open the user still gets two generic prompts to keep the
conversation moving; after any other failure the list is empty and the
metadata carries the reason.
"""

import time
from typing import Any, Dict, List, Optional

from deliberai.schemas import IssueRecommendationRequest
from deliberai.services.call_executor import Degraded, DegradedKind
from deliberai.services.evaluation import EvaluationService, PreparedPrompt
from deliberai.services.output_extractor import RECOMMENDATION_FIELDS, EvaluationItem

TEMPLATE_NAME = "Issue Recommendation System"

FALLBACK_SYSTEM_PROMPT = """You are an expert facilitator helping to identify key issues for deliberation based on user input.

User Content: {{user_content}}

Existing Issues:
{{existing_issues}}

Select up to {{max_recommendations}} existing issues that would be most valuable to discuss. Each issue should:
1. Be directly relevant to the user's input
2. Be specific and actionable (not too broad or vague)
3. Represent a genuine question or problem that needs discussion
4. Have a relevance score of at least 0.6

Return a JSON array of issue objects with this structure:
[
  {
    "issueId": "<uuid>",
    "relevanceScore": 0.85,
    "explanation": "Why this issue is important and relevant"
  }
]

Only include issues with relevance scores >= 0.6. Validate that issueId corresponds to an existing issue from the list above."""

USER_PROMPT = "Generate {max_recommendations} relevant issue recommendations based on the provided context."

CANNED_RECOMMENDATIONS = (
    {
        "title": "What are the key challenges in this area?",
        "description": "Identify the main obstacles or difficulties that need to be addressed",
        "explanation": "Understanding challenges is fundamental to effective deliberation",
    },
    {
        "title": "What are the potential solutions or approaches?",
        "description": "Explore different ways to address the identified challenges",
        "explanation": "Solution exploration is essential for productive deliberation",
    },
)


def format_issues(issues: List[Dict[str, Any]]) -> str:
    if not issues:
        return "No existing issues"
    return "\n".join(f"{issue['id']} | {issue.get('title') or ''}: {issue.get('description') or ''}" for issue in issues)


class IssueRecommender(EvaluationService):
    operation_name = "issue_recommendations"
    items_key = "recommendations"
    fields = RECOMMENDATION_FIELDS

    def context_filter(self, request: IssueRecommendationRequest) -> Dict[str, Any]:
        return {"deliberation_id": request.deliberation_id, "node_type": "issue"}

    def max_items(self, request: IssueRecommendationRequest) -> int:
        return request.max_recommendations

    async def build_prompt(self, request: IssueRecommendationRequest, context: List[Dict[str, Any]]) -> PreparedPrompt:
        templates: Dict[str, bool] = {}
        system_prompt = await self.resolve_prompt(
            TEMPLATE_NAME,
            {
                "user_content": request.user_content,
                "existing_issues": format_issues(context),
                "max_recommendations": request.max_recommendations,
            },
            FALLBACK_SYSTEM_PROMPT,
            templates,
        )
        return PreparedPrompt(
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": USER_PROMPT.format(max_recommendations=request.max_recommendations)},
            ],
            templates=templates,
        )

    def present(self, item: EvaluationItem, node: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "issue_id": item.target_id,
            "title": node.get("title"),
            "description": node.get("description"),
            "relevance_score": item.score,
            "confidence": item.confidence,
            "explanation": item.reasoning,
        }

    def fallback_items(self, request: IssueRecommendationRequest, degraded: Optional[Degraded]) -> List[Dict[str, Any]]:
        if degraded is None or degraded.kind != DegradedKind.CIRCUIT_OPEN:
            return []

        stamp = int(time.time() * 1000)
        return [
            {
                "issue_id": f"fallback_{stamp}_{i}",
                "title": canned["title"],
                "description": canned["description"],
                "relevance_score": 0.6,
                "confidence": 0.5,
                "explanation": canned["explanation"],
            }
            for i, canned in enumerate(CANNED_RECOMMENDATIONS[: request.max_recommendations], start=1)
        ]
