"""
Relationship evaluation between a new contribution and existing IBIS nodes.

Given a draft node (title, content, type), asks the model which existing
nodes of the deliberation it supports, challenges, elaborates, etc. Only
relationships to nodes that really exist are returned, strongest first,
at most max_items (default 5).

Prompts come from the templates "relationship_evaluation_system_prompt" and
"relationship_evaluation_user_prompt", with the hardcoded prompts below as
fallbacks.
"""

from typing import Any, Dict, List

from deliberai.schemas import RelationshipEvaluationRequest
from deliberai.services.evaluation import EvaluationService, PreparedPrompt
from deliberai.services.output_extractor import RELATIONSHIP_FIELDS, EvaluationItem

SYSTEM_TEMPLATE = "relationship_evaluation_system_prompt"
USER_TEMPLATE = "relationship_evaluation_user_prompt"

RELATIONSHIP_TYPES = (
    "supports",
    "challenges",
    "elaborates",
    "builds_on",
    "responds_to",
    "evidence",
    "counter_argument",
    "similar",
    "parent",
    "child",
    "sibling",
)

FALLBACK_SYSTEM_PROMPT = """You are an expert analyst evaluating relationships between IBIS (Issue-Based Information System) nodes in a deliberation.

Analyze the provided content and identify relationships with existing nodes. Consider:
1. Conceptual similarity and thematic connections
2. Logical dependencies (supports, challenges, elaborates)
3. Temporal relationships (builds on, responds to)
4. Hierarchical relationships (parent-child, sibling)
5. Argumentative relationships (evidence, counter-argument)

Node Types:
- issue: Questions or problems to be addressed
- position: Stances or viewpoints on issues
- argument: Evidence, reasoning, or support for positions

{{include_all_types}}

Return a JSON object with a "relationships" array:
{"relationships": [
  {
    "targetNodeId": "node_id",
    "relationshipType": "supports|challenges|elaborates|builds_on|responds_to|evidence|counter_argument|similar|parent|child|sibling",
    "strength": 0.0-1.0,
    "reasoning": "Brief explanation of the relationship",
    "confidence": 0.0-1.0
  }
]}"""

FALLBACK_USER_PROMPT = """Content to analyze:
Title: {{title}}
Type: {{node_type}}
Content: {{content}}

Existing nodes in deliberation:
{{node_context}}

{{include_all_types}}

Identify the most relevant relationships (limit to top {{max_items}})."""


def format_node_context(nodes: List[Dict[str, Any]]) -> str:
    return "\n".join(
        f"ID: {node['id']}\n"
        f"Title: {node.get('title') or ''}\n"
        f"Type: {node.get('node_type') or ''}\n"
        f"Description: {node.get('description') or 'No description'}\n---"
        for node in nodes
    )


class RelationshipEvaluator(EvaluationService):
    operation_name = "relationship_evaluation"
    items_key = "relationships"
    fields = RELATIONSHIP_FIELDS
    json_object = True

    def context_filter(self, request: RelationshipEvaluationRequest) -> Dict[str, Any]:
        return {"deliberation_id": request.deliberation_id}

    def max_items(self, request: RelationshipEvaluationRequest) -> int:
        return request.max_items

    def request_metadata(self, request: RelationshipEvaluationRequest) -> Dict[str, Any]:
        return {"deliberation_id": request.deliberation_id, "node_type": request.node_type}

    async def build_prompt(self, request: RelationshipEvaluationRequest, context: List[Dict[str, Any]]) -> PreparedPrompt:
        if request.include_all_types:
            type_focus = "Include relationships with all node types."
        else:
            type_focus = f"Focus on relationships with {request.node_type} nodes primarily."

        templates: Dict[str, bool] = {}
        system_prompt = await self.resolve_prompt(
            SYSTEM_TEMPLATE,
            {"include_all_types": type_focus},
            FALLBACK_SYSTEM_PROMPT,
            templates,
        )
        user_prompt = await self.resolve_prompt(
            USER_TEMPLATE,
            {
                "title": request.title,
                "node_type": request.node_type,
                "content": request.content,
                "node_context": format_node_context(context),
                "include_all_types": type_focus,
                "max_items": request.max_items,
            },
            FALLBACK_USER_PROMPT,
            templates,
        )
        return PreparedPrompt(
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            templates=templates,
        )

    def present(self, item: EvaluationItem, node: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "target_node_id": item.target_id,
            "target_node_title": node.get("title") or "Unknown",
            "target_node_type": node.get("node_type"),
            "relationship_type": item.label,
            "strength": item.score,
            "confidence": item.confidence,
            "reasoning": item.reasoning,
        }
