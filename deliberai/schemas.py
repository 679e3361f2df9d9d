from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Requests accept both the UI's camelCase keys and snake_case


class RelationshipEvaluationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    deliberation_id: str = Field(alias="deliberationId", min_length=1)
    content: str
    title: str
    node_type: str = Field(alias="nodeType")
    include_all_types: bool = Field(default=False, alias="includeAllTypes")
    max_items: int = Field(default=5, alias="maxItems", ge=1, le=20)


class IssueRecommendationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    deliberation_id: str = Field(alias="deliberationId", min_length=1)
    user_content: str = Field(default="", alias="userContent")
    context: Optional[str] = None  # Legacy name for user_content
    max_recommendations: int = Field(default=5, alias="maxRecommendations", ge=1, le=20)

    @model_validator(mode="after")
    def _merge_legacy_context(self) -> "IssueRecommendationRequest":
        if not self.user_content and self.context:
            self.user_content = self.context
        return self


class EmbeddingBackfillRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    operation: str = "backfill"  # "backfill" or "stats"
    agent_id: Optional[str] = Field(default=None, alias="agentId")
    deliberation_id: Optional[str] = Field(default=None, alias="deliberationId")
    node_id: Optional[str] = Field(default=None, alias="nodeId")  # ibis_nodes only; overrides deliberationId
    node_type: Optional[str] = Field(default=None, alias="nodeType")  # ibis_nodes only
    collection: str = "agent_knowledge"  # "agent_knowledge" or "ibis_nodes"
    batch_size: int = Field(default=10, alias="batchSize", ge=1, le=100)
    force: bool = False  # Re-embed records that already have an embedding


class BackfillProgress(BaseModel):
    processed: int = 0
    updated: int = 0
    errors: int = 0
    skipped: int = 0
    total_records: int = 0
    duration_ms: int = 0


class EmbeddingStats(BaseModel):
    collection: str
    scope: Optional[str] = None
    total_records: int
    with_embeddings: int
    without_embeddings: int
    coverage: str  # e.g. "87.5%"


class CircuitBreakerStateOut(BaseModel):
    name: str
    state: str  # closed, open, half_open
    failure_count: int
    last_failure_time: Optional[datetime] = None
    retry_after_seconds: float = 0.0
