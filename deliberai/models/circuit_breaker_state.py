"""
Circuit breaker state persistence model.

One row per operation name ("issue_recommendations", "relationship_evaluation",
"embedding_backfill"). Shared by every process and invocation, so a breaker
opened by one request is seen by all others.
"""

from typing import Optional
from sqlmodel import Field, SQLModel
from datetime import datetime

from deliberai.core.typing import utc_now


class CircuitBreakerState(SQLModel, table=True):
    """Persisted circuit breaker state."""

    __tablename__ = "circuit_breaker_state"

    id: str = Field(primary_key=True)  # Operation name
    failure_count: int = Field(default=0)
    last_failure_time: Optional[datetime] = Field(default=None)
    is_open: bool = Field(default=False)  # Informational; readers re-derive openness
    updated_at: datetime = Field(default_factory=utc_now)
