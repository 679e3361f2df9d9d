"""
IBIS node model.

Issues, positions and arguments of a deliberation. Owned by the application's
main datastore; this service reads them as evaluation context and only ever
writes the embedding column.
"""

import uuid
from enum import Enum
from typing import List, Optional
from datetime import datetime

from sqlmodel import Field, SQLModel
from sqlalchemy import Column, JSON, Text

from deliberai.core.typing import utc_now


class NodeType(str, Enum):
    ISSUE = "issue"
    POSITION = "position"
    ARGUMENT = "argument"


class IbisNode(SQLModel, table=True):
    __tablename__ = "ibis_nodes"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    deliberation_id: str = Field(index=True)
    node_type: str = Field(default=NodeType.ISSUE.value, index=True)
    title: str
    description: Optional[str] = Field(default=None, sa_column=Column(Text))
    embedding: Optional[List[float]] = Field(default=None, sa_column=Column(JSON(none_as_null=True)))
    created_at: datetime = Field(default_factory=utc_now, index=True)
    updated_at: datetime = Field(default_factory=utc_now)
