"""
Agent knowledge chunk model.

Uploaded documents are split into chunks and stored per agent. The
embedding column starts out NULL and is filled by the embedding backfill.
"""

import uuid
from typing import List, Optional
from datetime import datetime

from sqlmodel import Field, SQLModel
from sqlalchemy import Column, JSON, Text

from deliberai.core.typing import utc_now


class AgentKnowledge(SQLModel, table=True):
    __tablename__ = "agent_knowledge"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    agent_id: Optional[str] = Field(default=None, index=True)
    title: Optional[str] = Field(default=None)
    content: Optional[str] = Field(default=None, sa_column=Column(Text))
    file_name: Optional[str] = Field(default=None)
    embedding: Optional[List[float]] = Field(default=None, sa_column=Column(JSON(none_as_null=True)))
    created_at: datetime = Field(default_factory=utc_now, index=True)
    updated_at: datetime = Field(default_factory=utc_now)
