"""
Prompt template model.

Templates are authored outside this service; the prompt resolver only reads
the newest active version of a template by name.
"""

from typing import Optional
from datetime import datetime

from sqlmodel import Field, SQLModel
from sqlalchemy import Column, Text

from deliberai.core.typing import utc_now


class PromptTemplate(SQLModel, table=True):
    """
    Named prompt template with {{variable}} placeholders.

    Attributes:
        name: Logical prompt name (e.g., "Issue Recommendation System")
        category: Grouping used by the admin UI
        template_text: Template body
        is_active: Only active templates are resolved
        is_default: Marks the seeded default template for a name
        version: Highest active version wins
    """

    __tablename__ = "prompt_templates"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    category: str = Field(default="general")
    template_text: str = Field(sa_column=Column(Text, nullable=False))
    is_active: bool = Field(default=True)
    is_default: bool = Field(default=False)
    version: int = Field(default=1)
    updated_at: datetime = Field(default_factory=utc_now)
