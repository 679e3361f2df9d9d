"""
Prompt resolution against the prompt template store.

Prompts are looked up by logical name. When an active template exists its
{{variable}} placeholders are filled from the caller's variables; otherwise
the caller's hardcoded fallback prompt is rendered the same way. Lookup
failures degrade to the fallback, so resolve() never raises.

Usage:
    resolver = PromptResolver(StoreTemplateStore(store))
    resolution = await resolver.resolve(
        "Issue Recommendation System",
        {"user_content": text, "max_recommendations": 5},
        FALLBACK_PROMPT,
    )
    resolution.prompt, resolution.is_template
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import structlog

from deliberai.core.store import PROMPT_TEMPLATES, Store

logger = structlog.get_logger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


@dataclass(frozen=True)
class PromptResolution:
    prompt: str
    is_template: bool
    template_used: Optional[str] = None


class TemplateStore(ABC):
    """Source of named prompt templates."""

    @abstractmethod
    async def get_active_template(self, name: str) -> Optional[Dict[str, Any]]:
        """Return {"template": str, "is_default": bool} or None when no active template exists."""


class StoreTemplateStore(TemplateStore):
    """Reads the newest active version of a template from the prompt_templates collection."""

    def __init__(self, store: Store):
        self.store = store

    async def get_active_template(self, name: str) -> Optional[Dict[str, Any]]:
        rows = await self.store.query(
            PROMPT_TEMPLATES,
            {"name": name, "is_active": True},
            order="-version",
            limit=1,
        )
        if not rows:
            return None
        row = rows[0]
        return {"template": row["template_text"], "is_default": bool(row.get("is_default", False))}


class StaticTemplateStore(TemplateStore):
    """In-process templates keyed by name (tests, local runs)."""

    def __init__(self, templates: Optional[Mapping[str, str]] = None):
        self.templates = dict(templates or {})

    async def get_active_template(self, name: str) -> Optional[Dict[str, Any]]:
        template = self.templates.get(name)
        if template is None:
            return None
        return {"template": template, "is_default": False}


def render_template(template: str, variables: Mapping[str, Any]) -> str:
    """Replace {{name}} placeholders; unknown placeholders are left untouched."""

    def substitute(match: re.Match) -> str:
        key = match.group(1)
        if key not in variables:
            return match.group(0)
        value = variables[key]
        return "" if value is None else str(value)

    return PLACEHOLDER_PATTERN.sub(substitute, template)


def find_unresolved(rendered: str) -> list[str]:
    return PLACEHOLDER_PATTERN.findall(rendered)


class PromptResolver:
    def __init__(self, templates: TemplateStore):
        self.templates = templates

    async def resolve(
        self,
        name: str,
        variables: Mapping[str, Any],
        fallback_template: str,
    ) -> PromptResolution:
        template: Optional[str] = None
        try:
            found = await self.templates.get_active_template(name)
            if found and found.get("template"):
                template = found["template"]
        except Exception as e:
            logger.warning("Prompt template lookup failed, using fallback", template=name, error=str(e))

        if template is not None:
            resolution = PromptResolution(
                prompt=render_template(template, variables),
                is_template=True,
                template_used=name,
            )
        else:
            resolution = PromptResolution(
                prompt=render_template(fallback_template, variables),
                is_template=False,
            )

        unresolved = find_unresolved(resolution.prompt)
        if unresolved:
            logger.warning("Prompt has unresolved placeholders", template=name, placeholders=unresolved)
        return resolution


def log_template_usage(name: str, is_template: bool, capability: str) -> None:
    if is_template:
        logger.info("Using prompt template", template=name, capability=capability)
    else:
        logger.warning("Prompt template not found, using fallback prompt", template=name, capability=capability)
