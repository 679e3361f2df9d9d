"""
Tests for prompt resolution against the template store.
"""

import pytest
from unittest.mock import AsyncMock

from deliberai.core.errors import StoreError
from deliberai.core.store import PROMPT_TEMPLATES, InMemoryStore
from deliberai.services.prompt_resolver import (
    PromptResolver,
    StaticTemplateStore,
    StoreTemplateStore,
    find_unresolved,
    render_template,
)

FALLBACK = "Fallback for {{user}} ({{count}})"


class TestRenderTemplate:
    """Tests for {{var}} substitution."""

    def test_substitutes_placeholders(self):
        """Placeholders with or without inner spaces are filled."""
        assert render_template("Hi {{ name }}, {{count}} left", {"name": "Ada", "count": 3}) == "Hi Ada, 3 left"

    def test_unknown_placeholders_left_in_place(self):
        """Unknown placeholders stay and are reported."""
        rendered = render_template("{{known}} and {{unknown}}", {"known": "x"})
        assert rendered == "x and {{unknown}}"
        assert find_unresolved(rendered) == ["unknown"]

    def test_none_renders_empty(self):
        """None renders as an empty string."""
        assert render_template("[{{value}}]", {"value": None}) == "[]"

    def test_single_braces_untouched(self):
        """Single braces are literal text."""
        assert render_template('{"a": {{n}}}', {"n": 1}) == '{"a": 1}'


class TestPromptResolver:
    """Tests for template lookup with fallback."""

    @pytest.mark.asyncio
    async def test_uses_active_template(self):
        """An active template is rendered and reported."""
        resolver = PromptResolver(StaticTemplateStore({"greeting": "Hello {{user}}"}))

        resolution = await resolver.resolve("greeting", {"user": "Ada", "count": 1}, FALLBACK)

        assert resolution.prompt == "Hello Ada"
        assert resolution.is_template is True
        assert resolution.template_used == "greeting"

    @pytest.mark.asyncio
    async def test_missing_template_uses_fallback(self):
        """Without a template the fallback is rendered."""
        resolver = PromptResolver(StaticTemplateStore())

        resolution = await resolver.resolve("greeting", {"user": "Ada", "count": 2}, FALLBACK)

        assert resolution.prompt == "Fallback for Ada (2)"
        assert resolution.is_template is False
        assert resolution.template_used is None

    @pytest.mark.asyncio
    async def test_lookup_error_uses_fallback(self):
        """A failing lookup falls back instead of raising."""
        templates = StaticTemplateStore()
        templates.get_active_template = AsyncMock(side_effect=StoreError("timeout"))
        resolver = PromptResolver(templates)

        resolution = await resolver.resolve("greeting", {"user": "Ada", "count": 2}, FALLBACK)

        assert resolution.is_template is False
        assert resolution.prompt == "Fallback for Ada (2)"


class TestStoreTemplateStore:
    """Tests for reading templates from a Store."""

    @pytest.mark.asyncio
    async def test_highest_active_version_wins(self):
        """The newest active version is used; inactive ones are ignored."""
        store = InMemoryStore(
            {
                PROMPT_TEMPLATES: [
                    {"id": 1, "name": "greeting", "template_text": "v1", "is_active": True, "version": 1},
                    {"id": 2, "name": "greeting", "template_text": "v3", "is_active": False, "version": 3},
                    {"id": 3, "name": "greeting", "template_text": "v2", "is_active": True, "version": 2},
                    {"id": 4, "name": "other", "template_text": "x", "is_active": True, "version": 9},
                ]
            }
        )

        found = await StoreTemplateStore(store).get_active_template("greeting")

        assert found == {"template": "v2", "is_default": False}

    @pytest.mark.asyncio
    async def test_absent_template(self, memory_store):
        """A name with no rows returns None."""
        assert await StoreTemplateStore(memory_store).get_active_template("greeting") is None

    @pytest.mark.asyncio
    async def test_reads_sql_table(self, sql_store):
        """Templates are read from the SQL table."""
        await sql_store.upsert(
            PROMPT_TEMPLATES,
            {"id": 1, "name": "greeting", "template_text": "Hi {{user}}", "is_default": True},
        )
        resolver = PromptResolver(StoreTemplateStore(sql_store))

        resolution = await resolver.resolve("greeting", {"user": "Ada"}, FALLBACK)

        assert resolution.prompt == "Hi Ada"
        assert resolution.is_template is True
