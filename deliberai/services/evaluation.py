"""
Shared pipeline for AI evaluations over a deliberation's existing nodes.

Each invocation runs:

    START -> BREAKER_CHECK -> FALLBACK
                           -> CONTEXT_FETCH -> PROMPT_RESOLVE -> MODEL_CALL -> EXTRACT -> RESULT

Anything that goes wrong after BREAKER_CHECK ends in FALLBACK, so callers
always get a well-formed response:

    {"success": True, "<items_key>": [...], "metadata": {"source": "ai" | "fallback" | "empty", ...}}

Capabilities subclass EvaluationService and supply the context query, the
prompts, and how extracted items are presented.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from deliberai.core.errors import capture_exception
from deliberai.core.store import IBIS_NODES, Store
from deliberai.services.call_executor import Degraded, DegradedKind, ResilientCallExecutor
from deliberai.services.inference_client import InferenceClient
from deliberai.services.output_extractor import DEFAULT_MIN_SCORE, EvaluationItem, FieldMap, extract
from deliberai.services.prompt_resolver import PromptResolver, log_template_usage

logger = structlog.get_logger(__name__)

# Upper bound on nodes serialized into one prompt
CONTEXT_NODE_LIMIT = 200

SOURCE_AI = "ai"
SOURCE_FALLBACK = "fallback"
SOURCE_EMPTY = "empty"


@dataclass
class PreparedPrompt:
    messages: List[Dict[str, str]]
    templates: Dict[str, bool] = field(default_factory=dict)  # name -> resolved from template store


class EvaluationService(ABC):
    operation_name: str
    items_key: str
    fields: FieldMap
    json_object: bool = False  # Ask the API for a JSON object response

    def __init__(
        self,
        store: Store,
        executor: ResilientCallExecutor,
        prompts: PromptResolver,
        client: InferenceClient,
        min_score: float = DEFAULT_MIN_SCORE,
    ):
        self.store = store
        self.executor = executor
        self.prompts = prompts
        self.client = client
        self.min_score = min_score

    # --- capability hooks -------------------------------------------------

    @abstractmethod
    def context_filter(self, request: Any) -> Dict[str, Any]:
        """Filter selecting the existing nodes the model may reference."""

    @abstractmethod
    async def build_prompt(self, request: Any, context: List[Dict[str, Any]]) -> PreparedPrompt: ...

    @abstractmethod
    def present(self, item: EvaluationItem, node: Dict[str, Any]) -> Dict[str, Any]:
        """Shape one extracted item for the response, using the stored node for titles."""

    @abstractmethod
    def max_items(self, request: Any) -> int: ...

    def request_metadata(self, request: Any) -> Dict[str, Any]:
        return {"deliberation_id": request.deliberation_id}

    def fallback_items(self, request: Any, degraded: Optional[Degraded]) -> List[Dict[str, Any]]:
        return []

    # --- pipeline ---------------------------------------------------------

    async def fetch_context(self, request: Any) -> List[Dict[str, Any]]:
        return await self.store.query(
            IBIS_NODES,
            self.context_filter(request),
            order="-created_at",
            limit=CONTEXT_NODE_LIMIT,
        )

    async def resolve_prompt(self, name: str, variables: Dict[str, Any], fallback: str, templates: Dict[str, bool]) -> str:
        resolution = await self.prompts.resolve(name, variables, fallback)
        log_template_usage(name, resolution.is_template, self.operation_name)
        templates[name] = resolution.is_template
        return resolution.prompt

    async def evaluate(self, request: Any) -> Dict[str, Any]:
        started = time.monotonic()
        log = logger.bind(operation=self.operation_name, **self.request_metadata(request))

        if not await self.executor.is_available(self.operation_name):
            log.warning("Circuit breaker OPEN - using fallback result")
            degraded = Degraded(self.operation_name, DegradedKind.CIRCUIT_OPEN, "Circuit breaker open")
            return self._fallback(request, started, degraded)

        try:
            context = await self.fetch_context(request)
            if not context:
                log.info("No existing nodes found, nothing to evaluate")
                return self._response(
                    [],
                    request,
                    started,
                    source=SOURCE_EMPTY,
                    existing_count=0,
                    reason="No existing nodes",
                )

            prepared = await self.build_prompt(request, context)
            result = await self.executor.execute(
                self.operation_name,
                lambda: self.client.chat(prepared.messages, json_object=self.json_object),
                breaker_checked=True,
            )
            if not result.ok:
                return self._fallback(request, started, result, existing_count=len(context))

            nodes = {str(node["id"]): node for node in context}
            items = extract(
                result.value,
                nodes.keys(),
                self.max_items(request),
                fields=self.fields,
                min_score=self.min_score,
            )
            presented = [self.present(item, nodes[item.target_id]) for item in items]

            log.info("Evaluation completed", existing_count=len(context), generated_count=len(presented))
            return self._response(
                presented,
                request,
                started,
                source=SOURCE_AI,
                existing_count=len(context),
                templates=prepared.templates,
            )
        except Exception as e:
            capture_exception(e, context={"operation": self.operation_name}, level="warning")
            degraded = Degraded(self.operation_name, DegradedKind.SERVICE, str(e))
            return self._fallback(request, started, degraded, after_error=True)

    def _fallback(
        self,
        request: Any,
        started: float,
        degraded: Degraded,
        existing_count: Optional[int] = None,
        after_error: bool = False,
    ) -> Dict[str, Any]:
        items = self.fallback_items(request, degraded)
        logger.info(
            "Returning fallback result",
            operation=self.operation_name,
            kind=degraded.kind.value,
            reason=degraded.reason,
            generated_count=len(items),
        )
        return self._response(
            items,
            request,
            started,
            source=SOURCE_FALLBACK,
            existing_count=existing_count,
            reason=degraded.reason,
            degraded_kind="unexpected_error" if after_error else degraded.kind.value,
        )

    def _response(
        self,
        items: List[Dict[str, Any]],
        request: Any,
        started: float,
        source: str,
        existing_count: Optional[int] = None,
        reason: Optional[str] = None,
        degraded_kind: Optional[str] = None,
        templates: Optional[Dict[str, bool]] = None,
    ) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            **self.request_metadata(request),
            "source": source,
            "processing_time_ms": int((time.monotonic() - started) * 1000),
            "generated_count": len(items),
        }
        if existing_count is not None:
            metadata["existing_count"] = existing_count
        if reason:
            metadata["reason"] = reason
        if degraded_kind:
            metadata["degraded_kind"] = degraded_kind
        if templates:
            metadata["templates"] = templates

        return {"success": True, self.items_key: items, "metadata": metadata}
