"""
OpenAI-compatible inference client (chat completions and embeddings).

Thin wrapper over the async OpenAI SDK that normalizes failures into the
three classes the call executor cares about:

- InferenceAPIError: the API answered with a non-2xx status (service health signal)
- InferenceTransportError: timeout / connection failure (transient)
- InvalidResponseError: 2xx with an empty or unusable body

SDK-level retries are disabled; retry policy belongs to callers.
"""

from typing import Any, Dict, List, Optional

import httpx
import structlog
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI

from deliberai.core.config import Settings, settings as default_settings
from deliberai.core.errors import (
    ConfigurationError,
    InferenceAPIError,
    InferenceTransportError,
    InvalidResponseError,
)

logger = structlog.get_logger(__name__)


class InferenceClient:
    """Chat completion and embedding calls against an OpenAI-compatible endpoint."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        chat_model: str = "gpt-4o-mini",
        embedding_model: str = "text-embedding-3-small",
        timeout_seconds: float = 45.0,
        max_tokens: int = 2000,
        temperature: float = 0.7,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            raise ConfigurationError("OpenAI API key not configured")

        self.chat_model = chat_model
        self.embedding_model = embedding_model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout_seconds,
            max_retries=0,
            http_client=http_client,
        )

    @classmethod
    def from_settings(cls, settings: Settings = default_settings, **kwargs) -> "InferenceClient":
        return cls(
            api_key=settings.OPENAI_API_KEY,
            base_url=settings.OPENAI_BASE_URL,
            chat_model=settings.CHAT_MODEL,
            embedding_model=settings.EMBEDDING_MODEL,
            timeout_seconds=settings.MODEL_TIMEOUT_SECONDS,
            max_tokens=settings.CHAT_MAX_TOKENS,
            temperature=settings.CHAT_TEMPERATURE,
            **kwargs,
        )

    async def chat(
        self,
        messages: List[Dict[str, str]],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        json_object: bool = False,
    ) -> str:
        """Run a chat completion and return the raw message content."""
        kwargs: Dict[str, Any] = {
            "model": self.chat_model,
            "messages": messages,
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": self.temperature if temperature is None else temperature,
        }
        if json_object:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = await self.client.chat.completions.create(**kwargs)
        except APIStatusError as e:
            raise InferenceAPIError(e.status_code, _error_text(e)) from e
        except (APITimeoutError, APIConnectionError) as e:
            raise InferenceTransportError(str(e)) from e

        try:
            choices = getattr(response, "choices", None) or []
            content = choices[0].message.content if choices else None
        except (AttributeError, IndexError, KeyError, TypeError) as e:
            raise InvalidResponseError(f"Malformed chat response: {e}") from e
        if not content:
            raise InvalidResponseError("Empty response from inference API")
        return content

    async def embed(self, text: str) -> List[float]:
        """Embed one input string."""
        try:
            response = await self.client.embeddings.create(
                model=self.embedding_model,
                input=text,
                encoding_format="float",
            )
        except APIStatusError as e:
            raise InferenceAPIError(e.status_code, _error_text(e)) from e
        except (APITimeoutError, APIConnectionError) as e:
            raise InferenceTransportError(str(e)) from e

        try:
            data = getattr(response, "data", None) or []
            vector = data[0].embedding if data else None
        except (AttributeError, IndexError, KeyError, TypeError) as e:
            raise InvalidResponseError(f"Malformed embedding response: {e}") from e
        if not isinstance(vector, list) or not vector:
            raise InvalidResponseError("Invalid embedding response format")
        return vector

    async def aclose(self) -> None:
        await self.client.close()


def _error_text(error: APIStatusError) -> str:
    try:
        return error.response.text
    except Exception:
        return str(error)
