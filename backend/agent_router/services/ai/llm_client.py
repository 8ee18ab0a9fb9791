"""
Async LLM client for the classification, embedding and generation calls.

Design constraints:
- No provider SDKs; plain httpx against an OpenAI-compatible API
  (Gemini exposes one under /v1beta/openai)
- No circuit breaking here; callers wrap each capability in its own breaker
- Every call records request/latency/error/token metrics

Environment configuration (see core/config.py):
- LLM_API_BASE, LLM_API_KEY, LLM_TIMEOUT_SECONDS
- LLM_CLASSIFICATION_MODEL, LLM_GENERATION_MODEL, LLM_EMBEDDING_MODEL
"""
import json
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from agent_router.core.config import get_settings
from agent_router.core.errors import CapabilityDegraded
from agent_router.core.logging import get_logger
from agent_router.core.metrics import (
    record_llm_error,
    record_llm_request,
    record_llm_tokens,
)

logger = get_logger(__name__)


@dataclass
class StreamChunk:
    """Incremental streamed output; total_tokens is set on the usage chunk."""
    text: str = ""
    total_tokens: Optional[int] = None


def _usage_tokens(data: Dict[str, Any]) -> int:
    usage = data.get("usage") or {}
    total = usage.get("total_tokens")
    if total is None:
        total = int(usage.get("prompt_tokens") or 0) + int(usage.get("completion_tokens") or 0)
    return int(total or 0)


class LLMClient:
    """Async HTTP client for the generation and embedding service."""

    def __init__(
        self,
        api_base: str,
        api_key: Optional[str],
        classification_model: str,
        generation_model: str,
        embedding_model: str,
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self.classification_model = classification_model
        self.generation_model = generation_model
        self.embedding_model = embedding_model
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport)

    def _require_key(self, agent: str) -> None:
        if not self.api_key:
            # Counted as a capability failure by the breaker
            record_llm_error(agent, "missing_api_key")
            raise CapabilityDegraded(agent, "LLM API key not configured")

    def _record_failure(self, agent: str, exc: Exception) -> None:
        if isinstance(exc, httpx.TimeoutException):
            record_llm_error(agent, "timeout")
            logger.warning("llm_timeout", agent=agent, error=str(exc), error_type=type(exc).__name__)
        elif isinstance(exc, httpx.HTTPError):
            record_llm_error(agent, "http_error")
            logger.warning("llm_http_error", agent=agent, error=str(exc), error_type=type(exc).__name__)
        else:
            record_llm_error(agent, "unexpected_error")
            logger.error(
                "llm_unexpected_error",
                agent=agent,
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with self._client() as client:
            response = await client.post(
                f"{self.api_base}{path}",
                headers=self._headers(),
                json=payload,
            )
            response.raise_for_status()
            return response.json()

    async def embed(self, text: str) -> List[float]:
        """
        Generate an embedding vector for text.

        Raises:
            CapabilityDegraded: API key missing or malformed response
            httpx.HTTPError: transport or status failure
        """
        agent = "embedding"
        self._require_key(agent)

        payload = {"model": self.embedding_model, "input": text}
        start = time.time()
        try:
            data = await self._post("/embeddings", payload)
        except Exception as exc:
            self._record_failure(agent, exc)
            raise
        finally:
            record_llm_request(agent, self.embedding_model, time.time() - start)

        try:
            vector = data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as exc:
            record_llm_error(agent, "malformed_response")
            raise CapabilityDegraded(agent, "Embedding response missing data[0].embedding") from exc

        record_llm_tokens(agent, self.embedding_model, _usage_tokens(data))
        return [float(v) for v in vector]

    async def chat(
        self,
        agent: str,
        messages: List[Dict[str, str]],
        max_tokens: int = 256,
        temperature: float = 0.0,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Call the chat completion endpoint.

        Args:
            agent: Logical agent name ("classifier", "responder")
            messages: OpenAI-style chat messages
            max_tokens: Max tokens for completion
            temperature: Sampling temperature
            model: Override model (defaults to the classification model)

        Returns:
            Raw JSON response from the API.
        """
        self._require_key(agent)
        model = model or self.classification_model

        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

        start = time.time()
        try:
            data = await self._post("/chat/completions", payload)
        except Exception as exc:
            self._record_failure(agent, exc)
            raise
        finally:
            # Even if request failed, record latency for observability.
            record_llm_request(agent, model, time.time() - start)

        record_llm_tokens(agent, model, _usage_tokens(data))
        return data

    async def stream_chat(
        self,
        agent: str,
        messages: List[Dict[str, str]],
        max_tokens: int = 1024,
        temperature: float = 0.2,
        model: Optional[str] = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Stream a chat completion as server-sent events.

        Yields StreamChunk objects with incremental text. The final usage
        chunk (if the provider sends one) carries total_tokens.
        """
        self._require_key(agent)
        model = model or self.generation_model

        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
        }

        start = time.time()
        total_tokens = 0
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    f"{self.api_base}/chat/completions",
                    headers=self._headers(),
                    json=payload,
                ) as response:
                    response.raise_for_status()
                    async for line in response.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        body = line[len("data:"):].strip()
                        if not body:
                            continue
                        if body == "[DONE]":
                            break

                        event = json.loads(body)
                        if event.get("usage"):
                            total_tokens = _usage_tokens(event)
                            yield StreamChunk(total_tokens=total_tokens)

                        for choice in event.get("choices") or []:
                            delta = (choice.get("delta") or {}).get("content")
                            if delta:
                                yield StreamChunk(text=delta)
        except Exception as exc:
            self._record_failure(agent, exc)
            raise
        finally:
            record_llm_request(agent, model, time.time() - start)

        record_llm_tokens(agent, model, total_tokens)


_llm_client: Optional[LLMClient] = None


def get_llm_client() -> LLMClient:
    """
    Get global LLM client instance.

    Provider-agnostic: assumes an OpenAI-compatible API and no SDKs.
    """
    global _llm_client
    if _llm_client is None:
        settings = get_settings()
        _llm_client = LLMClient(
            api_base=settings.llm_api_base,
            api_key=settings.llm_api_key,
            classification_model=settings.classification_model,
            generation_model=settings.generation_model,
            embedding_model=settings.embedding_model,
            timeout_seconds=settings.llm_timeout_seconds,
        )
        logger.info(
            "llm_client_initialized",
            api_base=settings.llm_api_base,
            classification_model=settings.classification_model,
            generation_model=settings.generation_model,
            embedding_model=settings.embedding_model,
            has_api_key=bool(settings.llm_api_key),
        )
    return _llm_client
