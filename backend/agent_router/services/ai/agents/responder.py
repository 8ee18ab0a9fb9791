"""
Augmented (context-grounded) response agent.

Streams a generated answer constrained to the retrieved context and
delivers it in bounded chunks. When the generation capability is degraded
(breaker fallback or a mid-stream failure) a static fallback text is
delivered instead, exactly once.
"""
import asyncio
from contextlib import aclosing
from typing import Awaitable, Callable, List, Optional

from agent_router.core.circuit_breaker import CircuitBreaker
from agent_router.core.errors import DeliveryFailed
from agent_router.core.logging import get_logger
from agent_router.services.ai.llm_client import LLMClient
from agent_router.services.ai.schema import ResponderResult

logger = get_logger(__name__)

AGENT_NAME = "responder"

DEFAULT_FALLBACK_TEXT = (
    "En este momento no puedo generar una respuesta. "
    "Un especialista de nuestro equipo revisará tu consulta y te contactará."
)

SYSTEM_PROMPT_TEMPLATE = (
    "Eres un asistente legal. Responde en español y únicamente con base en el "
    "contexto proporcionado. Si el contexto no es suficiente para responder, "
    "indícalo y recomienda hablar con un abogado especialista.\n\n"
    "Contexto:\n{context}"
)

Deliver = Callable[[str], Awaitable[None]]


class ChunkAccumulator:
    """
    Buffers streamed text and delivers it in chunks of at most ~max_chars.

    All operations hold one lock. After the terminal operation (finish or
    deliver_terminal) the accumulator is closed and further calls are no-ops,
    so at most one terminal message is ever sent.
    """

    def __init__(self, deliver: Deliver, max_chars: int = 150, recipient_id: str = ""):
        if max_chars < 1:
            raise ValueError("max_chars must be >= 1")
        self._deliver = deliver
        self.max_chars = max_chars
        self.recipient_id = recipient_id
        self._buffer = ""
        self._closed = False
        self._lock = asyncio.Lock()
        self.delivered: List[str] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> str:
        return self._buffer

    @property
    def text(self) -> str:
        return "".join(self.delivered)

    async def _send(self, text: str) -> None:
        try:
            await self._deliver(text)
        except DeliveryFailed:
            raise
        except Exception as exc:
            raise DeliveryFailed(self.recipient_id, str(exc)) from exc
        self.delivered.append(text)

    async def add(self, text: str) -> None:
        async with self._lock:
            if self._closed or not text:
                return
            self._buffer += text
            if len(self._buffer) >= self.max_chars:
                chunk, self._buffer = self._buffer, ""
                await self._send(chunk)

    async def finish(self) -> bool:
        """Flush the remaining buffer and close. Returns False if already closed."""
        async with self._lock:
            if self._closed:
                return False
            self._closed = True
            chunk, self._buffer = self._buffer, ""
            if chunk:
                await self._send(chunk)
            return True

    async def deliver_terminal(self, text: str) -> bool:
        """
        Discard unsent buffered text, deliver text, close.

        Returns:
            False if a terminal message was already sent.
        """
        async with self._lock:
            if self._closed:
                return False
            self._closed = True
            self._buffer = ""
            await self._send(text)
            return True


class AugmentedResponder:
    """Streams context-grounded answers through the generation breaker."""

    def __init__(
        self,
        llm_client: LLMClient,
        breaker: CircuitBreaker,
        max_chunk_chars: int = 150,
        fallback_text: str = DEFAULT_FALLBACK_TEXT,
    ):
        self._llm_client = llm_client
        self._breaker = breaker
        self.max_chunk_chars = max_chunk_chars
        self.fallback_text = fallback_text

    def build_messages(self, context: str, query: str) -> List[dict]:
        return [
            {"role": "system", "content": SYSTEM_PROMPT_TEMPLATE.format(context=context)},
            {"role": "user", "content": query},
        ]

    async def respond(
        self,
        context: str,
        query: str,
        deliver_chunk: Deliver,
        recipient_id: str = "",
    ) -> ResponderResult:
        """
        Generate and deliver an answer.

        Returns:
            ResponderResult with the delivered text. fallback_used is True
            when the static fallback was delivered; token cost is then 0.

        Raises:
            DeliveryFailed: a chunk could not be delivered
        """
        accumulator = ChunkAccumulator(deliver_chunk, self.max_chunk_chars, recipient_id)
        usage: dict = {"total_tokens": 0}
        delivery_errors: List[DeliveryFailed] = []

        async def _stream() -> Optional[str]:
            stream = self._llm_client.stream_chat(
                agent=AGENT_NAME,
                messages=self.build_messages(context, query),
                model=self._llm_client.generation_model,
            )
            async with aclosing(stream):
                try:
                    async for chunk in stream:
                        if chunk.total_tokens is not None:
                            usage["total_tokens"] = chunk.total_tokens
                        if chunk.text:
                            await accumulator.add(chunk.text)
                    if accumulator.pending or accumulator.delivered:
                        await accumulator.finish()
                except DeliveryFailed as exc:
                    # Kept out of the generation breaker's failure accounting
                    delivery_errors.append(exc)
            return accumulator.text

        fallback_used = False
        try:
            result = await self._breaker.execute_tagged(_stream, None)
            fallback_used = result.fallback_used
        except DeliveryFailed:
            raise
        except Exception as exc:
            # Failure below the breaker threshold, possibly mid-stream
            logger.warning(
                "responder_stream_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                delivered_chunks=len(accumulator.delivered),
            )
            fallback_used = True

        if delivery_errors:
            raise delivery_errors[0]

        if not fallback_used and not accumulator.text:
            logger.warning("responder_empty_stream")
            fallback_used = True

        if fallback_used:
            partial_chunks = len(accumulator.delivered)
            await accumulator.deliver_terminal(self.fallback_text)
            logger.info(
                "responder_fallback_delivered",
                circuit_breaker=self._breaker.name,
                partial_chunks=partial_chunks,
            )
            return ResponderResult(text=accumulator.text, token_cost=0, fallback_used=True)

        logger.info(
            "responder_completed",
            chunks=len(accumulator.delivered),
            chars=len(accumulator.text),
            total_tokens=usage["total_tokens"],
        )
        return ResponderResult(
            text=accumulator.text,
            token_cost=usage["total_tokens"],
            fallback_used=False,
        )
