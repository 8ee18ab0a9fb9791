"""
Specialty classification agent.

Responsibilities:
- Map a sanitized query to exactly one legal specialty
- Normalize free-form model output onto the closed enumeration
- Never fail the request: any error or degraded capability yields Unclassified
"""
import string
import unicodedata
from typing import Any, Dict, Optional

from agent_router.core.circuit_breaker import CircuitBreaker
from agent_router.core.logging import get_logger
from agent_router.services.ai.llm_client import LLMClient
from agent_router.services.ai.schema import ClassificationResult, Specialty

logger = get_logger(__name__)

AGENT_NAME = "classifier"

SYSTEM_PROMPT = (
    "Eres un clasificador de consultas legales. "
    "Responde únicamente con una de estas etiquetas, sin explicación: "
    "Derecho Penal, Derecho Civil, Derecho Laboral, Sin Clasificar."
)

_PUNCTUATION = str.maketrans("", "", string.punctuation + "¿¡«»")


def _fold(text: str) -> str:
    """Case-fold, strip accents and punctuation, collapse whitespace."""
    decomposed = unicodedata.normalize("NFKD", text.casefold())
    without_accents = "".join(c for c in decomposed if not unicodedata.combining(c))
    return " ".join(without_accents.translate(_PUNCTUATION).split())


_LABELS: Dict[str, Specialty] = {}
for _specialty in Specialty:
    _LABELS[_fold(_specialty.value)] = _specialty
_LABELS.update({
    "penal": Specialty.PENAL,
    "civil": Specialty.CIVIL,
    "laboral": Specialty.LABORAL,
})


def parse_specialty(raw: Optional[str]) -> Specialty:
    """
    Normalize model output to a Specialty.

    Non-matching or malformed output maps to UNCLASSIFIED.
    """
    if not raw or not isinstance(raw, str):
        return Specialty.UNCLASSIFIED
    return _LABELS.get(_fold(raw), Specialty.UNCLASSIFIED)


def _content(response: Any) -> str:
    # OpenAI-compatible shape: choices[0].message.content
    try:
        content = response["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError, AttributeError):
        return ""
    return content if isinstance(content, str) else ""


def _total_tokens(response: Any) -> int:
    try:
        return max(int(response["usage"]["total_tokens"] or 0), 0)
    except (KeyError, TypeError, ValueError, OverflowError, AttributeError):
        return 0


class SpecialtyClassifier:
    """Routes a query to a legal specialty using the classification capability."""

    def __init__(self, llm_client: LLMClient, breaker: CircuitBreaker):
        self._llm_client = llm_client
        self._breaker = breaker

    async def _call(self, text: str) -> Dict[str, Any]:
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": text},
        ]
        return await self._llm_client.chat(
            agent=AGENT_NAME,
            messages=messages,
            max_tokens=16,
            temperature=0.0,
            model=self._llm_client.classification_model,
        )

    async def classify(self, text: str) -> ClassificationResult:
        """
        Classify a query.

        Returns:
            ClassificationResult; UNCLASSIFIED with zero cost when the
            capability is degraded or the call fails.
        """
        try:
            result = await self._breaker.execute_tagged(lambda: self._call(text), None)
        except Exception as exc:
            logger.warning(
                "classification_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return ClassificationResult()

        if result.fallback_used or result.value is None:
            logger.info("classification_fallback", circuit_breaker=self._breaker.name)
            return ClassificationResult()

        raw = _content(result.value)
        specialty = parse_specialty(raw)
        if specialty == Specialty.UNCLASSIFIED and raw:
            logger.info("classification_unmatched_label", raw_label=raw[:64])

        return ClassificationResult(
            specialty=specialty,
            token_cost=_total_tokens(result.value),
        )
