"""
Agent orchestration pipeline.

Responsibilities:
- Run one inbound message through the stages, strictly in order:
  rate limit → validate → classify → retrieve → (augment | handoff) → audit
- Convert throttling and validation failures into a single user notice
- Turn "no usable context" into a human handoff instead of a guess
- Write exactly one audit record for every message that reached classification

NON-responsibilities:
- Does NOT parse gateway payloads or authenticate users
- Does NOT own retries; capabilities degrade through their circuit breakers
"""
import time
from contextlib import contextmanager
from typing import Dict, List, Optional

from agent_router.core.background import spawn_background
from agent_router.core.circuit_breaker import CapabilityBreakers, build_capability_breakers
from agent_router.core.config import Settings
from agent_router.core.errors import (
    AuditWriteFailed,
    DeliveryFailed,
    RateLimitExceeded,
    ValidationError,
    ValidationErrorKind,
)
from agent_router.core.logging import get_logger, set_user_id
from agent_router.core.metrics import (
    record_agent_outcome,
    record_audit_write_failure,
    record_handoff,
    record_specialty,
    record_stage_latency,
)
from agent_router.core.rate_limit import RateLimiter
from agent_router.core.tracing import get_tracer, record_exception, set_span_attribute
from agent_router.services.ai.agents.classifier import SpecialtyClassifier
from agent_router.services.ai.agents.responder import AugmentedResponder
from agent_router.services.ai.embedding_cache import EmbeddingCache, zero_vector
from agent_router.services.ai.llm_client import LLMClient
from agent_router.services.ai.schema import (
    Fragment,
    HandoffCheckpoint,
    InteractionRecord,
    Query,
    RouterOutcome,
    RouterStatus,
    Specialty,
)
from agent_router.services.search.hybrid import HybridRetriever
from agent_router.services.search.validation import InputValidator

logger = get_logger(__name__)

RATE_LIMIT_NOTICE = (
    "Has enviado demasiados mensajes en poco tiempo. "
    "Por favor espera un momento antes de escribir de nuevo."
)
TOO_SHORT_NOTICE = (
    "Tu mensaje es demasiado corto (mínimo {bound} caracteres). "
    "Por favor describe tu consulta con más detalle."
)
TOO_LONG_NOTICE = (
    "Tu mensaje es demasiado largo (máximo {bound} caracteres). "
    "Por favor resume tu consulta."
)
HANDOFF_NOTICE = (
    "No encontré información suficiente para responder tu consulta de {specialty}. "
    "Un abogado especialista revisará tu caso y te contactará pronto."
)

# Audit path labels
CLASSIFY_STEP = "Classify:{specialty}"
RETRIEVE_STEP = "Retrieve"
AUGMENT_STEP = "Augment"
HANDOFF_STEP = "HandoffInitiated"

# model_used for answers that did not come from the generation model
HANDOFF_MODEL = "handoff-notice"
FALLBACK_MODEL = "static-fallback"

NO_CONTEXT_REASON = "no_context"
GENERATION_FALLBACK_REASON = "generation_fallback"


def validation_notice(error: ValidationError) -> str:
    if error.kind == ValidationErrorKind.TOO_SHORT:
        return TOO_SHORT_NOTICE.format(bound=error.bound)
    return TOO_LONG_NOTICE.format(bound=error.bound)


def build_context(fragments: List[Fragment]) -> str:
    return "\n\n---\n\n".join(f.content for f in fragments)


def specialty_thresholds(settings: Settings) -> Dict[Specialty, float]:
    return {
        Specialty.PENAL: settings.retrieval_threshold_penal,
        Specialty.CIVIL: settings.retrieval_threshold_civil,
        Specialty.LABORAL: settings.retrieval_threshold_laboral,
    }


@contextmanager
def _stage(name: str):
    """Span plus latency histogram around one pipeline stage."""
    tracer = get_tracer()
    start = time.time()
    with tracer.start_as_current_span(f"agent.{name}"):
        try:
            yield
        finally:
            record_stage_latency(name, time.time() - start)


class AgentRouter:
    """Per-message orchestrator; all collaborators are injected."""

    def __init__(
        self,
        rate_limiter: RateLimiter,
        validator: InputValidator,
        classifier: SpecialtyClassifier,
        retriever: HybridRetriever,
        responder: AugmentedResponder,
        store,
        delivery,
        workflow,
        generation_model: str,
        handoff_on_generation_fallback: bool = False,
    ):
        self.rate_limiter = rate_limiter
        self.validator = validator
        self.classifier = classifier
        self.retriever = retriever
        self.responder = responder
        self.store = store
        self.delivery = delivery
        self.workflow = workflow
        self.generation_model = generation_model
        self.handoff_on_generation_fallback = handoff_on_generation_fallback

    async def _deliver(self, recipient_id: str, text: str) -> None:
        await self.delivery.deliver(recipient_id, text)

    async def _initiate_handoff(self, query: Query, specialty: Specialty, reason: str) -> None:
        """Persist a checkpoint and fire the workflow hook in the background."""
        record_handoff(reason)
        checkpoint = HandoffCheckpoint(
            user_id=query.user_id,
            query=query.text,
            specialty=specialty,
            reason=reason,
        )
        try:
            await self.store.insert_checkpoint(checkpoint)
        except Exception as e:
            logger.error(
                "handoff_checkpoint_failed",
                specialty=specialty.value,
                reason=reason,
                error=str(e),
                error_type=type(e).__name__,
            )

        payload = {
            "user_id": query.user_id,
            "query": query.text,
            "specialty": specialty.value,
            "reason": reason,
        }
        spawn_background(self.workflow.trigger(payload), name="handoff_workflow_trigger")
        logger.info("handoff_initiated", specialty=specialty.value, reason=reason)

    async def _audit(self, record: InteractionRecord) -> None:
        with _stage("audit"):
            try:
                await self.store.insert_interaction(record)
            except Exception as e:
                error = AuditWriteFailed(str(e))
                record_audit_write_failure()
                record_exception(error)
                logger.error(
                    "audit_write_failed",
                    path=record.path,
                    error=str(e),
                    error_type=type(e).__name__,
                )

    async def handle_message(self, user_id: str, recipient_id: str, text: str) -> RouterOutcome:
        """
        Process one inbound message end to end.

        Returns:
            RouterOutcome describing the path taken

        Raises:
            DeliveryFailed: a reply could not be delivered (after the audit
                record, if any, has been written)
        """
        set_user_id(user_id)
        tracer = get_tracer()
        with tracer.start_as_current_span("agent.handle_message"):
            set_span_attribute("user.id", user_id)

            throttled = False
            with _stage("rate_limit"):
                try:
                    await self.rate_limiter.enforce(user_id)
                except RateLimitExceeded:
                    throttled = True
            if throttled:
                record_agent_outcome(RouterStatus.RATE_LIMITED.value)
                await self._deliver(recipient_id, RATE_LIMIT_NOTICE)
                return RouterOutcome(
                    status=RouterStatus.RATE_LIMITED,
                    response_text=RATE_LIMIT_NOTICE,
                )

            notice = None
            with _stage("validate"):
                try:
                    sanitized = self.validator.validate(text)
                except ValidationError as exc:
                    notice = validation_notice(exc)
                    logger.info(
                        "input_rejected",
                        kind=exc.kind.value,
                        length=exc.length,
                        bound=exc.bound,
                    )
            if notice is not None:
                record_agent_outcome(RouterStatus.INVALID.value)
                await self._deliver(recipient_id, notice)
                return RouterOutcome(status=RouterStatus.INVALID, response_text=notice)

            query = Query(text=sanitized, user_id=user_id)
            return await self._run_pipeline(query, recipient_id)

    async def _run_pipeline(self, query: Query, recipient_id: str) -> RouterOutcome:
        path: List[str] = []
        fragment_ids: List[str] = []
        output_text = ""
        model_used = HANDOFF_MODEL
        token_cost = 0
        status = RouterStatus.HANDOFF
        specialty = Specialty.UNCLASSIFIED
        delivery_error: Optional[DeliveryFailed] = None

        try:
            with _stage("classify"):
                classification = await self.classifier.classify(query.text)
            specialty = classification.specialty
            token_cost += classification.token_cost
            path.append(CLASSIFY_STEP.format(specialty=specialty.value))
            record_specialty(specialty.value)
            set_span_attribute("agent.specialty", specialty.value)

            with _stage("retrieve"):
                fragments = await self.retriever.retrieve(query.text, specialty)

            if not fragments:
                with _stage("handoff"):
                    await self._initiate_handoff(query, specialty, NO_CONTEXT_REASON)
                    output_text = HANDOFF_NOTICE.format(specialty=specialty.value)
                    path.append(HANDOFF_STEP)
                    await self._deliver(recipient_id, output_text)
            else:
                fragment_ids = [f.fragment_id for f in fragments]
                path.append(RETRIEVE_STEP)

                with _stage("augment"):
                    result = await self.responder.respond(
                        build_context(fragments),
                        query.text,
                        lambda chunk: self._deliver(recipient_id, chunk),
                        recipient_id=recipient_id,
                    )
                output_text = result.text
                token_cost += result.token_cost

                if result.fallback_used:
                    status = RouterStatus.FALLBACK
                    model_used = FALLBACK_MODEL
                    path.append(HANDOFF_STEP)
                    if self.handoff_on_generation_fallback:
                        await self._initiate_handoff(query, specialty, GENERATION_FALLBACK_REASON)
                else:
                    status = RouterStatus.ANSWERED
                    model_used = self.generation_model
                    path.append(AUGMENT_STEP)
        except DeliveryFailed as exc:
            delivery_error = exc
            record_exception(exc)
            logger.error(
                "delivery_failed",
                recipient_id=recipient_id,
                path=path,
                error=str(exc),
            )

        await self._audit(
            InteractionRecord(
                user_id=query.user_id,
                input_text=query.text,
                output_text=output_text,
                model_used=model_used,
                token_cost=token_cost,
                path=path,
                fragment_ids=fragment_ids,
            )
        )

        if delivery_error is not None:
            record_agent_outcome("delivery_failed")
            raise delivery_error

        record_agent_outcome(status.value)
        logger.info(
            "message_handled",
            status=status.value,
            specialty=specialty.value,
            path=path,
            fragments=len(fragment_ids),
            token_cost=token_cost,
        )
        return RouterOutcome(
            status=status,
            response_text=output_text,
            path=path,
            fragment_ids=fragment_ids,
            token_cost=token_cost,
            specialty=specialty,
            handoff=status != RouterStatus.ANSWERED,
        )


def build_agent_router(
    settings: Settings,
    store,
    delivery,
    workflow,
    llm_client: LLMClient,
    breakers: Optional[CapabilityBreakers] = None,
) -> AgentRouter:
    """Wire the pipeline from settings and collaborators."""
    breakers = breakers or build_capability_breakers(
        failure_threshold=settings.breaker_failure_threshold,
        cooldown_seconds=settings.breaker_cooldown_seconds,
    )
    fallback_vector = zero_vector(settings.embedding_dim)
    cache = EmbeddingCache(store, fallback_vector)

    return AgentRouter(
        rate_limiter=RateLimiter(
            store,
            max_requests=settings.rate_limit_max_requests,
            window_seconds=settings.rate_limit_window_seconds,
        ),
        validator=InputValidator(
            min_length=settings.input_min_length,
            max_length=settings.input_max_length,
        ),
        classifier=SpecialtyClassifier(llm_client, breakers.classification),
        retriever=HybridRetriever(
            store,
            cache,
            llm_client,
            breakers.embedding,
            fallback_vector=fallback_vector,
            thresholds=specialty_thresholds(settings),
            default_threshold=settings.retrieval_default_threshold,
            top_k=settings.retrieval_top_k,
        ),
        responder=AugmentedResponder(
            llm_client,
            breakers.generation,
            max_chunk_chars=settings.stream_chunk_chars,
        ),
        store=store,
        delivery=delivery,
        workflow=workflow,
        generation_model=settings.generation_model,
        handoff_on_generation_fallback=settings.handoff_on_generation_fallback,
    )
