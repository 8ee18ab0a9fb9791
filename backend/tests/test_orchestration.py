"""
End-to-end pipeline tests for the agent router.

All collaborators are in-memory; no real HTTP or database calls.
"""
import pytest

from agent_router.core.background import drain_background_tasks
from agent_router.core.circuit_breaker import CircuitState
from agent_router.core.config import Settings
from agent_router.core.errors import DeliveryFailed
from agent_router.services.ai.agents.responder import DEFAULT_FALLBACK_TEXT
from agent_router.services.ai.orchestration import (
    HANDOFF_NOTICE,
    RATE_LIMIT_NOTICE,
    build_agent_router,
)
from agent_router.services.ai.schema import RouterStatus, Specialty

from conftest import EMBEDDING_DIM, RecordingDelivery, RecordingWorkflow, make_breakers

QUERY = "¿Cuáles son mis derechos en un contrato de arriendo?"
USER = "user-42"
RECIPIENT = "+5215550042"


def make_settings(**overrides) -> Settings:
    values = {"embedding_dim": EMBEDDING_DIM, "generation_model": "test-generator"}
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def breakers(clock):
    return make_breakers(clock=clock)


@pytest.fixture
def router(store, llm, delivery, workflow, breakers):
    return build_agent_router(
        make_settings(),
        store=store,
        delivery=delivery,
        workflow=workflow,
        llm_client=llm,
        breakers=breakers,
    )


def seed_civil_fragments(store):
    store.add_fragment(Specialty.CIVIL, "frag-1", "El arrendatario tiene derecho a...", 0.86)
    store.add_fragment(Specialty.CIVIL, "frag-2", "El arrendador debe entregar...", 0.74)
    store.add_fragment(Specialty.CIVIL, "frag-3", "Texto poco relacionado", 0.65)


@pytest.mark.asyncio
async def test_grounded_answer_path(router, store, llm, delivery):
    seed_civil_fragments(store)

    outcome = await router.handle_message(USER, RECIPIENT, QUERY)
    await drain_background_tasks()

    assert outcome.status == RouterStatus.ANSWERED
    assert outcome.specialty == Specialty.CIVIL
    assert outcome.handoff is False
    assert delivery.texts == ["Respuesta basada en el contexto."]

    assert len(store.interactions) == 1
    record = store.interactions[0]
    assert record.path == ["Classify:Derecho Civil", "Retrieve", "Augment"]
    assert record.fragment_ids == ["frag-1", "frag-2"]
    assert record.token_cost == llm.classification_tokens + llm.stream_tokens
    assert record.model_used == "test-generator"
    assert record.input_text == QUERY
    assert record.output_text == "Respuesta basada en el contexto."

    # Fragments are joined into the system prompt
    system_prompt = llm.last_stream_messages[0]["content"]
    assert "El arrendatario tiene derecho a..." in system_prompt
    assert "Texto poco relacionado" not in system_prompt


@pytest.mark.asyncio
async def test_no_context_initiates_handoff(router, store, delivery, workflow):
    outcome = await router.handle_message(USER, RECIPIENT, QUERY)
    await drain_background_tasks()

    expected_notice = HANDOFF_NOTICE.format(specialty="Derecho Civil")
    assert outcome.status == RouterStatus.HANDOFF
    assert outcome.handoff is True
    assert delivery.texts == [expected_notice]
    assert "Derecho Civil" in expected_notice

    assert len(store.checkpoints) == 1
    assert store.checkpoints[0].query == QUERY
    assert store.checkpoints[0].specialty == Specialty.CIVIL

    assert workflow.payloads == [{
        "user_id": USER,
        "query": QUERY,
        "specialty": "Derecho Civil",
        "reason": "no_context",
    }]

    record = store.interactions[0]
    assert record.path == ["Classify:Derecho Civil", "HandoffInitiated"]
    assert record.fragment_ids == []
    assert record.model_used == "handoff-notice"


@pytest.mark.asyncio
async def test_open_generation_breaker_delivers_fallback_once(router, store, llm, delivery, workflow, breakers):
    seed_civil_fragments(store)
    for _ in range(5):
        breakers.generation._record_failure(RuntimeError("down"))
    assert breakers.generation.state == CircuitState.OPEN

    outcome = await router.handle_message(USER, RECIPIENT, QUERY)
    await drain_background_tasks()

    assert outcome.status == RouterStatus.FALLBACK
    assert delivery.texts == [DEFAULT_FALLBACK_TEXT]
    assert llm.stream_calls == 0

    record = store.interactions[0]
    assert record.path == ["Classify:Derecho Civil", "Retrieve", "HandoffInitiated"]
    assert record.token_cost == llm.classification_tokens
    assert record.model_used == "static-fallback"
    assert record.fragment_ids == ["frag-1", "frag-2"]
    # Workflow is not re-triggered by default
    assert workflow.payloads == []


@pytest.mark.asyncio
async def test_generation_fallback_can_trigger_workflow(store, llm, delivery, workflow, breakers):
    router = build_agent_router(
        make_settings(handoff_on_generation_fallback=True),
        store=store,
        delivery=delivery,
        workflow=workflow,
        llm_client=llm,
        breakers=breakers,
    )
    seed_civil_fragments(store)
    llm.stream_error = RuntimeError("generation down")

    outcome = await router.handle_message(USER, RECIPIENT, QUERY)
    await drain_background_tasks()

    assert outcome.status == RouterStatus.FALLBACK
    assert [p["reason"] for p in workflow.payloads] == ["generation_fallback"]
    assert store.checkpoints[0].reason == "generation_fallback"


@pytest.mark.asyncio
async def test_rate_limited_request_stops_before_classification(router, store, llm, delivery):
    for _ in range(10):
        await router.handle_message(USER, RECIPIENT, QUERY)
    await drain_background_tasks()
    delivery.messages.clear()
    chat_calls = llm.chat_calls
    interactions = len(store.interactions)

    outcome = await router.handle_message(USER, RECIPIENT, QUERY)

    assert outcome.status == RouterStatus.RATE_LIMITED
    assert delivery.texts == [RATE_LIMIT_NOTICE]
    assert llm.chat_calls == chat_calls
    assert len(store.interactions) == interactions


@pytest.mark.asyncio
async def test_invalid_input_names_the_bound(router, store, llm, delivery):
    outcome = await router.handle_message(USER, RECIPIENT, "hola")

    assert outcome.status == RouterStatus.INVALID
    assert "5" in delivery.texts[0]
    assert llm.chat_calls == 0
    assert store.interactions == []

    outcome = await router.handle_message(USER, RECIPIENT, "a" * 2001)
    assert outcome.status == RouterStatus.INVALID
    assert "2000" in delivery.texts[1]


@pytest.mark.asyncio
async def test_classifier_outage_routes_as_unclassified(router, store, llm, delivery):
    llm.chat_error = RuntimeError("classification down")

    outcome = await router.handle_message(USER, RECIPIENT, QUERY)
    await drain_background_tasks()

    assert outcome.specialty == Specialty.UNCLASSIFIED
    assert store.interactions[0].path[0] == "Classify:Sin Clasificar"
    assert store.interactions[0].token_cost == 0


@pytest.mark.asyncio
async def test_audit_failure_does_not_fail_response(router, store, delivery):
    seed_civil_fragments(store)
    store.fail.add("insert_interaction")

    outcome = await router.handle_message(USER, RECIPIENT, QUERY)
    await drain_background_tasks()

    assert outcome.status == RouterStatus.ANSWERED
    assert delivery.texts == ["Respuesta basada en el contexto."]


@pytest.mark.asyncio
async def test_checkpoint_and_workflow_failures_do_not_block_handoff(store, llm, delivery, breakers):
    workflow = RecordingWorkflow(error=RuntimeError("n8n unreachable"))
    router = build_agent_router(
        make_settings(),
        store=store,
        delivery=delivery,
        workflow=workflow,
        llm_client=llm,
        breakers=breakers,
    )
    store.fail.add("insert_checkpoint")

    outcome = await router.handle_message(USER, RECIPIENT, QUERY)
    await drain_background_tasks()

    assert outcome.status == RouterStatus.HANDOFF
    assert len(delivery.texts) == 1
    assert len(store.interactions) == 1


@pytest.mark.asyncio
async def test_delivery_failure_is_audited_then_raised(store, llm, workflow, breakers):
    delivery = RecordingDelivery(fail_on_call=1)
    router = build_agent_router(
        make_settings(),
        store=store,
        delivery=delivery,
        workflow=workflow,
        llm_client=llm,
        breakers=breakers,
    )
    seed_civil_fragments(store)

    with pytest.raises(DeliveryFailed):
        await router.handle_message(USER, RECIPIENT, QUERY)
    await drain_background_tasks()

    assert len(store.interactions) == 1
    assert breakers.generation.state == CircuitState.CLOSED
    assert breakers.generation.failure_count == 0


@pytest.mark.asyncio
async def test_specialty_thresholds_come_from_settings(store, llm, delivery, workflow, breakers):
    router = build_agent_router(
        make_settings(retrieval_threshold_civil=0.8),
        store=store,
        delivery=delivery,
        workflow=workflow,
        llm_client=llm,
        breakers=breakers,
    )
    seed_civil_fragments(store)

    outcome = await router.handle_message(USER, RECIPIENT, QUERY)
    await drain_background_tasks()

    assert store.match_calls[-1]["threshold"] == 0.8
    assert outcome.status == RouterStatus.ANSWERED
    assert store.interactions[0].fragment_ids == ["frag-1"]
