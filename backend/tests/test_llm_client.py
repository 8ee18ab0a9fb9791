"""
Unit tests for the OpenAI-compatible LLM client.

HTTP is served by httpx.MockTransport; nothing leaves the process.
"""
import json

import httpx
import pytest

from agent_router.core.errors import CapabilityDegraded
from agent_router.services.ai.llm_client import LLMClient


def make_client(handler, api_key="test-key") -> LLMClient:
    return LLMClient(
        api_base="https://llm.test/v1/",
        api_key=api_key,
        classification_model="classifier-model",
        generation_model="generator-model",
        embedding_model="embedding-model",
        timeout_seconds=1.0,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_embed_posts_model_and_input():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "data": [{"embedding": [0.1, 0.2, 0.3]}],
            "usage": {"prompt_tokens": 4, "total_tokens": 4},
        })

    vector = await make_client(handler).embed("despido injustificado")

    assert vector == [0.1, 0.2, 0.3]
    assert seen["url"] == "https://llm.test/v1/embeddings"
    assert seen["auth"] == "Bearer test-key"
    assert seen["body"] == {"model": "embedding-model", "input": "despido injustificado"}


@pytest.mark.asyncio
async def test_embed_malformed_response_raises():
    def handler(request):
        return httpx.Response(200, json={"data": []})

    with pytest.raises(CapabilityDegraded):
        await make_client(handler).embed("texto")


@pytest.mark.asyncio
async def test_chat_returns_raw_payload():
    def handler(request):
        body = json.loads(request.content)
        assert body["model"] == "classifier-model"
        assert body["temperature"] == 0.0
        return httpx.Response(200, json={
            "choices": [{"message": {"content": "Derecho Penal"}}],
            "usage": {"total_tokens": 9},
        })

    data = await make_client(handler).chat(
        agent="classifier",
        messages=[{"role": "user", "content": "me robaron"}],
    )

    assert data["choices"][0]["message"]["content"] == "Derecho Penal"


@pytest.mark.asyncio
async def test_http_error_status_raises():
    def handler(request):
        return httpx.Response(503, json={"error": "overloaded"})

    with pytest.raises(httpx.HTTPStatusError):
        await make_client(handler).chat(agent="classifier", messages=[])


@pytest.mark.asyncio
async def test_missing_api_key_raises_without_request():
    def handler(request):
        raise AssertionError("no request expected")

    client = make_client(handler, api_key=None)

    with pytest.raises(CapabilityDegraded):
        await client.embed("texto")
    with pytest.raises(CapabilityDegraded):
        await client.chat(agent="classifier", messages=[])


@pytest.mark.asyncio
async def test_stream_chat_yields_deltas_and_usage():
    events = [
        {"choices": [{"delta": {"role": "assistant"}}]},
        {"choices": [{"delta": {"content": "Según el "}}]},
        {"choices": [{"delta": {"content": "artículo 47..."}}]},
        {"choices": [], "usage": {"prompt_tokens": 30, "completion_tokens": 12, "total_tokens": 42}},
    ]
    body = "".join(f"data: {json.dumps(e)}\n\n" for e in events) + "data: [DONE]\n\n"

    def handler(request):
        payload = json.loads(request.content)
        assert payload["stream"] is True
        assert payload["model"] == "generator-model"
        return httpx.Response(
            200,
            content=body.encode("utf-8"),
            headers={"Content-Type": "text/event-stream"},
        )

    client = make_client(handler)
    chunks = [c async for c in client.stream_chat(agent="responder", messages=[])]

    assert "".join(c.text for c in chunks) == "Según el artículo 47..."
    assert [c.total_tokens for c in chunks if c.total_tokens is not None] == [42]


@pytest.mark.asyncio
async def test_stream_chat_error_status_raises():
    def handler(request):
        return httpx.Response(500, text="boom")

    client = make_client(handler)
    with pytest.raises(httpx.HTTPStatusError):
        async for _ in client.stream_chat(agent="responder", messages=[]):
            pass
