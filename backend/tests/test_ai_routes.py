"""
Tests for the internal chat endpoints (/api/v1/ai).
"""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import respx

from app.core.models import ProviderKind
from app.services.ai.providers import OllamaProvider

pytestmark = pytest.mark.asyncio

UPSTREAM_BASE = "http://upstream.test/v1"


def upstream_completion(content: str) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "id": "chatcmpl-upstream",
            "object": "chat.completion",
            "created": 1700000000,
            "model": "test-model",
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": content},
                    "finish_reason": "stop",
                }
            ],
        },
    )


class TestChat:
    async def test_default_configuration(self, client, user_headers, make_configuration):
        config = await make_configuration()

        async with respx.mock(base_url=UPSTREAM_BASE) as respx_mock:
            respx_mock.post("/chat/completions").mock(return_value=upstream_completion("Hi there"))
            response = await client.post(
                "/api/v1/ai/chat",
                json={"messages": [{"role": "user", "content": "Hello"}]},
                headers=user_headers,
            )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        data = body["data"]
        assert data["message"] == "Hi there"
        assert data["model"] == "test-model"
        assert data["configuration"] == {
            "id": config.id,
            "name": "Test Config",
            "provider": "http-api",
        }
        assert "structured_output" not in data

    async def test_structured_report(self, client, user_headers, make_configuration, make_prompt):
        config = await make_configuration()
        prompt = await make_prompt(
            category="Structured Output",
            json_schema=[
                {"name": "summary", "type": "string", "required": True},
                {"name": "score", "type": "number", "required": True},
            ],
        )

        async with respx.mock(base_url=UPSTREAM_BASE) as respx_mock:
            respx_mock.post("/chat/completions").mock(
                return_value=upstream_completion('{"summary": "ok", "mood": "good"}')
            )
            response = await client.post(
                "/api/v1/ai/chat",
                json={
                    "messages": [{"role": "user", "content": "Rate this"}],
                    "configurationId": config.id,
                    "systemPromptId": prompt.id,
                },
                headers=user_headers,
            )

        report = response.json()["data"]["structured_output"]
        assert report == {"missing_required_fields": ["score"], "unexpected_fields": ["mood"]}

    async def test_no_configuration(self, client, user_headers):
        response = await client.post(
            "/api/v1/ai/chat",
            json={"messages": [{"role": "user", "content": "Hello"}]},
            headers=user_headers,
        )
        assert response.status_code == 404

    async def test_upstream_failure_is_bad_gateway(self, client, user_headers, make_configuration):
        await make_configuration()

        async with respx.mock(base_url=UPSTREAM_BASE) as respx_mock:
            respx_mock.post("/chat/completions").mock(return_value=httpx.Response(500))
            response = await client.post(
                "/api/v1/ai/chat",
                json={"messages": [{"role": "user", "content": "Hello"}]},
                headers=user_headers,
            )

        assert response.status_code == 502
        assert response.json()["error"]["type"] == "provider_error"

    async def test_empty_messages_rejected(self, client, user_headers):
        response = await client.post(
            "/api/v1/ai/chat", json={"messages": []}, headers=user_headers
        )
        assert response.status_code == 422


class TestChatStream:
    async def test_stream_events(self, client, user_headers, make_configuration):
        await make_configuration()
        chunks = [
            {
                "id": "c1",
                "object": "chat.completion.chunk",
                "created": 1700000000,
                "model": "test-model",
                "choices": [{"index": 0, "delta": {"content": text}, "finish_reason": None}],
            }
            for text in ("Hel", "lo")
        ]
        body = "".join(f"data: {json.dumps(c)}\n\n" for c in chunks) + "data: [DONE]\n\n"

        async with respx.mock(base_url=UPSTREAM_BASE) as respx_mock:
            respx_mock.post("/chat/completions").mock(
                return_value=httpx.Response(
                    200, content=body.encode(), headers={"content-type": "text/event-stream"}
                )
            )
            response = await client.post(
                "/api/v1/ai/chat/stream",
                json={"messages": [{"role": "user", "content": "Hello"}]},
                headers=user_headers,
            )

        events = [block for block in response.text.split("\n\n") if block]
        assert events == [
            'data: {"content": "Hel"}',
            'data: {"content": "lo"}',
            "data: [DONE]",
        ]


class TestModelsAndProviders:
    async def test_models(self, client, user_headers, make_configuration):
        config = await make_configuration(
            provider=ProviderKind.OLLAMA,
            settings={"serverUrl": "http://ollama.test:11434", "model": "llama3.2"},
        )

        with patch.object(
            OllamaProvider, "list_available_models", AsyncMock(return_value=["llama3.2"])
        ):
            response = await client.get(
                "/api/v1/ai/models", params={"configurationId": config.id}, headers=user_headers
            )

        assert response.json()["data"] == {
            "configuration_id": config.id,
            "provider": "ollama",
            "models": ["llama3.2"],
        }

    async def test_providers(self, client, user_headers):
        response = await client.get("/api/v1/ai/providers", headers=user_headers)
        assert set(response.json()["data"]["providers"]) == {"gemini", "ollama", "http-api"}
