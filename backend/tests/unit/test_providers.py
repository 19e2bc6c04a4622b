"""
Unit tests for the provider adapters.

HTTP-based adapters (Gemini REST, OpenAI-compatible) are exercised against
respx-mocked upstreams; the Ollama client is patched.
"""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import ollama
import pytest
import respx

from app.core.exceptions import InvalidSettingsError, ProviderError
from app.core.models import ChatMessage, JsonField, ProviderKind
from app.services.ai.interface import ChatInput, SystemPrompt
from app.services.ai.messages import Attachment, to_multimodal
from app.services.ai.providers import PROVIDER_REGISTRY, get_all_providers
from app.services.ai.providers.gemini import GeminiProvider, build_contents, parse_candidate
from app.services.ai.providers.http_api import HttpApiProvider
from app.services.ai.providers.ollama import FALLBACK_MODELS, OllamaProvider, server_host

pytestmark = pytest.mark.asyncio

GEMINI_BASE = "http://gemini.test/v1beta"
UPSTREAM_BASE = "http://upstream.test/v1"

STRUCTURED_PROMPT = SystemPrompt(
    content="Summarize the text.",
    category="Structured Output",
    json_schema=[JsonField(name="summary", type="string", required=True)],
)


def chat(*contents: str, system_prompt: SystemPrompt | None = None, **kwargs) -> ChatInput:
    messages = [ChatMessage(role="user", content=c) for c in contents]
    return ChatInput(messages=messages, system_prompt=system_prompt, **kwargs)


def completion_body(content: str, finish_reason: str = "stop") -> dict:
    return {
        "id": "chatcmpl-upstream",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "test-model",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": finish_reason,
            }
        ],
        "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7},
    }


def sse(*payloads: dict | str) -> bytes:
    lines = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode()


def request_json(route: respx.Route) -> dict:
    return json.loads(route.calls.last.request.content)


# =============================================================================
# Registry
# =============================================================================


class TestRegistry:
    def test_every_kind_has_an_adapter(self):
        assert set(PROVIDER_REGISTRY) == set(ProviderKind)

    def test_provider_info(self):
        info = get_all_providers()
        assert set(info) == {"gemini", "ollama", "http-api"}
        assert info["gemini"]["multimodal"] is True
        assert info["http-api"]["multimodal"] is False

    def test_invalid_settings(self):
        with pytest.raises(InvalidSettingsError) as exc_info:
            HttpApiProvider({"model": "m"})
        assert exc_info.value.details["errors"]


# =============================================================================
# HTTP API (OpenAI-compatible)
# =============================================================================


class TestHttpApiProvider:
    @pytest.fixture
    def provider(self):
        return HttpApiProvider({
            "baseUrl": UPSTREAM_BASE,
            "apiKey": "sk-upstream",
            "model": "test-model",
            "temperature": 0.4,
            "maxTokens": 256,
        })

    async def test_generate_text(self, provider):
        async with respx.mock(base_url=UPSTREAM_BASE) as respx_mock:
            route = respx_mock.post("/chat/completions").mock(
                return_value=httpx.Response(200, json=completion_body("Hello!"))
            )
            result = await provider.generate_response(
                chat("Hi", system_prompt=SystemPrompt(content="Be brief."))
            )

        assert result.text == "Hello!"
        assert result.finish_reason == "stop"
        assert result.usage.total_tokens == 7
        assert result.structured_report is None

        sent = request_json(route)
        assert sent["model"] == "test-model"
        assert sent["temperature"] == 0.4
        assert sent["max_tokens"] == 256
        assert sent["messages"] == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hi"},
        ]
        assert "response_format" not in sent
        assert route.calls.last.request.headers["authorization"] == "Bearer sk-upstream"

    async def test_images_are_dropped(self, provider):
        message = ChatMessage.model_validate({
            "role": "user",
            "content": [
                {"type": "text", "text": "what is this"},
                {"type": "image", "image": "data:image/png;base64,iVBORw0KGgo="},
            ],
        })
        async with respx.mock(base_url=UPSTREAM_BASE) as respx_mock:
            route = respx_mock.post("/chat/completions").mock(
                return_value=httpx.Response(200, json=completion_body("a cat"))
            )
            await provider.generate_response(ChatInput(messages=[message]))

        assert request_json(route)["messages"] == [{"role": "user", "content": "what is this"}]

    async def test_structured_mode(self, provider):
        async with respx.mock(base_url=UPSTREAM_BASE) as respx_mock:
            route = respx_mock.post("/chat/completions").mock(
                return_value=httpx.Response(
                    200, json=completion_body('{"summary": "ok", "extra": "x"}')
                )
            )
            result = await provider.generate_response(
                chat("Long text", system_prompt=STRUCTURED_PROMPT)
            )

        assert json.loads(result.text) == {"summary": "ok", "extra": "x"}
        assert result.structured_report.unexpected_fields == ["extra"]

        sent = request_json(route)
        assert sent["temperature"] == 0.1
        assert sent["response_format"] == {"type": "json_object"}
        assert "CRITICAL" in sent["messages"][0]["content"]

    async def test_structured_mode_rejects_prose(self, provider):
        async with respx.mock(base_url=UPSTREAM_BASE) as respx_mock:
            respx_mock.post("/chat/completions").mock(
                return_value=httpx.Response(200, json=completion_body("I cannot do that"))
            )
            with pytest.raises(ProviderError, match="invalid JSON"):
                await provider.generate_response(chat("x", system_prompt=STRUCTURED_PROMPT))

    async def test_upstream_status_error(self, provider):
        async with respx.mock(base_url=UPSTREAM_BASE) as respx_mock:
            respx_mock.post("/chat/completions").mock(
                return_value=httpx.Response(500, json={"error": {"message": "boom"}})
            )
            with pytest.raises(ProviderError) as exc_info:
                await provider.generate_response(chat("Hi"))

        assert exc_info.value.upstream_status == 500
        assert exc_info.value.provider == "http-api"

    async def test_upstream_unreachable(self, provider):
        async with respx.mock(base_url=UPSTREAM_BASE) as respx_mock:
            respx_mock.post("/chat/completions").mock(side_effect=httpx.ConnectError("refused"))
            with pytest.raises(ProviderError, match="unreachable"):
                await provider.generate_response(chat("Hi"))

    async def test_stream(self, provider):
        def chunk(content):
            return {
                "id": "c1",
                "object": "chat.completion.chunk",
                "created": 1700000000,
                "model": "test-model",
                "choices": [{"index": 0, "delta": {"content": content}, "finish_reason": None}],
            }

        body = sse(chunk("Hel"), chunk("lo"), chunk(None), "[DONE]")
        async with respx.mock(base_url=UPSTREAM_BASE) as respx_mock:
            route = respx_mock.post("/chat/completions").mock(
                return_value=httpx.Response(
                    200, content=body, headers={"content-type": "text/event-stream"}
                )
            )
            chunks = [c async for c in provider.stream_response(chat("Hi"))]

        assert chunks == ["Hel", "lo"]
        assert request_json(route)["stream"] is True

    async def test_auth_none_uses_placeholder_key(self):
        provider = HttpApiProvider({
            "baseUrl": UPSTREAM_BASE,
            "model": "m",
            "authType": "none",
            "apiKey": "ignored",
        })
        async with respx.mock(base_url=UPSTREAM_BASE) as respx_mock:
            route = respx_mock.post("/chat/completions").mock(
                return_value=httpx.Response(200, json=completion_body("ok"))
            )
            await provider.generate_response(chat("Hi"))

        assert route.calls.last.request.headers["authorization"] == "Bearer not-needed"

    async def test_models_is_configured_model(self, provider):
        assert await provider.list_available_models() == ["test-model"]


# =============================================================================
# Gemini
# =============================================================================


class TestGeminiHelpers:
    def test_parse_candidate_splits_thoughts(self):
        payload = {
            "candidates": [
                {
                    "content": {
                        "parts": [
                            {"text": "thinking...", "thought": True},
                            {"text": "Hello"},
                            {"text": " world"},
                        ]
                    },
                    "finishReason": "MAX_TOKENS",
                }
            ]
        }
        assert parse_candidate(payload) == ("Hello world", "length", "thinking...")

    def test_parse_candidate_empty(self):
        assert parse_candidate({}) == ("", "stop", None)

    def test_system_messages_lifted(self):
        messages = to_multimodal([
            ChatMessage(role="system", content="rules"),
            ChatMessage(role="user", content="hi"),
            ChatMessage(role="assistant", content="hello"),
        ])
        contents, system = build_contents(messages)
        assert system == ["rules"]
        assert [c["role"] for c in contents] == ["user", "model"]


class TestGeminiProvider:
    @pytest.fixture
    def provider(self):
        return GeminiProvider(
            {"apiKey": "g-key", "model": "gemini-2.5-flash", "temperature": 0.3},
            api_base=GEMINI_BASE,
        )

    @staticmethod
    def response_body(text: str) -> dict:
        return {
            "candidates": [{"content": {"parts": [{"text": text}]}, "finishReason": "STOP"}],
            "usageMetadata": {
                "promptTokenCount": 4,
                "candidatesTokenCount": 3,
                "totalTokenCount": 7,
            },
        }

    def test_api_base_from_settings(self):
        with patch("app.services.ai.providers.gemini.get_settings") as mock_settings:
            mock_settings.return_value = SimpleNamespace(gemini_api_base="http://other.test/v1/")
            provider = GeminiProvider({"apiKey": "k"})
        assert provider.api_base == "http://other.test/v1"

    async def test_generate_text_with_image(self, provider):
        image = Attachment(filename="cat.png", mime_type="image/png", data=b"\x89PNG")
        async with respx.mock(base_url=GEMINI_BASE) as respx_mock:
            route = respx_mock.post("/models/gemini-2.5-flash:generateContent").mock(
                return_value=httpx.Response(200, json=self.response_body("A cat"))
            )
            result = await provider.generate_response(
                chat("What is this?", system_prompt=SystemPrompt(content="Be brief."), files=[image])
            )

        assert result.text == "A cat"
        assert result.usage.total_tokens == 7

        request = route.calls.last.request
        assert request.headers["x-goog-api-key"] == "g-key"
        sent = json.loads(request.content)
        assert sent["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
        parts = sent["contents"][0]["parts"]
        assert parts[0] == {"text": "What is this?"}
        assert parts[1]["inlineData"] == {"mimeType": "image/png", "data": "iVBORw=="}
        assert sent["generationConfig"]["temperature"] == 0.3
        assert sent["generationConfig"]["thinkingConfig"]["includeThoughts"] is True

    async def test_structured_mode(self, provider):
        async with respx.mock(base_url=GEMINI_BASE) as respx_mock:
            route = respx_mock.post("/models/gemini-2.5-flash:generateContent").mock(
                return_value=httpx.Response(200, json=self.response_body('{"summary":"ok"}'))
            )
            result = await provider.generate_response(
                chat("Long text", system_prompt=STRUCTURED_PROMPT)
            )

        assert result.text == '{"summary":"ok"}'
        assert result.structured_report.is_clean

        config = request_json(route)["generationConfig"]
        assert config["responseMimeType"] == "application/json"
        assert config["responseJsonSchema"]["required"] == ["summary"]
        assert config["temperature"] == 0.1
        assert config["thinkingConfig"] == {"thinkingBudget": 1024, "includeThoughts": False}

    async def test_older_models_have_no_thinking(self):
        provider = GeminiProvider({"apiKey": "k", "model": "gemini-1.5-pro"}, api_base=GEMINI_BASE)
        async with respx.mock(base_url=GEMINI_BASE) as respx_mock:
            route = respx_mock.post("/models/gemini-1.5-pro:generateContent").mock(
                return_value=httpx.Response(200, json=self.response_body("ok"))
            )
            await provider.generate_response(chat("Hi"))

        assert "thinkingConfig" not in request_json(route)["generationConfig"]

    async def test_error_message_extracted(self, provider):
        async with respx.mock(base_url=GEMINI_BASE) as respx_mock:
            respx_mock.post("/models/gemini-2.5-flash:generateContent").mock(
                return_value=httpx.Response(
                    400, json={"error": {"code": 400, "message": "API key not valid"}}
                )
            )
            with pytest.raises(ProviderError) as exc_info:
                await provider.generate_response(chat("Hi"))

        assert exc_info.value.message == "Gemini API error: 400 - API key not valid"
        assert exc_info.value.upstream_status == 400

    async def test_stream(self, provider):
        body = sse(
            {"candidates": [{"content": {"parts": [{"text": "Hel"}]}}]},
            {"candidates": [{"content": {"parts": [{"text": "thought", "thought": True}]}}]},
            {"candidates": [{"content": {"parts": [{"text": "lo"}]}, "finishReason": "STOP"}]},
        )
        async with respx.mock(base_url=GEMINI_BASE) as respx_mock:
            route = respx_mock.post("/models/gemini-2.5-flash:streamGenerateContent").mock(
                return_value=httpx.Response(
                    200, content=body, headers={"content-type": "text/event-stream"}
                )
            )
            chunks = [c async for c in provider.stream_response(chat("Hi"))]

        assert chunks == ["Hel", "lo"]
        assert route.calls.last.request.url.params["alt"] == "sse"

    async def test_stream_error_status(self, provider):
        async with respx.mock(base_url=GEMINI_BASE) as respx_mock:
            respx_mock.post("/models/gemini-2.5-flash:streamGenerateContent").mock(
                return_value=httpx.Response(503, text="overloaded")
            )
            with pytest.raises(ProviderError, match="503 - overloaded"):
                async for _ in provider.stream_response(chat("Hi")):
                    pass


# =============================================================================
# Ollama
# =============================================================================


class TestOllamaProvider:
    @pytest.fixture
    def provider(self):
        return OllamaProvider({"serverUrl": "http://ollama.test:11434/api/", "model": "llama3.2"})

    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.close = AsyncMock()
        return client

    @staticmethod
    def response(content: str) -> SimpleNamespace:
        return SimpleNamespace(
            message=SimpleNamespace(content=content),
            prompt_eval_count=3,
            eval_count=4,
            done_reason="stop",
        )

    def test_server_host_strips_api_suffix(self):
        assert server_host("http://ollama.test:11434/api/") == "http://ollama.test:11434"
        assert server_host("http://ollama.test:11434") == "http://ollama.test:11434"

    async def test_generate_text(self, provider, client):
        client.chat = AsyncMock(return_value=self.response("Hello"))
        with patch.object(OllamaProvider, "_get_client", return_value=client):
            result = await provider.generate_response(chat("Hi"))

        assert result.text == "Hello"
        assert result.usage.total_tokens == 7
        kwargs = client.chat.call_args.kwargs
        assert kwargs["model"] == "llama3.2"
        assert kwargs["format"] is None
        assert kwargs["options"] == {"temperature": 0.7}
        client.close.assert_awaited_once()

    async def test_structured_mode_sends_schema(self, provider, client):
        client.chat = AsyncMock(return_value=self.response('{"summary": "ok"}'))
        with patch.object(OllamaProvider, "_get_client", return_value=client):
            result = await provider.generate_response(chat("x", system_prompt=STRUCTURED_PROMPT))

        assert result.text == '{"summary":"ok"}'
        kwargs = client.chat.call_args.kwargs
        assert kwargs["format"]["required"] == ["summary"]
        assert kwargs["options"]["temperature"] == 0.1
        assert kwargs["messages"][0]["role"] == "system"

    async def test_response_error_mapped(self, provider, client):
        client.chat = AsyncMock(side_effect=ollama.ResponseError("model not found", 404))
        with patch.object(OllamaProvider, "_get_client", return_value=client):
            with pytest.raises(ProviderError, match="model not found") as exc_info:
                await provider.generate_response(chat("Hi"))
        assert exc_info.value.upstream_status == 404
        client.close.assert_awaited_once()

    async def test_stream(self, provider, client):
        async def parts():
            for text in ["Hel", "", "lo"]:
                yield SimpleNamespace(message=SimpleNamespace(content=text))

        client.chat = AsyncMock(return_value=parts())
        with patch.object(OllamaProvider, "_get_client", return_value=client):
            chunks = [c async for c in provider.stream_response(chat("Hi"))]

        assert chunks == ["Hel", "lo"]
        assert client.chat.call_args.kwargs["stream"] is True
        client.close.assert_awaited_once()

    async def test_list_models(self, provider, client):
        client.list = AsyncMock(
            return_value=SimpleNamespace(
                models=[SimpleNamespace(model="llama3.2"), SimpleNamespace(model="qwen2")]
            )
        )
        with patch.object(OllamaProvider, "_get_client", return_value=client):
            assert await provider.list_available_models() == ["llama3.2", "qwen2"]

    async def test_list_models_fallback(self, provider, client):
        client.list = AsyncMock(side_effect=ConnectionError("refused"))
        with patch.object(OllamaProvider, "_get_client", return_value=client):
            assert await provider.list_available_models() == FALLBACK_MODELS

    async def test_real_client_closed_after_call(self, provider):
        created = []
        build_client = OllamaProvider._get_client

        def tracking_client(self):
            client = build_client(self)
            created.append(client)
            return client

        async with respx.mock(base_url="http://ollama.test:11434") as respx_mock:
            respx_mock.post("/api/chat").mock(
                return_value=httpx.Response(
                    200,
                    json={
                        "model": "llama3.2",
                        "created_at": "2024-06-01T12:00:00Z",
                        "message": {"role": "assistant", "content": "Hello"},
                        "done": True,
                        "done_reason": "stop",
                        "prompt_eval_count": 3,
                        "eval_count": 4,
                    },
                )
            )
            respx_mock.get("/api/tags").mock(side_effect=httpx.ConnectError("refused"))
            with patch.object(OllamaProvider, "_get_client", tracking_client):
                result = await provider.generate_response(chat("Hi"))
                models = await provider.list_available_models()

        assert result.text == "Hello"
        assert models == FALLBACK_MODELS
        assert len(created) == 2
        assert all(client._client.is_closed for client in created)
