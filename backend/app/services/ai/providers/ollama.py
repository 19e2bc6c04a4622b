"""
Ollama Provider

Local inference through the ollama python client. Text-only; models are
discovered live from the server with a fixed fallback list when it is
unreachable.
"""

from collections.abc import AsyncIterator
from typing import Any

import httpx
import ollama
import structlog

from app.core.models import OllamaSettings, ProviderKind, TokenUsage
from app.services.ai.interface import ChatInput, ProviderResponse
from app.services.ai.providers.base import BaseProvider
from app.services.ai.structured_output import STRUCTURED_TEMPERATURE, to_json_schema

logger = structlog.get_logger()

FALLBACK_MODELS = ["llama3.2", "llama3.2:1b", "phi3", "qwen2"]

# Failures raised by the ollama client: API errors, plus transport errors
OLLAMA_ERRORS = (ollama.ResponseError, httpx.HTTPError, ConnectionError)


def server_host(server_url: str) -> str:
    """Server root; settings written by older clients may include the /api suffix."""
    host = server_url.rstrip("/")
    return host.removesuffix("/api")


class OllamaProvider(BaseProvider):
    """Ollama server (local or remote)."""

    kind = ProviderKind.OLLAMA
    settings_model = OllamaSettings

    settings: OllamaSettings

    def _get_client(self) -> ollama.AsyncClient:
        return ollama.AsyncClient(host=server_host(self.settings.server_url), timeout=self.timeout)

    @classmethod
    def get_provider_info(cls) -> dict[str, Any]:
        return {
            "name": "Ollama",
            "description": "Local models served by Ollama",
            "multimodal": False,
            "structured_output": True,
            "model_discovery": True,
        }

    def _options(self, structured: bool) -> dict[str, Any]:
        options = {
            "temperature": STRUCTURED_TEMPERATURE if structured else self.settings.temperature,
            "top_p": self.settings.top_p,
            "top_k": self.settings.top_k,
            "num_ctx": self.settings.num_ctx,
            "num_predict": self.settings.max_tokens,
        }
        return {k: v for k, v in options.items() if v is not None}

    def _map_error(self, e: Exception) -> Exception:
        if isinstance(e, ollama.ResponseError):
            return self.error(f"Ollama error: {e.error}", e.status_code)
        return self.error(f"Ollama server unreachable: {e}")

    async def generate_response(self, chat: ChatInput) -> ProviderResponse:
        fields = self.structured_fields(chat)
        structured = fields is not None

        logger.info(
            "ai_generate_start",
            provider=self.provider_name,
            model=self.model_name,
            server_url=self.settings.server_url,
            structured=structured,
        )

        client = self._get_client()
        try:
            response = await client.chat(
                model=self.settings.model,
                messages=self.text_messages(chat, structured=structured),
                options=self._options(structured),
                format=to_json_schema(fields) if structured else None,
            )
        except OLLAMA_ERRORS as e:
            raise self._map_error(e) from e
        finally:
            await client.close()

        text = response.message.content or ""
        prompt_tokens = response.prompt_eval_count or 0
        completion_tokens = response.eval_count or 0
        usage = TokenUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )

        report = None
        if structured:
            text, report = self.finish_structured(text, fields)

        return ProviderResponse(
            text=text,
            finish_reason=response.done_reason or "stop",
            usage=usage,
            reasoning=getattr(response.message, "thinking", None),
            structured_report=report,
        )

    async def stream_response(self, chat: ChatInput) -> AsyncIterator[str]:
        client = self._get_client()
        try:
            stream = await client.chat(
                model=self.settings.model,
                messages=self.text_messages(chat, structured=False),
                options=self._options(structured=False),
                stream=True,
            )
            try:
                async for part in stream:
                    if part.message.content:
                        yield part.message.content
            finally:
                await stream.aclose()
        except OLLAMA_ERRORS as e:
            raise self._map_error(e) from e
        finally:
            await client.close()

    async def list_available_models(self) -> list[str]:
        client = self._get_client()
        try:
            response = await client.list()
            return [m.model for m in response.models if m.model]
        except OLLAMA_ERRORS as e:
            logger.warning(
                "ollama_list_models_failed",
                server_url=self.settings.server_url,
                error=str(e),
            )
            return list(FALLBACK_MODELS)
        finally:
            await client.close()
