"""
HTTP API Provider

Generic OpenAI-compatible endpoint provider. Works with any API implementing
the chat completions format (vLLM, LM Studio, LiteLLM, OpenAI itself, ...).

Text-only: image parts and attachments are dropped before the call.
"""

from collections.abc import AsyncIterator
from typing import Any

import openai
import structlog
from openai import AsyncOpenAI

from app.core.models import HttpApiSettings, ProviderKind, TokenUsage
from app.services.ai.interface import ChatInput, ProviderResponse
from app.services.ai.providers.base import BaseProvider
from app.services.ai.structured_output import STRUCTURED_TEMPERATURE

logger = structlog.get_logger()

# Placeholder for endpoints that ignore authentication
NO_API_KEY = "not-needed"


class HttpApiProvider(BaseProvider):
    """OpenAI-compatible chat completions endpoint."""

    kind = ProviderKind.HTTP_API
    settings_model = HttpApiSettings

    settings: HttpApiSettings

    def _get_client(self) -> AsyncOpenAI:
        api_key = self.settings.api_key if self.settings.auth_type != "none" else None
        return AsyncOpenAI(
            base_url=self.settings.base_url,
            api_key=api_key or NO_API_KEY,
            default_headers=self.settings.headers or None,
            timeout=self.timeout,
            max_retries=0,
        )

    @classmethod
    def get_provider_info(cls) -> dict[str, Any]:
        return {
            "name": "HTTP API",
            "description": "Any OpenAI-compatible chat completions endpoint",
            "multimodal": False,
            "structured_output": True,
            "model_discovery": False,
        }

    def _request_kwargs(self, chat: ChatInput, streaming: bool = False) -> dict[str, Any]:
        structured = not streaming and self.structured_fields(chat) is not None
        kwargs: dict[str, Any] = {
            "model": self.settings.model,
            "messages": self.text_messages(chat, structured=structured),
            "temperature": STRUCTURED_TEMPERATURE if structured else self.settings.temperature,
        }
        optional = {
            "max_tokens": self.settings.max_tokens,
            "top_p": self.settings.top_p,
            "presence_penalty": self.settings.presence_penalty,
            "frequency_penalty": self.settings.frequency_penalty,
        }
        kwargs.update({k: v for k, v in optional.items() if v is not None})
        if structured:
            kwargs["response_format"] = {"type": "json_object"}
        return kwargs

    def _map_error(self, e: openai.OpenAIError) -> Exception:
        if isinstance(e, openai.APIStatusError):
            return self.error(f"Upstream API error: {e.message}", e.status_code)
        return self.error(f"Upstream API unreachable: {e}")

    async def generate_response(self, chat: ChatInput) -> ProviderResponse:
        logger.info(
            "ai_generate_start",
            provider=self.provider_name,
            model=self.model_name,
            base_url=self.settings.base_url,
            messages=len(chat.messages),
        )

        client = self._get_client()
        try:
            async with client:
                response = await client.chat.completions.create(**self._request_kwargs(chat))
        except openai.OpenAIError as e:
            raise self._map_error(e) from e

        choice = response.choices[0] if response.choices else None
        text = (choice.message.content if choice else None) or ""
        finish_reason = (choice.finish_reason if choice else None) or "stop"

        usage = None
        if response.usage:
            usage = TokenUsage(
                prompt_tokens=response.usage.prompt_tokens or 0,
                completion_tokens=response.usage.completion_tokens or 0,
                total_tokens=response.usage.total_tokens or 0,
            )

        report = None
        fields = self.structured_fields(chat)
        if fields is not None:
            text, report = self.finish_structured(text, fields)

        logger.info(
            "ai_generate_success",
            provider=self.provider_name,
            model=self.model_name,
            finish_reason=finish_reason,
            total_tokens=usage.total_tokens if usage else None,
        )
        return ProviderResponse(
            text=text,
            finish_reason=finish_reason,
            usage=usage,
            structured_report=report,
        )

    async def stream_response(self, chat: ChatInput) -> AsyncIterator[str]:
        kwargs = self._request_kwargs(chat, streaming=True)

        client = self._get_client()
        try:
            async with client:
                stream = await client.chat.completions.create(**kwargs, stream=True)
                async with stream:
                    async for chunk in stream:
                        if not chunk.choices:
                            continue
                        delta = chunk.choices[0].delta.content
                        if delta:
                            yield delta
        except openai.OpenAIError as e:
            raise self._map_error(e) from e

    async def list_available_models(self) -> list[str]:
        return [self.settings.model]
