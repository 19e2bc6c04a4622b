"""
Gemini Provider

Cloud multimodal provider using the Generative Language REST API
(generativelanguage.googleapis.com) with an API key.

- Images and image attachments are sent as inlineData parts
- The system prompt is sent as systemInstruction
- Structured output uses responseMimeType + responseJsonSchema
- Thought parts (Gemini 2.5+) are returned as reasoning
"""

import base64
import json
from collections.abc import AsyncIterator
from typing import Any

import httpx
import structlog

from app.core.config import get_settings
from app.core.models import GeminiSettings, MessageRole, ProviderKind, TokenUsage
from app.services.ai.interface import ChatInput, ProviderResponse
from app.services.ai.messages import ImagePart, NormalizedMessage, TextPart, to_multimodal
from app.services.ai.providers.base import BaseProvider
from app.services.ai.structured_output import STRUCTURED_TEMPERATURE, to_json_schema

logger = structlog.get_logger()

AVAILABLE_MODELS = [
    "gemini-2.5-pro",
    "gemini-2.5-flash",
    "gemini-1.5-pro",
    "gemini-1.5-flash",
    "gemini-1.0-pro",
]

# Thinking budgets: -1 = automatic allocation
TEXT_THINKING_BUDGET = -1
STREAM_THINKING_BUDGET = 8192
STRUCTURED_THINKING_BUDGET = 1024

FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "BLOCKLIST": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
    "SPII": "content_filter",
}


def supports_thinking(model: str) -> bool:
    return not model.startswith(("gemini-1.", "gemini-2.0"))


def _to_gemini_parts(message: NormalizedMessage) -> list[dict[str, Any]]:
    parts = []
    for part in message.parts():
        if isinstance(part, TextPart):
            parts.append({"text": part.text})
        elif isinstance(part, ImagePart):
            parts.append({
                "inlineData": {
                    "mimeType": part.media_type,
                    "data": base64.b64encode(part.data).decode("ascii"),
                }
            })
    return parts


def build_contents(messages: list[NormalizedMessage]) -> tuple[list[dict], list[str]]:
    """Split normalized messages into Gemini contents and system texts.

    Gemini has no system role inside ``contents``; system-role messages are
    lifted into the system instruction.
    """
    contents = []
    system_texts = []
    for message in messages:
        if message.role == MessageRole.SYSTEM:
            if message.text:
                system_texts.append(message.text)
            continue
        role = "model" if message.role == MessageRole.ASSISTANT else "user"
        contents.append({"role": role, "parts": _to_gemini_parts(message)})
    return contents, system_texts


def parse_candidate(payload: dict[str, Any]) -> tuple[str, str, str | None]:
    """Return (text, finish_reason, reasoning) of the first candidate."""
    candidates = payload.get("candidates") or []
    if not candidates:
        return "", "stop", None

    candidate = candidates[0]
    texts = []
    thoughts = []
    for part in (candidate.get("content") or {}).get("parts", []):
        if "text" not in part:
            continue
        if part.get("thought"):
            thoughts.append(part["text"])
        else:
            texts.append(part["text"])

    raw_reason = candidate.get("finishReason")
    finish_reason = FINISH_REASONS.get(raw_reason, raw_reason.lower()) if raw_reason else "stop"
    reasoning = "\n".join(thoughts).strip() or None
    return "".join(texts), finish_reason, reasoning


def parse_usage(payload: dict[str, Any]) -> TokenUsage | None:
    metadata = payload.get("usageMetadata")
    if not metadata:
        return None
    return TokenUsage(
        prompt_tokens=metadata.get("promptTokenCount", 0),
        completion_tokens=metadata.get("candidatesTokenCount", 0),
        total_tokens=metadata.get("totalTokenCount", 0),
    )


class GeminiProvider(BaseProvider):
    """Google Gemini via the Generative Language API."""

    kind = ProviderKind.GEMINI
    settings_model = GeminiSettings

    settings: GeminiSettings

    def __init__(
        self,
        settings: dict[str, Any],
        timeout: float | None = None,
        api_base: str | None = None,
    ):
        super().__init__(settings, timeout)
        self.api_base = (api_base or get_settings().gemini_api_base).rstrip("/")

    @classmethod
    def get_provider_info(cls) -> dict[str, Any]:
        return {
            "name": "Google Gemini",
            "description": "Gemini models via the Generative Language API",
            "multimodal": True,
            "structured_output": True,
            "model_discovery": False,
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_base,
            timeout=self.timeout,
            headers={
                "Content-Type": "application/json",
                "x-goog-api-key": self.settings.api_key,
            },
        )

    def _payload(self, chat: ChatInput, mode: str) -> dict[str, Any]:
        """Build a generateContent body for mode "text", "stream" or "structured"."""
        messages = to_multimodal(chat.messages, chat.attachment_files, chat.files)
        contents, system_texts = build_contents(messages)

        structured = mode == "structured"
        system = self.system_text(chat, structured=structured)
        if system:
            system_texts.insert(0, system)

        generation_config: dict[str, Any] = {
            "temperature": STRUCTURED_TEMPERATURE if structured else self.settings.temperature,
        }
        optional = {
            "topP": self.settings.top_p,
            "topK": None if structured else self.settings.top_k,
            "maxOutputTokens": self.settings.max_tokens,
        }
        generation_config.update({k: v for k, v in optional.items() if v is not None})

        if structured:
            generation_config["responseMimeType"] = "application/json"
            generation_config["responseJsonSchema"] = to_json_schema(self.structured_fields(chat))

        if supports_thinking(self.settings.model):
            if structured:
                thinking = {"thinkingBudget": STRUCTURED_THINKING_BUDGET, "includeThoughts": False}
            elif mode == "stream":
                thinking = {"thinkingBudget": STREAM_THINKING_BUDGET, "includeThoughts": True}
            else:
                thinking = {"thinkingBudget": TEXT_THINKING_BUDGET, "includeThoughts": True}
            generation_config["thinkingConfig"] = thinking

        payload: dict[str, Any] = {
            "contents": contents,
            "generationConfig": generation_config,
        }
        if system_texts:
            payload["systemInstruction"] = {"parts": [{"text": "\n\n".join(system_texts)}]}
        return payload

    def _status_error(self, status_code: int, body: str) -> Exception:
        try:
            message = json.loads(body)["error"]["message"]
        except (ValueError, KeyError, TypeError):
            message = body[:500]
        return self.error(f"Gemini API error: {status_code} - {message}", status_code)

    async def generate_response(self, chat: ChatInput) -> ProviderResponse:
        fields = self.structured_fields(chat)
        mode = "structured" if fields is not None else "text"

        logger.info(
            "ai_generate_start",
            provider=self.provider_name,
            model=self.model_name,
            mode=mode,
            messages=len(chat.messages),
        )

        payload = self._payload(chat, mode)
        try:
            async with self._client() as client:
                response = await client.post(
                    f"/models/{self.settings.model}:generateContent",
                    json=payload,
                )
        except httpx.HTTPError as e:
            raise self.error(f"Gemini API unreachable: {e}") from e

        if response.status_code != 200:
            raise self._status_error(response.status_code, response.text)

        result = response.json()
        text, finish_reason, reasoning = parse_candidate(result)
        usage = parse_usage(result)

        report = None
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
            reasoning=reasoning,
            structured_report=report,
        )

    async def stream_response(self, chat: ChatInput) -> AsyncIterator[str]:
        payload = self._payload(chat, "stream")
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    f"/models/{self.settings.model}:streamGenerateContent",
                    params={"alt": "sse"},
                    json=payload,
                ) as response:
                    if response.status_code != 200:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        raise self._status_error(response.status_code, body)

                    async for line in response.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        data = line[len("data:"):].strip()
                        if not data:
                            continue
                        text, _, _ = parse_candidate(json.loads(data))
                        if text:
                            yield text
        except httpx.HTTPError as e:
            raise self.error(f"Gemini API unreachable: {e}") from e

    async def list_available_models(self) -> list[str]:
        return list(AVAILABLE_MODELS)
