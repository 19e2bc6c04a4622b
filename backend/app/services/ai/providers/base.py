"""
Base Provider Implementation

Common functionality shared across all provider adapters: settings parsing,
system prompt handling, structured-output post-processing and error mapping.
"""

import json
from typing import Any, ClassVar

import pydantic
import structlog

from app.core.exceptions import InvalidSettingsError, ProviderError
from app.core.models import CamelSchema, JsonField, ProviderKind
from app.services.ai.interface import AIProviderInterface, ChatInput
from app.services.ai.messages import to_text_only
from app.services.ai.structured_output import (
    StructuredOutputReport,
    build_schema,
    build_structured_instructions,
    format_output,
    is_structured,
    log_report,
    parse_json_text,
    validate_structured_output,
)

logger = structlog.get_logger()


class BaseProvider(AIProviderInterface):
    """Base class for provider adapters.

    Subclasses declare their ``kind`` and the pydantic ``settings_model``
    their settings record is parsed into.
    """

    kind: ClassVar[ProviderKind]
    settings_model: ClassVar[type[CamelSchema]]

    def __init__(self, settings: dict[str, Any], timeout: float | None = None):
        """Initialize provider from decrypted settings.

        Args:
            settings: Provider settings record (camelCase keys, plaintext secrets)
            timeout: Upstream timeout in seconds, None for no timeout
        """
        try:
            self.settings: Any = self.settings_model.model_validate(settings)
        except pydantic.ValidationError as e:
            raise InvalidSettingsError(
                f"Invalid settings for provider '{self.kind.value}'",
                details={"errors": e.errors(include_url=False, include_context=False)},
            ) from e
        self.timeout = timeout

    @property
    def provider_name(self) -> str:
        return self.kind.value

    @property
    def model_name(self) -> str:
        return self.settings.model

    # ------------------------------------------------------------------
    # System prompt / structured mode
    # ------------------------------------------------------------------

    @staticmethod
    def structured_fields(chat: ChatInput) -> list[JsonField] | None:
        if is_structured(chat.system_prompt):
            return list(chat.system_prompt.json_schema)
        return None

    @staticmethod
    def system_text(chat: ChatInput, structured: bool = True) -> str | None:
        """System instruction for this call.

        In structured mode the prompt is extended with strict-JSON instructions.
        Streams are text only and pass ``structured=False``.
        """
        prompt = chat.system_prompt
        if prompt is None:
            return None
        if structured and is_structured(prompt):
            return build_structured_instructions(prompt.content, prompt.json_schema).strip()
        return prompt.content or None

    def text_messages(self, chat: ChatInput, structured: bool = True) -> list[dict[str, str]]:
        """Text-only conversation with the system prompt prepended as a system message."""
        messages = [
            {"role": m.role.value, "content": m.content}
            for m in to_text_only(chat.messages)
        ]
        system = self.system_text(chat, structured)
        if system:
            messages.insert(0, {"role": "system", "content": system})
        return messages

    def finish_structured(
        self, text: str, fields: list[JsonField]
    ) -> tuple[str, StructuredOutputReport]:
        """Parse, check and re-format a structured answer.

        Schema mismatches are only logged. Text that is not JSON at all is an
        upstream failure.
        """
        try:
            obj = parse_json_text(text)
        except json.JSONDecodeError as e:
            raise self.error(f"Model returned invalid JSON for structured output: {e}") from e

        report = validate_structured_output(obj, fields, build_schema(fields))
        log_report(report, provider=self.provider_name, model=self.model_name)
        return format_output(obj), report

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------

    def error(self, message: str, upstream_status: int | None = None) -> ProviderError:
        logger.error(
            "ai_provider_error",
            provider=self.provider_name,
            model=self.model_name,
            upstream_status=upstream_status,
            error=message[:500],
        )
        return ProviderError(message, provider=self.provider_name, upstream_status=upstream_status)
