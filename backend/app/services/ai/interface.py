"""
AI Provider Interface

Abstract base class defining the contract that all provider adapters implement,
plus the value types passed across it.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from typing import Any

from app.core.models import ChatMessage, JsonField, TokenUsage
from app.services.ai.messages import Attachment, AttachmentBatch
from app.services.ai.structured_output import StructuredOutputReport, parse_fields


@dataclass(frozen=True)
class SystemPrompt:
    """The parts of a stored system prompt an adapter needs."""

    content: str
    category: str = "Custom"
    title: str | None = None
    json_schema: list[JsonField] | None = None

    @classmethod
    def from_model(cls, model: Any) -> "SystemPrompt":
        return cls(
            content=model.content,
            category=model.category,
            title=model.title,
            json_schema=parse_fields(model.json_schema) if model.json_schema else None,
        )


@dataclass
class ProviderResponse:
    text: str
    finish_reason: str = "stop"
    usage: TokenUsage | None = None
    reasoning: str | None = None
    # Set in structured mode
    structured_report: StructuredOutputReport | None = None


@dataclass
class ChatInput:
    """Everything an adapter needs for one call."""

    messages: Sequence[ChatMessage]
    system_prompt: SystemPrompt | None = None
    attachment_files: Sequence[AttachmentBatch] = field(default_factory=list)
    files: Sequence[Attachment] = field(default_factory=list)


class AIProviderInterface(ABC):
    """Abstract interface for inference backends.

    Gemini (cloud multimodal), Ollama (local) and OpenAI-compatible HTTP
    backends implement this interface.
    """

    @abstractmethod
    async def generate_response(self, chat: ChatInput) -> ProviderResponse:
        """Generate a complete answer.

        Raises:
            ProviderError: the upstream backend failed; never retried
        """
        pass

    @abstractmethod
    def stream_response(self, chat: ChatInput) -> AsyncIterator[str]:
        """Stream answer text chunks.

        Forward-only. Closing the iterator closes the upstream connection.
        """
        pass

    @abstractmethod
    async def list_available_models(self) -> list[str]:
        """Model names selectable for this backend."""
        pass

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get the provider name for logging."""
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Get the model name being used."""
        pass
