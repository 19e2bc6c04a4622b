"""
AI Gateway

Single entry point from "a registration" (external proxy) or "a user and a
configuration id" (internal chat) to an answer:
- resolves and decrypts the configuration
- picks the adapter for the provider kind
- delegates a complete or streaming call

No retries and no fallback to other configurations: a provider failure fails
the request.
"""

from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.exceptions import UnsupportedProviderError
from app.core.models import ChatMessage
from app.db.models import APIRegistrationModel
from app.services.ai.config_service import AIConfigService, ResolvedConfiguration
from app.services.ai.encryption import CredentialVault
from app.services.ai.interface import ChatInput, ProviderResponse, SystemPrompt
from app.services.ai.messages import Attachment, AttachmentBatch
from app.services.ai.providers import PROVIDER_REGISTRY, BaseProvider

logger = structlog.get_logger()


@dataclass(frozen=True)
class GenerationOverrides:
    """Per-call sampling overrides taken from the request body."""

    temperature: float | None = None
    max_tokens: int | None = None

    def apply(self, settings: dict[str, Any]) -> dict[str, Any]:
        merged = dict(settings)
        if self.temperature is not None:
            merged["temperature"] = self.temperature
        if self.max_tokens is not None:
            merged["maxTokens"] = self.max_tokens
        return merged


@dataclass
class GatewayResult:
    configuration: ResolvedConfiguration
    model: str
    response: ProviderResponse


@dataclass
class GatewayStream:
    configuration: ResolvedConfiguration
    model: str
    chunks: AsyncIterator[str]


class AIGateway:
    """Dispatch facade over the provider adapters."""

    def __init__(
        self,
        db: AsyncSession,
        vault: CredentialVault,
        settings: Settings | None = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.config_service = AIConfigService(db, vault)

    def create_provider(
        self,
        configuration: ResolvedConfiguration,
        overrides: GenerationOverrides | None = None,
    ) -> BaseProvider:
        """Instantiate the adapter for a resolved configuration.

        Raises:
            UnsupportedProviderError: no adapter for the provider kind
        """
        provider_class = PROVIDER_REGISTRY.get(configuration.provider)
        if provider_class is None:
            raise UnsupportedProviderError(str(configuration.provider))

        settings = configuration.settings
        if overrides is not None:
            settings = overrides.apply(settings)
        return provider_class(settings, timeout=self.settings.provider_timeout_seconds)

    async def resolve_for_registration(
        self, registration: APIRegistrationModel
    ) -> ResolvedConfiguration:
        return await self.config_service.resolve(
            registration.user_id, registration.configuration_id
        )

    # ------------------------------------------------------------------
    # Complete answers
    # ------------------------------------------------------------------

    async def _respond(
        self,
        configuration: ResolvedConfiguration,
        chat: ChatInput,
        overrides: GenerationOverrides | None,
    ) -> GatewayResult:
        provider = self.create_provider(configuration, overrides)
        logger.info(
            "ai_gateway_dispatch",
            configuration_id=configuration.configuration_id,
            provider=provider.provider_name,
            model=provider.model_name,
            structured=provider.structured_fields(chat) is not None,
        )
        response = await provider.generate_response(chat)
        return GatewayResult(
            configuration=configuration,
            model=provider.model_name,
            response=response,
        )

    async def respond(
        self,
        registration: APIRegistrationModel,
        messages: Sequence[ChatMessage],
        system_prompt: SystemPrompt | None = None,
        attachment_files: Sequence[AttachmentBatch] | None = None,
        files: Sequence[Attachment] | None = None,
        overrides: GenerationOverrides | None = None,
    ) -> GatewayResult:
        """Answer a conversation with the registration's configuration."""
        configuration = await self.resolve_for_registration(registration)
        chat = ChatInput(
            messages=messages,
            system_prompt=system_prompt,
            attachment_files=attachment_files or [],
            files=files or [],
        )
        return await self._respond(configuration, chat, overrides)

    async def respond_for_user(
        self,
        user_id: str,
        messages: Sequence[ChatMessage],
        configuration_id: str | None = None,
        system_prompt_id: str | None = None,
        attachment_files: Sequence[AttachmentBatch] | None = None,
        files: Sequence[Attachment] | None = None,
        overrides: GenerationOverrides | None = None,
    ) -> GatewayResult:
        """Answer a conversation for the internal chat path."""
        configuration = await self.config_service.resolve(user_id, configuration_id)
        chat = ChatInput(
            messages=messages,
            system_prompt=await self._load_prompt(user_id, system_prompt_id),
            attachment_files=attachment_files or [],
            files=files or [],
        )
        return await self._respond(configuration, chat, overrides)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def _open_stream(
        self,
        configuration: ResolvedConfiguration,
        chat: ChatInput,
        overrides: GenerationOverrides | None,
    ) -> GatewayStream:
        provider = self.create_provider(configuration, overrides)
        logger.info(
            "ai_gateway_stream",
            configuration_id=configuration.configuration_id,
            provider=provider.provider_name,
            model=provider.model_name,
        )
        return GatewayStream(
            configuration=configuration,
            model=provider.model_name,
            chunks=provider.stream_response(chat),
        )

    async def stream(
        self,
        registration: APIRegistrationModel,
        messages: Sequence[ChatMessage],
        system_prompt: SystemPrompt | None = None,
        attachment_files: Sequence[AttachmentBatch] | None = None,
        files: Sequence[Attachment] | None = None,
        overrides: GenerationOverrides | None = None,
    ) -> GatewayStream:
        """Resolve now, stream lazily.

        Resolution errors raise here, before any byte is sent; upstream
        errors surface while iterating ``chunks``.
        """
        configuration = await self.resolve_for_registration(registration)
        chat = ChatInput(
            messages=messages,
            system_prompt=system_prompt,
            attachment_files=attachment_files or [],
            files=files or [],
        )
        return self._open_stream(configuration, chat, overrides)

    async def stream_for_user(
        self,
        user_id: str,
        messages: Sequence[ChatMessage],
        configuration_id: str | None = None,
        system_prompt_id: str | None = None,
        attachment_files: Sequence[AttachmentBatch] | None = None,
        files: Sequence[Attachment] | None = None,
        overrides: GenerationOverrides | None = None,
    ) -> GatewayStream:
        configuration = await self.config_service.resolve(user_id, configuration_id)
        chat = ChatInput(
            messages=messages,
            system_prompt=await self._load_prompt(user_id, system_prompt_id),
            attachment_files=attachment_files or [],
            files=files or [],
        )
        return self._open_stream(configuration, chat, overrides)

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    async def list_models(
        self,
        user_id: str,
        configuration_id: str | None = None,
    ) -> tuple[ResolvedConfiguration, list[str]]:
        configuration = await self.config_service.resolve(user_id, configuration_id)
        provider = self.create_provider(configuration)
        return configuration, await provider.list_available_models()

    async def _load_prompt(self, user_id: str, prompt_id: str | None) -> SystemPrompt | None:
        if not prompt_id:
            return None
        model = await self.config_service.get_system_prompt(user_id, prompt_id)
        return SystemPrompt.from_model(model)
