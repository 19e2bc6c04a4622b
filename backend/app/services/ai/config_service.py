"""
AI Configuration Service

Manages a user's inference configurations with:
- CRUD operations (secrets encrypted on write, masked on read)
- Resolution of the configuration a chat call should use
- System prompt lookup for the internal chat path
"""

import json
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import pydantic
import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    ConfigurationNotFoundError,
    InvalidSettingsError,
    ResourceNotFoundError,
    UnsupportedProviderError,
    ValidationError,
)
from app.core.models import SETTINGS_MODELS, ProviderKind
from app.db.models import AIConfigurationModel, SystemPromptModel, mask_secret
from app.services.ai.encryption import SENSITIVE_FIELDS, CredentialVault

logger = structlog.get_logger()

MASK_PREFIX = "****"


@dataclass(frozen=True)
class ResolvedConfiguration:
    """A configuration ready for dispatch: provider enum plus plaintext settings."""

    configuration_id: str
    name: str
    provider: ProviderKind
    settings: dict[str, Any]


def parse_provider(value: str) -> ProviderKind:
    try:
        return ProviderKind(value)
    except ValueError:
        raise UnsupportedProviderError(value) from None


def decode_settings(raw: Any) -> dict[str, Any]:
    """Accept settings stored as a JSON object or as a JSON-encoded text blob."""
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise InvalidSettingsError("Invalid JSON in settings") from e
    if not isinstance(raw, dict):
        raise InvalidSettingsError("Settings must be a JSON object")
    return raw


def validate_settings(kind: ProviderKind, settings: dict[str, Any]) -> dict[str, Any]:
    """Validate a provider settings record and normalise it to camelCase keys."""
    try:
        model = SETTINGS_MODELS[kind].model_validate(settings)
    except pydantic.ValidationError as e:
        raise ValidationError(
            f"Invalid settings for provider '{kind.value}'",
            details={"errors": e.errors(include_url=False, include_context=False)},
            code="invalid_settings",
        ) from e
    return model.model_dump(by_alias=True, exclude_none=True)


class AIConfigService:
    """Service for a user's AI configurations."""

    def __init__(self, db: AsyncSession, vault: CredentialVault):
        self.db = db
        self.vault = vault

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(
        self,
        user_id: str,
        configuration_id: str | None = None,
    ) -> ResolvedConfiguration:
        """Load and decrypt the configuration a chat call should use.

        With an explicit id, that configuration must exist, be active and be
        owned by ``user_id``. Without one, the user's oldest active
        configuration is used (created_at, then id).
        """
        query = select(AIConfigurationModel).where(
            AIConfigurationModel.user_id == user_id,
            AIConfigurationModel.is_active.is_(True),
        )
        if configuration_id:
            query = query.where(AIConfigurationModel.id == configuration_id)
        else:
            query = query.order_by(
                AIConfigurationModel.created_at.asc(),
                AIConfigurationModel.id.asc(),
            ).limit(1)

        result = await self.db.execute(query)
        config = result.scalar_one_or_none()

        if config is None:
            if configuration_id:
                raise ConfigurationNotFoundError(
                    f"AI configuration with ID '{configuration_id}' not found or inactive for user",
                    details={"configuration_id": configuration_id},
                )
            raise ConfigurationNotFoundError(
                "No active AI configuration found for user. "
                "Please create and activate an AI configuration."
            )

        return self.to_resolved(config)

    def to_resolved(self, config: AIConfigurationModel) -> ResolvedConfiguration:
        kind = parse_provider(config.provider)
        settings = decode_settings(config.settings)
        return ResolvedConfiguration(
            configuration_id=config.id,
            name=config.name,
            provider=kind,
            settings=self.vault.decrypt_sensitive_fields(kind, settings),
        )

    async def get_system_prompt(self, user_id: str, prompt_id: str) -> SystemPromptModel:
        result = await self.db.execute(
            select(SystemPromptModel).where(
                SystemPromptModel.id == prompt_id,
                SystemPromptModel.user_id == user_id,
            )
        )
        prompt = result.scalar_one_or_none()
        if prompt is None:
            raise ResourceNotFoundError(
                f"System prompt '{prompt_id}' not found",
                details={"system_prompt_id": prompt_id},
            )
        return prompt

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def list_for_user(self, user_id: str) -> Sequence[AIConfigurationModel]:
        result = await self.db.execute(
            select(AIConfigurationModel)
            .where(AIConfigurationModel.user_id == user_id)
            .order_by(AIConfigurationModel.created_at.asc(), AIConfigurationModel.id.asc())
        )
        return result.scalars().all()

    async def get_for_user(self, user_id: str, config_id: str) -> AIConfigurationModel:
        result = await self.db.execute(
            select(AIConfigurationModel).where(
                AIConfigurationModel.id == config_id,
                AIConfigurationModel.user_id == user_id,
            )
        )
        config = result.scalar_one_or_none()
        if config is None:
            raise ConfigurationNotFoundError(
                f"AI configuration with ID '{config_id}' not found",
                details={"configuration_id": config_id},
            )
        return config

    async def create(
        self,
        user_id: str,
        name: str,
        provider: ProviderKind,
        settings: dict[str, Any],
        is_active: bool = True,
    ) -> AIConfigurationModel:
        """Create a configuration; secrets are encrypted before they are stored."""
        normalized = validate_settings(provider, settings)

        config = AIConfigurationModel(
            user_id=user_id,
            name=name,
            provider=provider.value,
            settings=self.vault.encrypt_sensitive_fields(provider, normalized),
            is_active=is_active,
        )
        self.db.add(config)
        await self.db.flush()

        logger.info(
            "ai_config_created",
            config_id=config.id,
            provider=provider.value,
            model=normalized.get("model"),
            user_id=user_id,
        )
        return config

    async def update(
        self,
        user_id: str,
        config_id: str,
        name: str | None = None,
        settings: dict[str, Any] | None = None,
        is_active: bool | None = None,
    ) -> AIConfigurationModel:
        """Update a configuration.

        Secret fields sent back in their masked form keep the stored value.
        """
        config = await self.get_for_user(user_id, config_id)

        if name is not None:
            config.name = name
        if is_active is not None:
            config.is_active = is_active
        if settings is not None:
            kind = parse_provider(config.provider)
            current = self.to_resolved(config).settings
            merged = _keep_masked_secrets(kind, settings, current)
            normalized = validate_settings(kind, merged)
            config.settings = self.vault.encrypt_sensitive_fields(kind, normalized)

        await self.db.flush()

        logger.info(
            "ai_config_updated",
            config_id=config.id,
            user_id=user_id,
            settings_changed=settings is not None,
        )
        return config

    async def delete(self, user_id: str, config_id: str) -> None:
        config = await self.get_for_user(user_id, config_id)
        await self.db.delete(config)
        await self.db.flush()
        logger.info("ai_config_deleted", config_id=config_id, user_id=user_id)

    def masked_settings(self, config: AIConfigurationModel) -> dict[str, Any]:
        """Settings safe to return to the owner: secrets reduced to their last 4 chars."""
        resolved = self.to_resolved(config)
        masked = dict(resolved.settings)
        for field in SENSITIVE_FIELDS[resolved.provider]:
            value = masked.get(field)
            if field == "headers" and isinstance(value, dict):
                masked[field] = {k: mask_secret(v) for k, v in value.items()}
            elif isinstance(value, str) and value:
                masked[field] = mask_secret(value)
        return masked


def _keep_masked_secrets(
    kind: ProviderKind,
    incoming: dict[str, Any],
    current: dict[str, Any],
) -> dict[str, Any]:
    merged = dict(incoming)
    for field in SENSITIVE_FIELDS[kind]:
        value = merged.get(field)
        if field == "headers" and isinstance(value, dict):
            stored = current.get("headers") or {}
            merged[field] = {
                k: stored.get(k, v) if _is_masked(v) else v for k, v in value.items()
            }
        elif _is_masked(value):
            merged[field] = current.get(field)
    return merged


def _is_masked(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(MASK_PREFIX)
