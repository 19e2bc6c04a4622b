"""
API registration service.

A registration binds one of a user's configurations (and optionally a system
prompt) to a generated API key and base URL, making it callable through the
external proxy.
"""

import secrets
from collections.abc import Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.exceptions import AuthenticationError, ResourceNotFoundError
from app.db.models import (
    AIConfigurationModel,
    APIRegistrationModel,
    SystemPromptModel,
    new_id,
)

logger = structlog.get_logger()

API_KEY_PREFIX = "athena_"

# Same message for unknown id, wrong key and inactive registration, so ids
# cannot be enumerated
INVALID_CREDENTIALS = "Invalid API key or registration not found"


def generate_api_key() -> str:
    return API_KEY_PREFIX + secrets.token_urlsafe(32)


class RegistrationService:
    """Service for API registrations."""

    def __init__(self, db: AsyncSession, settings: Settings | None = None):
        self.db = db
        self.settings = settings or get_settings()

    def build_base_url(self, registration_id: str) -> str:
        return f"{self.settings.api_base_url.rstrip('/')}/external/{registration_id}"

    async def authenticate(self, registration_id: str, api_key: str) -> APIRegistrationModel:
        """Return the active registration matching both id and key.

        Raises:
            AuthenticationError: no such active registration, or key mismatch
        """
        result = await self.db.execute(
            select(APIRegistrationModel).where(
                APIRegistrationModel.id == registration_id,
                APIRegistrationModel.is_active.is_(True),
            )
        )
        registration = result.scalar_one_or_none()

        if registration is None or not secrets.compare_digest(
            registration.api_key.encode(), api_key.encode()
        ):
            raise AuthenticationError(INVALID_CREDENTIALS)
        return registration

    async def list_for_user(self, user_id: str) -> Sequence[APIRegistrationModel]:
        result = await self.db.execute(
            select(APIRegistrationModel)
            .where(APIRegistrationModel.user_id == user_id)
            .order_by(APIRegistrationModel.created_at.desc())
        )
        return result.scalars().all()

    async def get_for_user(self, user_id: str, registration_id: str) -> APIRegistrationModel:
        result = await self.db.execute(
            select(APIRegistrationModel).where(
                APIRegistrationModel.id == registration_id,
                APIRegistrationModel.user_id == user_id,
            )
        )
        registration = result.scalar_one_or_none()
        if registration is None:
            raise ResourceNotFoundError(
                "API registration not found",
                details={"registration_id": registration_id},
            )
        return registration

    async def _check_references(
        self,
        user_id: str,
        configuration_id: str | None,
        system_prompt_id: str | None,
    ) -> None:
        if configuration_id is not None:
            config = await self.db.get(AIConfigurationModel, configuration_id)
            if config is None or config.user_id != user_id:
                raise ResourceNotFoundError(
                    "AI configuration not found",
                    details={"configuration_id": configuration_id},
                )
        if system_prompt_id is not None:
            prompt = await self.db.get(SystemPromptModel, system_prompt_id)
            if prompt is None or prompt.user_id != user_id:
                raise ResourceNotFoundError(
                    "System prompt not found",
                    details={"system_prompt_id": system_prompt_id},
                )

    async def create(
        self,
        user_id: str,
        name: str,
        configuration_id: str,
        description: str | None = None,
        system_prompt_id: str | None = None,
        is_active: bool = True,
    ) -> APIRegistrationModel:
        """Create a registration. The returned object holds the plaintext key."""
        await self._check_references(user_id, configuration_id, system_prompt_id)

        registration_id = new_id()
        registration = APIRegistrationModel(
            id=registration_id,
            user_id=user_id,
            name=name,
            description=description,
            base_url=self.build_base_url(registration_id),
            api_key=generate_api_key(),
            configuration_id=configuration_id,
            system_prompt_id=system_prompt_id,
            is_active=is_active,
        )
        self.db.add(registration)
        await self.db.flush()
        await self.db.refresh(registration, ["configuration", "system_prompt"])

        logger.info(
            "api_registration_created",
            registration_id=registration.id,
            configuration_id=configuration_id,
            user_id=user_id,
        )
        return registration

    async def update(
        self,
        user_id: str,
        registration_id: str,
        fields: dict,
    ) -> APIRegistrationModel:
        """Apply a partial update (name, description, configuration_id,
        system_prompt_id, is_active)."""
        registration = await self.get_for_user(user_id, registration_id)

        await self._check_references(
            user_id,
            fields.get("configuration_id"),
            fields.get("system_prompt_id"),
        )
        for key in ("name", "description", "configuration_id", "system_prompt_id", "is_active"):
            if key not in fields:
                continue
            # Only description and system prompt may be cleared
            if fields[key] is None and key not in ("description", "system_prompt_id"):
                continue
            setattr(registration, key, fields[key])

        await self.db.flush()
        await self.db.refresh(registration, ["configuration", "system_prompt"])

        logger.info(
            "api_registration_updated",
            registration_id=registration_id,
            fields=sorted(fields),
            user_id=user_id,
        )
        return registration

    async def rotate_key(self, user_id: str, registration_id: str) -> APIRegistrationModel:
        """Replace the API key; the old key stops working immediately."""
        registration = await self.get_for_user(user_id, registration_id)
        registration.api_key = generate_api_key()
        await self.db.flush()
        logger.info("api_registration_key_rotated", registration_id=registration_id, user_id=user_id)
        return registration

    async def delete(self, user_id: str, registration_id: str) -> None:
        registration = await self.get_for_user(user_id, registration_id)
        await self.db.delete(registration)
        await self.db.flush()
        logger.info("api_registration_deleted", registration_id=registration_id, user_id=user_id)
