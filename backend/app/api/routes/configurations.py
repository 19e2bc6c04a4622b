"""
AI Configuration API Routes

CRUD for the calling user's inference backend configurations. Secret settings
fields are encrypted at rest and returned masked ("****" + last 4 chars).
Sending a masked value back on update keeps the stored secret.

Routes:
- GET    /          - List the user's configurations
- POST   /          - Create a configuration
- GET    /{id}      - Get one configuration
- PATCH  /{id}      - Update name, settings or active flag
- DELETE /{id}      - Delete a configuration (and its registrations)
"""

from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import User, get_current_user
from app.core.models import APIResponse, ProviderKind
from app.db import get_db
from app.db.models import AIConfigurationModel
from app.services.ai import CredentialVault, get_vault
from app.services.ai.config_service import AIConfigService

logger = structlog.get_logger()

router = APIRouter()


# ============================================================================
# Request Models
# ============================================================================

class ConfigurationCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    provider: ProviderKind
    settings: dict[str, Any]
    is_active: bool = True


class ConfigurationUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    settings: dict[str, Any] | None = None
    is_active: bool | None = None


def _serialize(service: AIConfigService, config: AIConfigurationModel) -> dict[str, Any]:
    return {
        "id": config.id,
        "name": config.name,
        "provider": config.provider,
        "settings": service.masked_settings(config),
        "is_active": config.is_active,
        "created_at": config.created_at.isoformat() if config.created_at else None,
        "updated_at": config.updated_at.isoformat() if config.updated_at else None,
    }


# ============================================================================
# Endpoints
# ============================================================================

@router.get("")
async def list_configurations(
    db: Annotated[AsyncSession, Depends(get_db)],
    vault: Annotated[CredentialVault, Depends(get_vault)],
    user: Annotated[User, Depends(get_current_user)],
) -> APIResponse:
    """List the caller's configurations, oldest first."""
    service = AIConfigService(db, vault)
    configs = await service.list_for_user(user.id)
    items = [_serialize(service, c) for c in configs]
    return APIResponse(data={"configurations": items, "total": len(items)})


@router.post("", status_code=201)
async def create_configuration(
    request: ConfigurationCreate,
    db: Annotated[AsyncSession, Depends(get_db)],
    vault: Annotated[CredentialVault, Depends(get_vault)],
    user: Annotated[User, Depends(get_current_user)],
) -> APIResponse:
    service = AIConfigService(db, vault)
    config = await service.create(
        user_id=user.id,
        name=request.name,
        provider=request.provider,
        settings=request.settings,
        is_active=request.is_active,
    )
    data = _serialize(service, config)
    await db.commit()

    return APIResponse(
        message=f"Created AI configuration: {config.name}",
        data=data,
    )


@router.get("/{config_id}")
async def get_configuration(
    config_id: str,
    db: Annotated[AsyncSession, Depends(get_db)],
    vault: Annotated[CredentialVault, Depends(get_vault)],
    user: Annotated[User, Depends(get_current_user)],
) -> APIResponse:
    service = AIConfigService(db, vault)
    config = await service.get_for_user(user.id, config_id)
    return APIResponse(data=_serialize(service, config))


@router.patch("/{config_id}")
async def update_configuration(
    config_id: str,
    request: ConfigurationUpdate,
    db: Annotated[AsyncSession, Depends(get_db)],
    vault: Annotated[CredentialVault, Depends(get_vault)],
    user: Annotated[User, Depends(get_current_user)],
) -> APIResponse:
    service = AIConfigService(db, vault)
    config = await service.update(
        user_id=user.id,
        config_id=config_id,
        name=request.name,
        settings=request.settings,
        is_active=request.is_active,
    )
    await db.commit()
    await db.refresh(config)

    return APIResponse(
        message=f"Updated AI configuration: {config.name}",
        data=_serialize(service, config),
    )


@router.delete("/{config_id}")
async def delete_configuration(
    config_id: str,
    db: Annotated[AsyncSession, Depends(get_db)],
    vault: Annotated[CredentialVault, Depends(get_vault)],
    user: Annotated[User, Depends(get_current_user)],
) -> APIResponse:
    """Delete a configuration. Registrations bound to it are removed too."""
    service = AIConfigService(db, vault)
    await service.delete(user.id, config_id)
    await db.commit()
    return APIResponse(message="AI configuration deleted")
