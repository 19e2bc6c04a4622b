"""
API registration routes.

A registration exposes one of the caller's configurations at
``{api_base_url}/external/{id}`` behind a generated API key. The plaintext key
is returned only by create and rotate-key; everywhere else it is masked.
"""

from datetime import datetime
from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import User, get_current_user
from app.core.config import Settings, get_settings
from app.core.models import APIResponse
from app.db import get_db
from app.db.models import APIRegistrationModel
from app.services.registration_service import RegistrationService

logger = structlog.get_logger()

router = APIRouter()


# --------------------------------------------------------------------------
# Schemas
# --------------------------------------------------------------------------


class RegistrationCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    configuration_id: str
    system_prompt_id: str | None = None
    is_active: bool = True


class RegistrationUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    configuration_id: str | None = None
    system_prompt_id: str | None = None
    is_active: bool | None = None


class RegistrationInfo(BaseModel):
    id: str
    name: str
    description: str | None
    base_url: str
    api_key: str  # Masked unless just created or rotated
    configuration_id: str
    configuration_name: str | None
    provider: str | None
    system_prompt_id: str | None
    system_prompt_title: str | None
    is_active: bool
    created_at: datetime | None
    updated_at: datetime | None


def _info(registration: APIRegistrationModel, reveal_key: bool = False) -> RegistrationInfo:
    configuration = registration.configuration
    prompt = registration.system_prompt
    return RegistrationInfo(
        id=registration.id,
        name=registration.name,
        description=registration.description,
        base_url=registration.base_url,
        api_key=registration.api_key if reveal_key else registration.masked_api_key,
        configuration_id=registration.configuration_id,
        configuration_name=configuration.name if configuration else None,
        provider=configuration.provider if configuration else None,
        system_prompt_id=registration.system_prompt_id,
        system_prompt_title=prompt.title if prompt else None,
        is_active=registration.is_active,
        created_at=registration.created_at,
        updated_at=registration.updated_at,
    )


# --------------------------------------------------------------------------
# Endpoints
# --------------------------------------------------------------------------


@router.get("")
async def list_registrations(
    db: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
) -> APIResponse:
    """List the caller's registrations, newest first (keys masked)."""
    registrations = await RegistrationService(db).list_for_user(user.id)
    items = [_info(r).model_dump(mode="json") for r in registrations]
    return APIResponse(data={"registrations": items, "total": len(items)})


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_registration(
    request: RegistrationCreateRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> APIResponse:
    """Create a registration. Returns the plaintext API key ONCE."""
    registration = await RegistrationService(db, settings).create(
        user_id=user.id,
        name=request.name,
        description=request.description,
        configuration_id=request.configuration_id,
        system_prompt_id=request.system_prompt_id,
        is_active=request.is_active,
    )
    data = _info(registration, reveal_key=True).model_dump(mode="json")
    await db.commit()

    return APIResponse(
        message="Store the API key now, it will not be shown again",
        data=data,
    )


@router.get("/{registration_id}")
async def get_registration(
    registration_id: str,
    db: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
) -> APIResponse:
    registration = await RegistrationService(db).get_for_user(user.id, registration_id)
    return APIResponse(data=_info(registration).model_dump(mode="json"))


@router.patch("/{registration_id}")
async def update_registration(
    registration_id: str,
    request: RegistrationUpdateRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
) -> APIResponse:
    registration = await RegistrationService(db).update(
        user.id,
        registration_id,
        request.model_dump(exclude_unset=True),
    )
    data = _info(registration).model_dump(mode="json")
    await db.commit()
    return APIResponse(message=f"Updated API registration: {registration.name}", data=data)


@router.post("/{registration_id}/rotate-key")
async def rotate_registration_key(
    registration_id: str,
    db: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
) -> APIResponse:
    """Issue a new API key. Returns the plaintext key ONCE."""
    registration = await RegistrationService(db).rotate_key(user.id, registration_id)
    data = _info(registration, reveal_key=True).model_dump(mode="json")
    await db.commit()
    return APIResponse(
        message="Store the API key now, it will not be shown again",
        data=data,
    )


@router.delete("/{registration_id}")
async def delete_registration(
    registration_id: str,
    db: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
) -> APIResponse:
    await RegistrationService(db).delete(user.id, registration_id)
    await db.commit()
    return APIResponse(message="API registration deleted")
