"""
System prompt routes.

Prompts in the "Structured Output" category that carry a field-tree
(``json_schema``) switch providers into constrained JSON generation.
"""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import User, get_current_user
from app.core.exceptions import ResourceNotFoundError, ValidationError
from app.core.models import APIResponse, JsonField, PromptCategory
from app.db import get_db
from app.db.models import SystemPromptModel
from app.services.ai.structured_output import build_schema

logger = structlog.get_logger()

router = APIRouter()


class SystemPromptCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str | None = None
    category: str = PromptCategory.CUSTOM.value
    content: str = Field(..., min_length=1)
    json_schema: list[JsonField] | None = None
    json_description: str | None = None


class SystemPromptUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    category: str | None = None
    content: str | None = Field(default=None, min_length=1)
    json_schema: list[JsonField] | None = None
    json_description: str | None = None


def _serialize(prompt: SystemPromptModel) -> dict:
    return {
        "id": prompt.id,
        "title": prompt.title,
        "description": prompt.description,
        "category": prompt.category,
        "content": prompt.content,
        "json_schema": prompt.json_schema,
        "json_description": prompt.json_description,
        "created_at": prompt.created_at.isoformat() if prompt.created_at else None,
    }


def _dump_fields(fields: list[JsonField] | None) -> list[dict] | None:
    """Check the field-tree builds, then store it in its wire shape."""
    if not fields:
        return None
    try:
        build_schema(fields)
    except (TypeError, ValueError) as e:
        raise ValidationError(
            f"Invalid JSON field-tree: {e}", code="invalid_json_schema"
        ) from e
    return [f.model_dump(by_alias=True, exclude_none=True) for f in fields]


async def _get_owned(db: AsyncSession, user_id: str, prompt_id: str) -> SystemPromptModel:
    result = await db.execute(
        select(SystemPromptModel).where(
            SystemPromptModel.id == prompt_id,
            SystemPromptModel.user_id == user_id,
        )
    )
    prompt = result.scalar_one_or_none()
    if prompt is None:
        raise ResourceNotFoundError(
            "System prompt not found", details={"system_prompt_id": prompt_id}
        )
    return prompt


@router.get("")
async def list_system_prompts(
    db: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
) -> APIResponse:
    result = await db.execute(
        select(SystemPromptModel)
        .where(SystemPromptModel.user_id == user.id)
        .order_by(SystemPromptModel.created_at.desc())
    )
    items = [_serialize(p) for p in result.scalars().all()]
    return APIResponse(data={"system_prompts": items, "total": len(items)})


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_system_prompt(
    request: SystemPromptCreate,
    db: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
) -> APIResponse:
    prompt = SystemPromptModel(
        user_id=user.id,
        title=request.title,
        description=request.description,
        category=request.category,
        content=request.content,
        json_schema=_dump_fields(request.json_schema),
        json_description=request.json_description,
    )
    db.add(prompt)
    await db.flush()
    data = _serialize(prompt)
    await db.commit()

    logger.info("system_prompt_created", prompt_id=prompt.id, category=prompt.category)
    return APIResponse(message=f"Created system prompt: {prompt.title}", data=data)


@router.get("/{prompt_id}")
async def get_system_prompt(
    prompt_id: str,
    db: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
) -> APIResponse:
    return APIResponse(data=_serialize(await _get_owned(db, user.id, prompt_id)))


@router.patch("/{prompt_id}")
async def update_system_prompt(
    prompt_id: str,
    request: SystemPromptUpdate,
    db: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
) -> APIResponse:
    prompt = await _get_owned(db, user.id, prompt_id)
    changes = request.model_dump(exclude_unset=True, exclude={"json_schema"})
    for key, value in changes.items():
        if value is None and key in ("title", "category", "content"):
            continue
        setattr(prompt, key, value)
    if "json_schema" in request.model_fields_set:
        prompt.json_schema = _dump_fields(request.json_schema)

    await db.flush()
    data = _serialize(prompt)
    await db.commit()
    return APIResponse(message=f"Updated system prompt: {prompt.title}", data=data)


@router.delete("/{prompt_id}")
async def delete_system_prompt(
    prompt_id: str,
    db: Annotated[AsyncSession, Depends(get_db)],
    user: Annotated[User, Depends(get_current_user)],
) -> APIResponse:
    """Delete a prompt. Registrations using it keep working without one."""
    prompt = await _get_owned(db, user.id, prompt_id)
    await db.delete(prompt)
    await db.commit()
    return APIResponse(message="System prompt deleted")
