"""
AI Chat API Routes

Internal chat surface for the product UI. Uses the same AIGateway as the
external proxy, so both paths behave identically; errors here keep their
full type (404 for missing configurations, 502 for upstream failures).

Routes:
- POST /chat           - Complete answer
- POST /chat/stream    - Server-sent text chunks
- GET  /models         - Models available to a configuration
- GET  /providers      - Provider kinds with display info
"""

import json
from collections.abc import AsyncIterator
from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.middleware.wide_events import add_provider_to_wide_event
from app.core.auth import User, get_current_user
from app.core.config import Settings, get_settings
from app.core.exceptions import GatewayException
from app.core.models import APIResponse, ChatMessage, StatelessFile
from app.db import get_db
from app.services.ai import AIGateway, CredentialVault, GenerationOverrides, get_vault
from app.services.ai.gateway import GatewayStream
from app.services.ai.messages import AttachmentBatch, decode_stateless_files
from app.services.ai.providers import get_all_providers

logger = structlog.get_logger()

router = APIRouter()


# ============================================================================
# Request Models
# ============================================================================

class AttachmentBatchIn(BaseModel):
    """Files stored with an earlier turn, bound to that turn's message id."""
    model_config = ConfigDict(populate_by_name=True)

    message_id: str | None = Field(default=None, alias="messageId")
    files: list[StatelessFile]


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    messages: list[ChatMessage] = Field(..., min_length=1)
    configuration_id: str | None = Field(default=None, alias="configurationId")
    system_prompt_id: str | None = Field(default=None, alias="systemPromptId")
    temperature: float | None = Field(default=None, ge=0, le=2)
    max_tokens: int | None = Field(default=None, gt=0, alias="maxTokens")
    files: list[StatelessFile] | None = None
    attachments: list[AttachmentBatchIn] | None = None


def _decode_attachments(request: ChatRequest, settings: Settings):
    files = decode_stateless_files(
        request.files,
        max_file_bytes=settings.max_attachment_bytes,
        max_total_bytes=settings.max_total_attachment_bytes,
    )
    batches = [
        AttachmentBatch(
            message_id=batch.message_id,
            attachments=decode_stateless_files(
                batch.files,
                max_file_bytes=settings.max_attachment_bytes,
                max_total_bytes=settings.max_total_attachment_bytes,
            ),
        )
        for batch in request.attachments or []
    ]
    return files, batches


# ============================================================================
# Chat Endpoints
# ============================================================================

@router.post("/chat")
async def chat(
    request: ChatRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    vault: Annotated[CredentialVault, Depends(get_vault)],
    user: Annotated[User, Depends(get_current_user)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> APIResponse:
    """Answer a conversation with one of the caller's configurations.

    Without ``configurationId`` the caller's oldest active configuration is used.
    """
    files, batches = _decode_attachments(request, settings)

    result = await AIGateway(db, vault, settings).respond_for_user(
        user.id,
        request.messages,
        configuration_id=request.configuration_id,
        system_prompt_id=request.system_prompt_id,
        attachment_files=batches,
        files=files,
        overrides=GenerationOverrides(
            temperature=request.temperature,
            max_tokens=request.max_tokens,
        ),
    )

    response = result.response
    usage = response.usage.model_dump() if response.usage else None
    add_provider_to_wide_event(
        provider=result.configuration.provider.value,
        model=result.model,
        usage=usage,
    )

    data: dict[str, Any] = {
        "message": response.text,
        "finish_reason": response.finish_reason,
        "usage": usage,
        "reasoning": response.reasoning,
        "model": result.model,
        "configuration": {
            "id": result.configuration.configuration_id,
            "name": result.configuration.name,
            "provider": result.configuration.provider.value,
        },
    }
    if response.structured_report is not None:
        data["structured_output"] = {
            "missing_required_fields": response.structured_report.missing_required_fields,
            "unexpected_fields": response.structured_report.unexpected_fields,
        }
    return APIResponse(data=data)


@router.post("/chat/stream")
async def chat_stream(
    request: ChatRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
    vault: Annotated[CredentialVault, Depends(get_vault)],
    user: Annotated[User, Depends(get_current_user)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> StreamingResponse:
    """Stream the answer as ``data: {"content": ...}`` events, then ``[DONE]``.

    Resolution errors are returned as regular error responses; upstream
    errors after the first byte arrive as a final ``{"error": ...}`` event.
    """
    files, batches = _decode_attachments(request, settings)

    stream = await AIGateway(db, vault, settings).stream_for_user(
        user.id,
        request.messages,
        configuration_id=request.configuration_id,
        system_prompt_id=request.system_prompt_id,
        attachment_files=batches,
        files=files,
        overrides=GenerationOverrides(
            temperature=request.temperature,
            max_tokens=request.max_tokens,
        ),
    )
    add_provider_to_wide_event(
        provider=stream.configuration.provider.value,
        model=stream.model,
        streaming=True,
    )
    return StreamingResponse(
        _sse(stream),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


async def _sse(stream: GatewayStream) -> AsyncIterator[str]:
    try:
        async for text in stream.chunks:
            yield f"data: {json.dumps({'content': text}, ensure_ascii=False)}\n\n"
        yield "data: [DONE]\n\n"
    except GatewayException as e:
        logger.error("ai_chat_stream_failed", error=e.message, code=e.code)
        error = {"message": e.message, "type": e.error_type, "code": e.code}
        yield f"data: {json.dumps({'error': error})}\n\n"
    finally:
        await stream.chunks.aclose()


# ============================================================================
# Model and Provider Endpoints
# ============================================================================

@router.get("/models")
async def list_models(
    db: Annotated[AsyncSession, Depends(get_db)],
    vault: Annotated[CredentialVault, Depends(get_vault)],
    user: Annotated[User, Depends(get_current_user)],
    settings: Annotated[Settings, Depends(get_settings)],
    configuration_id: Annotated[str | None, Query(alias="configurationId")] = None,
) -> APIResponse:
    """Models available to a configuration.

    Gemini: fixed list. Ollama: live list with fallback. HTTP API: the
    configured model.
    """
    configuration, models = await AIGateway(db, vault, settings).list_models(
        user.id, configuration_id
    )
    return APIResponse(
        data={
            "configuration_id": configuration.configuration_id,
            "provider": configuration.provider.value,
            "models": models,
        }
    )


@router.get("/providers")
async def list_providers(
    user: Annotated[User, Depends(get_current_user)],
) -> APIResponse:
    """List all provider kinds with their display info."""
    return APIResponse(data={"providers": get_all_providers()})
