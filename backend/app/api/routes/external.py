"""
External proxy endpoints.

Registered APIs are called by third parties with ``Authorization: Bearer
<apiKey>``. Each call runs through:

    authenticate → validate → dispatch (AIGateway) → shape envelope

and ALWAYS records one metric row, whatever the outcome. Errors are collapsed
to 401, 400 or 500 with an ``{"error": {message, type, code}}`` body; no
internal detail crosses this boundary.

The success envelope follows the widely used chat-completion wire format so
existing client tooling works unmodified.
"""

import json
import time
import uuid
from collections.abc import AsyncIterator
from typing import Any

import anyio
import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.middleware.wide_events import (
    add_provider_to_wide_event,
    add_registration_to_wide_event,
    get_client_ip,
)
from app.core.config import Settings, get_settings
from app.core.exceptions import (
    AuthenticationError,
    GatewayException,
    InternalError,
    ValidationError,
)
from app.core.models import ChatCompletionRequest
from app.db.database import get_db, get_session_factory
from app.db.models import APIRegistrationModel
from app.services.ai import AIGateway, CredentialVault, GenerationOverrides, SystemPrompt, get_vault
from app.services.ai.gateway import GatewayStream
from app.services.ai.messages import decode_stateless_files
from app.services.metrics_service import APICall, MetricsService
from app.services.registration_service import RegistrationService

logger = structlog.get_logger()

router = APIRouter()

FALLBACK_MODEL_NAME = "athena-custom"
MISSING_BEARER = "Missing or invalid Authorization header. Expected: Bearer {apiKey}"


# --------------------------------------------------------------------------
# Error shaping
# --------------------------------------------------------------------------


def to_external_error(exc: Exception) -> tuple[int, dict[str, Any]]:
    """Collapse any exception to (status, body) with status in {401, 400, 500}."""
    if isinstance(exc, AuthenticationError | ValidationError):
        return exc.status_code, {
            "error": {"message": exc.message, "type": exc.error_type, "code": exc.code}
        }
    internal = InternalError("Internal server error")
    return 500, {
        "error": {"message": internal.message, "type": internal.error_type, "code": internal.code}
    }


def _error_response(exc: Exception) -> tuple[JSONResponse, str]:
    status_code, body = to_external_error(exc)
    message = exc.message if isinstance(exc, GatewayException) else str(exc)
    return JSONResponse(status_code=status_code, content=body), message


# --------------------------------------------------------------------------
# Request parsing
# --------------------------------------------------------------------------


def bearer_key(request: Request) -> str:
    header = request.headers.get("authorization", "")
    if not header.startswith("Bearer "):
        raise AuthenticationError(MISSING_BEARER)
    key = header[len("Bearer "):].strip()
    if not key:
        raise AuthenticationError(MISSING_BEARER)
    return key


def parse_chat_body(raw: bytes) -> ChatCompletionRequest:
    """Parse and validate the chat body.

    An absent, non-list or empty ``messages`` is reported as
    ``invalid_messages``; every other problem as ``invalid_request``.
    """
    try:
        payload = json.loads(raw or b"null")
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError("Request body must be valid JSON") from e
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")

    messages = payload.get("messages")
    if not isinstance(messages, list) or not messages:
        raise ValidationError("Messages must be a non-empty array", code="invalid_messages")

    try:
        return ChatCompletionRequest.model_validate(payload)
    except PydanticValidationError as e:
        errors = [
            {"loc": list(err["loc"]), "msg": err["msg"]}
            for err in e.errors(include_url=False, include_input=False)
        ]
        raise ValidationError("Invalid request body", details={"errors": errors}) from e


# --------------------------------------------------------------------------
# Envelope
# --------------------------------------------------------------------------


def new_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"


def completion_envelope(
    completion_id: str,
    model: str,
    content: str,
    finish_reason: str,
    usage: dict[str, int] | None,
) -> dict[str, Any]:
    return {
        "id": completion_id,
        "object": "chat.completion",
        "created": int(time.time()),
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": finish_reason,
            }
        ],
        "usage": usage or {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
    }


def chunk_event(
    completion_id: str,
    created: int,
    model: str,
    delta: dict[str, Any],
    finish_reason: str | None = None,
) -> str:
    chunk = {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }
    return f"data: {json.dumps(chunk, ensure_ascii=False)}\n\n"


# --------------------------------------------------------------------------
# Call accounting
# --------------------------------------------------------------------------


class CallRecorder:
    """Measures one external call and writes its metric row exactly once."""

    def __init__(
        self,
        request: Request,
        registration_id: str,
        metrics: MetricsService,
        request_size: int | None = None,
    ):
        self.request = request
        self.registration_id = registration_id
        self.metrics = metrics
        self.request_size = request_size
        self.started = time.perf_counter()
        self.recorded = False

    async def record(
        self,
        status_code: int,
        response_size: int | None = None,
        error_message: str | None = None,
    ) -> None:
        if self.recorded:
            return
        self.recorded = True
        await self.metrics.record(
            APICall(
                registration_id=self.registration_id,
                method=self.request.method,
                endpoint=self.request.url.path,
                status_code=status_code,
                response_time_ms=int((time.perf_counter() - self.started) * 1000),
                request_size_bytes=self.request_size,
                response_size_bytes=response_size,
                error_message=error_message,
                user_agent=self.request.headers.get("user-agent"),
                ip_address=get_client_ip(self.request),
            )
        )


def get_metrics_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> MetricsService:
    return MetricsService(session_factory)


async def _authenticate(
    request: Request,
    registration_id: str,
    db: AsyncSession,
    settings: Settings,
) -> APIRegistrationModel:
    key = bearer_key(request)
    registration = await RegistrationService(db, settings).authenticate(registration_id, key)
    add_registration_to_wide_event(
        registration_id=registration.id,
        registration_name=registration.name,
        user_id=registration.user_id,
    )
    return registration


# --------------------------------------------------------------------------
# Endpoints
# --------------------------------------------------------------------------


@router.post("/{registration_id}/chat")
async def external_chat(
    registration_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    vault: CredentialVault = Depends(get_vault),
    metrics: MetricsService = Depends(get_metrics_service),
    settings: Settings = Depends(get_settings),
):
    """Chat completion through a registered API."""
    raw = await request.body()
    recorder = CallRecorder(request, registration_id, metrics, request_size=len(raw))

    try:
        registration = await _authenticate(request, registration_id, db, settings)
        body = parse_chat_body(raw)
        files = decode_stateless_files(
            body.files,
            max_file_bytes=settings.max_attachment_bytes,
            max_total_bytes=settings.max_total_attachment_bytes,
        )

        gateway = AIGateway(db, vault, settings)
        system_prompt = (
            SystemPrompt.from_model(registration.system_prompt)
            if registration.system_prompt is not None
            else None
        )
        overrides = GenerationOverrides(
            temperature=body.temperature,
            max_tokens=body.max_tokens,
        )

        if body.stream:
            stream = await gateway.stream(
                registration,
                body.messages,
                system_prompt=system_prompt,
                files=files,
                overrides=overrides,
            )
            add_provider_to_wide_event(
                provider=stream.configuration.provider.value,
                model=stream.model,
                streaming=True,
            )
            return StreamingResponse(
                _relay_stream(stream, recorder),
                media_type="text/event-stream",
                headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
            )

        result = await gateway.respond(
            registration,
            body.messages,
            system_prompt=system_prompt,
            files=files,
            overrides=overrides,
        )
    except Exception as e:
        if not isinstance(e, AuthenticationError | ValidationError):
            logger.error(
                "external_chat_failed",
                registration_id=registration_id,
                error=str(e),
                exc_info=not isinstance(e, GatewayException),
            )
        response, message = _error_response(e)
        await recorder.record(response.status_code, len(response.body), message)
        return response

    usage = result.response.usage.model_dump() if result.response.usage else None
    add_provider_to_wide_event(
        provider=result.configuration.provider.value,
        model=result.model,
        usage=usage,
    )
    response = JSONResponse(
        completion_envelope(
            new_completion_id(),
            model=result.configuration.name or FALLBACK_MODEL_NAME,
            content=result.response.text,
            finish_reason=result.response.finish_reason,
            usage=usage,
        )
    )
    await recorder.record(200, len(response.body))
    return response


async def _relay_stream(stream: GatewayStream, recorder: CallRecorder) -> AsyncIterator[str]:
    """Relay provider chunks as SSE and record the metric when the stream ends.

    A stream that stops before [DONE] without an upstream error was abandoned
    by the client and is recorded as 499. Closing ``stream.chunks`` tears
    down the upstream request.
    """
    completion_id = new_completion_id()
    created = int(time.time())
    model = stream.configuration.name or FALLBACK_MODEL_NAME
    sent = 0
    status_code = 200
    error_message: str | None = None
    completed = False

    try:
        first = True
        async for text in stream.chunks:
            delta = {"role": "assistant", "content": text} if first else {"content": text}
            first = False
            event = chunk_event(completion_id, created, model, delta)
            sent += len(event)
            yield event

        event = chunk_event(completion_id, created, model, {}, finish_reason="stop")
        sent += len(event)
        yield event
        yield "data: [DONE]\n\n"
        sent += len("data: [DONE]\n\n")
        completed = True
    except Exception as e:
        logger.error(
            "external_stream_failed",
            registration_id=recorder.registration_id,
            error=str(e),
            exc_info=not isinstance(e, GatewayException),
        )
        status_code, body = to_external_error(e)
        error_message = e.message if isinstance(e, GatewayException) else str(e)
        event = f"data: {json.dumps(body)}\n\n"
        sent += len(event)
        yield event
    finally:
        if not completed and error_message is None:
            # Cancelled in send() or closed at a yield
            status_code = 499
            error_message = "Client disconnected"
        with anyio.CancelScope(shield=True):
            await stream.chunks.aclose()
            await recorder.record(status_code, sent, error_message)


@router.get("/{registration_id}/info")
async def external_info(
    registration_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    metrics: MetricsService = Depends(get_metrics_service),
    settings: Settings = Depends(get_settings),
):
    """Non-secret metadata of a registered API."""
    recorder = CallRecorder(request, registration_id, metrics)

    try:
        registration = await _authenticate(request, registration_id, db, settings)
    except Exception as e:
        if not isinstance(e, AuthenticationError):
            logger.error("external_info_failed", registration_id=registration_id, error=str(e))
        response, message = _error_response(e)
        await recorder.record(response.status_code, len(response.body), message)
        return response

    configuration = registration.configuration
    prompt = registration.system_prompt
    response = JSONResponse(
        {
            "id": registration.id,
            "name": registration.name,
            "description": registration.description,
            "configuration": {
                "name": configuration.name if configuration else None,
                "provider": configuration.provider if configuration else None,
            },
            "system_prompt": (
                {"title": prompt.title, "category": prompt.category} if prompt else None
            ),
            "created_at": registration.created_at.isoformat() if registration.created_at else None,
            "is_active": registration.is_active,
        }
    )
    await recorder.record(200, len(response.body))
    return response
