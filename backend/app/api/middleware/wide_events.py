"""
Wide Events Middleware for FastAPI.

Implements the canonical log line pattern:
- Initializes a wide event at request start
- Handlers enrich it with user, registration and provider context
- Finalizes and emits on request completion

Usage:
    app.add_middleware(WideEventMiddleware)

Then in handlers:
    from app.api.middleware import add_provider_to_wide_event

    add_provider_to_wide_event(provider="gemini", model="gemini-2.5-flash")
"""

from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.core.logging import (
    emit_wide_event,
    enrich_event,
    finalize_request_event,
    init_request_event,
)


def get_client_ip(request: Request) -> str:
    """Extract client IP, respecting proxy headers."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip

    if request.client:
        return request.client.host

    return "unknown"


class WideEventMiddleware(BaseHTTPMiddleware):
    """
    Middleware that captures one wide event for every request.

    Contains request metadata, caller context, registration/provider context
    added by handlers, response status and duration, and error context.
    """

    # Paths to skip (health checks generate too much noise)
    SKIP_PATHS = {"/api/health", "/api/ready", "/favicon.ico"}

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        if request.url.path in self.SKIP_PATHS:
            return await call_next(request)

        init_request_event(
            request_id=request.headers.get("x-request-id"),
            method=request.method,
            path=request.url.path,
            client_ip=get_client_ip(request),
            user_agent=request.headers.get("user-agent", ""),
        )

        if request.query_params:
            enrich_event(**{"http.query_params": dict(request.query_params)})

        error: Exception | None = None
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response

        except Exception as e:
            error = e
            status_code = getattr(e, "status_code", 500)
            raise

        finally:
            event = finalize_request_event(status_code, error)
            emit_wide_event(event)


def add_user_to_wide_event(user_id: str | None = None) -> None:
    """Add the calling user to the wide event."""
    enrich_event(user={"id": user_id})


def add_registration_to_wide_event(
    registration_id: str | None = None,
    registration_name: str | None = None,
    user_id: str | None = None,
) -> None:
    """Add external registration context to the wide event."""
    enrich_event(
        registration={
            "id": registration_id,
            "name": registration_name,
            "owner": user_id,
        }
    )


def add_provider_to_wide_event(
    provider: str | None = None,
    model: str | None = None,
    usage: dict | None = None,
    streaming: bool = False,
) -> None:
    """Add provider/model context (and token usage when known)."""
    enrich_event(
        provider={
            "kind": provider,
            "model": model,
            "streaming": streaming,
            "usage": usage,
        }
    )
