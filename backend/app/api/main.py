"""
FastAPI application factory and main entry point.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.middleware import WideEventMiddleware
from app.api.routes import (
    ai,
    api_registrations,
    configurations,
    external,
    health,
    metrics,
    system_prompts,
)
from app.core.config import settings
from app.core.exceptions import (
    AuthenticationError,
    GatewayException,
    ProviderError,
    ResourceNotFoundError,
    ValidationError,
)
from app.core.logging import configure_logging
from app.db import DatabaseError, close_db, init_db

# Configure structured logging with wide events support
configure_logging(
    json_logs=not settings.debug,  # JSON in production, console in dev
    log_level="DEBUG" if settings.debug else settings.log_level,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    logger.info("Starting Athena Gateway", version=settings.app_version)
    await init_db()
    logger.info("Database initialized")

    yield

    # Shutdown
    logger.info("Shutting down Athena Gateway")
    await close_db()
    logger.info("Database connections closed")


def _error_body(exc: GatewayException) -> dict:
    return {
        "error": {
            "message": exc.message,
            "type": exc.error_type,
            "details": exc.details,
        }
    }


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Gateway exposing user-configured AI providers as API-key protected endpoints",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Wide Events middleware - canonical log line per request
    app.add_middleware(WideEventMiddleware)

    # Include routers
    app.include_router(health.router, tags=["Health"])
    app.include_router(external.router, prefix="/api/external", tags=["External"])  # API-key protected proxy
    app.include_router(ai.router, prefix="/api/v1/ai", tags=["AI"])
    app.include_router(configurations.router, prefix="/api/v1/configurations", tags=["Configurations"])
    app.include_router(system_prompts.router, prefix="/api/v1/system-prompts", tags=["System Prompts"])
    app.include_router(api_registrations.router, prefix="/api/v1/api-registrations", tags=["API Registrations"])
    app.include_router(metrics.router, prefix="/api/v1/metrics", tags=["Metrics"])

    # Exception Handlers
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle FastAPI validation errors"""
        logger.warning("Validation error", url=str(request.url), errors=exc.errors())
        return JSONResponse(
            status_code=422,
            content={
                "error": {
                    "message": "Validation failed",
                    "type": "validation_error",
                    "details": exc.errors()
                }
            }
        )

    @app.exception_handler(DatabaseError)
    async def database_exception_handler(request: Request, exc: DatabaseError):
        """Handle database errors"""
        logger.error("Database error", url=str(request.url), error=exc.message, exc_info=True)
        return JSONResponse(
            status_code=503,
            content={
                "error": {
                    "message": "Database operation failed",
                    "type": "database_error",
                }
            }
        )

    @app.exception_handler(AuthenticationError)
    async def authentication_exception_handler(request: Request, exc: AuthenticationError):
        """Handle authentication errors"""
        logger.warning("Authentication error", url=str(request.url), message=exc.message)
        return JSONResponse(status_code=401, content=_error_body(exc))

    @app.exception_handler(ValidationError)
    async def request_error_handler(request: Request, exc: ValidationError):
        """Handle malformed request content"""
        logger.warning("Invalid request", url=str(request.url), message=exc.message, code=exc.code)
        return JSONResponse(status_code=400, content=_error_body(exc))

    @app.exception_handler(ResourceNotFoundError)
    async def not_found_exception_handler(request: Request, exc: ResourceNotFoundError):
        """Handle not found errors"""
        logger.info("Resource not found", url=str(request.url), message=exc.message)
        return JSONResponse(status_code=404, content=_error_body(exc))

    @app.exception_handler(ProviderError)
    async def provider_exception_handler(request: Request, exc: ProviderError):
        """Handle upstream AI provider errors"""
        logger.error(
            "Provider error",
            url=str(request.url),
            message=exc.message,
            provider=exc.provider,
            upstream_status=exc.upstream_status,
        )
        return JSONResponse(status_code=502, content=_error_body(exc))

    @app.exception_handler(GatewayException)
    async def app_exception_handler(request: Request, exc: GatewayException):
        """Handle remaining gateway exceptions (settings, vault, unsupported provider)"""
        logger.error("App error", url=str(request.url), message=exc.message, code=exc.code)
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc))

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle unexpected exceptions"""
        logger.error("Unexpected error", url=str(request.url), error=str(exc), exc_info=True)

        # Don't expose internal details in production
        message = str(exc) if settings.debug else "An unexpected error occurred"

        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "message": message,
                    "type": "internal_server_error"
                }
            }
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.api.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
