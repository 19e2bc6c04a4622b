"""
Exception hierarchy for the gateway.

Every exception carries the external error ``type``/``code`` pair and the HTTP
status it maps to. The external proxy collapses these to 401/400/500; the
internal API registers one handler per class in ``app.api.main``.
"""

from typing import Any


class GatewayException(Exception):
    """Base class for all application errors."""

    status_code: int = 500
    error_type: str = "server_error"
    code: str = "internal_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class AuthenticationError(GatewayException):
    """Missing/malformed bearer key, or unknown/inactive registration."""

    status_code = 401
    error_type = "authentication_error"
    code = "invalid_api_key"


class ValidationError(GatewayException):
    """Malformed request body."""

    status_code = 400
    error_type = "invalid_request_error"
    code = "invalid_request"

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        code: str | None = None,
    ):
        super().__init__(message, details)
        if code:
            self.code = code


class ResourceNotFoundError(GatewayException):
    status_code = 404
    error_type = "not_found_error"
    code = "not_found"


class ConfigurationNotFoundError(ResourceNotFoundError):
    code = "configuration_not_found"


class InvalidSettingsError(GatewayException):
    code = "invalid_settings"


class UnsupportedProviderError(GatewayException):
    code = "unsupported_provider"

    def __init__(self, provider: str):
        super().__init__(f"Unsupported provider: {provider}", {"provider": provider})
        self.provider = provider


class EncryptionError(GatewayException):
    code = "encryption_failed"


class DecryptionError(GatewayException):
    code = "decryption_failed"


class ProviderError(GatewayException):
    """Upstream inference backend failure. Never retried."""

    status_code = 502
    error_type = "provider_error"
    code = "provider_error"

    def __init__(
        self,
        message: str,
        provider: str,
        upstream_status: int | None = None,
    ):
        super().__init__(message, {"provider": provider, "upstream_status": upstream_status})
        self.provider = provider
        self.upstream_status = upstream_status


class InternalError(GatewayException):
    pass
