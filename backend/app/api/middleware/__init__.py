"""
API Middleware package.

Contains middleware components for request processing:
- Wide Events: Canonical log line pattern for comprehensive request logging
"""

from app.api.middleware.wide_events import (
    WideEventMiddleware,
    add_provider_to_wide_event,
    add_registration_to_wide_event,
    add_user_to_wide_event,
    get_client_ip,
)

__all__ = [
    "WideEventMiddleware",
    "add_provider_to_wide_event",
    "add_registration_to_wide_event",
    "add_user_to_wide_event",
    "get_client_ip",
]
