"""
Caller identity for the internal API.

End-user authentication (sessions, SSO) happens in front of this service; the
upstream auth layer forwards the authenticated user id in ``X-User-Id``.
External proxy callers authenticate with registration API keys instead, see
``app.services.registration_service``.
"""

from dataclasses import dataclass

from fastapi import Header

from app.api.middleware.wide_events import add_user_to_wide_event
from app.core.exceptions import AuthenticationError


@dataclass
class User:
    """Authenticated user forwarded by the upstream auth layer."""

    id: str


async def get_current_user(
    x_user_id: str | None = Header(default=None),
) -> User:
    """Dependency resolving the calling user, 401 when absent."""
    if not x_user_id or not x_user_id.strip():
        raise AuthenticationError("Missing X-User-Id header")

    user = User(id=x_user_id.strip())
    add_user_to_wide_event(user_id=user.id)
    return user
