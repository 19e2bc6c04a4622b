"""
Metrics read surface for API registrations.

Routes:
- GET    /summary                      - Totals across all of the caller's registrations
- DELETE /cleanup?olderThanDays=       - Retention purge (minimum 30 days)
- GET    /{registration_id}            - Summary for one registration
- GET    /{registration_id}/timeseries - Hourly (24h) or daily (7d, 30d) buckets
- GET    /{registration_id}/calls      - Most recent calls

``timeRange`` accepts 24h, 7d or 30d; anything else falls back to 24h.
"""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.auth import User, get_current_user
from app.core.config import Settings, get_settings
from app.core.exceptions import ValidationError
from app.core.models import APIResponse, TimeRange
from app.db import get_db, get_session_factory
from app.services.metrics_service import DEFAULT_RECENT_LIMIT, MetricsService
from app.services.registration_service import RegistrationService

logger = structlog.get_logger()

router = APIRouter()

TimeRangeParam = Annotated[str | None, Query(alias="timeRange")]


def get_metrics_service(
    session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
) -> MetricsService:
    return MetricsService(session_factory)


async def _require_owned(db: AsyncSession, user: User, registration_id: str) -> None:
    await RegistrationService(db).get_for_user(user.id, registration_id)


@router.get("/summary")
async def user_summary(
    metrics: Annotated[MetricsService, Depends(get_metrics_service)],
    user: Annotated[User, Depends(get_current_user)],
    time_range: TimeRangeParam = None,
) -> APIResponse:
    """Aggregate metrics across every registration of the caller."""
    summary = await metrics.user_summary(user.id, TimeRange.parse(time_range))
    return APIResponse(data=summary)


@router.delete("/cleanup")
async def cleanup_metrics(
    metrics: Annotated[MetricsService, Depends(get_metrics_service)],
    settings: Annotated[Settings, Depends(get_settings)],
    user: Annotated[User, Depends(get_current_user)],
    older_than_days: Annotated[int | None, Query(alias="olderThanDays")] = None,
) -> APIResponse:
    """Delete metric rows older than the given number of days."""
    days = (
        older_than_days
        if older_than_days is not None
        else settings.metrics_default_retention_days
    )
    if days < settings.metrics_min_retention_days:
        raise ValidationError(
            f"Cannot delete metrics newer than {settings.metrics_min_retention_days} days",
            details={"older_than_days": days},
            code="retention_too_short",
        )

    deleted = await metrics.purge_older_than(days)
    logger.info("metrics_cleanup_requested", user_id=user.id, older_than_days=days)
    return APIResponse(
        message=f"Deleted {deleted} metric records older than {days} days",
        data={"deleted": deleted, "older_than_days": days},
    )


@router.get("/{registration_id}")
async def registration_summary(
    registration_id: str,
    db: Annotated[AsyncSession, Depends(get_db)],
    metrics: Annotated[MetricsService, Depends(get_metrics_service)],
    user: Annotated[User, Depends(get_current_user)],
    time_range: TimeRangeParam = None,
) -> APIResponse:
    await _require_owned(db, user, registration_id)
    window = TimeRange.parse(time_range)
    summary = await metrics.summarize(registration_id, window)
    return APIResponse(
        data={
            "registration_id": registration_id,
            "time_range": window.value,
            **summary.to_dict(),
        }
    )


@router.get("/{registration_id}/timeseries")
async def registration_time_series(
    registration_id: str,
    db: Annotated[AsyncSession, Depends(get_db)],
    metrics: Annotated[MetricsService, Depends(get_metrics_service)],
    user: Annotated[User, Depends(get_current_user)],
    time_range: TimeRangeParam = None,
) -> APIResponse:
    await _require_owned(db, user, registration_id)
    window = TimeRange.parse(time_range)
    points = await metrics.time_series(registration_id, window)
    return APIResponse(
        data={
            "registration_id": registration_id,
            "time_range": window.value,
            "bucket": window.bucket,
            "points": [
                {
                    "timestamp": p.timestamp.isoformat(),
                    "requests": p.requests,
                    "average_response_time_ms": p.average_response_time_ms,
                    "error_rate": p.error_rate,
                }
                for p in points
            ],
        }
    )


@router.get("/{registration_id}/calls")
async def registration_calls(
    registration_id: str,
    db: Annotated[AsyncSession, Depends(get_db)],
    metrics: Annotated[MetricsService, Depends(get_metrics_service)],
    user: Annotated[User, Depends(get_current_user)],
    limit: int = DEFAULT_RECENT_LIMIT,
) -> APIResponse:
    """Most recent calls, newest first. ``limit`` is clamped to [1, 500]."""
    await _require_owned(db, user, registration_id)
    calls = await metrics.recent_calls(registration_id, limit)
    return APIResponse(
        data={
            "registration_id": registration_id,
            "calls": [
                {
                    "id": c.id,
                    "timestamp": c.timestamp.isoformat(),
                    "method": c.method,
                    "endpoint": c.endpoint,
                    "status_code": c.status_code,
                    "response_time_ms": c.response_time_ms,
                    "request_size_bytes": c.request_size_bytes,
                    "response_size_bytes": c.response_size_bytes,
                    "error_message": c.error_message,
                    "user_agent": c.user_agent,
                    "ip_address": c.ip_address,
                }
                for c in calls
            ],
        }
    )
