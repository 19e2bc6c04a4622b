"""
API call metrics.

Every external proxy call is recorded as one row, whatever its outcome.
Writes use their own session so a failed request transaction never loses its
metric, and a failed metric write never fails the request.

Aggregations:
- summarize(): totals, status classes and response-time stats over a window
- time_series(): per-hour (24h) or per-day (7d/30d) buckets
- recent_calls(): newest rows first
- purge_older_than(): retention cleanup
"""

from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy import case, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.models import TimeRange
from app.db.database import get_db_session
from app.db.models import APICallMetricModel, APIRegistrationModel

logger = structlog.get_logger()

DEFAULT_RECENT_LIMIT = 50
MAX_RECENT_LIMIT = 500


@dataclass
class APICall:
    """One finished external call, as measured by the proxy route."""

    registration_id: str
    method: str
    endpoint: str
    status_code: int
    response_time_ms: int
    request_size_bytes: int | None = None
    response_size_bytes: int | None = None
    error_message: str | None = None
    user_agent: str | None = None
    ip_address: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class MetricsSummary:
    total_requests: int = 0
    success_requests: int = 0
    client_error_requests: int = 0
    server_error_requests: int = 0
    average_response_time_ms: int = 0
    min_response_time_ms: int = 0
    max_response_time_ms: int = 0

    @property
    def error_requests(self) -> int:
        return self.client_error_requests + self.server_error_requests

    @property
    def error_rate(self) -> float:
        if not self.total_requests:
            return 0.0
        return round(100 * self.error_requests / self.total_requests, 2)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["error_requests"] = self.error_requests
        data["error_rate"] = self.error_rate
        return data


@dataclass
class TimeSeriesPoint:
    timestamp: datetime
    requests: int
    average_response_time_ms: int
    error_rate: int


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _bucket_start(value: datetime, bucket: str) -> datetime:
    value = _as_utc(value)
    if bucket == "day":
        return value.replace(hour=0, minute=0, second=0, microsecond=0)
    return value.replace(minute=0, second=0, microsecond=0)


def clamp_limit(limit: int | None) -> int:
    if limit is None:
        return DEFAULT_RECENT_LIMIT
    return max(1, min(limit, MAX_RECENT_LIMIT))


class MetricsService:
    """Record and aggregate API call metrics."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record(self, call: APICall) -> None:
        """Persist one call. Failures are logged, never raised."""
        try:
            async with get_db_session(self.session_factory) as session:
                session.add(APICallMetricModel(**asdict(call)))
                await session.commit()
        except Exception as e:
            logger.error(
                "metric_record_failed",
                registration_id=call.registration_id,
                status_code=call.status_code,
                error=str(e),
            )

    async def summarize(
        self,
        registration_id: str,
        time_range: TimeRange = TimeRange.LAST_24H,
        now: datetime | None = None,
    ) -> MetricsSummary:
        now = now or datetime.now(UTC)
        start = now - time_range.window
        status = APICallMetricModel.status_code

        query = select(
            func.count(APICallMetricModel.id),
            func.sum(case((status.between(200, 299), 1), else_=0)),
            func.sum(case(((status >= 400) & (status < 500), 1), else_=0)),
            func.sum(case((status >= 500, 1), else_=0)),
            func.avg(APICallMetricModel.response_time_ms),
            func.min(APICallMetricModel.response_time_ms),
            func.max(APICallMetricModel.response_time_ms),
        ).where(
            APICallMetricModel.registration_id == registration_id,
            APICallMetricModel.timestamp >= start,
            APICallMetricModel.timestamp <= now,
        )

        async with get_db_session(self.session_factory) as session:
            row = (await session.execute(query)).one()

        total, success, client_errors, server_errors, avg_ms, min_ms, max_ms = row
        if not total:
            return MetricsSummary()
        return MetricsSummary(
            total_requests=total,
            success_requests=int(success or 0),
            client_error_requests=int(client_errors or 0),
            server_error_requests=int(server_errors or 0),
            average_response_time_ms=round(float(avg_ms or 0)),
            min_response_time_ms=int(min_ms or 0),
            max_response_time_ms=int(max_ms or 0),
        )

    async def time_series(
        self,
        registration_id: str,
        time_range: TimeRange = TimeRange.LAST_24H,
        now: datetime | None = None,
    ) -> list[TimeSeriesPoint]:
        """Bucket calls by hour (24h) or day (7d, 30d).

        Bucketing runs in Python so the same code serves PostgreSQL and
        SQLite. Only buckets with at least one call are returned.
        """
        now = now or datetime.now(UTC)
        start = now - time_range.window

        query = (
            select(
                APICallMetricModel.timestamp,
                APICallMetricModel.response_time_ms,
                APICallMetricModel.status_code,
            )
            .where(
                APICallMetricModel.registration_id == registration_id,
                APICallMetricModel.timestamp >= start,
                APICallMetricModel.timestamp <= now,
            )
            .order_by(APICallMetricModel.timestamp)
        )

        async with get_db_session(self.session_factory) as session:
            rows = (await session.execute(query)).all()

        buckets: dict[datetime, list[tuple[int, int]]] = {}
        for timestamp, response_time_ms, status_code in rows:
            key = _bucket_start(timestamp, time_range.bucket)
            buckets.setdefault(key, []).append((response_time_ms, status_code))

        points = []
        for key in sorted(buckets):
            calls = buckets[key]
            errors = sum(1 for _, status_code in calls if status_code >= 400)
            points.append(
                TimeSeriesPoint(
                    timestamp=key,
                    requests=len(calls),
                    average_response_time_ms=round(sum(ms for ms, _ in calls) / len(calls)),
                    error_rate=round(100 * errors / len(calls)),
                )
            )
        return points

    async def recent_calls(
        self,
        registration_id: str,
        limit: int | None = None,
    ) -> Sequence[APICallMetricModel]:
        query = (
            select(APICallMetricModel)
            .where(APICallMetricModel.registration_id == registration_id)
            .order_by(APICallMetricModel.timestamp.desc(), APICallMetricModel.id.desc())
            .limit(clamp_limit(limit))
        )
        async with get_db_session(self.session_factory) as session:
            return (await session.execute(query)).scalars().all()

    async def user_summary(
        self,
        user_id: str,
        time_range: TimeRange = TimeRange.LAST_24H,
        now: datetime | None = None,
    ) -> dict:
        """Aggregate summaries across all of a user's registrations."""
        now = now or datetime.now(UTC)
        async with get_db_session(self.session_factory) as session:
            result = await session.execute(
                select(APIRegistrationModel.id, APIRegistrationModel.name)
                .where(APIRegistrationModel.user_id == user_id)
                .order_by(APIRegistrationModel.created_at)
            )
            registrations = result.all()

        per_registration = []
        totals = MetricsSummary()
        weighted_ms = 0
        minima = []
        for registration_id, name in registrations:
            summary = await self.summarize(registration_id, time_range, now=now)
            per_registration.append(
                {"registration_id": registration_id, "name": name, **summary.to_dict()}
            )
            totals.total_requests += summary.total_requests
            totals.success_requests += summary.success_requests
            totals.client_error_requests += summary.client_error_requests
            totals.server_error_requests += summary.server_error_requests
            totals.max_response_time_ms = max(
                totals.max_response_time_ms, summary.max_response_time_ms
            )
            weighted_ms += summary.average_response_time_ms * summary.total_requests
            if summary.total_requests:
                minima.append(summary.min_response_time_ms)

        if totals.total_requests:
            totals.average_response_time_ms = round(weighted_ms / totals.total_requests)
        totals.min_response_time_ms = min(minima) if minima else 0

        return {
            "time_range": time_range.value,
            "totals": totals.to_dict(),
            "registrations": per_registration,
        }

    async def purge_older_than(self, days: int, now: datetime | None = None) -> int:
        """Delete rows at or before ``now - days``. Returns the deleted count."""
        cutoff = (now or datetime.now(UTC)) - timedelta(days=days)
        async with get_db_session(self.session_factory) as session:
            result = await session.execute(
                delete(APICallMetricModel).where(APICallMetricModel.timestamp <= cutoff)
            )
            await session.commit()
        deleted = result.rowcount or 0
        logger.info("metrics_purged", older_than_days=days, deleted=deleted)
        return deleted
