"""
SQLAlchemy ORM models for the Athena gateway.

Organized into sections:
- Configuration Tables (AI configurations, system prompts)
- Registration Tables (externally callable endpoints)
- Metrics Tables (append-only API call log)
"""

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from app.core.models import ProviderKind
from app.db.database import Base


def new_id() -> str:
    return uuid4().hex


def utcnow() -> datetime:
    return datetime.now(UTC)


class TimestampMixin:
    """Mixin for created_at and updated_at columns."""

    # Python-side default keeps insertion order stable on stores with
    # second-resolution CURRENT_TIMESTAMP
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=utcnow
    )


# ==============================================================================
# Configuration Tables
# ==============================================================================


class AIConfigurationModel(Base, TimestampMixin):
    """A user's connection settings for one inference backend.

    ``settings`` holds the provider record with sensitive fields encrypted.
    Rows written by older clients may hold a JSON-encoded string instead of
    an object; the resolver decodes both.
    """

    __tablename__ = "ai_configurations"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    settings: Mapped[Any] = mapped_column(JSON, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    registrations: Mapped[list["APIRegistrationModel"]] = relationship(
        back_populates="configuration",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("idx_ai_configurations_user_active", "user_id", "is_active"),
    )

    @property
    def provider_kind(self) -> ProviderKind:
        """Provider as enum; raises ValueError for values outside the closed set."""
        return ProviderKind(self.provider)


class SystemPromptModel(Base, TimestampMixin):
    """A reusable system prompt, optionally carrying a structured-output field-tree."""

    __tablename__ = "system_prompts"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    category: Mapped[str] = mapped_column(String(100), nullable=False, default="Custom")
    content: Mapped[str] = mapped_column(Text, nullable=False)
    json_schema: Mapped[list[dict] | None] = mapped_column(JSON)
    json_description: Mapped[str | None] = mapped_column(Text)


# ==============================================================================
# Registration Tables
# ==============================================================================


class APIRegistrationModel(Base, TimestampMixin):
    """Externally callable binding of a configuration to an API key."""

    __tablename__ = "api_registrations"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    base_url: Mapped[str] = mapped_column(String(500), nullable=False)
    api_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    configuration_id: Mapped[str] = mapped_column(
        String(32),
        ForeignKey("ai_configurations.id", ondelete="CASCADE"),
        nullable=False,
    )
    system_prompt_id: Mapped[str | None] = mapped_column(
        String(32),
        ForeignKey("system_prompts.id", ondelete="SET NULL"),
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    configuration: Mapped[AIConfigurationModel] = relationship(
        back_populates="registrations", lazy="selectin"
    )
    system_prompt: Mapped[SystemPromptModel | None] = relationship(lazy="selectin")

    @property
    def masked_api_key(self) -> str:
        return mask_secret(self.api_key)


def mask_secret(value: str | None) -> str:
    """Show only the last four characters of a secret."""
    if not value:
        return ""
    return "****" + value[-4:]


# ==============================================================================
# Metrics Tables
# ==============================================================================


class APICallMetricModel(Base):
    """One row per external proxy call. Append-only, purged by age."""

    __tablename__ = "api_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # No FK: calls with unknown registration ids are recorded too
    registration_id: Mapped[str] = mapped_column(String(255), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    method: Mapped[str] = mapped_column(String(10), nullable=False)
    endpoint: Mapped[str] = mapped_column(String(500), nullable=False)
    status_code: Mapped[int] = mapped_column(Integer, nullable=False)
    response_time_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    request_size_bytes: Mapped[int | None] = mapped_column(Integer)
    response_size_bytes: Mapped[int | None] = mapped_column(Integer)
    error_message: Mapped[str | None] = mapped_column(Text)
    user_agent: Mapped[str | None] = mapped_column(String(500))
    ip_address: Mapped[str | None] = mapped_column(String(100))

    __table_args__ = (
        Index("idx_api_metrics_registration_timestamp", "registration_id", "timestamp"),
        Index("idx_api_metrics_timestamp", "timestamp"),
    )
