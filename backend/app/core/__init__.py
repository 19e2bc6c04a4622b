"""
Core package initialization.
"""

from app.core.config import Settings, get_settings, settings
from app.core.models import (
    APIResponse,
    ChatCompletionRequest,
    ChatMessage,
    JsonField,
    MessageRole,
    PromptCategory,
    ProviderKind,
    TimeRange,
    TokenUsage,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    "settings",
    # Enums
    "ProviderKind",
    "MessageRole",
    "PromptCategory",
    "TimeRange",
    # Schemas
    "APIResponse",
    "ChatCompletionRequest",
    "ChatMessage",
    "JsonField",
    "TokenUsage",
]
