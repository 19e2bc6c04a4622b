"""
Core models and types for the Athena gateway.

Enums shared by the ORM models and services, plus the pydantic schemas for the
chat wire format, provider settings records and the declarative field-tree.
"""

from datetime import timedelta
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Enums (used by db/models.py)
# =============================================================================


class ProviderKind(str, Enum):
    """Closed set of inference backend families."""

    GEMINI = "gemini"  # cloud multimodal
    OLLAMA = "ollama"  # local inference
    HTTP_API = "http-api"  # OpenAI-compatible HTTP


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class PromptCategory(str, Enum):
    STRUCTURED_OUTPUT = "Structured Output"
    TOPIC_SPECIFIC = "Topic Specific"
    CUSTOM = "Custom"


class FieldType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"


class TimeRange(str, Enum):
    LAST_24H = "24h"
    LAST_7D = "7d"
    LAST_30D = "30d"

    @property
    def window(self) -> timedelta:
        return {
            TimeRange.LAST_24H: timedelta(hours=24),
            TimeRange.LAST_7D: timedelta(days=7),
            TimeRange.LAST_30D: timedelta(days=30),
        }[self]

    @property
    def bucket(self) -> Literal["hour", "day"]:
        return "hour" if self is TimeRange.LAST_24H else "day"

    @classmethod
    def parse(cls, value: str | None) -> "TimeRange":
        """Parse a query value; anything unknown falls back to 24h."""
        try:
            return cls(value)
        except ValueError:
            return cls.LAST_24H


# =============================================================================
# Base Models
# =============================================================================


class BaseSchema(BaseModel):
    """Base schema with common configuration."""
    model_config = ConfigDict(from_attributes=True)


class CamelSchema(BaseModel):
    """Schema accepting both camelCase wire keys and snake_case names."""
    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# Declarative field-tree (System Prompt json_schema)
# =============================================================================


class JsonField(CamelSchema):
    id: str | None = None
    name: str
    # Kept as a plain string so unknown types reach the schema builder
    type: str = FieldType.STRING.value
    description: str | None = None
    required: bool = False
    children: list["JsonField"] | None = None
    array_item_type: str | None = Field(default=None, alias="arrayItemType")


# =============================================================================
# Chat wire format
# =============================================================================


class TextContent(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageContent(BaseModel):
    type: Literal["image"] = "image"
    image: str  # data URL or bare base64


ContentPart = Annotated[TextContent | ImageContent, Field(discriminator="type")]


class ChatMessage(BaseModel):
    role: MessageRole
    content: str | list[ContentPart]
    # Optional stable identifier used to bind attachment batches to a message
    id: str | None = None


class StatelessFile(BaseModel):
    name: str
    type: str
    data: str  # base64, optionally with a data URL prefix


class ChatCompletionRequest(BaseModel):
    messages: list[ChatMessage] = Field(..., min_length=1)
    stream: bool = False
    max_tokens: int | None = Field(default=None, gt=0)
    temperature: float | None = Field(default=None, ge=0, le=2)
    files: list[StatelessFile] | None = None


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


# =============================================================================
# Provider settings records
# =============================================================================


class GeminiSettings(CamelSchema):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    api_key: str = Field(..., alias="apiKey")
    model: str = "gemini-2.5-flash"
    temperature: float = 0.7
    max_tokens: int | None = Field(default=None, alias="maxTokens")
    top_p: float | None = Field(default=None, alias="topP")
    top_k: int | None = Field(default=None, alias="topK")


class OllamaSettings(CamelSchema):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    server_url: str = Field(default="http://localhost:11434", alias="serverUrl")
    model: str = "llama3.2"
    temperature: float = 0.7
    max_tokens: int | None = Field(default=None, alias="maxTokens")
    top_p: float | None = Field(default=None, alias="topP")
    top_k: int | None = Field(default=None, alias="topK")
    num_ctx: int | None = Field(default=None, alias="numCtx")


class HttpApiSettings(CamelSchema):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    base_url: str = Field(..., alias="baseUrl")
    api_key: str | None = Field(default=None, alias="apiKey")
    model: str
    temperature: float = 0.7
    max_tokens: int | None = Field(default=None, alias="maxTokens")
    top_p: float | None = Field(default=None, alias="topP")
    presence_penalty: float | None = Field(default=None, alias="presencePenalty")
    frequency_penalty: float | None = Field(default=None, alias="frequencyPenalty")
    headers: dict[str, str] = Field(default_factory=dict)
    auth_type: Literal["bearer", "api-key", "custom", "none"] = Field(
        default="bearer", alias="authType"
    )
    stream_response: bool = Field(default=False, alias="streamResponse")


SETTINGS_MODELS: dict[ProviderKind, type[CamelSchema]] = {
    ProviderKind.GEMINI: GeminiSettings,
    ProviderKind.OLLAMA: OllamaSettings,
    ProviderKind.HTTP_API: HttpApiSettings,
}


# =============================================================================
# API Response Models
# =============================================================================


class APIResponse(BaseSchema):
    success: bool = True
    message: str | None = None
    data: Any = None
    meta: dict[str, Any] | None = None
