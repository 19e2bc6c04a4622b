"""
Message normalization for provider adapters.

Two conversions of the provider-agnostic conversation:
- ``to_text_only``: text parts joined, images dropped (local / HTTP providers)
- ``to_multimodal``: image parts decoded to bytes + media type, attachments
  added as extra image parts (cloud multimodal provider)

Attachment association: batches whose ``message_id`` matches a message ``id``
are bound to that message. All other attachments go to the last user message,
matched by content-key (its text, or the compact JSON of its part list).
Every user message with that same content-key receives them as well; callers
that send duplicate texts should set message ids.
"""

import base64
import binascii
import json
import re
from collections.abc import Sequence
from dataclasses import dataclass, field

from app.core.exceptions import ValidationError
from app.core.models import ChatMessage, ImageContent, MessageRole, StatelessFile, TextContent

DEFAULT_IMAGE_TYPE = "image/jpeg"
_DATA_URL_TYPE = re.compile(r"data:([^;]+)")


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class ImagePart:
    data: bytes
    media_type: str


Part = TextPart | ImagePart


@dataclass
class NormalizedMessage:
    role: MessageRole
    # Bare string when the message is a single text part
    content: str | list[Part]

    def parts(self) -> list[Part]:
        if isinstance(self.content, str):
            return [TextPart(self.content)]
        return list(self.content)

    @property
    def text(self) -> str:
        return " ".join(p.text for p in self.parts() if isinstance(p, TextPart))


@dataclass
class Attachment:
    filename: str
    mime_type: str
    data: bytes
    id: str | None = None


@dataclass
class AttachmentBatch:
    """Files stored with a previous turn, rehydrated for this call."""

    message_id: str | None
    attachments: list[Attachment] = field(default_factory=list)


# =============================================================================
# Helpers
# =============================================================================


def strip_data_url(data: str) -> str:
    """Remove a ``data:<type>;base64,`` prefix if present."""
    return data.split(",", 1)[1] if "," in data else data


def sniff_media_type(data: str) -> str:
    if "data:" in data:
        match = _DATA_URL_TYPE.search(data)
        if match:
            return match.group(1)
    return DEFAULT_IMAGE_TYPE


def _b64decode(data: str, name: str) -> bytes:
    try:
        return base64.b64decode(strip_data_url(data))
    except (binascii.Error, ValueError) as e:
        raise ValidationError(
            f"File '{name}' is not valid base64",
            details={"file": name},
            code="invalid_file",
        ) from e


def content_key(message: ChatMessage) -> str:
    """Serialized message content used to find a message's attachments."""
    if isinstance(message.content, str):
        return message.content
    return json.dumps(
        [part.model_dump() for part in message.content],
        separators=(",", ":"),
        ensure_ascii=False,
    )


def _last_user_index(messages: Sequence[ChatMessage]) -> int | None:
    for index in range(len(messages) - 1, -1, -1):
        if messages[index].role == MessageRole.USER:
            return index
    return None


def _collapse(parts: list[Part]) -> str | list[Part]:
    if len(parts) == 1 and isinstance(parts[0], TextPart):
        return parts[0].text
    return parts


def decode_stateless_files(
    files: Sequence[StatelessFile] | None,
    max_file_bytes: int,
    max_total_bytes: int,
) -> list[Attachment]:
    """Decode inline base64 uploads, enforcing per-file and total size limits."""
    attachments: list[Attachment] = []
    total = 0
    for index, upload in enumerate(files or []):
        data = _b64decode(upload.data, upload.name)
        if len(data) > max_file_bytes:
            raise ValidationError(
                f"File '{upload.name}' exceeds the maximum size of {max_file_bytes} bytes",
                details={"file": upload.name, "size": len(data)},
                code="file_too_large",
            )
        total += len(data)
        if total > max_total_bytes:
            raise ValidationError(
                f"Attachments exceed the maximum total size of {max_total_bytes} bytes",
                details={"total_size": total},
                code="file_too_large",
            )
        attachments.append(
            Attachment(
                filename=upload.name,
                mime_type=upload.type,
                data=data,
                id=f"stateless_{index}",
            )
        )
    return attachments


# =============================================================================
# Conversions
# =============================================================================


def to_text_only(messages: Sequence[ChatMessage]) -> list[NormalizedMessage]:
    """Flatten each message to its text parts joined by a space."""
    normalized = []
    for message in messages:
        if isinstance(message.content, str):
            text = message.content
        else:
            text = " ".join(p.text for p in message.content if isinstance(p, TextContent))
        normalized.append(NormalizedMessage(role=message.role, content=text))
    return normalized


def to_multimodal(
    messages: Sequence[ChatMessage],
    attachment_files: Sequence[AttachmentBatch] | None = None,
    files: Sequence[Attachment] | None = None,
) -> list[NormalizedMessage]:
    """Convert messages to text + image parts and attach files.

    ``files`` are already-decoded stateless uploads (see
    ``decode_stateless_files``). Only attachments with an ``image/`` MIME type
    become parts; the others are ignored.
    """
    ids = {m.id for m in messages if m.id}
    by_id: dict[str, list[Attachment]] = {}
    unbound: list[Attachment] = []
    for batch in attachment_files or []:
        if batch.message_id and batch.message_id in ids:
            by_id.setdefault(batch.message_id, []).extend(batch.attachments)
        else:
            unbound.extend(batch.attachments)
    unbound.extend(files or [])

    by_key: dict[str, list[Attachment]] = {}
    last_user = _last_user_index(messages)
    if unbound and last_user is not None:
        by_key[content_key(messages[last_user])] = unbound

    normalized = []
    for message in messages:
        parts: list[Part] = []
        if isinstance(message.content, str):
            parts.append(TextPart(message.content))
        else:
            for part in message.content:
                if isinstance(part, TextContent) and part.text:
                    parts.append(TextPart(part.text))
                elif isinstance(part, ImageContent) and part.image:
                    parts.append(
                        ImagePart(
                            data=_b64decode(part.image, "inline image"),
                            media_type=sniff_media_type(part.image),
                        )
                    )

        if message.role == MessageRole.USER:
            extra = list(by_id.get(message.id or "", []))
            extra.extend(by_key.get(content_key(message), []))
            for attachment in extra:
                if attachment.mime_type.startswith("image/"):
                    parts.append(ImagePart(data=attachment.data, media_type=attachment.mime_type))

        normalized.append(NormalizedMessage(role=message.role, content=_collapse(parts)))
    return normalized
