"""
Unit tests for message normalization.
"""

import base64

import pytest

from app.core.exceptions import ValidationError
from app.core.models import ChatMessage, MessageRole, StatelessFile
from app.services.ai.messages import (
    Attachment,
    AttachmentBatch,
    ImagePart,
    TextPart,
    content_key,
    decode_stateless_files,
    sniff_media_type,
    strip_data_url,
    to_multimodal,
    to_text_only,
)

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-image"
PNG_B64 = base64.b64encode(PNG_BYTES).decode()
PNG_DATA_URL = f"data:image/png;base64,{PNG_B64}"


def msg(role: str, content, id: str | None = None) -> ChatMessage:
    return ChatMessage.model_validate({"role": role, "content": content, "id": id})


def image(name: str = "cat.png", mime: str = "image/png") -> Attachment:
    return Attachment(filename=name, mime_type=mime, data=PNG_BYTES)


class TestHelpers:
    def test_strip_data_url(self):
        assert strip_data_url(PNG_DATA_URL) == PNG_B64
        assert strip_data_url(PNG_B64) == PNG_B64

    def test_sniff_media_type(self):
        assert sniff_media_type(PNG_DATA_URL) == "image/png"
        assert sniff_media_type("data:image/webp;base64,AAAA") == "image/webp"
        assert sniff_media_type(PNG_B64) == "image/jpeg"

    def test_content_key_plain_text(self):
        assert content_key(msg("user", "hello")) == "hello"

    def test_content_key_parts_is_compact_json(self):
        key = content_key(msg("user", [{"type": "text", "text": "grüß"}]))
        assert key == '[{"type":"text","text":"grüß"}]'


class TestToTextOnly:
    def test_text_and_image_yields_text_only(self):
        big = "data:image/png;base64," + "A" * 200_000
        result = to_text_only([
            msg("user", [{"type": "text", "text": "describe"}, {"type": "image", "image": big}])
        ])
        assert result[0].content == "describe"

    def test_multiple_text_parts_joined_with_space(self):
        result = to_text_only([
            msg("user", [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}])
        ])
        assert result[0].content == "a b"

    def test_string_content_unchanged(self):
        result = to_text_only([msg("system", "be brief"), msg("user", "hi")])
        assert [(m.role, m.content) for m in result] == [
            (MessageRole.SYSTEM, "be brief"),
            (MessageRole.USER, "hi"),
        ]


class TestToMultimodal:
    def test_single_text_collapses_to_string(self):
        result = to_multimodal([msg("user", [{"type": "text", "text": "hi"}])])
        assert result[0].content == "hi"

    def test_inline_image_decoded(self):
        result = to_multimodal([
            msg("user", [{"type": "text", "text": "what?"}, {"type": "image", "image": PNG_DATA_URL}])
        ])
        assert result[0].content == [TextPart("what?"), ImagePart(PNG_BYTES, "image/png")]

    def test_empty_text_parts_skipped(self):
        result = to_multimodal([
            msg("user", [{"type": "text", "text": ""}, {"type": "image", "image": PNG_B64}])
        ])
        assert result[0].content == [ImagePart(PNG_BYTES, "image/jpeg")]

    def test_files_attach_to_last_user_message_only(self):
        messages = [
            msg("user", "first"),
            msg("assistant", "reply"),
            msg("user", "second"),
        ]
        result = to_multimodal(messages, files=[image()])

        assert result[0].content == "first"
        assert result[1].content == "reply"
        assert result[2].content == [TextPart("second"), ImagePart(PNG_BYTES, "image/png")]

    def test_non_image_attachments_ignored(self):
        result = to_multimodal(
            [msg("user", "read this")],
            files=[Attachment(filename="a.pdf", mime_type="application/pdf", data=b"%PDF")],
        )
        assert result[0].content == "read this"

    def test_batch_bound_by_message_id(self):
        messages = [
            msg("user", "look", id="m1"),
            msg("assistant", "ok"),
            msg("user", "look", id="m3"),
        ]
        batch = AttachmentBatch(message_id="m1", attachments=[image()])
        result = to_multimodal(messages, attachment_files=[batch])

        assert result[0].content == [TextPart("look"), ImagePart(PNG_BYTES, "image/png")]
        assert result[2].content == "look"

    def test_unbound_batch_goes_to_last_user_message(self):
        messages = [msg("user", "first"), msg("user", "second")]
        batch = AttachmentBatch(message_id="unknown", attachments=[image()])
        result = to_multimodal(messages, attachment_files=[batch])

        assert result[0].content == "first"
        assert isinstance(result[1].content, list)

    def test_duplicate_text_collides_without_ids(self):
        """Content-key matching also attaches to earlier identical messages."""
        messages = [msg("user", "same"), msg("assistant", "ok"), msg("user", "same")]
        result = to_multimodal(messages, files=[image()])

        assert isinstance(result[0].content, list)
        assert isinstance(result[2].content, list)

    def test_no_user_message_drops_attachments(self):
        result = to_multimodal([msg("system", "rules")], files=[image()])
        assert result[0].content == "rules"


class TestDecodeStatelessFiles:
    def test_decodes_data_url_and_bare_base64(self):
        files = [
            StatelessFile(name="a.png", type="image/png", data=PNG_DATA_URL),
            StatelessFile(name="b.png", type="image/png", data=PNG_B64),
        ]
        attachments = decode_stateless_files(files, 1024, 4096)
        assert [a.data for a in attachments] == [PNG_BYTES, PNG_BYTES]
        assert attachments[0].id == "stateless_0"

    def test_none_is_empty(self):
        assert decode_stateless_files(None, 10, 10) == []

    def test_per_file_limit(self):
        files = [StatelessFile(name="a.png", type="image/png", data=PNG_B64)]
        with pytest.raises(ValidationError) as exc_info:
            decode_stateless_files(files, max_file_bytes=4, max_total_bytes=1024)
        assert exc_info.value.code == "file_too_large"

    def test_total_limit(self):
        files = [StatelessFile(name=f"{i}.png", type="image/png", data=PNG_B64) for i in range(3)]
        with pytest.raises(ValidationError) as exc_info:
            decode_stateless_files(files, max_file_bytes=1024, max_total_bytes=len(PNG_BYTES) * 2)
        assert exc_info.value.code == "file_too_large"

    def test_invalid_base64(self):
        files = [StatelessFile(name="bad.png", type="image/png", data="@@@not-base64@@@")]
        with pytest.raises(ValidationError) as exc_info:
            decode_stateless_files(files, 1024, 1024)
        assert exc_info.value.code == "invalid_file"
