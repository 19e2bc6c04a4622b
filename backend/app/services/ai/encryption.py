"""
Credential vault for AI configuration secrets.

AES-256-GCM with a fresh 12-byte nonce per message. The nonce is prepended to
ciphertext+tag and the result is base64 encoded, so every value stored in a
settings record is a single ASCII string.

The key is the configured secret, UTF-8 encoded, right-padded with "0" and
truncated to 32 bytes. Rows encrypted by earlier deployments use the same
derivation, which is why no KDF is applied here.
"""

import base64
import binascii
import os
from collections.abc import Mapping
from functools import lru_cache
from typing import Any

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.core.config import get_settings
from app.core.exceptions import DecryptionError, EncryptionError
from app.core.models import ProviderKind

logger = structlog.get_logger()

KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16

# Settings keys holding secrets, per provider. "headers" means every value
# inside the headers map.
SENSITIVE_FIELDS: dict[ProviderKind, tuple[str, ...]] = {
    ProviderKind.GEMINI: ("apiKey",),
    ProviderKind.OLLAMA: (),
    ProviderKind.HTTP_API: ("apiKey", "headers"),
}


def derive_key(secret: str) -> bytes:
    """Pad/truncate the configured secret to the AES-256 key length."""
    raw = secret.encode("utf-8")
    return raw.ljust(KEY_LENGTH, b"0")[:KEY_LENGTH]


class CredentialVault:
    """Encrypts and decrypts the sensitive fields of provider settings."""

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("Credential vault secret must not be empty")
        self._aesgcm = AESGCM(derive_key(secret))

    def encrypt(self, plaintext: str) -> str:
        try:
            nonce = os.urandom(NONCE_LENGTH)
            sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        except Exception as e:
            raise EncryptionError(f"Encryption failed: {e}") from e
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, blob: str) -> str:
        """Decrypt a vault blob.

        Raises:
            DecryptionError: malformed input or failed authentication tag
        """
        try:
            raw = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError, TypeError) as e:
            raise DecryptionError("Ciphertext is not valid base64") from e

        if len(raw) < NONCE_LENGTH + TAG_LENGTH:
            raise DecryptionError("Ciphertext is too short")

        nonce, sealed = raw[:NONCE_LENGTH], raw[NONCE_LENGTH:]
        try:
            plaintext = self._aesgcm.decrypt(nonce, sealed, None)
        except InvalidTag as e:
            raise DecryptionError("Ciphertext failed authentication") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted value is not UTF-8") from e

    def try_decrypt(self, blob: Any) -> str | None:
        """Decrypt, or None when the value is not a valid vault blob."""
        if not isinstance(blob, str):
            return None
        try:
            return self.decrypt(blob)
        except DecryptionError:
            return None

    # ------------------------------------------------------------------
    # Field-aware helpers
    # ------------------------------------------------------------------

    def encrypt_sensitive_fields(
        self, kind: ProviderKind, settings: Mapping[str, Any]
    ) -> dict[str, Any]:
        """Return a copy of ``settings`` with its secret fields encrypted."""
        result = dict(settings)
        for field in SENSITIVE_FIELDS[kind]:
            value = result.get(field)
            if field == "headers" and isinstance(value, Mapping):
                result[field] = {k: self.encrypt(str(v)) for k, v in value.items()}
            elif isinstance(value, str) and value:
                result[field] = self.encrypt(value)
        return result

    def decrypt_fields(
        self, kind: ProviderKind, settings: Mapping[str, Any]
    ) -> dict[str, Any] | None:
        """Strict decryption: a copy with secrets in plaintext, or None if any field fails."""
        result = dict(settings)
        for field in SENSITIVE_FIELDS[kind]:
            value = result.get(field)
            if field == "headers" and isinstance(value, Mapping):
                headers = {}
                for name, encrypted in value.items():
                    plain = self.try_decrypt(encrypted)
                    if plain is None:
                        return None
                    headers[name] = plain
                result[field] = headers
            elif isinstance(value, str) and value:
                plain = self.try_decrypt(value)
                if plain is None:
                    return None
                result[field] = plain
        return result

    def decrypt_sensitive_fields(
        self, kind: ProviderKind, settings: Mapping[str, Any]
    ) -> dict[str, Any]:
        """Decrypt secret fields, falling back to the stored values.

        Legacy rows may carry plaintext secrets. When any field is not a valid
        vault blob the settings are returned unchanged, so this is a
        compatibility path and not a security check.
        """
        decrypted = self.decrypt_fields(kind, settings)
        if decrypted is None:
            logger.warning("vault_decrypt_fallback", provider=kind.value)
            return dict(settings)
        return decrypted


@lru_cache(maxsize=1)
def _default_vault() -> CredentialVault:
    return CredentialVault(get_settings().encryption_key)


def get_vault() -> CredentialVault:
    """FastAPI dependency returning the process vault built from settings."""
    return _default_vault()
