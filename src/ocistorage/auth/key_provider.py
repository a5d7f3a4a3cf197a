"""Private key sources used by the request signer.

Both providers are pure over their source: the same file contents or the same
inline text always yield the same key bytes and key id.
"""
from __future__ import annotations
import base64
import binascii
import os
from abc import ABC, abstractmethod
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from ocistorage.errors import (
    ConfigurationError,
    MalformedPrivateKeyError,
    PrivateKeyNotFoundError,
    PrivateKeyUnreadableError,
)

PEM_BEGIN = "-----BEGIN"
PEM_END = "-----END"


def looks_like_pem(content: str) -> bool:
    return PEM_BEGIN in content and PEM_END in content and "KEY-----" in content


class KeyProvider(ABC):
    def __init__(self, tenancy_id: str, user_id: str, fingerprint: str, passphrase: str | None = None):
        self.tenancy_id = tenancy_id
        self.user_id = user_id
        self.fingerprint = fingerprint
        self.passphrase = passphrase

    @abstractmethod
    def private_key_material(self) -> str:
        """Return the PEM text of the private key."""

    def key_id(self) -> str:
        return f"{self.tenancy_id}/{self.user_id}/{self.fingerprint}"

    def load_private_key(self) -> rsa.RSAPrivateKey:
        pem = self.private_key_material()
        password = self.passphrase.encode("utf-8") if self.passphrase else None
        try:
            key = serialization.load_pem_private_key(pem.encode("utf-8"), password=password)
        except (ValueError, TypeError) as exc:
            raise MalformedPrivateKeyError(
                "Invalid OCI private key format. Please ensure the private key is in valid PEM format."
            ) from exc
        if not isinstance(key, rsa.RSAPrivateKey):
            raise MalformedPrivateKeyError(f"OCI request signing requires an RSA key, got {type(key).__name__}")
        return key

    def validate_key(self) -> bool:
        self.load_private_key()
        return True


class FileKeyProvider(KeyProvider):
    """Reads the key from disk on every call so rotated key files are picked up."""

    def __init__(self, key_path: str | os.PathLike, tenancy_id: str, user_id: str, fingerprint: str, passphrase: str | None = None):
        super().__init__(tenancy_id, user_id, fingerprint, passphrase)
        self.key_path = Path(key_path).expanduser()

    def private_key_material(self) -> str:
        if not self.key_path.exists():
            raise PrivateKeyNotFoundError(str(self.key_path))
        if not os.access(self.key_path, os.R_OK):
            raise PrivateKeyUnreadableError(str(self.key_path))
        try:
            content = self.key_path.read_text(encoding="utf-8")
        except PermissionError as exc:
            raise PrivateKeyUnreadableError(str(self.key_path)) from exc
        except (OSError, UnicodeDecodeError) as exc:
            raise MalformedPrivateKeyError(f"OCI private key file could not be decoded: {self.key_path}") from exc
        if not looks_like_pem(content):
            raise MalformedPrivateKeyError(f"Private key at {self.key_path} does not appear to be in PEM format")
        return content


class EnvironmentKeyProvider(KeyProvider):
    """Holds key text passed inline, either raw PEM or base64-encoded PEM."""

    def __init__(self, private_key_content: str, tenancy_id: str, user_id: str, fingerprint: str, passphrase: str | None = None):
        super().__init__(tenancy_id, user_id, fingerprint, passphrase)
        self._content = private_key_content

    @staticmethod
    def decode_content(content: str) -> str:
        """Return PEM text for raw or base64 input. Raises ``ConfigurationError`` when neither applies."""
        if not content or not content.strip():
            raise ConfigurationError("Private key content is empty")
        if looks_like_pem(content):
            return content
        try:
            decoded = base64.b64decode("".join(content.split()), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise ConfigurationError("Invalid base64-encoded private key content") from exc
        if not looks_like_pem(decoded):
            raise ConfigurationError("Decoded private key content does not appear to be in PEM format")
        return decoded

    @classmethod
    def from_content(cls, content: str, tenancy_id: str, user_id: str, fingerprint: str, passphrase: str | None = None) -> EnvironmentKeyProvider:
        return cls(cls.decode_content(content), tenancy_id, user_id, fingerprint, passphrase)

    @classmethod
    def from_base64(cls, encoded: str, tenancy_id: str, user_id: str, fingerprint: str, passphrase: str | None = None) -> EnvironmentKeyProvider:
        try:
            decoded = base64.b64decode("".join(encoded.split()), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise ConfigurationError("Invalid base64-encoded private key") from exc
        return cls.from_content(decoded, tenancy_id, user_id, fingerprint, passphrase)

    def private_key_material(self) -> str:
        if not looks_like_pem(self._content):
            raise MalformedPrivateKeyError("Private key content does not appear to be in PEM format")
        return self._content
