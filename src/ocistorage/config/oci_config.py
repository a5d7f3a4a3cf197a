from __future__ import annotations
import re
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from typing import Any

from ocistorage.auth.key_provider import EnvironmentKeyProvider, FileKeyProvider, KeyProvider
from ocistorage.config.storage_tier import StorageTier
from ocistorage.errors import ConfigurationError

FINGERPRINT_PATTERN = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){15}$", re.IGNORECASE)
REGION_PATTERN = re.compile(r"^[a-z0-9-]+$")
REQUIRED_KEYS = ("tenancy_id", "user_id", "key_fingerprint", "namespace", "region", "bucket")


def normalize_prefix(prefix: str | None) -> str:
    """Strip surrounding slashes and add exactly one trailing slash; empty means no prefix."""
    if prefix is None:
        return ""
    stripped = prefix.strip().strip("/")
    return f"{stripped}/" if stripped else ""


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _is_positive_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


@dataclass(frozen=True)
class OciConfig:
    tenancy_id: str
    user_id: str
    key_fingerprint: str
    namespace: str
    region: str
    bucket: str
    key_path: str | None = None
    private_key_content: str | None = None
    key_passphrase: str | None = None
    storage_tier: StorageTier = StorageTier.STANDARD
    url_path_prefix: str = ""
    domain: str = "oraclecloud.com"
    timeout: float = 30.0
    connect_timeout: float = 10.0
    retry_attempts: int = 0

    def __post_init__(self):
        problems: list[str] = []
        missing = [key for key in REQUIRED_KEYS if _is_blank(getattr(self, key))]
        if _is_blank(self.key_path) and _is_blank(self.private_key_content):
            missing.append("key_path | private_key_content")
        if missing:
            problems.append(f"Missing required configuration keys: {', '.join(missing)}")

        if not _is_blank(self.key_fingerprint) and not FINGERPRINT_PATTERN.match(self.key_fingerprint):
            problems.append(
                f"Invalid key fingerprint format: {self.key_fingerprint}. "
                "Expected format: xx:xx:xx:xx:xx:xx:xx:xx:xx:xx:xx:xx:xx:xx:xx:xx"
            )
        if not _is_blank(self.region) and not REGION_PATTERN.match(self.region):
            problems.append(f"Invalid region format: {self.region}")
        if not isinstance(self.storage_tier, StorageTier):
            try:
                object.__setattr__(self, "storage_tier", StorageTier.from_value(self.storage_tier))
            except ValueError as exc:
                problems.append(str(exc))
        if not all(_is_positive_number(value) for value in (self.timeout, self.connect_timeout)):
            problems.append("timeout and connect_timeout must be > 0")
        if isinstance(self.retry_attempts, bool) or not isinstance(self.retry_attempts, int) or self.retry_attempts < 0:
            problems.append(f"retry_attempts must be >= 0, got: {self.retry_attempts}")

        # Inline key content is decoded eagerly so bad base64 surfaces here, not on first request.
        if _is_blank(self.key_path) and not _is_blank(self.private_key_content):
            try:
                EnvironmentKeyProvider.decode_content(self.private_key_content)
            except ConfigurationError as exc:
                problems.extend(exc.problems)

        if problems:
            raise ConfigurationError(problems)
        object.__setattr__(self, "url_path_prefix", normalize_prefix(self.url_path_prefix))

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> OciConfig:
        """Build a config from the plain collaborator shape, e.g. a parsed settings file."""
        known = {f.name for f in fields(cls)}
        # None means "not set": optional fields fall back to their defaults.
        values = {
            key: value
            for key, value in mapping.items()
            if key in known and (value is not None or key in REQUIRED_KEYS)
        }
        for key in REQUIRED_KEYS:
            values.setdefault(key, None)
        return cls(**values)

    def with_overrides(self, **overrides: Any) -> OciConfig:
        return replace(self, **overrides)

    @property
    def key_id(self) -> str:
        return f"{self.tenancy_id}/{self.user_id}/{self.key_fingerprint}"

    @property
    def host(self) -> str:
        return f"objectstorage.{self.region}.{self.domain}"

    def key_provider(self) -> KeyProvider:
        if not _is_blank(self.key_path):
            return FileKeyProvider(
                key_path=self.key_path,
                tenancy_id=self.tenancy_id,
                user_id=self.user_id,
                fingerprint=self.key_fingerprint,
                passphrase=self.key_passphrase,
            )
        return EnvironmentKeyProvider.from_content(
            self.private_key_content,
            tenancy_id=self.tenancy_id,
            user_id=self.user_id,
            fingerprint=self.key_fingerprint,
            passphrase=self.key_passphrase,
        )

    def summary(self) -> dict[str, Any]:
        return {
            "region": self.region,
            "namespace": self.namespace,
            "bucket": self.bucket,
            "storage_tier": self.storage_tier.value,
            "url_path_prefix": self.url_path_prefix,
            "key_source": "file" if not _is_blank(self.key_path) else "inline",
            "retry_attempts": self.retry_attempts,
        }
