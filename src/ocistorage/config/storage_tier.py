from __future__ import annotations
from enum import Enum


class StorageTier(str, Enum):
    """Object Storage tiers accepted by the ``storage-tier`` header and tier update action."""

    STANDARD = "Standard"
    INFREQUENT_ACCESS = "InfrequentAccess"
    ARCHIVE = "Archive"

    @classmethod
    def default(cls) -> StorageTier:
        return cls.STANDARD

    @classmethod
    def from_value(cls, value: StorageTier | str | None) -> StorageTier:
        """Resolve a tier name; ``None``/blank gives the default, anything unknown raises ``ValueError``."""
        if isinstance(value, StorageTier):
            return value
        if value is None or not value.strip():
            return cls.default()
        for tier in cls:
            if tier.value.lower() == value.strip().lower():
                return tier
        allowed = ", ".join(tier.value for tier in cls)
        raise ValueError(f"Unknown storage tier {value!r}; expected one of: {allowed}")
