from __future__ import annotations

from ocistorage.config.oci_config import normalize_prefix


class PathPrefixer:
    """Maps logical paths to physical object keys under an optional root prefix."""

    def __init__(self, prefix: str = ""):
        self.prefix = normalize_prefix(prefix)

    def __bool__(self) -> bool:
        return bool(self.prefix)

    def get_prefixed_path(self, path: str) -> str:
        return f"{self.prefix}{path}" if self.prefix else path

    def remove_prefix_from_path(self, key: str) -> str:
        if self.prefix and key.startswith(self.prefix):
            return key[len(self.prefix):]
        return key
