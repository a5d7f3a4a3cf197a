"""Visibility vocabulary mapped onto storage tiers.

Object Storage exposes no per-object ACL here, so the filesystem notion of
visibility is repurposed: ``public`` is Standard, ``infrequent`` is
InfrequentAccess and ``private`` is Archive. This module is the only place
visibility strings are accepted.
"""
from __future__ import annotations
from enum import Enum

from ocistorage.config.storage_tier import StorageTier
from ocistorage.errors import InvalidVisibilityError


class Visibility(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    INFREQUENT = "infrequent"


_TIER_BY_VISIBILITY = {
    Visibility.PUBLIC: StorageTier.STANDARD,
    Visibility.PRIVATE: StorageTier.ARCHIVE,
    Visibility.INFREQUENT: StorageTier.INFREQUENT_ACCESS,
}
_VISIBILITY_BY_TIER = {tier: visibility for visibility, tier in _TIER_BY_VISIBILITY.items()}


def parse_visibility(value: Visibility | str) -> Visibility:
    try:
        return Visibility(value)
    except ValueError as exc:
        allowed = ", ".join(v.value for v in Visibility)
        raise InvalidVisibilityError(f"Unknown visibility {value!r}; expected one of: {allowed}") from exc


def visibility_to_tier(value: Visibility | str) -> StorageTier:
    return _TIER_BY_VISIBILITY[parse_visibility(value)]


def tier_to_visibility(tier: StorageTier) -> Visibility:
    return _VISIBILITY_BY_TIER[StorageTier(tier)]
