from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ocistorage.config.storage_tier import StorageTier


# Wire payloads returned by the Object Storage API.
class ObjectSummary(BaseModel):
    model_config = ConfigDict(extra='ignore', populate_by_name=True)
    name: str = Field(..., description="Full object key, including any configured prefix.")
    size: Optional[int] = Field(None, description="Object size in bytes.")
    time_modified: Optional[datetime] = Field(None, alias="timeModified", description="Last modification time.")
    time_created: Optional[datetime] = Field(None, alias="timeCreated", description="Creation time.")
    etag: Optional[str] = Field(None, description="Entity tag of the current object version.")
    md5: Optional[str] = Field(None, description="Base64 MD5 of the object body.")
    storage_tier: Optional[StorageTier] = Field(None, alias="storageTier", description="Tier the object is stored in.")
    archival_state: Optional[str] = Field(None, alias="archivalState", description="Restore state for archived objects.")


class ListObjectsPage(BaseModel):
    model_config = ConfigDict(extra='ignore', populate_by_name=True)
    objects: list[ObjectSummary] = Field(default_factory=list, description="Objects on this page.")
    prefixes: list[str] = Field(default_factory=list, description="Common prefixes when a delimiter was sent.")
    next_start_with: Optional[str] = Field(None, alias="nextStartWith", description="Start key of the next page.")


class PreauthenticatedRequest(BaseModel):
    model_config = ConfigDict(extra='ignore', populate_by_name=True)
    id: Optional[str] = Field(None, description="Identifier of the pre-authenticated request.")
    name: str = Field(..., description="Client supplied request name.")
    access_uri: Optional[str] = Field(None, alias="accessUri", description="Relative URI granting access.")
    full_path: Optional[str] = Field(None, alias="fullPath", description="Absolute URL granting access.")
    object_name: Optional[str] = Field(None, alias="objectName", description="Object the request is scoped to.")
    time_expires: Optional[datetime] = Field(None, alias="timeExpires", description="Expiry of the request.")


class ObjectDescriptor(BaseModel):
    """Live metadata for a single object as reported by a HEAD request."""

    model_config = ConfigDict(extra='ignore', populate_by_name=True)
    path: str = Field(..., description="Logical path, without the configured prefix.")
    size: int = Field(0, description="Content length in bytes.")
    last_modified: Optional[datetime] = Field(None, description="Last-Modified header.")
    mime_type: Optional[str] = Field(None, description="Content-Type header.")
    storage_tier: StorageTier = Field(StorageTier.STANDARD, description="Tier; Standard when the header is absent.")
    etag: Optional[str] = Field(None, description="ETag header.")
    md5: Optional[str] = Field(None, description="opc-content-md5 header.")
    archival_state: Optional[str] = Field(None, description="archival-state header for archived objects.")
    metadata: dict[str, str] = Field(default_factory=dict, description="Custom opc-meta-* headers without the prefix.")


# Results of multi-object operations; failures are data, not exceptions.
@dataclass(frozen=True)
class ObjectError:
    path: str
    error: str


@dataclass(frozen=True)
class BulkDeleteResult:
    deleted: list[str] = field(default_factory=list)
    errors: list[ObjectError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class RestoreResult:
    restored: list[str] = field(default_factory=list)
    errors: list[ObjectError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class ListResult:
    """One listing page with keys already translated back to logical paths."""

    objects: list[ObjectSummary] = field(default_factory=list)
    prefixes: list[str] = field(default_factory=list)
    next_start_with: str | None = None


# Filesystem-level entries yielded by the adapter's listings.
@dataclass(frozen=True)
class FileAttributes:
    path: str
    file_size: int | None = None
    last_modified: datetime | None = None
    mime_type: str | None = None
    storage_tier: StorageTier | None = None
    etag: str | None = None

    is_dir = False


@dataclass(frozen=True)
class DirectoryAttributes:
    path: str
    last_modified: datetime | None = None

    is_dir = True
