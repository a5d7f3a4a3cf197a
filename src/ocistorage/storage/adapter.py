from __future__ import annotations

import time
from collections.abc import Callable, Iterator, Mapping, Sequence
from datetime import datetime, timedelta, timezone
from typing import IO, Union

from ocistorage.config.storage_tier import StorageTier
from ocistorage.errors import (
    CopyNotConfirmedError,
    ObjectNotFoundError,
    OciStorageError,
    ProtocolError,
    TransientNetworkError,
)
from ocistorage.logging_config import get_logger, with_context
from ocistorage.storage.content_type import detect_content_type
from ocistorage.storage.models import (
    BulkDeleteResult,
    DirectoryAttributes,
    FileAttributes,
    ObjectDescriptor,
    RestoreResult,
)
from ocistorage.storage.object_client import OciObjectClient
from ocistorage.storage.path_prefixer import PathPrefixer
from ocistorage.storage.url_cache import UrlCache
from ocistorage.storage.visibility import Visibility, tier_to_visibility, visibility_to_tier

StorageAttributes = Union[FileAttributes, DirectoryAttributes]

URL_CACHE_KEY_PREFIX = "oci_url_"

logger = get_logger(__name__)


def _directory_prefix(path: str) -> str:
    """``"docs"``, ``"/docs/"`` -> ``"docs/"``; the root is ``""``."""
    stripped = path.strip("/")
    return f"{stripped}/" if stripped else ""


def _subtree_prefix(path: str) -> str:
    """Prefix a recursive delete works under; the root maps to ``"/"``, which matches nothing."""
    return f"{path.rstrip('/')}/"


def _copy_landed(
    source: ObjectDescriptor, previous: ObjectDescriptor | None, current: ObjectDescriptor | None,
) -> bool:
    if current is None:
        return False
    if source.md5 and current.md5:
        return current.md5 == source.md5
    return previous is None or current.etag != previous.etag


class OciStorageAdapter:
    """Filesystem operations on top of a flat Object Storage bucket.

    Directories do not exist server-side. They are emulated with key prefixes
    and optional ``dir/`` placeholder objects. Multi-object operations are not
    transactional; each of them can be re-run after a partial failure.
    """

    def __init__(
        self,
        client: OciObjectClient,
        url_cache: UrlCache | None = None,
        copy_confirm_attempts: int = 5,
        copy_confirm_interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.url_cache = url_cache
        self.copy_confirm_attempts = copy_confirm_attempts
        self.copy_confirm_interval = copy_confirm_interval
        self._sleep = sleep

    @property
    def prefixer(self) -> PathPrefixer:
        return self.client.prefixer

    # existence and attributes

    def exists(self, path: str) -> bool:
        return self.client.head_object(path) is not None

    def file_exists(self, path: str) -> bool:
        return self.exists(path)

    def directory_exists(self, path: str) -> bool:
        """HEAD on the raw key; combine with ``list_contents`` for real directory semantics."""
        return self.exists(path)

    def metadata(self, path: str) -> ObjectDescriptor:
        descriptor = self.client.head_object(path)
        if descriptor is None:
            raise ObjectNotFoundError(path)
        return descriptor

    def mime_type(self, path: str) -> str | None:
        return self.metadata(path).mime_type

    def last_modified(self, path: str) -> datetime | None:
        return self.metadata(path).last_modified

    def file_size(self, path: str) -> int:
        return self.metadata(path).size

    # reads

    def read(self, path: str) -> bytes:
        contents = self.client.get_object(path)
        if contents is None:
            raise ObjectNotFoundError(path)
        return contents

    def read_stream(self, path: str) -> IO[bytes]:
        stream = self.client.get_object_stream(path)
        if stream is None:
            raise ObjectNotFoundError(path)
        return stream

    # writes

    def write(
        self,
        path: str,
        contents: bytes | str,
        content_type: str | None = None,
        visibility: Visibility | str | None = None,
        storage_tier: StorageTier | None = None,
        metadata: Mapping[str, str] | None = None,
    ) -> str | None:
        body = contents.encode("utf-8") if isinstance(contents, str) else bytes(contents)
        if storage_tier is None and visibility is not None:
            storage_tier = visibility_to_tier(visibility)
        return self.client.put_object(
            path,
            body,
            content_type=content_type or detect_content_type(path, body),
            storage_tier=storage_tier,
            metadata=metadata,
        )

    def write_stream(self, path: str, stream: IO, **options) -> str | None:
        """Buffer ``stream`` and upload it in one request."""
        return self.write(path, stream.read(), **options)

    def create_directory(self, path: str) -> None:
        placeholder = _directory_prefix(path)
        if placeholder:
            self.client.put_object(placeholder, b"", content_type="application/octet-stream")

    # deletes

    def delete(self, path: str) -> None:
        if self._is_directory_shaped(path):
            self.delete_directory(path)
            return
        self.client.delete_object(path)

    def _is_directory_shaped(self, path: str) -> bool:
        if not path.strip("/") or path.endswith("/"):
            return True
        page = self.client.list_objects(prefix=_subtree_prefix(path), limit=1, fields="name")
        return bool(page.objects)

    def delete_directory(self, path: str) -> BulkDeleteResult:
        """Delete everything under ``path/``. Per-key failures are logged and returned, not raised.

        The root is never a directory here: ``""`` and ``"/"`` list under the
        literal ``"/"`` prefix, which matches no object.
        """
        prefix = _subtree_prefix(path)
        log = with_context(logger, directory=prefix)
        keys = [summary.name for page in self.client.iter_pages(prefix=prefix) for summary in page.objects]
        if not keys:
            log.debug("Directory delete found nothing to remove")
            return BulkDeleteResult()

        if prefix not in keys:
            keys.append(prefix)
        result = self.client.bulk_delete(keys)
        for failure in result.errors:
            log.warning("Failed to delete object in directory: path=%s error=%s", failure.path, failure.error)
        log.info("Directory delete complete: deleted=%s failed=%s", len(result.deleted), len(result.errors))
        return result

    # copy and move

    def copy(
        self,
        source: str,
        destination: str,
        visibility: Visibility | str | None = None,
        storage_tier: StorageTier | None = None,
        metadata: Mapping[str, str] | None = None,
    ) -> str | None:
        """Server-side copy; returns once the copy is accepted, before it completes."""
        if storage_tier is None and visibility is not None:
            storage_tier = visibility_to_tier(visibility)
        return self.client.copy_object(source, destination, storage_tier=storage_tier, metadata=metadata)

    def move(self, source: str, destination: str) -> None:
        """Rename atomically when possible, else fall back to the non-atomic copy-then-delete."""
        if self.move_by_rename(source, destination):
            return
        self.move_by_copy_then_delete(source, destination)

    def move_by_rename(self, source: str, destination: str) -> bool:
        try:
            renamed = self.client.rename_object(source, destination)
        except (ProtocolError, TransientNetworkError) as exc:
            logger.warning("Atomic rename failed: source=%s destination=%s error=%s", source, destination, exc)
            return False
        if not renamed:
            logger.warning("Atomic rename found no source: source=%s destination=%s", source, destination)
        return renamed

    def move_by_copy_then_delete(self, source: str, destination: str) -> None:
        """Two-phase move. Between the copy and the delete both objects exist.

        The source is only deleted once the destination holds the source's
        content (matching MD5) or, without checksums, once its etag moved away
        from the pre-copy one. A failed confirmation leaves the source intact
        and raises ``CopyNotConfirmedError``.
        """
        logger.warning("Falling back to non-atomic move: source=%s destination=%s", source, destination)
        original = self.client.head_object(source)
        if original is None:
            raise ObjectNotFoundError(source)
        previous = self.client.head_object(destination)
        self.client.copy_object(source, destination)
        for attempt in range(1, self.copy_confirm_attempts + 1):
            if _copy_landed(original, previous, self.client.head_object(destination)):
                break
            logger.debug("Waiting for copy to land: destination=%s attempt=%s", destination, attempt)
            self._sleep(self.copy_confirm_interval)
        else:
            raise CopyNotConfirmedError(source, destination, self.copy_confirm_attempts)
        self.client.delete_object(source)

    # listing

    def list_contents(self, path: str = "", deep: bool = False) -> Iterator[StorageAttributes]:
        """Yield entries under ``path``. Pages are fetched lazily and are not a snapshot."""
        prefix = _directory_prefix(path)
        for page in self.client.iter_pages(prefix=prefix, delimiter=None if deep else "/"):
            for summary in page.objects:
                if prefix and summary.name == prefix:
                    continue
                if not deep and "/" in summary.name[len(prefix):]:
                    continue
                if summary.name.endswith("/"):
                    yield DirectoryAttributes(path=summary.name, last_modified=summary.time_modified)
                else:
                    yield FileAttributes(
                        path=summary.name,
                        file_size=summary.size,
                        last_modified=summary.time_modified,
                        storage_tier=summary.storage_tier,
                        etag=summary.etag,
                    )
            if not deep:
                for common_prefix in page.prefixes:
                    yield DirectoryAttributes(path=common_prefix)

    def list_files(self, path: str = "", deep: bool = False) -> list[str]:
        return [entry.path for entry in self.list_contents(path, deep) if not entry.is_dir]

    def list_directories(self, path: str = "", deep: bool = False) -> list[str]:
        return [entry.path for entry in self.list_contents(path, deep) if entry.is_dir]

    # visibility and tiers

    def get_visibility(self, path: str) -> str:
        return tier_to_visibility(self.metadata(path).storage_tier).value

    def set_visibility(self, path: str, visibility: Visibility | str) -> None:
        self.change_storage_tier(path, visibility_to_tier(visibility))

    def change_storage_tier(self, path: str, tier: StorageTier | str) -> None:
        if not self.client.update_object_storage_tier(path, tier):
            raise ObjectNotFoundError(path)

    def restore(self, paths: Sequence[str], hours: int = 24) -> RestoreResult:
        return self.client.restore_objects_detailed(paths, hours)

    # urls

    def temporary_url(self, path: str, expires_at: datetime | None = None) -> str:
        return self.client.create_temporary_url(path, expires_at)

    def get_url(self, path: str, expires_at: datetime | None = None) -> str:
        """Temporary URL valid for a day by default, reused from ``url_cache`` when one is injected."""
        expires_at = expires_at or datetime.now(timezone.utc) + timedelta(days=1)
        if self.url_cache is None:
            return self.client.create_temporary_url(path, expires_at)

        cache_key = f"{URL_CACHE_KEY_PREFIX}{self.client.bucket}:{self.prefixer.get_prefixed_path(path)}"
        cached = self.url_cache.get(cache_key)
        if cached:
            return cached
        url = self.client.create_temporary_url(path, expires_at)
        if url:
            self.url_cache.set(cache_key, url, expires_at)
        return url

    def check_connection(self) -> bool:
        try:
            self.client.list_objects(limit=1, fields="name")
        except OciStorageError as exc:
            logger.warning("Connection check failed: bucket=%s error=%s", self.client.bucket, exc)
            return False
        return True
