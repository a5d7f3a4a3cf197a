from __future__ import annotations
import base64
import hashlib
import json
import uuid
import xml.etree.ElementTree as ET
from collections.abc import Iterator, Mapping, Sequence
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, BinaryIO, Union
from urllib.parse import quote, urlencode

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ocistorage.auth.signer import RequestDescriptor, RequestSigner
from ocistorage.config.oci_config import OciConfig
from ocistorage.config.storage_tier import StorageTier
from ocistorage.errors import (
    ConfigurationError,
    InvalidRestoreWindowError,
    ObjectNotFoundError,
    OciStorageError,
    ProtocolError,
    SigningError,
    TransientNetworkError,
)
from ocistorage.logging_config import get_logger
from ocistorage.storage.models import (
    BulkDeleteResult,
    ListObjectsPage,
    ListResult,
    ObjectDescriptor,
    ObjectError,
    PreauthenticatedRequest,
    RestoreResult,
)
from ocistorage.storage.path_prefixer import PathPrefixer

USER_AGENT = "ocistorage-python"
METADATA_HEADER_PREFIX = "opc-meta-"
LIST_FIELDS = "name,size,etag,md5,timeCreated,timeModified,storageTier,archivalState"
BULK_DELETE_BATCH_SIZE = 1000
RESTORE_MIN_HOURS = 10
RESTORE_MAX_HOURS = 240000
TRANSIENT_STATUSES = frozenset({408, 429, 500, 502, 503, 504})

Timeout = Union[float, tuple[float, float]]

logger = get_logger(__name__)


def _create_https_session(retry_attempts: int = 0) -> requests.Session:
    retries = Retry(
        total=retry_attempts,
        backoff_factor=1,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET", "HEAD"],
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retries)
    session = requests.Session()
    session.mount("https://", adapter)
    session.headers.update({"User-Agent": USER_AGENT})
    return session


def _json_body(payload: Mapping[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":")).encode("utf-8")


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _parse_bulk_delete_errors(text: str) -> dict[str, str]:
    """Map failed keys to their messages from an S3-style ``DeleteResult`` document."""
    if not text or not text.strip():
        return {}
    try:
        root = ET.fromstring(text)
    except ET.ParseError:
        return {}
    failures: dict[str, str] = {}
    for element in root.iter():
        if _local_name(element.tag) != "Error":
            continue
        children = {_local_name(child.tag): (child.text or "") for child in element}
        key = children.get("Key")
        if key:
            failures[key] = children.get("Message") or children.get("Code") or "Unknown error"
    return failures


class OciObjectClient:
    """Signed Object Storage calls against one bucket.

    All paths passed in are logical; the configured prefix is applied before any
    request and stripped from keys returned by listings. The client keeps no
    per-call state and can be shared between threads.
    """

    def __init__(
        self,
        config: OciConfig,
        session: requests.Session | None = None,
        signer: RequestSigner | None = None,
    ):
        self.config = config
        self.prefixer = PathPrefixer(config.url_path_prefix)
        self.signer = signer or RequestSigner(config.key_provider())
        self.session = session or _create_https_session(config.retry_attempts)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any], **kwargs: Any) -> OciObjectClient:
        return cls(OciConfig.from_mapping(mapping), **kwargs)

    def with_timeout(self, timeout: float, connect_timeout: float | None = None) -> OciObjectClient:
        config = self.config.with_overrides(
            timeout=timeout,
            connect_timeout=connect_timeout if connect_timeout is not None else self.config.connect_timeout,
        )
        return OciObjectClient(config, session=self.session, signer=self.signer)

    @property
    def bucket(self) -> str:
        return self.config.bucket

    @property
    def namespace(self) -> str:
        return self.config.namespace

    @property
    def region(self) -> str:
        return self.config.region

    @property
    def storage_tier(self) -> StorageTier:
        return self.config.storage_tier

    @property
    def host(self) -> str:
        return f"https://{self.config.host}"

    @property
    def bucket_uri(self) -> str:
        return f"{self.host}/n/{quote(self.namespace, safe='')}/b/{quote(self.bucket, safe='')}"

    def object_uri(self, path: str) -> str:
        return f"{self.bucket_uri}/o/{quote(self.prefixer.get_prefixed_path(path), safe='')}"

    def send(
        self,
        method: str,
        uri: str,
        headers: Mapping[str, str] | None = None,
        body: bytes | str | None = None,
        content_type: str | None = None,
        timeout: Timeout | None = None,
        stream: bool = False,
    ) -> requests.Response:
        request = RequestDescriptor(method, uri, body, content_type)
        signed = self.signer.sign(request)

        outgoing = dict(headers or {})
        reserved = {name.lower() for name in signed.headers}
        clashes = sorted(name for name in outgoing if name.lower() in reserved)
        if clashes:
            raise SigningError(f"Extra headers collide with signed headers: {', '.join(clashes)}")
        outgoing.update(signed.as_dict())

        try:
            response = self.session.request(
                request.method,
                uri,
                headers=outgoing,
                data=(request.body or b"") if request.has_body else None,
                timeout=timeout if timeout is not None else (self.config.connect_timeout, self.config.timeout),
                allow_redirects=False,
                stream=stream,
            )
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError, requests.exceptions.RetryError) as exc:
            raise TransientNetworkError(f"OCI request failed: {request.method} {uri}: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            raise OciStorageError(f"OCI request could not be sent: {request.method} {uri}: {exc}") from exc

        logger.debug("OCI request complete: method=%s uri=%s status=%s", request.method, uri, response.status_code)
        return response

    def _raise_for_status(self, response: requests.Response, action: str) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return
        if status in TRANSIENT_STATUSES or status >= 500:
            raise TransientNetworkError(f"{action} failed with retryable status {status}", status_code=status)
        body = response.text or ""
        raise ProtocolError(f"{action} failed", status_code=status, body=body[:2000])

    def _descriptor(self, path: str, response: requests.Response) -> ObjectDescriptor:
        headers = {name.lower(): value for name, value in response.headers.items()}
        last_modified = headers.get("last-modified")
        return ObjectDescriptor(
            path=path,
            size=int(headers.get("content-length") or 0),
            last_modified=parsedate_to_datetime(last_modified) if last_modified else None,
            mime_type=headers.get("content-type"),
            storage_tier=StorageTier.from_value(headers.get("storage-tier")),
            etag=headers.get("etag"),
            md5=headers.get("opc-content-md5") or headers.get("content-md5"),
            archival_state=headers.get("archival-state"),
            metadata={
                name[len(METADATA_HEADER_PREFIX):]: value
                for name, value in headers.items()
                if name.startswith(METADATA_HEADER_PREFIX)
            },
        )

    def head_object(self, path: str, timeout: Timeout | None = None) -> ObjectDescriptor | None:
        response = self.send("HEAD", self.object_uri(path), timeout=timeout)
        if response.status_code == 404:
            return None
        self._raise_for_status(response, f"HEAD {path!r}")
        return self._descriptor(path, response)

    def get_object(self, path: str, timeout: Timeout | None = None) -> bytes | None:
        response = self.send("GET", self.object_uri(path), timeout=timeout)
        if response.status_code == 404:
            return None
        self._raise_for_status(response, f"GET {path!r}")
        return response.content

    def get_object_stream(self, path: str, timeout: Timeout | None = None) -> BinaryIO | None:
        """Return the streaming response body; the caller must close it."""
        response = self.send("GET", self.object_uri(path), timeout=timeout, stream=True)
        if response.status_code == 404:
            response.close()
            return None
        try:
            self._raise_for_status(response, f"GET {path!r}")
        except OciStorageError:
            response.close()
            raise
        response.raw.decode_content = True
        return response.raw

    def put_object(
        self,
        path: str,
        body: bytes | str,
        headers: Mapping[str, str] | None = None,
        content_type: str | None = None,
        storage_tier: StorageTier | None = None,
        metadata: Mapping[str, str] | None = None,
        timeout: Timeout | None = None,
    ) -> str | None:
        """Upload ``body`` and return the new ETag."""
        payload = body.encode("utf-8") if isinstance(body, str) else bytes(body)
        outgoing = {
            "Content-MD5": base64.b64encode(hashlib.md5(payload).digest()).decode("ascii"),
            "storage-tier": (storage_tier or self.storage_tier).value,
        }
        for name, value in (metadata or {}).items():
            outgoing[f"{METADATA_HEADER_PREFIX}{name}"] = str(value)
        outgoing.update(headers or {})

        response = self.send(
            "PUT",
            self.object_uri(path),
            headers=outgoing,
            body=payload,
            content_type=content_type or "application/octet-stream",
            timeout=timeout,
        )
        self._raise_for_status(response, f"PUT {path!r}")
        return response.headers.get("etag")

    def delete_object(self, path: str, timeout: Timeout | None = None) -> None:
        response = self.send("DELETE", self.object_uri(path), timeout=timeout)
        if response.status_code == 404:
            logger.debug("Delete skipped, object already absent: path=%s", path)
            return
        self._raise_for_status(response, f"DELETE {path!r}")

    def rename_object(self, source: str, destination: str, timeout: Timeout | None = None) -> bool:
        """Atomic server-side rename. Returns ``False`` when the source does not exist."""
        body = _json_body({
            "sourceName": self.prefixer.get_prefixed_path(source),
            "newName": self.prefixer.get_prefixed_path(destination),
        })
        response = self.send("POST", f"{self.bucket_uri}/actions/renameObject", body=body, timeout=timeout)
        if response.status_code == 404:
            return False
        self._raise_for_status(response, f"rename {source!r} -> {destination!r}")
        return True

    def copy_object(
        self,
        source: str,
        destination: str,
        storage_tier: StorageTier | None = None,
        metadata: Mapping[str, str] | None = None,
        timeout: Timeout | None = None,
    ) -> str | None:
        """Request an asynchronous server-side copy and return its work request id.

        A successful return means the copy was accepted, not that the destination exists yet.
        """
        payload: dict[str, Any] = {
            "sourceObjectName": self.prefixer.get_prefixed_path(source),
            "destinationRegion": self.region,
            "destinationNamespace": self.namespace,
            "destinationBucket": self.bucket,
            "destinationObjectName": self.prefixer.get_prefixed_path(destination),
        }
        if storage_tier is not None:
            payload["destinationObjectStorageTier"] = StorageTier(storage_tier).value
        if metadata is not None:
            payload["destinationObjectMetadata"] = dict(metadata)

        response = self.send("POST", f"{self.bucket_uri}/actions/copyObject", body=_json_body(payload), timeout=timeout)
        if response.status_code == 404:
            raise ObjectNotFoundError(source)
        self._raise_for_status(response, f"copy {source!r} -> {destination!r}")
        return response.headers.get("opc-work-request-id")

    def bulk_delete(self, paths: Sequence[str], timeout: Timeout | None = None) -> BulkDeleteResult:
        """Delete many objects. Every input path ends up in exactly one of ``deleted``/``errors``."""
        deleted: list[str] = []
        errors: list[ObjectError] = []
        for start in range(0, len(paths), BULK_DELETE_BATCH_SIZE):
            batch = self._bulk_delete_batch(list(paths[start:start + BULK_DELETE_BATCH_SIZE]), timeout)
            deleted.extend(batch.deleted)
            errors.extend(batch.errors)
        return BulkDeleteResult(deleted=deleted, errors=errors)

    def _bulk_delete_batch(self, paths: list[str], timeout: Timeout | None) -> BulkDeleteResult:
        keys = [self.prefixer.get_prefixed_path(path) for path in paths]
        root = ET.Element("Delete")
        ET.SubElement(root, "Quiet").text = "true"
        for key in keys:
            entry = ET.SubElement(root, "Object")
            ET.SubElement(entry, "Key").text = key
        body = ET.tostring(root, encoding="utf-8", xml_declaration=True)
        content_md5 = base64.b64encode(hashlib.md5(body).digest()).decode("ascii")

        try:
            response = self.send(
                "POST",
                f"{self.bucket_uri}?delete",
                headers={"Content-MD5": content_md5},
                body=body,
                content_type="application/xml",
                timeout=timeout,
            )
        except (SigningError, ConfigurationError):
            raise
        except OciStorageError as exc:
            return BulkDeleteResult(errors=[ObjectError(path=path, error=str(exc)) for path in paths])

        failures = _parse_bulk_delete_errors(response.text)
        if not 200 <= response.status_code < 300 and not failures:
            message = f"Bulk delete failed with status {response.status_code}"
            return BulkDeleteResult(errors=[ObjectError(path=path, error=message) for path in paths])

        deleted: list[str] = []
        errors: list[ObjectError] = []
        for path, key in zip(paths, keys):
            if key in failures:
                errors.append(ObjectError(path=path, error=failures[key]))
            else:
                deleted.append(path)
        return BulkDeleteResult(deleted=deleted, errors=errors)

    @staticmethod
    def validate_restore_hours(hours: int) -> None:
        if isinstance(hours, bool) or not isinstance(hours, int) or not RESTORE_MIN_HOURS <= hours <= RESTORE_MAX_HOURS:
            raise InvalidRestoreWindowError(
                f"Hours must be between {RESTORE_MIN_HOURS} and {RESTORE_MAX_HOURS}, got: {hours!r}"
            )

    def restore_objects_detailed(self, paths: Sequence[str], hours: int = 24, timeout: Timeout | None = None) -> RestoreResult:
        self.validate_restore_hours(hours)
        restored: list[str] = []
        errors: list[ObjectError] = []
        for path in paths:
            body = _json_body({"objectName": self.prefixer.get_prefixed_path(path), "hours": hours})
            try:
                response = self.send("POST", f"{self.bucket_uri}/actions/restoreObjects", body=body, timeout=timeout)
                self._raise_for_status(response, f"restore {path!r}")
            except (SigningError, ConfigurationError):
                raise
            except OciStorageError as exc:
                errors.append(ObjectError(path=path, error=str(exc)))
                continue
            restored.append(path)
        return RestoreResult(restored=restored, errors=errors)

    def restore_objects(self, paths: Sequence[str], hours: int = 24, timeout: Timeout | None = None) -> bool:
        """Request restoration of archived objects. ``hours`` is validated before any request."""
        return self.restore_objects_detailed(paths, hours, timeout).ok

    def update_object_storage_tier(self, path: str, tier: StorageTier | str, timeout: Timeout | None = None) -> bool:
        body = _json_body({"objectName": self.prefixer.get_prefixed_path(path), "storageTier": StorageTier(tier).value})
        response = self.send("POST", f"{self.bucket_uri}/actions/updateObjectStorageTier", body=body, timeout=timeout)
        if response.status_code == 404:
            return False
        self._raise_for_status(response, f"update storage tier of {path!r}")
        return True

    def list_objects(
        self,
        prefix: str | None = None,
        delimiter: str | None = None,
        start: str | None = None,
        end: str | None = None,
        limit: int | None = None,
        fields: str = LIST_FIELDS,
        timeout: Timeout | None = None,
    ) -> ListResult:
        """List one page. ``delimiter="/"`` groups one level into ``prefixes``; no delimiter lists recursively."""
        physical_prefix = self.prefixer.get_prefixed_path(prefix or "")
        params = {
            "prefix": physical_prefix or None,
            "delimiter": delimiter,
            "start": self.prefixer.get_prefixed_path(start) if start else None,
            "end": self.prefixer.get_prefixed_path(end) if end else None,
            "limit": limit,
            "fields": fields,
        }
        query = urlencode({key: value for key, value in params.items() if value is not None}, quote_via=quote)
        uri = f"{self.bucket_uri}/o" + (f"?{query}" if query else "")

        response = self.send("GET", uri, timeout=timeout)
        self._raise_for_status(response, f"list objects prefix={prefix!r}")
        page = ListObjectsPage.model_validate(response.json() or {})

        strip = self.prefixer.remove_prefix_from_path
        return ListResult(
            objects=[summary.model_copy(update={"name": strip(summary.name)}) for summary in page.objects],
            prefixes=[strip(item) for item in page.prefixes],
            next_start_with=strip(page.next_start_with) if page.next_start_with else None,
        )

    def iter_pages(
        self,
        prefix: str | None = None,
        delimiter: str | None = None,
        limit: int | None = None,
        timeout: Timeout | None = None,
    ) -> Iterator[ListResult]:
        """Follow ``nextStartWith`` across pages. Pages are not a consistent snapshot."""
        start: str | None = None
        while True:
            page = self.list_objects(prefix=prefix, delimiter=delimiter, start=start, limit=limit, timeout=timeout)
            yield page
            if not page.next_start_with or page.next_start_with == start:
                return
            start = page.next_start_with

    def create_temporary_url(self, path: str, expires_at: datetime | None = None, timeout: Timeout | None = None) -> str:
        """Create a read-only pre-authenticated request. Returns ``""`` when the request fails."""
        expires_at = expires_at or datetime.now(timezone.utc) + timedelta(hours=1)
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        body = _json_body({
            "accessType": "ObjectRead",
            "name": f"ocistorage-{uuid.uuid4()}",
            "objectName": self.prefixer.get_prefixed_path(path),
            "timeExpires": expires_at.astimezone(timezone.utc).isoformat(),
        })

        try:
            response = self.send("POST", f"{self.bucket_uri}/p/", body=body, timeout=timeout)
            self._raise_for_status(response, f"create pre-authenticated request for {path!r}")
            request = PreauthenticatedRequest.model_validate(response.json())
        except (SigningError, ConfigurationError):
            raise
        except (OciStorageError, ValueError) as exc:
            logger.error("Failed to create temporary URL: path=%s error=%s", path, exc)
            return ""

        if request.full_path:
            return request.full_path
        if request.access_uri:
            return f"{self.host}{request.access_uri}"
        logger.error("Pre-authenticated request response carried no URL: path=%s", path)
        return ""
