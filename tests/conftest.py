"""Shared fixtures: a generated signing key and an in-memory Object Storage service.

``FakeObjectStorage`` stands in for ``requests.Session``. It rejects any request
whose signature, body hash or content length does not verify against the test
public key, so every test that goes through it also exercises signing.
"""

from __future__ import annotations

import base64
import hashlib
import io
import json
import re
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from email.utils import format_datetime
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, unquote, urlsplit

import pytest
import requests
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from requests.structures import CaseInsensitiveDict

from ocistorage.config.oci_config import OciConfig
from ocistorage.storage.adapter import OciStorageAdapter
from ocistorage.storage.object_client import OciObjectClient

FINGERPRINT = "20:3b:97:13:55:1c:5b:0d:d3:37:d8:50:4e:c5:3a:34"
TENANCY = "ocid1.tenancy.oc1..aaaatenancy"
USER = "ocid1.user.oc1..aaaauser"
FIXED_NOW = datetime(2024, 5, 1, 12, 30, 45, tzinfo=timezone.utc)

_AUTH_FIELD = re.compile(r'(\w+)="([^"]*)"')


class _Body(io.BytesIO):
    decode_content = False


def make_response(status: int, body: bytes = b"", headers: dict[str, str] | None = None, url: str = "") -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response._content = body
    response.headers = CaseInsensitiveDict(headers or {})
    response.url = url
    response.encoding = "utf-8"
    response.raw = _Body(body)
    return response


class FakeObjectStorage:
    """Just enough of the Object Storage REST API for one bucket."""

    def __init__(self, public_key: rsa.RSAPublicKey, namespace: str = "testns", bucket: str = "test-bucket"):
        self.public_key = public_key
        self.base_path = f"/n/{namespace}/b/{bucket}"
        self.objects: dict[str, dict[str, Any]] = {}
        self.requests: list[dict[str, Any]] = []
        self.rename_supported = True
        self.copy_lands_after = 0
        self.bulk_delete_failures: dict[str, str] = {}
        self.restore_failures: set[str] = set()
        self.forced_status: dict[tuple[str, str], int] = {}
        self.page_size = 1000
        self.par_counter = 0
        self.copy_counter = 0
        self._pending_copies: list[list[Any]] = []

    # helpers for tests

    def put(self, key: str, body: bytes = b"", content_type: str = "application/octet-stream", tier: str = "Standard") -> None:
        self.objects[key] = {
            "body": body,
            "content_type": content_type,
            "tier": tier,
            "metadata": {},
            "etag": hashlib.md5(body).hexdigest(),
            "modified": FIXED_NOW,
        }

    def requests_to(self, method: str, fragment: str = "") -> list[dict[str, Any]]:
        return [r for r in self.requests if r["method"] == method and fragment in r["url"]]

    # requests.Session surface

    def request(self, method: str, url: str, headers: dict[str, str] | None = None, data: bytes | None = None, **kwargs: Any) -> requests.Response:
        headers = CaseInsensitiveDict(headers or {})
        body = data or b""
        self.requests.append({"method": method, "url": url, "headers": headers, "body": body, "kwargs": kwargs})
        self._land_copies()

        if not self._verify(method, url, headers, body):
            return make_response(401, b'{"code":"NotAuthenticated"}', url=url)

        parts = urlsplit(url)
        forced = self.forced_status.get((method, parts.path))
        if forced:
            return make_response(forced, b'{"code":"Forced"}', url=url)

        route = parts.path[len(self.base_path):]
        query = {key: values[0] for key, values in parse_qs(parts.query, keep_blank_values=True).items()}
        if route.startswith("/o/"):
            return self._object(method, unquote(route[3:]), headers, body)
        if route == "/o" and method == "GET":
            return self._list(query)
        if route == "" and method == "POST" and "delete" in query:
            return self._bulk_delete(body)
        if route == "/actions/renameObject":
            return self._rename(json.loads(body))
        if route == "/actions/copyObject":
            return self._copy(json.loads(body))
        if route == "/actions/restoreObjects":
            return self._restore(json.loads(body))
        if route == "/actions/updateObjectStorageTier":
            return self._update_tier(json.loads(body))
        if route == "/p/":
            return self._preauth(json.loads(body))
        return make_response(400, b'{"code":"InvalidRoute"}', url=url)

    def close(self) -> None:
        pass

    def _verify(self, method: str, url: str, headers: CaseInsensitiveDict, body: bytes) -> bool:
        fields = dict(_AUTH_FIELD.findall(headers.get("Authorization", "")))
        if fields.get("algorithm") != "rsa-sha256" or fields.get("version") != "1":
            return False
        if fields.get("keyId") != f"{TENANCY}/{USER}/{FINGERPRINT}":
            return False
        parts = urlsplit(url)
        target = parts.path + (f"?{parts.query}" if parts.query else "")
        lines = []
        for name in fields["headers"].split(" "):
            if name == "(request-target)":
                lines.append(f"(request-target): {method.lower()} {target}")
            else:
                if name not in headers:
                    return False
                lines.append(f"{name}: {headers[name]}")
        if method in ("PUT", "POST", "PATCH"):
            expected_hash = base64.b64encode(hashlib.sha256(body).digest()).decode()
            if headers.get("x-content-sha256") != expected_hash or headers.get("content-length") != str(len(body)):
                return False
        try:
            self.public_key.verify(
                base64.b64decode(fields["signature"]),
                "\n".join(lines).encode(),
                padding.PKCS1v15(),
                hashes.SHA256(),
            )
        except InvalidSignature:
            return False
        return True

    def _land_copies(self) -> None:
        remaining = []
        for pending in self._pending_copies:
            pending[0] -= 1
            if pending[0] < 0:
                source, destination = pending[1], pending[2]
                if source in self.objects:
                    self.objects[destination] = dict(self.objects[source])
                    self.copy_counter += 1
                    self.objects[destination]["etag"] = f"copy-{self.copy_counter}"
            else:
                remaining.append(pending)
        self._pending_copies = remaining

    def _object(self, method: str, key: str, headers: CaseInsensitiveDict, body: bytes) -> requests.Response:
        if method == "PUT":
            expected_md5 = base64.b64encode(hashlib.md5(body).digest()).decode()
            if headers.get("Content-MD5") != expected_md5:
                return make_response(400, b'{"code":"InvalidDigest"}')
            self.put(key, body, headers.get("content-type", ""), headers.get("storage-tier", "Standard"))
            self.objects[key]["metadata"] = {
                name[len("opc-meta-"):]: value for name, value in headers.items() if name.lower().startswith("opc-meta-")
            }
            return make_response(200, headers={"etag": self.objects[key]["etag"]})

        stored = self.objects.get(key)
        if method == "DELETE":
            if stored is None:
                return make_response(404, b'{"code":"ObjectNotFound"}')
            del self.objects[key]
            return make_response(204)
        if stored is None:
            return make_response(404, b"" if method == "HEAD" else b'{"code":"ObjectNotFound"}')

        response_headers = {
            "Content-Length": str(len(stored["body"])),
            "Content-Type": stored["content_type"],
            "ETag": stored["etag"],
            "opc-content-md5": base64.b64encode(hashlib.md5(stored["body"]).digest()).decode(),
            "Last-Modified": format_datetime(stored["modified"], usegmt=True),
        }
        if stored["tier"] != "Standard":
            response_headers["storage-tier"] = stored["tier"]
        for name, value in stored["metadata"].items():
            response_headers[f"opc-meta-{name}"] = value
        return make_response(200, b"" if method == "HEAD" else stored["body"], response_headers)

    def _list(self, query: dict[str, str]) -> requests.Response:
        prefix = query.get("prefix", "")
        delimiter = query.get("delimiter")
        start = query.get("start")
        limit = min(int(query.get("limit", self.page_size)), self.page_size)

        objects: list[dict[str, Any]] = []
        prefixes: list[str] = []
        next_start = None
        for key in sorted(self.objects):
            if not key.startswith(prefix) or (start and key < start):
                continue
            if delimiter and delimiter in key[len(prefix):]:
                common = key[: len(prefix) + key[len(prefix):].index(delimiter) + 1]
                if common not in prefixes:
                    prefixes.append(common)
                continue
            if len(objects) == limit:
                next_start = key
                break
            stored = self.objects[key]
            objects.append({
                "name": key,
                "size": len(stored["body"]),
                "etag": stored["etag"],
                "timeModified": stored["modified"].isoformat(),
                "storageTier": stored["tier"],
            })
        payload = {"objects": objects, "prefixes": prefixes}
        if next_start:
            payload["nextStartWith"] = next_start
        return make_response(200, json.dumps(payload).encode(), {"Content-Type": "application/json"})

    def _bulk_delete(self, body: bytes) -> requests.Response:
        root = ET.fromstring(body)
        errors = []
        for key_element in root.iter("Key"):
            key = key_element.text or ""
            if key in self.bulk_delete_failures:
                errors.append(
                    f"<Error><Key>{key}</Key><Code>AccessDenied</Code>"
                    f"<Message>{self.bulk_delete_failures[key]}</Message></Error>"
                )
                continue
            self.objects.pop(key, None)
        document = '<?xml version="1.0" encoding="UTF-8"?><DeleteResult xmlns="http://s3.amazonaws.com/doc/2006-03-01/">'
        document += "".join(errors) + "</DeleteResult>"
        return make_response(200, document.encode(), {"Content-Type": "application/xml"})

    def _rename(self, payload: dict[str, Any]) -> requests.Response:
        if not self.rename_supported:
            return make_response(400, b'{"code":"NotSupported"}')
        source = payload["sourceName"]
        if source not in self.objects:
            return make_response(404, b'{"code":"ObjectNotFound"}')
        self.objects[payload["newName"]] = self.objects.pop(source)
        return make_response(200)

    def _copy(self, payload: dict[str, Any]) -> requests.Response:
        source = payload["sourceObjectName"]
        if source not in self.objects:
            return make_response(404, b'{"code":"ObjectNotFound"}')
        self._pending_copies.append([self.copy_lands_after, source, payload["destinationObjectName"]])
        if self.copy_lands_after == 0:
            self._land_copies()
        return make_response(202, headers={"opc-work-request-id": "ocid1.workrequest.copy"})

    def _restore(self, payload: dict[str, Any]) -> requests.Response:
        name = payload["objectName"]
        if name in self.restore_failures or name not in self.objects:
            return make_response(404, b'{"code":"ObjectNotFound"}')
        return make_response(202)

    def _update_tier(self, payload: dict[str, Any]) -> requests.Response:
        name = payload["objectName"]
        if name not in self.objects:
            return make_response(404, b'{"code":"ObjectNotFound"}')
        self.objects[name]["tier"] = payload["storageTier"]
        return make_response(200)

    def _preauth(self, payload: dict[str, Any]) -> requests.Response:
        self.par_counter += 1
        access_uri = f"/p/token{self.par_counter}{self.base_path}/o/{payload['objectName']}"
        response = {
            "id": f"par-{self.par_counter}",
            "name": payload["name"],
            "accessUri": access_uri,
            "fullPath": f"https://objectstorage.us-ashburn-1.oraclecloud.com{access_uri}",
            "objectName": payload["objectName"],
            "timeExpires": payload["timeExpires"],
        }
        return make_response(200, json.dumps(response).encode(), {"Content-Type": "application/json"})


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    """Generate one RSA key for the whole test session."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def private_pem(rsa_key: rsa.RSAPrivateKey) -> str:
    """PEM text of the session key."""
    return rsa_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    ).decode()


@pytest.fixture
def key_file(tmp_path: Path, private_pem: str) -> Path:
    """Write the session key to a temporary file."""
    path = tmp_path / "oci_api_key.pem"
    path.write_text(private_pem)
    return path


@pytest.fixture
def config_values(key_file: Path) -> dict[str, Any]:
    """Complete collaborator-shaped configuration mapping."""
    return {
        "tenancy_id": TENANCY,
        "user_id": USER,
        "key_fingerprint": FINGERPRINT,
        "key_path": str(key_file),
        "namespace": "testns",
        "region": "us-ashburn-1",
        "bucket": "test-bucket",
        "storage_tier": "Standard",
    }


@pytest.fixture
def oci_config(config_values: dict[str, Any]) -> OciConfig:
    return OciConfig.from_mapping(config_values)


@pytest.fixture
def fake_storage(rsa_key: rsa.RSAPrivateKey) -> FakeObjectStorage:
    return FakeObjectStorage(rsa_key.public_key())


@pytest.fixture
def client(oci_config: OciConfig, fake_storage: FakeObjectStorage) -> OciObjectClient:
    return OciObjectClient(oci_config, session=fake_storage)


@pytest.fixture
def prefixed_client(oci_config: OciConfig, fake_storage: FakeObjectStorage) -> OciObjectClient:
    return OciObjectClient(oci_config.with_overrides(url_path_prefix="uploads"), session=fake_storage)


@pytest.fixture
def adapter(client: OciObjectClient) -> OciStorageAdapter:
    return OciStorageAdapter(client, copy_confirm_interval=0, sleep=lambda _: None)


@pytest.fixture
def prefixed_adapter(prefixed_client: OciObjectClient) -> OciStorageAdapter:
    return OciStorageAdapter(prefixed_client, copy_confirm_interval=0, sleep=lambda _: None)
