"""OCI HTTP signature (draft-cavage, version 1) for Object Storage requests.

GET, HEAD and DELETE sign ``date (request-target) host``. PUT, POST and PATCH
additionally sign ``content-length content-type x-content-sha256``; the body
hash is always present for those methods, including for an empty body.
"""
from __future__ import annotations
import base64
import hashlib
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import format_datetime
from urllib.parse import urlsplit

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding

from ocistorage.auth.key_provider import KeyProvider
from ocistorage.errors import SigningError
from ocistorage.logging_config import get_logger

logger = get_logger(__name__)

BODY_METHODS = frozenset({"PUT", "POST", "PATCH"})
BASE_HEADERS = ("date", "(request-target)", "host")
BODY_HEADERS = ("content-length", "content-type", "x-content-sha256")
DEFAULT_CONTENT_TYPE = "application/json"


def http_date(moment: datetime) -> str:
    """RFC 1123 date in GMT at second resolution, e.g. ``Thu, 05 Jan 2014 21:31:40 GMT``."""
    return format_datetime(moment.astimezone(timezone.utc).replace(microsecond=0), usegmt=True)


def body_sha256(body: bytes) -> str:
    return base64.b64encode(hashlib.sha256(body).digest()).decode("ascii")


@dataclass(frozen=True)
class RequestDescriptor:
    method: str
    uri: str
    body: bytes | None = None
    content_type: str | None = None

    def __post_init__(self):
        object.__setattr__(self, "method", self.method.upper())
        if isinstance(self.body, str):
            object.__setattr__(self, "body", self.body.encode("utf-8"))

    @property
    def has_body(self) -> bool:
        return self.method in BODY_METHODS


@dataclass(frozen=True)
class SignedHeaders:
    headers: dict[str, str] = field(default_factory=dict)
    signed_names: tuple[str, ...] = ()
    signing_string: str = ""

    @property
    def authorization(self) -> str:
        return self.headers["Authorization"]

    def as_dict(self) -> dict[str, str]:
        """Headers to send on the wire; ``(request-target)`` is signed but never sent."""
        return {name: value for name, value in self.headers.items() if name != "(request-target)"}


class RequestSigner:
    def __init__(self, key_provider: KeyProvider, clock: Callable[[], datetime] | None = None):
        self.key_provider = key_provider
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def sign(self, request: RequestDescriptor) -> SignedHeaders:
        parts = urlsplit(request.uri)
        if not parts.scheme or not parts.netloc:
            raise SigningError(f"Invalid URL provided for OCI request: {request.uri}")

        target = parts.path or "/"
        if parts.query:
            target = f"{target}?{parts.query}"

        values: dict[str, str] = {
            "date": http_date(self._clock()),
            "(request-target)": f"{request.method.lower()} {target}",
            "host": parts.netloc,
        }
        names = list(BASE_HEADERS)
        if request.has_body:
            body = request.body or b""
            values["content-length"] = str(len(body))
            values["content-type"] = request.content_type or DEFAULT_CONTENT_TYPE
            values["x-content-sha256"] = body_sha256(body)
            names.extend(BODY_HEADERS)

        signing_string = "\n".join(f"{name}: {values[name]}" for name in names)
        signature = self._signature(signing_string)
        values["Authorization"] = (
            'Signature version="1",'
            f'headers="{" ".join(names)}",'
            f'keyId="{self.key_provider.key_id()}",'
            'algorithm="rsa-sha256",'
            f'signature="{signature}"'
        )
        return SignedHeaders(headers=values, signed_names=tuple(names), signing_string=signing_string)

    def _signature(self, signing_string: str) -> str:
        private_key = self.key_provider.load_private_key()
        try:
            raw = private_key.sign(signing_string.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
        except (ValueError, TypeError) as exc:
            logger.error("Request signature generation failed: key_id=%s", self.key_provider.key_id())
            raise SigningError(
                "Failed to generate OCI request signature. Please verify your private key is valid and properly formatted."
            ) from exc
        return base64.b64encode(raw).decode("ascii")
