"""Content storage for uploaded images. S3 OR local filesystem, via CONTENT_BACKEND.

Both backends hand out time-limited URLs: S3 presigned URLs, or for the
local backend, URLs to this service's own upload/download routes carrying an
HMAC-signed expiry.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
from urllib.parse import quote, urlencode

from persona_sim.config import Settings

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadTarget:
    upload_url: str
    object_key: str
    expires_in: int


def generate_object_key(session_id: str, file_name: str) -> str:
    extension = file_name.rsplit(".", 1)[-1] if "." in file_name else "jpg"
    return f"sessions/{session_id}/{int(time.time() * 1000)}.{extension}"


class ContentStore(Protocol):
    async def exists(self, object_key: str) -> bool: ...

    async def readable_url(self, object_key: str, expires_in: int = 3600) -> str: ...

    async def writable_url(
        self, session_id: str, file_name: str, content_type: str, expires_in: int = 300
    ) -> UploadTarget: ...


# ── S3 ───────────────────────────────────────────────────────────────────────

class S3ContentStore:
    def __init__(self, bucket: str, region: str, client=None) -> None:
        self._bucket = bucket
        self._region = region
        self._client = client

    def _get_client(self):
        if self._client is None:
            import boto3

            self._client = boto3.client("s3", region_name=self._region)
        return self._client

    async def exists(self, object_key: str) -> bool:
        from botocore.exceptions import ClientError

        try:
            await asyncio.to_thread(self._get_client().head_object, Bucket=self._bucket, Key=object_key)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("404", "NotFound", "NoSuchKey"):
                return False
            raise
        return True

    async def readable_url(self, object_key: str, expires_in: int = 3600) -> str:
        return self._get_client().generate_presigned_url(
            "get_object",
            Params={"Bucket": self._bucket, "Key": object_key, "ResponseContentDisposition": "inline"},
            ExpiresIn=expires_in,
        )

    async def writable_url(
        self, session_id: str, file_name: str, content_type: str, expires_in: int = 300
    ) -> UploadTarget:
        object_key = generate_object_key(session_id, file_name)
        url = self._get_client().generate_presigned_url(
            "put_object",
            Params={"Bucket": self._bucket, "Key": object_key, "ContentType": content_type},
            ExpiresIn=expires_in,
        )
        _log.info("presigned upload URL for %s (expires in %ss)", object_key, expires_in)
        return UploadTarget(upload_url=url, object_key=object_key, expires_in=expires_in)


# ── Local filesystem ─────────────────────────────────────────────────────────

class LocalContentStore:
    """Stores files under base_dir; URLs point at the API's /api/uploads and /api/content routes."""

    def __init__(self, base_dir: Path, base_url: str, secret: str) -> None:
        self.base_dir = Path(base_dir)
        self._base_url = base_url.rstrip("/")
        self._secret = secret.encode()

    def _path(self, object_key: str) -> Path:
        path = (self.base_dir / object_key).resolve()
        if not path.is_relative_to(self.base_dir.resolve()):
            raise ValueError(f"object key escapes content directory: {object_key!r}")
        return path

    def sign(self, method: str, object_key: str, expires: int) -> str:
        payload = f"{method}:{object_key}:{expires}".encode()
        return hmac.new(self._secret, payload, hashlib.sha256).hexdigest()

    def verify(self, method: str, object_key: str, expires: int, signature: str) -> bool:
        if expires < time.time():
            return False
        return hmac.compare_digest(self.sign(method, object_key, expires), signature)

    def _signed_url(self, route: str, method: str, object_key: str, expires_in: int) -> str:
        expires = int(time.time()) + expires_in
        query = urlencode({"expires": expires, "signature": self.sign(method, object_key, expires)})
        return f"{self._base_url}{route}/{quote(object_key)}?{query}"

    async def exists(self, object_key: str) -> bool:
        return self._path(object_key).is_file()

    async def readable_url(self, object_key: str, expires_in: int = 3600) -> str:
        return self._signed_url("/api/content", "GET", object_key, expires_in)

    async def writable_url(
        self, session_id: str, file_name: str, content_type: str, expires_in: int = 300
    ) -> UploadTarget:
        object_key = generate_object_key(session_id, file_name)
        url = self._signed_url("/api/uploads", "PUT", object_key, expires_in)
        _log.info("local upload URL for %s (expires in %ss)", object_key, expires_in)
        return UploadTarget(upload_url=url, object_key=object_key, expires_in=expires_in)

    def write(self, object_key: str, data: bytes) -> None:
        path = self._path(object_key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    def read(self, object_key: str) -> bytes | None:
        path = self._path(object_key)
        return path.read_bytes() if path.is_file() else None


# ── Factory ───────────────────────────────────────────────────────────────────

def make_content_store(settings: Settings) -> ContentStore:
    if settings.content_backend == "local":
        return LocalContentStore(settings.content_dir, settings.public_base_url, settings.signing_secret)
    if settings.content_backend == "s3":
        if not settings.content_bucket_name:
            raise ValueError("CONTENT_BACKEND=s3 requires CONTENT_BUCKET_NAME to be set")
        return S3ContentStore(settings.content_bucket_name, settings.aws_region)
    raise ValueError(f"Unknown CONTENT_BACKEND={settings.content_backend!r}. Use 'local' or 's3'.")
