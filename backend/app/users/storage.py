"""Object storage interactions for avatar images."""

from __future__ import annotations

import contextlib
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional, Protocol, Tuple
from urllib.parse import urlparse
from uuid import uuid4

from fastapi import UploadFile
from minio import Minio

from backend.app.config import StorageConfig

LOGGER = logging.getLogger(__name__)

UPLOAD_CHUNK_SIZE = 64 * 1024


class UploadTooLargeError(ValueError):
    """Raised when an uploaded file exceeds the configured size limit."""


class AvatarStorageProtocol(Protocol):
    """Protocol describing avatar storage behaviour."""

    def store(self, path: Path, content_type: Optional[str] = None) -> str:
        """Persist the file at ``path`` and return its public URL."""


@contextlib.asynccontextmanager
async def temporary_upload(
    upload: UploadFile,
    *,
    max_bytes: int,
    temp_dir: Optional[str] = None,
) -> AsyncIterator[Path]:
    """Spool ``upload`` to a temporary file that is removed on every exit path.

    Raises:
        UploadTooLargeError: If the upload is larger than ``max_bytes``.
    """

    suffix = Path(upload.filename or "").suffix.lower()
    handle = tempfile.NamedTemporaryFile(delete=False, suffix=suffix, dir=temp_dir)
    path = Path(handle.name)
    try:
        written = 0
        with handle:
            while True:
                chunk = await upload.read(UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                written += len(chunk)
                if written > max_bytes:
                    raise UploadTooLargeError(
                        f"Avatar exceeds the maximum size of {max_bytes} bytes"
                    )
                handle.write(chunk)
        yield path
    finally:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(path)


@dataclass
class MinioAvatarStorage:
    """Upload avatars to an S3-compatible object store."""

    client: object
    bucket: str
    prefix: str
    public_base_url: str

    def store(self, path: Path, content_type: Optional[str] = None) -> str:
        """Upload the file and return the URL it is served from."""

        object_key = self._object_key(path.suffix)
        try:
            self.client.fput_object(
                self.bucket,
                object_key,
                str(path),
                content_type=content_type or "application/octet-stream",
            )
        except Exception:
            LOGGER.exception("Failed to upload avatar to storage")
            raise
        return f"{self.public_base_url.rstrip('/')}/{self.bucket}/{object_key}"

    def _object_key(self, suffix: str) -> str:
        filename = f"{uuid4().hex}{suffix}"
        prefix = self.prefix.strip("/")
        if not prefix:
            return filename
        return f"{prefix}/{filename}"


def normalise_endpoint(raw_endpoint: str, secure_default: bool) -> Tuple[str, bool]:
    """Parse an endpoint string into host:port and secure flag."""

    if not raw_endpoint:
        raise ValueError("Endpoint cannot be empty")
    candidate = raw_endpoint.strip()
    if "://" not in candidate:
        scheme = "https" if secure_default else "http"
        candidate = f"{scheme}://{candidate}"
    parsed = urlparse(candidate)
    host = parsed.netloc or parsed.path
    if not host:
        raise ValueError(f"Invalid endpoint '{raw_endpoint}'")
    secure = parsed.scheme == "https"
    return host, secure


def build_minio_avatar_storage(config: StorageConfig) -> Optional[MinioAvatarStorage]:
    """Construct avatar storage from ``AVATAR_STORAGE_*`` environment variables.

    Returns ``None`` when credentials are missing or the store is unreachable;
    avatar uploads then fail with an internal error.
    """

    endpoint_raw = os.getenv("AVATAR_STORAGE_ENDPOINT")
    access_key = os.getenv("AVATAR_STORAGE_ACCESS_KEY")
    secret_key = os.getenv("AVATAR_STORAGE_SECRET_KEY")
    if not all([endpoint_raw, access_key, secret_key]):
        LOGGER.warning("Missing avatar storage credentials; set AVATAR_STORAGE_* env vars to enable")
        return None

    try:
        endpoint, secure = normalise_endpoint(endpoint_raw, config.secure)
    except ValueError:
        LOGGER.warning("Invalid avatar storage endpoint '%s'; disabling uploads", endpoint_raw)
        return None

    try:
        client = Minio(
            endpoint,
            access_key=access_key,
            secret_key=secret_key,
            secure=secure,
            region=config.region,
        )
        if not client.bucket_exists(config.bucket):
            client.make_bucket(config.bucket)
    except Exception:  # pragma: no cover - external dependency handling
        LOGGER.exception("Failed to initialise avatar storage; disabling uploads")
        return None

    public_raw = config.public_endpoint or endpoint_raw
    try:
        public_host, public_secure = normalise_endpoint(public_raw, secure)
    except ValueError:
        LOGGER.warning("Invalid public avatar endpoint '%s'; using internal endpoint", public_raw)
        public_host, public_secure = endpoint, secure
    scheme = "https" if public_secure else "http"
    return MinioAvatarStorage(
        client=client,
        bucket=config.bucket,
        prefix=config.prefix,
        public_base_url=f"{scheme}://{public_host}",
    )


__all__ = [
    "AvatarStorageProtocol",
    "MinioAvatarStorage",
    "UploadTooLargeError",
    "build_minio_avatar_storage",
    "normalise_endpoint",
    "temporary_upload",
]
