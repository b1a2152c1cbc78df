"""Object storage supporting multiple backends.

Supports: local filesystem, S3, MinIO, and other S3-compatible storage.
Keys are the same for every backend, e.g. ``uploads/<video_id>/<file>`` for
sources and ``videos/<video_id>/hls/<file>`` for renditions.
"""

import hashlib
import hmac
import os
import shutil
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import quote, urlencode

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from vodflow.core.config import settings


CONTENT_TYPES = {
    ".m3u8": "application/x-mpegURL",
    ".ts": "video/MP2T",
    ".mp4": "video/mp4",
    ".m4s": "video/mp4",
    ".mpd": "application/dash+xml",
}


def guess_content_type(path: str) -> str:
    """Content type for a storage key or local path, by extension."""
    return CONTENT_TYPES.get(os.path.splitext(path)[1].lower(), "application/octet-stream")


class StorageError(Exception):
    """Raised when an object store operation fails."""


class SigningError(StorageError):
    """Raised when a signed URL cannot be produced."""


@dataclass
class StorageResult:
    """Result of a storage operation."""
    success: bool
    key: str
    file_size: int = 0
    etag: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class StorageConfig:
    """Storage configuration."""
    backend: str  # local, s3, minio
    bucket: str = ""
    region: str = ""
    access_key: str = ""
    secret_key: str = ""
    endpoint_url: Optional[str] = None
    use_ssl: bool = True
    local_path: str = "./storage"
    local_base_url: str = "http://localhost:8002/files"
    signing_key: str = ""


class StorageBackend(ABC):
    """Abstract base class for storage backends."""

    @abstractmethod
    def upload(
        self,
        file_path: str,
        key: str,
        content_type: Optional[str] = None,
    ) -> StorageResult:
        """Upload a local file to storage."""

    @abstractmethod
    def put(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        """Store bytes under a key."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Read an object's bytes. Raises StorageError."""

    @abstractmethod
    def download(self, key: str, destination: str) -> None:
        """Download an object to a local path, replacing any existing file.

        Raises StorageError.
        """

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete an object."""

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check if an object exists."""

    @abstractmethod
    def sign(self, key: str, expires_in: int = 3600) -> str:
        """Time-limited read URL for an object. Raises SigningError."""

    @abstractmethod
    def list_files(self, prefix: str = "") -> list[str]:
        """List keys with given prefix."""

    def ensure_bucket(self) -> None:
        """Create the bucket if the backend has one and it is missing."""


def _replace_atomically(write, destination: str) -> None:
    """Write to a temp file next to destination, then rename over it."""
    dest_dir = os.path.dirname(os.path.abspath(destination))
    os.makedirs(dest_dir, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix="download-", dir=dest_dir)
    os.close(fd)
    try:
        write(tmp_path)
        os.replace(tmp_path, destination)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


class LocalStorage(StorageBackend):
    """Local filesystem storage backend."""

    def __init__(self, config: StorageConfig):
        self.base_path = Path(config.local_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.base_url = config.local_base_url.rstrip("/")
        self.signing_key = config.signing_key.encode()

    def _get_full_path(self, key: str) -> Path:
        return self.base_path / key

    def upload(
        self,
        file_path: str,
        key: str,
        content_type: Optional[str] = None,
    ) -> StorageResult:
        try:
            dest_path = self._get_full_path(key)
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(file_path, dest_path)
            return StorageResult(success=True, key=key, file_size=dest_path.stat().st_size)
        except OSError as e:
            return StorageResult(success=False, key=key, error_message=str(e))

    def put(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        try:
            dest_path = self._get_full_path(key)
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            dest_path.write_bytes(data)
            return StorageResult(success=True, key=key, file_size=len(data))
        except OSError as e:
            return StorageResult(success=False, key=key, error_message=str(e))

    def get(self, key: str) -> bytes:
        try:
            return self._get_full_path(key).read_bytes()
        except OSError as e:
            raise StorageError(f"failed to read {key}: {e}") from e

    def download(self, key: str, destination: str) -> None:
        src_path = self._get_full_path(key)
        if not src_path.exists():
            raise StorageError(f"object not found: {key}")
        try:
            _replace_atomically(lambda tmp: shutil.copyfile(src_path, tmp), destination)
        except OSError as e:
            raise StorageError(f"failed to download {key}: {e}") from e

    def delete(self, key: str) -> bool:
        file_path = self._get_full_path(key)
        if file_path.exists():
            file_path.unlink()
            return True
        return False

    def exists(self, key: str) -> bool:
        return self._get_full_path(key).exists()

    def sign(self, key: str, expires_in: int = 3600) -> str:
        if not self.signing_key:
            raise SigningError("local storage signing key is not configured")
        expires = int(time.time()) + expires_in
        signature = hmac.new(
            self.signing_key, f"{key}:{expires}".encode(), hashlib.sha256
        ).hexdigest()
        query = urlencode({"expires": expires, "signature": signature})
        return f"{self.base_url}/{quote(key)}?{query}"

    def list_files(self, prefix: str = "") -> list[str]:
        search_path = self._get_full_path(prefix) if prefix else self.base_path
        if not search_path.exists():
            return []

        files = []
        for path in search_path.rglob("*"):
            if path.is_file():
                files.append(str(path.relative_to(self.base_path)))
        return files


class S3Storage(StorageBackend):
    """S3/MinIO compatible storage backend."""

    def __init__(self, config: StorageConfig):
        self.config = config
        self._client = None

    def _get_client(self):
        """Get or create S3 client."""
        if self._client is None:
            client_kwargs = {
                "service_name": "s3",
                "region_name": self.config.region or "us-east-1",
                "aws_access_key_id": self.config.access_key,
                "aws_secret_access_key": self.config.secret_key,
                "config": BotoConfig(signature_version="s3v4"),
            }

            # Self-hosted MinIO needs path-style addressing
            if self.config.endpoint_url:
                client_kwargs["endpoint_url"] = self.config.endpoint_url
                client_kwargs["config"] = BotoConfig(
                    signature_version="s3v4",
                    s3={"addressing_style": "path"},
                )
                if not self.config.use_ssl:
                    client_kwargs["use_ssl"] = False

            self._client = boto3.client(**client_kwargs)

        return self._client

    def ensure_bucket(self) -> None:
        client = self._get_client()
        try:
            client.head_bucket(Bucket=self.config.bucket)
        except ClientError:
            try:
                client.create_bucket(Bucket=self.config.bucket)
            except (BotoCoreError, ClientError) as e:
                raise StorageError(f"failed to create bucket {self.config.bucket}: {e}") from e

    def upload(
        self,
        file_path: str,
        key: str,
        content_type: Optional[str] = None,
    ) -> StorageResult:
        try:
            client = self._get_client()
            file_size = os.path.getsize(file_path)

            with open(file_path, "rb") as f:
                response = client.put_object(
                    Bucket=self.config.bucket,
                    Key=key,
                    Body=f,
                    ContentType=content_type or guess_content_type(file_path),
                )

            return StorageResult(
                success=True,
                key=key,
                file_size=file_size,
                etag=response.get("ETag", "").strip('"'),
            )
        except (BotoCoreError, ClientError, OSError) as e:
            return StorageResult(success=False, key=key, error_message=str(e))

    def put(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> StorageResult:
        try:
            response = self._get_client().put_object(
                Bucket=self.config.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
            return StorageResult(
                success=True,
                key=key,
                file_size=len(data),
                etag=response.get("ETag", "").strip('"'),
            )
        except (BotoCoreError, ClientError) as e:
            return StorageResult(success=False, key=key, error_message=str(e))

    def get(self, key: str) -> bytes:
        try:
            response = self._get_client().get_object(Bucket=self.config.bucket, Key=key)
            return response["Body"].read()
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"failed to get object {key}: {e}") from e

    def download(self, key: str, destination: str) -> None:
        client = self._get_client()
        try:
            _replace_atomically(
                lambda tmp: client.download_file(self.config.bucket, key, tmp),
                destination,
            )
        except (BotoCoreError, ClientError, OSError) as e:
            raise StorageError(f"failed to download {key}: {e}") from e

    def delete(self, key: str) -> bool:
        try:
            self._get_client().delete_object(Bucket=self.config.bucket, Key=key)
            return True
        except (BotoCoreError, ClientError):
            return False

    def exists(self, key: str) -> bool:
        try:
            self._get_client().head_object(Bucket=self.config.bucket, Key=key)
            return True
        except ClientError:
            return False

    def sign(self, key: str, expires_in: int = 3600) -> str:
        try:
            return self._get_client().generate_presigned_url(
                "get_object",
                Params={"Bucket": self.config.bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as e:
            raise SigningError(f"failed to sign {key}: {e}") from e

    def list_files(self, prefix: str = "") -> list[str]:
        client = self._get_client()
        paginator = client.get_paginator("list_objects_v2")
        files = []
        for page in paginator.paginate(Bucket=self.config.bucket, Prefix=prefix):
            files.extend(obj["Key"] for obj in page.get("Contents", []))
        return files


class Storage:
    """Universal storage interface.

    Automatically selects the appropriate backend based on configuration.
    """

    _instance: Optional["Storage"] = None

    def __init__(self, config: Optional[StorageConfig] = None):
        """Initialize storage with configuration.

        Args:
            config: Storage configuration (uses settings if not provided)
        """
        if config is None:
            config = StorageConfig(
                backend=settings.STORAGE_BACKEND,
                bucket=settings.STORAGE_BUCKET,
                region=settings.STORAGE_REGION,
                access_key=settings.STORAGE_ACCESS_KEY,
                secret_key=settings.STORAGE_SECRET_KEY,
                endpoint_url=settings.STORAGE_ENDPOINT_URL,
                use_ssl=settings.STORAGE_USE_SSL,
                local_path=settings.LOCAL_STORAGE_PATH,
                local_base_url=settings.LOCAL_STORAGE_BASE_URL,
                signing_key=settings.STORAGE_SIGNING_KEY,
            )

        self.config = config
        self._backend = self._create_backend(config)

    def _create_backend(self, config: StorageConfig) -> StorageBackend:
        backend_type = config.backend.lower()

        if backend_type == "local":
            return LocalStorage(config)
        elif backend_type in ("s3", "minio", "aws"):
            return S3Storage(config)
        else:
            raise ValueError(f"Unsupported storage backend: {backend_type}")

    @classmethod
    def get_instance(cls) -> "Storage":
        """Get singleton storage instance."""
        if cls._instance is None:
            cls._instance = cls()
            if settings.STORAGE_CREATE_BUCKET:
                cls._instance.ensure_bucket()
        return cls._instance

    def ensure_bucket(self) -> None:
        self._backend.ensure_bucket()

    def upload(self, file_path: str, key: str, content_type: Optional[str] = None) -> StorageResult:
        return self._backend.upload(file_path, key, content_type)

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> StorageResult:
        return self._backend.put(key, data, content_type)

    def get(self, key: str) -> bytes:
        return self._backend.get(key)

    def download(self, key: str, destination: str) -> None:
        self._backend.download(key, destination)

    def delete(self, key: str) -> bool:
        return self._backend.delete(key)

    def exists(self, key: str) -> bool:
        return self._backend.exists(key)

    def sign(self, key: str, expires_in: int = 3600) -> str:
        return self._backend.sign(key, expires_in)

    def list_files(self, prefix: str = "") -> list[str]:
        return self._backend.list_files(prefix)
