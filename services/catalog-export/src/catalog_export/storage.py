"""
Storage backends for exported files.

Both backends implement StorageGateway and are chosen once, when the pipeline
is constructed. Concurrent writes to the same name are last-write-wins.
"""

import asyncio
import logging
import mimetypes
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from catalog_export.config import StorageSettings
from catalog_export.exceptions import FileNotFoundInStorageError, StorageError
from catalog_export.retry import RetryPolicy

logger = logging.getLogger(__name__)

boto_config = Config(
    retries={"max_attempts": 3, "mode": "adaptive"},
    connect_timeout=10,
    read_timeout=60,
)

_NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}


class AWSClientFactory:
    """Factory for creating AWS clients with proper configuration."""

    _s3_clients: dict[tuple, Any] = {}

    @classmethod
    def get_s3_client(cls, region: str, endpoint_url: Optional[str] = None):
        """Get or create an S3 client for the region/endpoint pair."""
        key = (region, endpoint_url)
        if key not in cls._s3_clients:
            kwargs = {"config": boto_config, "region_name": region}
            if endpoint_url:
                kwargs["endpoint_url"] = endpoint_url
            cls._s3_clients[key] = boto3.client("s3", **kwargs)
        return cls._s3_clients[key]

    @classmethod
    def reset(cls):
        """Reset clients (useful for testing)."""
        cls._s3_clients = {}


@dataclass
class StorageResult:
    """Where a written file ended up."""
    location: str
    file_name: str
    download_url: str
    size: int
    provider: str

    def to_dict(self) -> dict:
        return {
            "downloadUrl": self.download_url,
            "fileName": self.file_name,
            "location": self.location,
            "size": self.size,
        }


@dataclass
class FileMetadata:
    name: str
    size: int
    last_modified: Optional[str]
    content_type: str
    download_url: str

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "size": self.size,
            "lastModified": self.last_modified,
            "contentType": self.content_type,
            "downloadUrl": self.download_url,
        }


class StorageGateway(ABC):
    """Capability interface shared by every storage backend."""

    provider: str = ""
    # Whether gzip bytes can be stored and served with Content-Encoding: gzip.
    supports_compression: bool = False

    def __init__(self, action_base_url: Optional[str] = None):
        self.action_base_url = action_base_url.rstrip("/") if action_base_url else None

    @abstractmethod
    async def write(
        self,
        name: str,
        content: bytes,
        content_type: str = "text/csv",
        content_encoding: Optional[str] = None,
    ) -> StorageResult:
        ...

    @abstractmethod
    async def read(self, name: str) -> bytes:
        ...

    @abstractmethod
    async def list(self, prefix: str = "") -> list[FileMetadata]:
        ...

    @abstractmethod
    async def delete(self, name: str) -> None:
        ...

    @abstractmethod
    async def exists(self, name: str) -> bool:
        ...

    def download_url(self, name: str, location: str) -> str:
        if self.action_base_url:
            return f"{self.action_base_url}/download-file?fileName={quote(name)}"
        return location

    def _check_name(self, name: str, operation: str) -> str:
        if not name or name.startswith("/") or ".." in name.split("/"):
            error = StorageError(
                message=f"Invalid file name: {name!r}",
                provider=self.provider,
                operation=operation,
                file_name=name,
            )
            error.retryable = False
            error.status_code = 400
            raise error
        return name


class S3Storage(StorageGateway):
    """S3 bucket backend. Blocking boto3 calls run in worker threads."""

    provider = "s3"
    supports_compression = True

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        prefix: str = "",
        endpoint_url: Optional[str] = None,
        client: Any = None,
        action_base_url: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        presign_expiry: int = 3600,
    ):
        super().__init__(action_base_url)
        self.bucket = bucket
        self.prefix = prefix
        self.client = client or AWSClientFactory.get_s3_client(region, endpoint_url)
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3, base_delay=0.5, max_delay=10.0)
        self.presign_expiry = presign_expiry

    def _key(self, name: str) -> str:
        return f"{self.prefix}{name}"

    def _location(self, name: str) -> str:
        return f"s3://{self.bucket}/{self._key(name)}"

    async def _call(self, operation: str, name: Optional[str], func, **kwargs) -> Any:
        def invoke():
            try:
                return func(**kwargs)
            except ClientError as e:
                code = str(e.response.get("Error", {}).get("Code", ""))
                if code in _NOT_FOUND_CODES:
                    raise FileNotFoundInStorageError(name or "", self.provider, operation) from e
                raise StorageError(
                    message=f"S3 {operation} failed: {e}",
                    provider=self.provider,
                    operation=operation,
                    file_name=name,
                    original_exception=e,
                ) from e
            except BotoCoreError as e:
                raise StorageError(
                    message=f"S3 {operation} failed: {e}",
                    provider=self.provider,
                    operation=operation,
                    file_name=name,
                    original_exception=e,
                ) from e

        return await self.retry_policy.execute(
            lambda: asyncio.to_thread(invoke),
            description=f"s3 {operation} {name or ''}".strip(),
        )

    async def write(
        self,
        name: str,
        content: bytes,
        content_type: str = "text/csv",
        content_encoding: Optional[str] = None,
    ) -> StorageResult:
        self._check_name(name, "write")
        key = self._key(name)
        kwargs = {"Bucket": self.bucket, "Key": key, "Body": content, "ContentType": content_type}
        if content_encoding:
            kwargs["ContentEncoding"] = content_encoding

        await self._call("write", name, self.client.put_object, **kwargs)

        location = self._location(name)
        logger.info(
            f"Uploaded {len(content)} bytes to S3",
            extra={"s3_bucket": self.bucket, "s3_key": key, "file_name": name},
        )
        return StorageResult(
            location=location,
            file_name=name,
            download_url=await self._download_url(name, location),
            size=len(content),
            provider=self.provider,
        )

    async def read(self, name: str) -> bytes:
        self._check_name(name, "read")
        response = await self._call(
            "read", name, self.client.get_object, Bucket=self.bucket, Key=self._key(name)
        )
        return await asyncio.to_thread(response["Body"].read)

    async def list(self, prefix: str = "") -> list[FileMetadata]:
        files: list[FileMetadata] = []
        kwargs = {"Bucket": self.bucket, "Prefix": self._key(prefix)}
        while True:
            response = await self._call("list", None, self.client.list_objects_v2, **kwargs)
            for obj in response.get("Contents", []):
                name = obj["Key"][len(self.prefix):]
                if not name or name.endswith("/"):
                    continue
                modified = obj.get("LastModified")
                location = self._location(name)
                files.append(
                    FileMetadata(
                        name=name,
                        size=int(obj.get("Size", 0)),
                        last_modified=modified.isoformat() if isinstance(modified, datetime) else modified,
                        content_type=mimetypes.guess_type(name)[0] or "application/octet-stream",
                        download_url=await self._download_url(name, location),
                    )
                )
            if not response.get("IsTruncated"):
                break
            kwargs["ContinuationToken"] = response["NextContinuationToken"]
        return files

    async def delete(self, name: str) -> None:
        self._check_name(name, "delete")
        if not await self.exists(name):
            raise FileNotFoundInStorageError(name, self.provider, "delete")
        await self._call(
            "delete", name, self.client.delete_object, Bucket=self.bucket, Key=self._key(name)
        )
        logger.info("Deleted file from S3", extra={"s3_bucket": self.bucket, "s3_key": self._key(name)})

    async def exists(self, name: str) -> bool:
        self._check_name(name, "exists")
        try:
            await self._call(
                "exists", name, self.client.head_object, Bucket=self.bucket, Key=self._key(name)
            )
        except FileNotFoundInStorageError:
            return False
        return True

    async def _download_url(self, name: str, location: str) -> str:
        if self.action_base_url:
            return self.download_url(name, location)
        return await self._call(
            "presign",
            name,
            self.client.generate_presigned_url,
            ClientMethod="get_object",
            Params={"Bucket": self.bucket, "Key": self._key(name)},
            ExpiresIn=self.presign_expiry,
        )


class FilesStorage(StorageGateway):
    """
    Managed file store rooted at a directory. Everything lives under the
    ``public/`` namespace; content is stored exactly as given.
    """

    provider = "files"
    namespace = "public/"

    def __init__(self, root: str, action_base_url: Optional[str] = None):
        super().__init__(action_base_url)
        self.root = Path(root)

    def _path(self, name: str) -> Path:
        return self.root / self.namespace / name

    def _location(self, name: str) -> str:
        return f"{self.namespace}{name}"

    def _fail(self, operation: str, name: Optional[str], exc: OSError) -> StorageError:
        return StorageError(
            message=f"Files {operation} failed: {exc}",
            provider=self.provider,
            operation=operation,
            file_name=name,
            original_exception=exc,
        )

    async def write(
        self,
        name: str,
        content: bytes,
        content_type: str = "text/csv",
        content_encoding: Optional[str] = None,
    ) -> StorageResult:
        self._check_name(name, "write")
        path = self._path(name)

        def _write():
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".upload-")
            try:
                with os.fdopen(fd, "wb") as fh:
                    fh.write(content)
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise self._fail("write", name, e) from e

        location = self._location(name)
        logger.info(f"Stored {len(content)} bytes", extra={"file_name": name})
        return StorageResult(
            location=location,
            file_name=name,
            download_url=self.download_url(name, location),
            size=len(content),
            provider=self.provider,
        )

    async def read(self, name: str) -> bytes:
        self._check_name(name, "read")
        path = self._path(name)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise FileNotFoundInStorageError(name, self.provider, "read") from e
        except OSError as e:
            raise self._fail("read", name, e) from e

    async def list(self, prefix: str = "") -> list[FileMetadata]:
        base = self.root / self.namespace

        def _scan() -> list[FileMetadata]:
            if not base.is_dir():
                return []
            files = []
            for path in sorted(base.rglob("*")):
                if not path.is_file() or path.name.startswith(".upload-"):
                    continue
                name = path.relative_to(base).as_posix()
                if not name.startswith(prefix):
                    continue
                stat = path.stat()
                files.append(
                    FileMetadata(
                        name=name,
                        size=stat.st_size,
                        last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
                        content_type=mimetypes.guess_type(name)[0] or "application/octet-stream",
                        download_url=self.download_url(name, self._location(name)),
                    )
                )
            return files

        try:
            return await asyncio.to_thread(_scan)
        except OSError as e:
            raise self._fail("list", None, e) from e

    async def delete(self, name: str) -> None:
        self._check_name(name, "delete")
        try:
            await asyncio.to_thread(self._path(name).unlink)
        except FileNotFoundError as e:
            raise FileNotFoundInStorageError(name, self.provider, "delete") from e
        except OSError as e:
            raise self._fail("delete", name, e) from e
        logger.info("Deleted file", extra={"file_name": name})

    async def exists(self, name: str) -> bool:
        self._check_name(name, "exists")
        return await asyncio.to_thread(self._path(name).is_file)


def create_storage(
    settings: StorageSettings,
    s3_client: Any = None,
    retry_policy: Optional[RetryPolicy] = None,
) -> StorageGateway:
    """Select the storage backend named by the storage settings."""
    if settings.provider == "files":
        logger.info(f"Using files storage at {settings.files_root}")
        return FilesStorage(root=settings.files_root, action_base_url=settings.action_base_url)

    if not settings.bucket:
        raise StorageError(
            message="S3 storage selected but no bucket is configured",
            provider="s3",
            operation="init",
        )
    logger.info(f"Using S3 storage in bucket {settings.bucket}", extra={"s3_bucket": settings.bucket})
    return S3Storage(
        bucket=settings.bucket,
        region=settings.region,
        prefix=settings.prefix,
        endpoint_url=settings.endpoint_url,
        client=s3_client,
        action_base_url=settings.action_base_url,
        retry_policy=retry_policy,
    )
