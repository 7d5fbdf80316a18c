"""
Durable Blob Store - gzip JSONL DayFiles on local disk or S3

Stores one compressed, newline-delimited JSON file per pipeline per day.
The existence of a DayFile is the extract stage's resumability checkpoint,
so every write is a single atomic operation.

Features:
- Local backend: temp file + os.replace, parent directories created on demand
- S3 backend (boto3): single put_object per DayFile, addressed as s3://bucket/prefix/...
- Backend chosen once at startup from settings.STORAGE_PATH
- Blocking I/O runs in worker threads so callers can await it

Usage:
    from utils.storage import create_blob_store

    store = create_blob_store(settings)
    if not await store.exists("members/2024-01-01-members.jsonl.gz"):
        full_path = await store.write("members/2024-01-01-members.jsonl.gz", records)
"""

import asyncio
import gzip
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import boto3
import orjson
from botocore.exceptions import BotoCoreError, ClientError

from utils.config import Settings
from utils.errors import StorageError

logger = logging.getLogger(__name__)

S3_URI_RE = re.compile(r"^s3://([^/]+)/?(.*)$")


def encode_records(records: list[dict[str, Any]]) -> bytes:
    """Serialize records as gzip-compressed JSON lines."""
    content = b"\n".join(orjson.dumps(record) for record in records)
    return gzip.compress(content)


def decode_records(blob: bytes) -> list[dict[str, Any]]:
    """Decompress and parse a DayFile, skipping blank lines."""
    content = gzip.decompress(blob)
    return [orjson.loads(line) for line in content.splitlines() if line.strip()]


class BlobStore(ABC):
    """Path-addressed storage for DayFiles."""

    @abstractmethod
    async def exists(self, relative_path: str) -> bool:
        """Check whether a blob exists."""

    @abstractmethod
    async def write(self, relative_path: str, records: list[dict[str, Any]]) -> str:
        """Write records atomically and return the blob's full path."""

    @abstractmethod
    async def read(self, relative_path: str) -> list[dict[str, Any]]:
        """Read and parse a blob."""

    @abstractmethod
    async def delete(self, relative_path: str) -> bool:
        """Delete a blob. Best-effort: failures are logged and reported as False."""

    @abstractmethod
    async def clear_directory(self, relative_dir: str) -> int:
        """Delete every blob under a directory prefix and return the count."""

    @abstractmethod
    def resolve_full_path(self, relative_path: str) -> str:
        """Map a relative path to its fully-qualified address without I/O."""

    @abstractmethod
    def relative_path(self, full_path: str) -> str:
        """Inverse of resolve_full_path. Paths that are already relative pass through."""

    async def read_full_path(self, full_path: str) -> list[dict[str, Any]]:
        """Read a blob given the address returned by write()."""
        return await self.read(self.relative_path(full_path))


class LocalBlobStore(BlobStore):
    """DayFiles on the local filesystem."""

    def __init__(self, base_dir: str = "./tmp") -> None:
        """
        Initialize local store.

        Args:
            base_dir: Root directory; created lazily on first write
        """
        self.base_dir = Path(base_dir).resolve()

    def resolve_full_path(self, relative_path: str) -> str:
        return str(self.base_dir / relative_path)

    def relative_path(self, full_path: str) -> str:
        path = Path(full_path)
        if not path.is_absolute():
            return full_path
        try:
            return path.resolve().relative_to(self.base_dir).as_posix()
        except ValueError:
            return full_path

    async def exists(self, relative_path: str) -> bool:
        return await asyncio.to_thread(Path(self.resolve_full_path(relative_path)).is_file)

    async def write(self, relative_path: str, records: list[dict[str, Any]]) -> str:
        full_path = Path(self.resolve_full_path(relative_path))
        blob = encode_records(records)

        try:
            await asyncio.to_thread(self._atomic_write, full_path, blob)
        except OSError as e:
            raise StorageError(f"Failed to write {full_path}: {e}") from e

        logger.debug("Wrote DayFile: path=%s, records=%d", full_path, len(records))
        return str(full_path)

    @staticmethod
    def _atomic_write(full_path: Path, blob: bytes) -> None:
        full_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=full_path.parent, prefix=f".{full_path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(blob)
            os.replace(tmp_name, full_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def read(self, relative_path: str) -> list[dict[str, Any]]:
        full_path = Path(self.resolve_full_path(relative_path))
        try:
            blob = await asyncio.to_thread(full_path.read_bytes)
        except OSError as e:
            raise StorageError(f"Failed to read {full_path}: {e}") from e
        return decode_records(blob)

    async def delete(self, relative_path: str) -> bool:
        full_path = Path(self.resolve_full_path(relative_path))
        try:
            await asyncio.to_thread(full_path.unlink, missing_ok=True)
        except OSError as e:
            logger.warning("Failed to delete local file: path=%s, error=%s", full_path, str(e))
            return False

        logger.info("Deleted local file: %s", full_path)
        return True

    async def clear_directory(self, relative_dir: str) -> int:
        directory = Path(self.resolve_full_path(relative_dir))
        files = await asyncio.to_thread(self._list_files, directory)

        count = 0
        for entry in files:
            if await self.delete(self.relative_path(str(entry))):
                count += 1

        logger.info("Cleared %d files from local directory: %s", count, directory)
        return count

    @staticmethod
    def _list_files(directory: Path) -> list[Path]:
        if not directory.is_dir():
            return []
        return sorted(entry for entry in directory.iterdir() if entry.is_file())


class S3BlobStore(BlobStore):
    """DayFiles in an S3 bucket under a key prefix."""

    def __init__(self, storage_path: str, client: Optional[Any] = None, endpoint_url: Optional[str] = None) -> None:
        """
        Initialize S3 store.

        Args:
            storage_path: Base URI, e.g. s3://bucket/slack-pipeline
            client: Optional preconfigured boto3 S3 client
            endpoint_url: Optional S3-compatible endpoint (MinIO, GCS interop)

        Raises:
            ValueError: If storage_path is not an s3:// URI
        """
        match = S3_URI_RE.match(storage_path.rstrip("/"))
        if not match:
            raise ValueError(f"Invalid S3 path: {storage_path}")

        self.bucket = match.group(1)
        self.prefix = match.group(2).strip("/")

        kwargs = {"endpoint_url": endpoint_url} if endpoint_url else {}
        self.client = client or boto3.client("s3", **kwargs)

    def _key(self, relative_path: str) -> str:
        relative_path = relative_path.lstrip("/")
        return f"{self.prefix}/{relative_path}" if self.prefix else relative_path

    def resolve_full_path(self, relative_path: str) -> str:
        return f"s3://{self.bucket}/{self._key(relative_path)}"

    def relative_path(self, full_path: str) -> str:
        match = S3_URI_RE.match(full_path)
        if not match:
            return full_path
        key = match.group(2)
        if self.prefix and key.startswith(self.prefix + "/"):
            return key[len(self.prefix) + 1:]
        return key

    async def exists(self, relative_path: str) -> bool:
        try:
            await asyncio.to_thread(self.client.head_object, Bucket=self.bucket, Key=self._key(relative_path))
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageError(f"Failed to check {self.resolve_full_path(relative_path)}: {e}") from e
        return True

    async def write(self, relative_path: str, records: list[dict[str, Any]]) -> str:
        blob = encode_records(records)
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=self._key(relative_path),
                Body=blob,
                ContentType="application/x-ndjson",
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to write {self.resolve_full_path(relative_path)}: {e}") from e

        full_path = self.resolve_full_path(relative_path)
        logger.debug("Wrote DayFile: path=%s, records=%d", full_path, len(records))
        return full_path

    async def read(self, relative_path: str) -> list[dict[str, Any]]:
        try:
            response = await asyncio.to_thread(
                self.client.get_object, Bucket=self.bucket, Key=self._key(relative_path)
            )
            blob = await asyncio.to_thread(response["Body"].read)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Failed to read {self.resolve_full_path(relative_path)}: {e}") from e
        return decode_records(blob)

    async def delete(self, relative_path: str) -> bool:
        try:
            await asyncio.to_thread(self.client.delete_object, Bucket=self.bucket, Key=self._key(relative_path))
        except (BotoCoreError, ClientError) as e:
            logger.warning(
                "Failed to delete S3 object: path=%s, error=%s", self.resolve_full_path(relative_path), str(e)
            )
            return False

        logger.info("Deleted S3 object: %s", self.resolve_full_path(relative_path))
        return True

    async def clear_directory(self, relative_dir: str) -> int:
        prefix = self._key(relative_dir.rstrip("/") + "/")
        paginator = self.client.get_paginator("list_objects_v2")

        def list_keys() -> list[str]:
            keys = []
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys.extend(obj["Key"] for obj in page.get("Contents", []))
            return keys

        count = 0
        for key in await asyncio.to_thread(list_keys):
            if await self.delete(self.relative_path(f"s3://{self.bucket}/{key}")):
                count += 1

        logger.info("Cleared %d files from S3 prefix: s3://%s/%s", count, self.bucket, prefix)
        return count


def create_blob_store(settings: Settings) -> BlobStore:
    """
    Select the storage backend for this process.

    Args:
        settings: Application settings

    Returns:
        S3BlobStore when STORAGE_PATH is configured, else LocalBlobStore
    """
    if settings.STORAGE_PATH:
        store: BlobStore = S3BlobStore(settings.STORAGE_PATH, endpoint_url=settings.AWS_ENDPOINT_URL)
        logger.info("Using S3 storage: %s", settings.STORAGE_PATH)
    else:
        store = LocalBlobStore(settings.LOCAL_STORAGE_DIR)
        logger.info("Using local storage: %s", Path(settings.LOCAL_STORAGE_DIR).resolve())
    return store
