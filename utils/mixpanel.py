"""
Mixpanel Uploader

Uploads DayFiles to Mixpanel as events, user profiles or group profiles.
Files are read through the blob store, every record passes through an
optional transform function (returning None skips the record), and the
result is posted in batches with many requests in flight.

Features:
- Events via /import (non-strict, basic auth with the project secret, gzip body)
- User profiles via /engage and group profiles via /groups ($set operations)
- Null-valued properties removed before upload
- Per-batch retry on 429/5xx and transport errors (tenacity)

Usage:
    uploader = MixpanelUploader(token, secret, store)
    result = await uploader.upload(files, record_type="event", transform=fn, heavy_objects=ctx)
"""

import asyncio
import gzip
import logging
from typing import Any, Callable, Optional

import httpx
import orjson
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from utils.errors import UploadError
from utils.storage import BlobStore

logger = logging.getLogger(__name__)

TransformFunc = Callable[[dict[str, Any], dict[str, Any]], Optional[dict[str, Any]]]

RECORD_TYPES = ("event", "user", "group")


class RetryableResponse(Exception):
    """Mixpanel answered 429 or 5xx; the batch may succeed later."""


def remove_nulls(mapping: dict[str, Any]) -> dict[str, Any]:
    """Drop keys whose value is None."""
    return {key: value for key, value in mapping.items() if value is not None}


class MixpanelUploader:
    """Batch uploader for Mixpanel ingestion endpoints."""

    def __init__(
        self,
        token: str,
        secret: str,
        store: BlobStore,
        *,
        api_base: str = "https://api.mixpanel.com",
        workers: int = 100,
        records_per_batch: int = 2000,
        timeout: float = 30.0,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize uploader.

        Args:
            token: Project token (profiles)
            secret: Project API secret (event import)
            store: Blob store used to read the files passed to upload()
            api_base: Ingestion API base URL
            workers: Maximum batch requests in flight
            records_per_batch: Records per request (Mixpanel caps at 2000)
            timeout: Per-request timeout in seconds
            http: Optional shared httpx.AsyncClient (owned by caller)
        """
        self.token = token
        self.secret = secret
        self.store = store
        self.api_base = api_base.rstrip("/")
        self.workers = workers
        self.records_per_batch = records_per_batch

        self._owns_client = http is None
        self._client = http or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    def _prepare(self, record: dict[str, Any], record_type: str, group_key: Optional[str]) -> dict[str, Any]:
        """Apply wire-level fixes for one record."""
        if record_type == "event":
            return {**record, "properties": remove_nulls(record.get("properties", {}))}

        prepared = {**record, "$token": self.token, "$set": remove_nulls(record.get("$set", {}))}
        if record_type == "group":
            prepared.setdefault("$group_key", group_key)
        return prepared

    @retry(
        retry=retry_if_exception_type((RetryableResponse, httpx.TransportError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        reraise=True,
    )
    async def _send_batch(self, batch: list[dict[str, Any]], record_type: str) -> int:
        """
        Post one batch.

        Returns:
            Number of records accepted

        Raises:
            UploadError: If Mixpanel rejects the batch
        """
        body = orjson.dumps(batch)

        if record_type == "event":
            response = await self._client.post(
                f"{self.api_base}/import",
                params={"strict": "0"},
                content=gzip.compress(body),
                headers={"Content-Type": "application/json", "Content-Encoding": "gzip"},
                auth=(self.secret, ""),
            )
        else:
            endpoint = "engage" if record_type == "user" else "groups"
            response = await self._client.post(
                f"{self.api_base}/{endpoint}",
                params={"verbose": "1"},
                content=body,
                headers={"Content-Type": "application/json"},
            )

        if response.status_code == 429 or response.status_code >= 500:
            raise RetryableResponse(f"HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code != 200:
            raise UploadError(f"Mixpanel {record_type} batch rejected (HTTP {response.status_code}): {payload.get('error', response.text)}")

        if record_type == "event":
            return int(payload.get("num_records_imported", len(batch)))

        if payload.get("status") != 1:
            raise UploadError(f"Mixpanel {record_type} batch rejected: {payload.get('error')}")
        return len(batch)

    async def upload(
        self,
        files: list[str],
        *,
        record_type: str = "event",
        group_key: Optional[str] = None,
        transform: Optional[TransformFunc] = None,
        heavy_objects: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """
        Upload every record of every file.

        Args:
            files: Full paths returned by the blob store
            record_type: 'event', 'user' or 'group'
            group_key: Group key (required for 'group')
            transform: Optional per-record transform; returning None skips the record
            heavy_objects: Shared context passed to every transform call

        Returns:
            {"record_type", "total", "success", "skipped", "batches"}

        Raises:
            UploadError: If configuration is invalid or any batch fails
        """
        if record_type not in RECORD_TYPES:
            raise UploadError(f"Unknown record type: {record_type}")
        if record_type == "group" and not group_key:
            raise UploadError("Group key required for group imports")
        if record_type == "event" and not self.secret:
            raise UploadError("Mixpanel secret is required for event imports")
        if record_type != "event" and not self.token:
            raise UploadError("Mixpanel token is required")

        semaphore = asyncio.Semaphore(self.workers)
        context = heavy_objects or {}
        total = skipped = 0
        chunks: list[tuple[str, list[dict[str, Any]]]] = []

        async def send(batch: list[dict[str, Any]]) -> int:
            async with semaphore:
                return await self._send_batch(batch, record_type)

        for path in files:
            records = []
            for raw in await self.store.read_full_path(path):
                record = transform(raw, context) if transform else raw
                if record is None:
                    skipped += 1
                    continue
                records.append(self._prepare(record, record_type, group_key))

            total += len(records)
            chunks.extend(
                (path, records[i:i + self.records_per_batch]) for i in range(0, len(records), self.records_per_batch)
            )

        # Batches from every file share one semaphore
        results = await asyncio.gather(*(send(chunk) for _, chunk in chunks), return_exceptions=True)

        failed = [(path, result) for (path, _), result in zip(chunks, results) if isinstance(result, BaseException)]
        if failed:
            path, first = failed[0]
            raise UploadError(
                f"{len(failed)}/{len(chunks)} {record_type} batches failed (first in {path}): {first}"
            ) from first

        success = sum(results)
        batches = len(chunks)

        logger.debug(
            "Mixpanel upload complete",
            extra={"record_type": record_type, "files": len(files), "total": total, "success": success},
        )
        return {"record_type": record_type, "total": total, "success": success, "skipped": skipped, "batches": batches}
