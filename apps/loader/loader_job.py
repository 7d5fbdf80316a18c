"""
Load Job - DayFiles to Mixpanel

Uploads one pipeline's DayFiles in two phases:
1. Events (whole file list in one batched upload, retried)
2. User profiles (members) or group profiles (channels), only if events succeeded

With cleanup requested and both phases successful, the DayFiles are deleted
from the blob store afterwards (best-effort, per file).

Usage:
    loader = Loader(uploader, store, slack_prefix=settings.SLACK_PREFIX)
    result = await loader.load("members", files, {"members": slack_members})
"""

import logging
import time
from typing import Any, Optional, Protocol

from tenacity import AsyncRetrying, RetryError, stop_after_attempt, wait_incrementing

from apps.loader.transforms import (
    build_heavy_objects,
    transform_channel_event,
    transform_channel_profile,
    transform_member_event,
    transform_member_profile,
)
from utils.mixpanel import TransformFunc
from utils.schemas import PIPELINES, LoadResult, PhaseResult
from utils.storage import BlobStore

logger = logging.getLogger(__name__)

TRANSFORMS: dict[str, tuple[TransformFunc, TransformFunc]] = {
    "members": (transform_member_event, transform_member_profile),
    "channels": (transform_channel_event, transform_channel_profile),
}

PHASE_LABELS = {"event": "Events", "user": "User Profiles", "group": "Group Profiles"}


class Uploader(Protocol):
    """The part of MixpanelUploader the load stage depends on."""

    async def upload(
        self,
        files: list[str],
        *,
        record_type: str = "event",
        group_key: Optional[str] = None,
        transform: Optional[TransformFunc] = None,
        heavy_objects: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]: ...


class Loader:
    """Load stage for the members and channels pipelines."""

    def __init__(
        self,
        uploader: Uploader,
        store: BlobStore,
        *,
        slack_prefix: str = "",
        group_key: str = "channel_id",
        manager_field_id: str = "",
        max_retries: int = 3,
        retry_delay: float = 2.0,
    ) -> None:
        """
        Initialize loader.

        Args:
            uploader: Mixpanel uploader (or a test double)
            store: Blob store holding the DayFiles (used for cleanup)
            slack_prefix: Deep link prefix for transforms
            group_key: Mixpanel group key for channel profiles
            manager_field_id: Custom profile field resolved to a manager name
            max_retries: Attempts per upload phase
            retry_delay: Wait grows by this many seconds per attempt (2s, 4s, ...)
        """
        self.uploader = uploader
        self.store = store
        self.slack_prefix = slack_prefix
        self.group_key = group_key
        self.manager_field_id = manager_field_id
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    async def upload_batch(
        self,
        files: list[str],
        *,
        record_type: str,
        transform: TransformFunc,
        heavy_objects: dict[str, Any],
        group_key: Optional[str] = None,
    ) -> PhaseResult:
        """
        Upload a whole file list for one phase, retrying the entire batch.

        Never raises: the outcome (including the last error) is in the returned PhaseResult.
        """
        label = PHASE_LABELS[record_type]
        phase = PhaseResult(count=len(files))

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_incrementing(start=self.retry_delay, increment=self.retry_delay),
            before_sleep=lambda state: logger.error(
                "%s upload attempt %d/%d failed: %s",
                label, state.attempt_number, self.max_retries, state.outcome.exception(),
            ),
        )

        try:
            async for attempt in retrying:
                with attempt:
                    phase.attempts = attempt.retry_state.attempt_number
                    if phase.attempts == 1:
                        logger.debug("Uploading %s: %d files...", label, len(files))
                    else:
                        logger.debug("Retry %d/%d: %s", phase.attempts, self.max_retries, label)

                    phase.result = await self.uploader.upload(
                        files,
                        record_type=record_type,
                        group_key=group_key,
                        transform=transform,
                        heavy_objects=heavy_objects,
                    )
        except RetryError as e:
            error = e.last_attempt.exception()
            phase.error = str(error) if error else "Unknown error"
            logger.error("%s: %s", label, phase.error, extra={"attempts": phase.attempts})
            return phase

        phase.success = True
        logger.debug("%s: %d files uploaded", label, len(files))
        return phase

    async def cleanup(self, files: list[str]) -> int:
        """Delete uploaded DayFiles, returning how many were removed."""
        deleted = 0
        for path in files:
            if await self.store.delete(self.store.relative_path(path)):
                deleted += 1
            else:
                logger.warning("Failed to delete %s", path)

        logger.info("Cleanup complete: %d deleted, %d failed", deleted, len(files) - deleted)
        return deleted

    async def load(
        self, kind: str, files: list[str], context: dict[str, Any], cleanup: bool = False
    ) -> LoadResult:
        """
        Load one pipeline's DayFiles.

        Args:
            kind: 'members' or 'channels'
            files: DayFile full paths from the extract stage
            context: Slack entity listings {"members": [...], "channels": [...]}
            cleanup: Delete files after both phases succeed

        Returns:
            LoadResult; if events fail, profiles are skipped and failed == 2 * len(files)
        """
        spec = PIPELINES[kind]
        event_transform, profile_transform = TRANSFORMS[kind]
        total_files = len(files)
        result = LoadResult()

        if not files:
            logger.warning("No files to load for %s", kind)
            return result

        start_time = time.time()
        logger.info("Loading %s analytics: %d files to Mixpanel", kind, total_files)

        heavy_objects = build_heavy_objects(
            kind,
            context,
            slack_prefix=self.slack_prefix,
            group_key=self.group_key,
            manager_field_id=self.manager_field_id,
        )

        events = await self.upload_batch(
            files, record_type="event", transform=event_transform, heavy_objects=heavy_objects
        )
        result.results.events = events

        if not events.success:
            logger.error("Events upload failed for %s, skipping profiles", kind)
            result.failed = total_files * 2
            result.results.profiles.count = total_files
            return result

        profiles = await self.upload_batch(
            files,
            record_type=spec.profile_type,
            transform=profile_transform,
            heavy_objects=heavy_objects,
            group_key=self.group_key if spec.profile_type == "group" else None,
        )
        result.results.profiles = profiles

        if cleanup and profiles.success:
            logger.debug("Cleanup: deleting %d files...", total_files)
            result.deleted = await self.cleanup(files)

        result.uploaded = total_files + (total_files if profiles.success else 0)
        result.failed = 0 if profiles.success else total_files

        logger.info(
            "Load complete: %s",
            kind,
            extra={
                "pipeline": kind,
                "files": total_files,
                "uploaded": result.uploaded,
                "failed": result.failed,
                "deleted": result.deleted,
                "elapsed": round(time.time() - start_time, 3),
            },
        )
        return result
