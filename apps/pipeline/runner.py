"""
Pipeline Runner - Extract then Load per pipeline

Orchestrates one run:
1. Validate parameters (ValidationError before any I/O)
2. Compute the date window
3. Cache Slack listings needed by the load transforms (skipped for extract-only)
4. For each selected pipeline: extract (unless load-only), then load (unless extract-only)
5. Return a RunReport with timing, effective window and per-pipeline results

Usage:
    runner = PipelineRunner(slack, store, uploader, settings=settings)
    report = await runner.run({"days": 3, "pipelines": ["members"]})
"""

import logging
import random
import time
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from apps.extractor.extractor_job import AnalyticsSource, Extractor
from apps.loader.loader_job import Loader, Uploader
from apps.pipeline.params import get_date_range, parse_parameters
from utils.config import Settings
from utils.dates import date_range, iso_utc
from utils.schemas import PIPELINES, DateWindow, ExtractResult, LoadResult, RunParams, RunReport, Timing, day_file_path
from utils.storage import BlobStore

logger = logging.getLogger(__name__)


class PipelineSource(AnalyticsSource, Protocol):
    async def list_entities(self, kind: str) -> list[dict[str, Any]]: ...


def format_duration(seconds: float) -> str:
    """Human-readable duration, e.g. '1h 2m 3.4s'."""
    minutes, secs = divmod(seconds, 60)
    hours, minutes = divmod(int(minutes), 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if hours or minutes:
        parts.append(f"{minutes}m")
    parts.append(f"{secs:.1f}s")
    return " ".join(parts)


class PipelineRunner:
    """Runs the members/channels pipelines end to end."""

    def __init__(
        self,
        source: PipelineSource,
        store: BlobStore,
        uploader: Uploader,
        *,
        settings: Settings,
        rng: Optional[random.Random] = None,
    ) -> None:
        """
        Initialize runner.

        Args:
            source: Slack client (or a test double)
            store: Blob store for DayFiles
            uploader: Mixpanel uploader (or a test double)
            settings: Application settings
            rng: Random source for enrichment selection
        """
        self.source = source
        self.store = store
        self.settings = settings

        self.extractor = Extractor(
            source,
            store,
            company_domain=settings.COMPANY_DOMAIN,
            max_enrichment=settings.max_enrichment,
            enrichment_delay=(settings.ENRICHMENT_DELAY_MIN, settings.ENRICHMENT_DELAY_MAX),
            progress_every=settings.ENRICHMENT_PROGRESS_EVERY,
            rng=rng,
        )
        self.loader = Loader(
            uploader,
            store,
            slack_prefix=settings.SLACK_PREFIX,
            group_key=settings.CHANNEL_GROUP_KEY,
            manager_field_id=settings.SLACK_MANAGER_FIELD_ID,
            max_retries=settings.UPLOAD_MAX_RETRIES,
            retry_delay=settings.UPLOAD_RETRY_DELAY,
        )

    async def discover_files(self, kind: str, window: DateWindow) -> list[str]:
        """Existing DayFiles for a pipeline within the window, in date order."""
        files = []
        for date in date_range(window.simple_start, window.simple_end):
            relative_path = day_file_path(kind, date)
            if await self.store.exists(relative_path):
                files.append(self.store.resolve_full_path(relative_path))
        return files

    async def _load_context(self, params: RunParams) -> dict[str, Any]:
        context: dict[str, Any] = {"members": [], "channels": []}
        if params.extract_only:
            return context

        kinds = set(params.pipelines)
        # Channel profiles resolve their creator through the member listing
        if "channels" in kinds:
            kinds.add("members")

        for kind in PIPELINES:
            if kind not in kinds:
                continue
            context[kind] = await self.source.list_entities(kind)
            logger.debug("Cached %d Slack %s", len(context[kind]), kind)
        return context

    async def run(self, options: Optional[dict[str, Any]] = None, label: Optional[str] = None) -> RunReport:
        """
        Execute one pipeline run.

        Args:
            options: Raw run parameters (see parse_parameters)
            label: Name reported as RunReport.pipeline (defaults to the pipelines run)

        Returns:
            RunReport

        Raises:
            ValidationError: If the parameters are invalid
            StorageError: If DayFiles cannot be written
        """
        start_time = time.time()
        started_at = datetime.now(timezone.utc)

        params = parse_parameters(options)
        window = get_date_range(params, self.settings.ENVIRONMENT)
        mode = "Extract Only" if params.extract_only else "Load Only" if params.load_only else "Extract + Load"

        logger.info(
            "Pipeline run: %s to %s (%d days)",
            window.simple_start, window.simple_end, window.days,
            extra={
                "environment": "backfill" if params.backfill else self.settings.ENVIRONMENT,
                "pipelines": params.pipelines,
                "mode": mode,
                "cleanup": params.cleanup,
            },
        )

        context = await self._load_context(params)
        extract_results: dict[str, ExtractResult] = {}
        load_results: dict[str, LoadResult] = {}

        for kind in params.pipelines:
            if not params.load_only:
                extract_results[kind] = await self.extractor.extract(kind, window.simple_start, window.simple_end)

            if params.extract_only:
                continue

            if params.load_only:
                files = await self.discover_files(kind, window)
            else:
                files = extract_results[kind].files

            if not files:
                logger.warning("No %s files to load", kind)
                continue

            load_results[kind] = await self.loader.load(kind, files, context, cleanup=params.cleanup)

        elapsed = time.time() - start_time
        timing = Timing(
            start=iso_utc(started_at),
            end=iso_utc(datetime.now(timezone.utc)),
            duration_seconds=round(elapsed, 3),
            human=format_duration(elapsed),
        )
        logger.info("Pipeline complete: %s", timing.human, extra={"duration_seconds": timing.duration_seconds})

        return RunReport(
            pipeline=label or ("all" if len(params.pipelines) > 1 else params.pipelines[0]),
            timing=timing,
            params={"start_date": window.start, "end_date": window.end, "days": window.days},
            extract=extract_results,
            load=load_results,
        )
