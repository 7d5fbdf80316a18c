"""
Extract Job - Slack analytics to DayFiles

For every day of a date range, fetch that day's analytics snapshot, filter,
enrich and persist it as one DayFile. Days whose DayFile already exists are
skipped without any network call, so re-running a range is cheap and safe.

Usage:
    extractor = Extractor(slack, store, company_domain="example.com", max_enrichment=10)
    result = await extractor.extract("members", "2024-01-01", "2024-01-03")
"""

import logging
import random
import time
from typing import Any, Optional, Protocol

from apps.extractor.enrichment import EnrichmentCache
from utils.dates import date_range
from utils.errors import EnrichmentError, SlackApiError, StorageError
from utils.schemas import PIPELINES, ExtractResult, PipelineSpec, day_file_path
from utils.storage import BlobStore

logger = logging.getLogger(__name__)


class AnalyticsSource(Protocol):
    """The part of SlackClient the extract stage depends on."""

    async def fetch_daily_analytics(
        self, start_date: str, end_date: str, analytics_type: str = "member"
    ) -> list[dict[str, Any]]: ...

    async def get_entity_detail(self, kind: str, entity_id: str) -> dict[str, Any]: ...


class Extractor:
    """Extract stage for the members and channels pipelines."""

    def __init__(
        self,
        source: AnalyticsSource,
        store: BlobStore,
        *,
        company_domain: str = "",
        max_enrichment: int = 10,
        enrichment_delay: tuple[float, float] = (0.1, 0.3),
        progress_every: int = 250,
        rng: Optional[random.Random] = None,
    ) -> None:
        """
        Initialize extractor.

        Args:
            source: Slack client (or a test double)
            store: Blob store for DayFiles
            company_domain: Keep only members whose email ends with @company_domain
            max_enrichment: Detail lookups allowed per extract call
            enrichment_delay: (min, max) seconds slept before each detail lookup
            progress_every: Enrichment progress log interval
            rng: Random source for enrichment selection
        """
        self.source = source
        self.store = store
        self.company_domain = company_domain
        self.max_enrichment = max_enrichment
        self.enrichment_delay = enrichment_delay
        self.progress_every = progress_every
        self.rng = rng

    def filter_records(self, spec: PipelineSpec, records: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Apply entity-specific filtering (member email domain)."""
        if spec.name != "members" or not self.company_domain:
            return records

        suffix = f"@{self.company_domain}"
        return [r for r in records if r.get("email_address") and r["email_address"].endswith(suffix)]

    def _new_cache(self, spec: PipelineSpec) -> EnrichmentCache:
        async def fetch(entity_id: str) -> dict[str, Any]:
            try:
                return await self.source.get_entity_detail(spec.name, entity_id)
            except SlackApiError as e:
                raise EnrichmentError(e.error) from e

        return EnrichmentCache(
            fetch,
            id_field=spec.id_field,
            max_enrichment=self.max_enrichment,
            delay=self.enrichment_delay,
            rng=self.rng,
            progress_every=self.progress_every,
            label=spec.name,
        )

    async def extract(self, kind: str, start_date: str, end_date: str) -> ExtractResult:
        """
        Extract one pipeline over an inclusive date range.

        Args:
            kind: 'members' or 'channels'
            start_date: First day (YYYY-MM-DD)
            end_date: Last day (YYYY-MM-DD)

        Returns:
            ExtractResult with extracted/skipped counts and every DayFile path in range order

        Raises:
            StorageError: If the blob store cannot be written (fatal)
        """
        spec = PIPELINES[kind]
        days = date_range(start_date, end_date)
        total_days = len(days)
        start_time = time.time()

        logger.debug("%s analytics: %d days (%s to %s)", kind, total_days, start_date, end_date)

        result = ExtractResult()
        cache = self._new_cache(spec)

        for current, date in enumerate(days, 1):
            progress = f"[{current}/{total_days}]"
            file_path = day_file_path(kind, date)

            if await self.store.exists(file_path):
                logger.debug("%s %s (cached)", progress, date)
                result.skipped += 1
                result.files.append(self.store.resolve_full_path(file_path))
                continue

            try:
                data = await self.source.fetch_daily_analytics(date, date, spec.analytics_type)
            except Exception as e:
                logger.error("%s %s: %s", progress, date, str(e), extra={"pipeline": kind, "date": date})
                continue

            if not data:
                logger.debug("%s %s: No data", progress, date)
                continue

            filtered = self.filter_records(spec, data)
            if not filtered:
                logger.debug("%s %s: No @%s users", progress, date, self.company_domain)
                continue

            logger.info("Enriching %d %s records for %s", len(filtered), kind, date)
            try:
                enriched = await cache.enrich(filtered)
            except Exception as e:
                logger.error("%s %s: enrichment failed: %s", progress, date, str(e), extra={"pipeline": kind})
                continue

            try:
                written = await self.store.write(file_path, enriched)
            except StorageError:
                logger.error("%s %s: storage write failed, aborting extract", progress, date, exc_info=True)
                raise

            logger.debug("%s %s: %d/%d records", progress, date, len(filtered), len(data))
            result.extracted += 1
            result.files.append(written)

        elapsed_time = time.time() - start_time
        logger.info(
            "Extract complete: %s",
            kind,
            extra={
                "pipeline": kind,
                "extracted": result.extracted,
                "skipped": result.skipped,
                "files": len(result.files),
                "date_range": f"{start_date} to {end_date}",
                "detail_lookups": cache.lookups,
                "elapsed": round(elapsed_time, 3),
            },
        )
        return result
