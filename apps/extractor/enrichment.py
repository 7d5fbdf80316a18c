"""
Entity Enrichment Cache

Attaches a full Slack detail object (``ENRICHED``) to analytics records.
One cache instance lives for one extract call and is shared by every day in
the range, so MAX_ENRICHMENT caps detail lookups per run, not per day.

When the cap cannot cover every entity, the uncached ids are shuffled before
the cap is applied. Repeated daily runs therefore spread enrichment over the
whole workspace instead of always picking the same first N entities.
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

from utils.schemas import ENRICHED_KEY

logger = logging.getLogger(__name__)

DetailFetcher = Callable[[str], Awaitable[dict[str, Any]]]


class EnrichmentCache:
    """Run-scoped memo of entity detail lookups with a global cap."""

    def __init__(
        self,
        fetch_detail: DetailFetcher,
        *,
        id_field: str,
        max_enrichment: int,
        delay: tuple[float, float] = (0.1, 0.3),
        rng: Optional[random.Random] = None,
        progress_every: int = 250,
        label: str = "entities",
    ) -> None:
        """
        Initialize the cache.

        Args:
            fetch_detail: Coroutine returning the detail object for one id
            id_field: Record field holding the entity id (user_id / channel_id)
            max_enrichment: Maximum number of ids ever looked up by this cache
            delay: (min, max) seconds slept before each lookup
            rng: Random source for shuffling and delays
            progress_every: Log progress every N lookups
            label: Entity noun used in log lines
        """
        self.fetch_detail = fetch_detail
        self.id_field = id_field
        self.max_enrichment = max_enrichment
        self.delay = delay
        self.rng = rng or random.Random()
        self.progress_every = progress_every
        self.label = label

        self.details: dict[str, dict[str, Any]] = {}
        self.lookups = 0

    def __len__(self) -> int:
        return len(self.details)

    def _merge(self, records: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [{**record, ENRICHED_KEY: self.details.get(record.get(self.id_field))} for record in records]

    async def enrich(self, records: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """
        Return a copy of every record with an ``ENRICHED`` key.

        Records whose id was not looked up (cap reached, not selected) get
        ``ENRICHED: None``; failed lookups get ``{"error": message}``.

        Args:
            records: Analytics records for one day

        Returns:
            Enriched records, same order and length as the input
        """
        if not records:
            return []

        unique_ids = list(dict.fromkeys(r[self.id_field] for r in records if r.get(self.id_field)))
        uncached = [entity_id for entity_id in unique_ids if entity_id not in self.details]

        remaining_slots = self.max_enrichment - len(self.details)
        if remaining_slots <= 0:
            if uncached:
                logger.debug(
                    "MAX_ENRICHMENT limit (%d) reached, skipping %d %s",
                    self.max_enrichment, len(uncached), self.label,
                )
            return self._merge(records)

        if not uncached:
            logger.debug("All %d %s already cached", len(unique_ids), self.label)
            return self._merge(records)

        self.rng.shuffle(uncached)
        to_fetch = uncached[:remaining_slots]
        skipped = len(uncached) - len(to_fetch)
        if skipped:
            logger.debug(
                "Limiting to %d %s (%d skipped due to MAX_ENRICHMENT=%d)",
                len(to_fetch), self.label, skipped, self.max_enrichment,
            )

        logger.debug(
            "Fetching details for %d new %s (%d cached)",
            len(to_fetch), self.label, len(unique_ids) - len(uncached),
        )

        # One lookup in flight at a time
        for done, entity_id in enumerate(to_fetch, 1):
            await asyncio.sleep(self.rng.uniform(*self.delay))
            self.lookups += 1
            try:
                self.details[entity_id] = await self.fetch_detail(entity_id)
            except Exception as e:
                logger.debug("Failed to fetch %s detail for %s: %s", self.label, entity_id, str(e))
                self.details[entity_id] = {"error": str(e)}

            if done % self.progress_every == 0 or done == len(to_fetch):
                logger.info("Enrichment progress: %d/%d %s", done, len(to_fetch), self.label)

        return self._merge(records)
