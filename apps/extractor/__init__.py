"""
Extractor App - Stage 1: Slack Analytics to DayFiles

Responsibilities:
- One admin.analytics.getFile snapshot per day of the requested range
- Skip days whose DayFile already exists (resumable, idempotent)
- Keep only company members (email domain filter)
- Attach per-entity detail lookups under a run-wide cap (EnrichmentCache)
- Persist each day atomically as gzip JSON lines

Output:
- members/{date}-members.jsonl.gz
- channels/{date}-channels.jsonl.gz
"""
