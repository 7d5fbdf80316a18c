"""
Pipeline error taxonomy.

Per-unit errors (one day, one entity, one file) are caught close to where
they happen and turned into counters and log lines. Only errors that make the
whole run meaningless propagate to the orchestrator.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(PipelineError):
    """Malformed or conflicting run parameters. Raised before any I/O."""


class SlackApiError(PipelineError):
    """Slack answered ``ok: false`` with an error code we do not handle."""

    def __init__(self, method: str, error: str) -> None:
        super().__init__(f"Slack {method} failed: {error}")
        self.method = method
        self.error = error


class TransientSourceError(SlackApiError):
    """Known empty-data condition (data not yet available, file not found)."""


class RateLimitError(SlackApiError):
    """Slack rate limit (HTTP 429 or ``ratelimited``)."""

    def __init__(self, method: str, retry_after: Optional[float] = None) -> None:
        super().__init__(method, "ratelimited")
        self.retry_after = retry_after


class EnrichmentError(PipelineError):
    """A single entity detail lookup failed."""


class UploadError(PipelineError):
    """A Mixpanel upload failed."""


class StorageError(PipelineError):
    """Blob store read or write failed."""
