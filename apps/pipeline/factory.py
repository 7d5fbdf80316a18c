"""
Runner Factory - wiring of real clients

Constructs the Slack client, blob store and Mixpanel uploader from settings
and hands them to a PipelineRunner. Everything below this module receives
its collaborators explicitly, so tests can substitute fakes.

Usage:
    async with open_runner(settings) as runner:
        report = await runner.run({"days": 1})
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from apps.pipeline.runner import PipelineRunner
from utils.config import Settings, get_settings
from utils.mixpanel import MixpanelUploader
from utils.slack import SlackClient
from utils.storage import create_blob_store

logger = logging.getLogger(__name__)


def build_runner(settings: Settings) -> PipelineRunner:
    """Construct a runner with real clients. No network I/O happens here."""
    store = create_blob_store(settings)

    slack = SlackClient(
        settings.SLACK_BOT_TOKEN,
        settings.SLACK_USER_TOKEN,
        base_url=settings.SLACK_API_BASE,
        timeout=settings.API_TIMEOUT,
        concurrency=settings.CONCURRENCY,
        analytics_delay=(settings.ANALYTICS_DELAY_MIN, settings.ANALYTICS_DELAY_MAX),
        rate_limit_backoff=settings.RATE_LIMIT_BACKOFF,
        rate_limit_retries=settings.RATE_LIMIT_RETRIES,
    )
    uploader = MixpanelUploader(
        settings.MIXPANEL_TOKEN,
        settings.MIXPANEL_SECRET,
        store,
        api_base=settings.MIXPANEL_API_BASE,
        workers=settings.MIXPANEL_WORKERS,
        records_per_batch=settings.MIXPANEL_RECORDS_PER_BATCH,
        timeout=settings.API_TIMEOUT,
    )
    return PipelineRunner(slack, store, uploader, settings=settings)


@asynccontextmanager
async def open_runner(settings: Optional[Settings] = None) -> AsyncIterator[PipelineRunner]:
    """
    Build a runner, validate Slack credentials, and close HTTP clients on exit.

    Raises:
        SlackApiError: If either Slack token is rejected
    """
    settings = settings or get_settings()
    runner = build_runner(settings)
    slack = runner.source
    uploader = runner.loader.uploader

    try:
        await slack.initialize()
        yield runner
    finally:
        await slack.close()
        await uploader.close()
        logger.debug("Pipeline clients closed")
