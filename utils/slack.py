"""
Slack Web API Client

Async access to the parts of the Slack Web API the pipeline needs:
directory listings (users, channels), per-entity detail lookups, and the
per-day admin analytics file.

Features:
- Cursor pagination for users.list / conversations.list, cached per client
- Per-day analytics fetch with bounded concurrency and jittered pacing
- Known empty-data error codes mapped to empty days
- Rate limits (HTTP 429 / ratelimited) handled with a long fixed backoff and retry

Usage:
    async with SlackClient(bot_token, user_token) as slack:
        await slack.initialize()
        records = await slack.fetch_daily_analytics("2024-01-01", "2024-01-01", "member")
"""

import asyncio
import gzip
import logging
import random
from collections.abc import AsyncIterator
from typing import Any, Optional

import httpx
import orjson
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from utils.dates import date_range
from utils.errors import RateLimitError, SlackApiError, TransientSourceError

logger = logging.getLogger(__name__)

# admin.analytics.getFile error codes that just mean "no data for that day (yet)"
EMPTY_DATA_ERRORS = frozenset({"data_not_available", "file_not_yet_available", "file_not_found"})

LIST_METHODS: dict[str, tuple[str, str, dict[str, Any]]] = {
    "members": ("users.list", "members", {"limit": 1000, "include_locale": "true"}),
    "channels": ("conversations.list", "channels", {"limit": 1000, "exclude_archived": "true"}),
}


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class SlackClient:
    """Slack Web API client with pacing tuned to the analytics endpoints."""

    def __init__(
        self,
        bot_token: str,
        user_token: str,
        *,
        base_url: str = "https://slack.com/api",
        timeout: float = 30.0,
        concurrency: int = 2,
        analytics_delay: tuple[float, float] = (1.5, 3.0),
        rate_limit_backoff: float = 60.0,
        rate_limit_retries: int = 1,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize Slack client.

        Args:
            bot_token: Bot token (auth, detail lookups)
            user_token: Admin user token (listings, analytics files)
            base_url: Web API base URL
            timeout: Per-request timeout in seconds
            concurrency: Analytics days in flight at once
            analytics_delay: (min, max) seconds slept after every analytics request
            rate_limit_backoff: Seconds slept after a rate-limit response
            rate_limit_retries: Extra attempts for a rate-limited day
            http: Optional shared httpx.AsyncClient (owned by caller)
        """
        self.bot_token = bot_token
        self.user_token = user_token
        self.base_url = base_url.rstrip("/")
        self.analytics_delay = analytics_delay
        self.rate_limit_backoff = rate_limit_backoff
        self.rate_limit_retries = rate_limit_retries

        self._owns_client = http is None
        self._client = http or httpx.AsyncClient(timeout=timeout)
        self._semaphore = asyncio.Semaphore(concurrency)
        self._list_cache: dict[str, list[dict[str, Any]]] = {}
        self._list_locks: dict[str, asyncio.Lock] = {kind: asyncio.Lock() for kind in LIST_METHODS}

    async def __aenter__(self) -> "SlackClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    async def _call(self, method: str, token: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """
        Call a Web API method and return its payload.

        Raises:
            RateLimitError: HTTP 429 or ``ratelimited``
            SlackApiError: ``ok: false`` with any other error code
            httpx.HTTPError: Transport or non-2xx failures
        """
        response = await self._client.post(
            f"{self.base_url}/{method}",
            data=params or {},
            headers={"Authorization": f"Bearer {token}"},
        )

        if response.status_code == 429:
            raise RateLimitError(method, _parse_retry_after(response.headers.get("Retry-After")))
        response.raise_for_status()

        payload = response.json()
        if not payload.get("ok"):
            error = payload.get("error", "unknown_error")
            if error == "ratelimited":
                raise RateLimitError(method)
            raise SlackApiError(method, error)
        return payload

    async def initialize(self) -> dict[str, Any]:
        """
        Validate both tokens.

        Returns:
            {"ready": True, "user_auth": ..., "bot_auth": ...}

        Raises:
            SlackApiError: If either token is rejected
        """
        user_auth = await self.test_auth("user")
        bot_auth = await self.test_auth("bot")
        logger.info("Slack service initialized", extra={"team": bot_auth.get("team")})
        return {"ready": True, "user_auth": user_auth, "bot_auth": bot_auth}

    async def test_auth(self, role: str = "bot") -> dict[str, Any]:
        """
        Test a token with auth.test.

        Args:
            role: 'bot' or 'user'

        Returns:
            auth.test payload ({ok, user, team, url, ...})
        """
        token = self.user_token if role == "user" else self.bot_token
        if not token:
            raise SlackApiError("auth.test", f"missing_{role}_token")

        try:
            response = await self._call("auth.test", token)
        except Exception as e:
            logger.error("Slack %s token validation failed: %s", role, str(e))
            raise

        logger.info("Slack %s token validated", role)
        return response

    async def list_entities(self, kind: str) -> list[dict[str, Any]]:
        """
        Full paginated listing of users or channels, cached for the client's life.

        Args:
            kind: 'members' or 'channels'

        Returns:
            List of Slack user or channel objects
        """
        if kind not in LIST_METHODS:
            raise ValueError(f"Unknown entity kind: {kind}")

        async with self._list_locks[kind]:
            if kind in self._list_cache:
                return self._list_cache[kind]

            method, key, base_params = LIST_METHODS[kind]
            entities: list[dict[str, Any]] = []
            cursor = ""

            while True:
                params = {**base_params, **({"cursor": cursor} if cursor else {})}
                response = await self._call(method, self.user_token, params)
                entities.extend(response.get(key, []))

                cursor = (response.get("response_metadata") or {}).get("next_cursor", "")
                if not cursor:
                    break

            self._list_cache[kind] = entities
            logger.info("Cached %d Slack %s", len(entities), kind)
            return entities

    async def get_entity_detail(self, kind: str, entity_id: str) -> dict[str, Any]:
        """
        Deep lookup of one user (info + profile) or channel.

        Args:
            kind: 'members' or 'channels'
            entity_id: Slack user or channel id

        Returns:
            {"ok": True, "user": ..., "profile": ...} or {"ok": True, "channel": ...}
        """
        if kind == "members":
            info = await self._call("users.info", self.bot_token, {"user": entity_id, "include_locale": "true"})
            profile = await self._call("users.profile.get", self.bot_token, {"user": entity_id})
            return {"ok": True, "user": info.get("user", {}), "profile": profile.get("profile", {})}

        if kind == "channels":
            info = await self._call(
                "conversations.info", self.bot_token, {"channel": entity_id, "include_num_members": "true"}
            )
            return {"ok": True, "channel": info.get("channel", {})}

        raise ValueError(f"Unknown entity kind: {kind}")

    async def _get_analytics_file(self, date: str, analytics_type: str) -> list[dict[str, Any]]:
        """Single admin.analytics.getFile request for one day."""
        method = "admin.analytics.getFile"
        response = await self._client.post(
            f"{self.base_url}/{method}",
            data={"date": date, "type": analytics_type},
            headers={"Authorization": f"Bearer {self.user_token}"},
        )

        if response.status_code == 429:
            raise RateLimitError(method, _parse_retry_after(response.headers.get("Retry-After")))
        response.raise_for_status()

        # Errors come back as JSON, data as a gzipped JSON-lines file
        if response.headers.get("content-type", "").startswith("application/json"):
            payload = response.json()
            error = payload.get("error", "unknown_error")
            if error == "ratelimited":
                raise RateLimitError(method)
            if error in EMPTY_DATA_ERRORS:
                raise TransientSourceError(method, error)
            raise SlackApiError(method, error)

        content = response.content
        if content[:2] == b"\x1f\x8b":
            content = gzip.decompress(content)
        return [orjson.loads(line) for line in content.splitlines() if line.strip()]

    async def _fetch_day(self, date: str, analytics_type: str) -> list[dict[str, Any]]:
        """Fetch one day with pacing, empty-data mapping and rate-limit retry."""
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(RateLimitError),
            stop=stop_after_attempt(self.rate_limit_retries + 1),
            wait=wait_fixed(self.rate_limit_backoff),
            before_sleep=lambda state: logger.warning(
                "Rate limited on %s, waiting %ss before retrying", date, self.rate_limit_backoff
            ),
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                async with self._semaphore:
                    try:
                        records = await self._get_analytics_file(date, analytics_type)
                    except TransientSourceError as e:
                        logger.debug("No analytics for %s (%s)", date, e.error)
                        records = []
                    finally:
                        await asyncio.sleep(random.uniform(*self.analytics_delay))
        return records

    async def fetch_daily_analytics(
        self, start_date: str, end_date: str, analytics_type: str = "member"
    ) -> list[dict[str, Any]]:
        """
        Fetch analytics records for every day in a range.

        Args:
            start_date: First day (YYYY-MM-DD)
            end_date: Last day (YYYY-MM-DD), inclusive
            analytics_type: 'member', 'public_channel' or 'private_channel'

        Returns:
            All records, ordered by day

        Raises:
            RateLimitError: If a day stays rate limited past the retry budget
            SlackApiError: For unexpected Slack errors
        """
        days = date_range(start_date, end_date)
        logger.debug("Fetching %d days of %s analytics (%s to %s)", len(days), analytics_type, start_date, end_date)

        per_day = await asyncio.gather(*(self._fetch_day(day, analytics_type) for day in days))
        return [record for records in per_day for record in records]

    async def iter_daily_analytics(
        self, start_date: str, end_date: str, analytics_type: str = "member"
    ) -> AsyncIterator[dict[str, Any]]:
        """Streamed variant of fetch_daily_analytics, yielding records day by day in order."""
        tasks = [asyncio.create_task(self._fetch_day(day, analytics_type)) for day in date_range(start_date, end_date)]
        try:
            for task in tasks:
                for record in await task:
                    yield record
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
