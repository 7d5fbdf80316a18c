"""
Shared fixtures and test doubles.

FakeSlack and FakeUploader stand in for the network clients; DayFiles go to
a real LocalBlobStore under tmp_path. All sleeps are configured to zero.
"""

import random
from collections import defaultdict
from typing import Any, Optional

import pytest

from utils.config import Settings
from utils.errors import SlackApiError, UploadError
from utils.storage import LocalBlobStore


def member_record(user_id: str, date: str, email: Optional[str] = None, **metrics: Any) -> dict[str, Any]:
    return {
        "date": date,
        "user_id": user_id,
        "team_id": "T1",
        "email_address": email if email is not None else f"{user_id.lower()}@example.com",
        "is_active": True,
        "messages_posted": 3,
        **metrics,
    }


def channel_record(channel_id: str, date: str, **metrics: Any) -> dict[str, Any]:
    return {
        "date": date,
        "channel_id": channel_id,
        "team_id": "T1",
        "messages_posted_count": 7,
        **metrics,
    }


class FakeSlack:
    """In-memory Slack client.

    ``analytics`` maps (analytics_type, date) to that day's records.
    Dates listed in ``failing_days`` raise on fetch.
    """

    def __init__(
        self,
        analytics: Optional[dict[tuple[str, str], list[dict[str, Any]]]] = None,
        members: Optional[list[dict[str, Any]]] = None,
        channels: Optional[list[dict[str, Any]]] = None,
        failing_days: Optional[set[str]] = None,
        failing_details: Optional[set[str]] = None,
    ) -> None:
        self.analytics = analytics or {}
        self.listings = {"members": members or [], "channels": channels or []}
        self.failing_days = failing_days or set()
        self.failing_details = failing_details or set()

        self.fetch_calls: list[tuple[str, str, str]] = []
        self.detail_calls: list[tuple[str, str]] = []
        self.list_calls: list[str] = []

    async def fetch_daily_analytics(self, start_date: str, end_date: str, analytics_type: str = "member") -> list[dict[str, Any]]:
        self.fetch_calls.append((start_date, end_date, analytics_type))
        if start_date in self.failing_days:
            raise RuntimeError(f"boom on {start_date}")
        return [dict(record) for record in self.analytics.get((analytics_type, start_date), [])]

    async def get_entity_detail(self, kind: str, entity_id: str) -> dict[str, Any]:
        self.detail_calls.append((kind, entity_id))
        if entity_id in self.failing_details:
            raise SlackApiError("users.info" if kind == "members" else "conversations.info", "user_not_found")
        if kind == "members":
            return {"ok": True, "user": {"id": entity_id, "is_admin": False}, "profile": {"title": "Engineer"}}
        return {"ok": True, "channel": {"id": entity_id, "name": f"chan-{entity_id.lower()}"}}

    async def list_entities(self, kind: str) -> list[dict[str, Any]]:
        self.list_calls.append(kind)
        return self.listings[kind]


class FakeUploader:
    """Records upload calls and runs transforms over the stored DayFiles.

    ``fail_types`` makes every upload of those record types raise UploadError.
    """

    def __init__(self, store: LocalBlobStore, fail_types: Optional[set[str]] = None) -> None:
        self.store = store
        self.fail_types = fail_types or set()
        self.calls: list[dict[str, Any]] = []
        self.records: dict[str, list[dict[str, Any]]] = defaultdict(list)

    async def upload(self, files, *, record_type="event", group_key=None, transform=None, heavy_objects=None):
        self.calls.append({"files": list(files), "record_type": record_type, "group_key": group_key})
        if record_type in self.fail_types:
            raise UploadError(f"{record_type} upload rejected")

        total = 0
        for path in files:
            for raw in await self.store.read_full_path(path):
                record = transform(raw, heavy_objects or {}) if transform else raw
                if record is not None:
                    self.records[record_type].append(record)
                    total += 1
        return {"record_type": record_type, "total": total, "success": total}

    def count(self, record_type: str) -> int:
        return sum(1 for call in self.calls if call["record_type"] == record_type)


@pytest.fixture
def store(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(str(tmp_path / "data"))


@pytest.fixture
def rng() -> random.Random:
    return random.Random(42)


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        ENVIRONMENT="test",
        COMPANY_DOMAIN="example.com",
        MAX_ENRICHMENT=10,
        ENRICHMENT_DELAY_MIN=0.0,
        ENRICHMENT_DELAY_MAX=0.0,
        UPLOAD_RETRY_DELAY=0.0,
        SLACK_PREFIX="https://acme.slack.com/archives",
        LOCAL_STORAGE_DIR=str(tmp_path / "data"),
        STORAGE_PATH="",
    )
