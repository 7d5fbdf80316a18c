"""
Pydantic Schemas - Pipeline Data Models

Defines the shapes that flow through the pipeline:
- Pipeline registry (which Slack analytics type / id field per entity pipeline)
- Run parameters and the computed date window
- Destination records (Mixpanel event, user profile, group profile)
- Extract and load results
- The run report returned to callers

Records themselves (AnalyticsRecord / EnrichedRecord) stay plain dicts: their
metric fields are whatever Slack's analytics file carries for that day.

Usage:
    from utils.schemas import PIPELINES, ExtractResult

    spec = PIPELINES["members"]
    result = ExtractResult(extracted=1, skipped=0, files=["/tmp/members/..."])
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

ENRICHED_KEY = "ENRICHED"

PipelineName = Literal["members", "channels"]


class PipelineSpec(BaseModel):
    """Static description of one entity pipeline."""

    name: PipelineName
    analytics_type: str = Field(..., description="Slack admin.analytics.getFile type")
    id_field: str = Field(..., description="Entity id field in analytics records")
    profile_type: Literal["user", "group"]


PIPELINES: dict[str, PipelineSpec] = {
    "members": PipelineSpec(
        name="members", analytics_type="member", id_field="user_id", profile_type="user"
    ),
    "channels": PipelineSpec(
        name="channels", analytics_type="public_channel", id_field="channel_id", profile_type="group"
    ),
}


def day_file_path(pipeline: str, date: str) -> str:
    """Relative DayFile path for one pipeline and day.

    This layout is the resumability checkpoint; changing it orphans every
    previously extracted day.
    """
    return f"{pipeline}/{date}-{pipeline}.jsonl.gz"


class DestinationEvent(BaseModel):
    """Mixpanel event. ``properties`` carries time, distinct_id and $insert_id."""

    event: str
    properties: dict[str, Any]


class UserProfile(BaseModel):
    """Mixpanel user profile update ($set only)."""

    model_config = ConfigDict(populate_by_name=True)

    distinct_id: str = Field(..., alias="$distinct_id")
    traits: dict[str, Any] = Field(..., alias="$set")


class GroupProfile(BaseModel):
    """Mixpanel group profile update ($set only)."""

    model_config = ConfigDict(populate_by_name=True)

    group_key: str = Field(..., alias="$group_key")
    group_id: str = Field(..., alias="$group_id")
    traits: dict[str, Any] = Field(..., alias="$set")


class RunParams(BaseModel):
    """Validated run parameters."""

    backfill: bool = False
    days: Optional[int] = Field(default=None, ge=1)
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    pipelines: list[PipelineName] = Field(default_factory=lambda: ["members", "channels"])
    extract_only: bool = False
    load_only: bool = False
    cleanup: bool = False


class DateWindow(BaseModel):
    """Effective date window of a run."""

    start: str = Field(..., description="ISO-8601 UTC timestamp")
    end: str = Field(..., description="ISO-8601 UTC timestamp")
    simple_start: str = Field(..., description="YYYY-MM-DD")
    simple_end: str = Field(..., description="YYYY-MM-DD")
    days: int


class ExtractResult(BaseModel):
    """Outcome of extracting one pipeline over a date range."""

    extracted: int = 0
    skipped: int = 0
    files: list[str] = Field(default_factory=list)


class PhaseResult(BaseModel):
    """Outcome of one upload phase (events or profiles)."""

    success: bool = False
    error: Optional[str] = None
    count: int = 0
    attempts: int = 0
    result: Optional[dict[str, Any]] = None


class LoadPhases(BaseModel):
    events: PhaseResult = Field(default_factory=PhaseResult)
    profiles: PhaseResult = Field(default_factory=PhaseResult)


class LoadResult(BaseModel):
    """Outcome of loading one pipeline's DayFiles to Mixpanel."""

    uploaded: int = 0
    failed: int = 0
    results: LoadPhases = Field(default_factory=LoadPhases)
    deleted: int = 0


class Timing(BaseModel):
    start: str
    end: str
    duration_seconds: float
    human: str


class RunReport(BaseModel):
    """Structured report of one pipeline run."""

    status: str = "success"
    pipeline: str
    timing: Timing
    params: dict[str, Any]
    extract: dict[str, ExtractResult] = Field(default_factory=dict)
    load: dict[str, LoadResult] = Field(default_factory=dict)
