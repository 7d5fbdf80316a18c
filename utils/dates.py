"""
Date helpers shared by the extract stage and the orchestrator.
"""

import re
from datetime import date, datetime, timedelta, timezone

DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
DATE_FMT = "%Y-%m-%d"
# Analytics days are stamped at this offset past UTC midnight
EVENT_TIME_OFFSET = timedelta(hours=4, minutes=20)


def parse_date(value: str) -> date:
    """Parse a YYYY-MM-DD string."""
    return datetime.strptime(value, DATE_FMT).date()


def date_range(start_date: str, end_date: str) -> list[str]:
    """Every calendar day from start_date to end_date inclusive, in order.

    Returns an empty list when end_date precedes start_date.
    """
    start = parse_date(start_date)
    end = parse_date(end_date)
    delta = (end - start).days
    return [(start + timedelta(days=i)).strftime(DATE_FMT) for i in range(delta + 1)]


def day_timestamp(value: str) -> int:
    """Unix seconds used as the event time for an analytics day."""
    midnight = datetime.strptime(value, DATE_FMT).replace(tzinfo=timezone.utc)
    return int((midnight + EVENT_TIME_OFFSET).timestamp())


def iso_utc(moment: datetime) -> str:
    """Format an aware datetime as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.") + (
        f"{moment.microsecond // 1000:03d}Z"
    )
