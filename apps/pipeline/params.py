"""
Run Parameters - validation and date window

parse_parameters() turns a loosely-typed mapping (HTTP body + query string,
CLI options) into RunParams, raising ValidationError before any I/O happens.
get_date_range() turns RunParams into the concrete window to process.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from utils.config import DEFAULT_DAYS_BY_ENVIRONMENT
from utils.dates import DATE_FMT, DATE_RE, iso_utc
from utils.errors import ValidationError
from utils.schemas import PIPELINES, DateWindow, RunParams

BACKFILL_DAYS = 365 + 30
LOOKAHEAD_DAYS = 2

TRUE_VALUES = ("true", "1", "yes")

# Accepted spellings per option (query keys arrive lowercased)
OPTION_ALIASES = {
    "extract_only": ("extract_only", "extractOnly", "extractonly"),
    "load_only": ("load_only", "loadOnly", "loadonly"),
}


def as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in TRUE_VALUES


def _option(raw: dict[str, Any], name: str) -> Any:
    for key in OPTION_ALIASES.get(name, (name,)):
        if key in raw:
            return raw[key]
    return None


def _is_date(value: Any) -> bool:
    if not isinstance(value, str) or not DATE_RE.match(value):
        return False
    try:
        datetime.strptime(value, DATE_FMT)
    except ValueError:
        return False
    return True


def _parse_pipelines(value: Any) -> list[str]:
    if isinstance(value, str):
        value = [part.strip() for part in value.split(",") if part.strip()]
    if not value:
        return list(PIPELINES)

    unknown = [name for name in value if name not in PIPELINES]
    if unknown:
        raise ValidationError(
            f'Parameter "pipelines" contains unknown pipeline(s): {", ".join(map(str, unknown))}'
        )
    return list(dict.fromkeys(value))


def parse_parameters(raw: Optional[dict[str, Any]] = None) -> RunParams:
    """
    Validate run parameters.

    Args:
        raw: Mapping with any of backfill, days, start_date, end_date,
            pipelines, extractOnly/extract_only, loadOnly/load_only, cleanup

    Returns:
        RunParams

    Raises:
        ValidationError: On conflicting or malformed parameters
    """
    raw = dict(raw or {})
    days = raw.get("days")
    start_date = raw.get("start_date")
    end_date = raw.get("end_date")

    backfill = as_bool(raw.get("backfill"))
    if backfill and (days is not None or start_date is not None or end_date is not None):
        raise ValidationError(
            'Parameter "backfill" is mutually exclusive with "days", "start_date", and "end_date"'
        )

    if days is not None and (start_date is not None or end_date is not None):
        raise ValidationError(
            'Parameters "days" and "start_date/end_date" are mutually exclusive. Use one or the other.'
        )

    if days is not None:
        try:
            days = int(days)
        except (TypeError, ValueError):
            days = None
        if isinstance(raw.get("days"), bool) or days is None or days < 1:
            raise ValidationError('Parameter "days" must be a positive integer')

    for name, value in (("start_date", start_date), ("end_date", end_date)):
        if value and not _is_date(value):
            raise ValidationError(f'Parameter "{name}" must be in YYYY-MM-DD format')

    extract_only = as_bool(_option(raw, "extract_only"))
    load_only = as_bool(_option(raw, "load_only"))
    if extract_only and load_only:
        raise ValidationError('Parameters "extractOnly" and "loadOnly" are mutually exclusive')

    return RunParams(
        backfill=backfill,
        days=days,
        start_date=start_date or None,
        end_date=end_date or None,
        pipelines=_parse_pipelines(raw.get("pipelines")),
        extract_only=extract_only,
        load_only=load_only,
        cleanup=as_bool(raw.get("cleanup")),
    )


def _start_of_day(value: str) -> datetime:
    return datetime.strptime(value, DATE_FMT).replace(tzinfo=timezone.utc)


def get_date_range(params: RunParams, environment: str = "production", now: Optional[datetime] = None) -> DateWindow:
    """
    Compute the effective date window.

    Backfill covers BACKFILL_DAYS back to two days ahead. Otherwise the
    look-back comes from the environment default (or params.days), and an
    explicit start_date/end_date replaces the matching end of the window.

    Args:
        params: Validated run parameters
        environment: Deployment environment (dev, production, test, cloud, backfill)
        now: Reference time, defaults to the current UTC time

    Returns:
        DateWindow with ISO timestamps, YYYY-MM-DD bounds and the day count
    """
    now = now or datetime.now(timezone.utc)
    end = now + timedelta(days=LOOKAHEAD_DAYS)

    if params.backfill:
        start = now - timedelta(days=BACKFILL_DAYS)
        return DateWindow(
            start=iso_utc(start),
            end=iso_utc(end),
            simple_start=start.strftime(DATE_FMT),
            simple_end=end.strftime(DATE_FMT),
            days=BACKFILL_DAYS,
        )

    days = params.days or DEFAULT_DAYS_BY_ENVIRONMENT.get(environment, 5)
    start = now - timedelta(days=days)

    if params.start_date:
        start = _start_of_day(params.start_date)
    if params.end_date:
        end = _start_of_day(params.end_date)

    return DateWindow(
        start=iso_utc(start),
        end=iso_utc(end),
        simple_start=start.strftime(DATE_FMT),
        simple_end=end.strftime(DATE_FMT),
        days=int((end - start).total_seconds() / 86400),
    )
