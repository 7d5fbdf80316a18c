from datetime import datetime, timezone

import pytest

from apps.pipeline.params import BACKFILL_DAYS, get_date_range, parse_parameters
from utils.errors import ValidationError

NOW = datetime(2024, 3, 10, 12, 0, 0, tzinfo=timezone.utc)


class TestParseParameters:
    def test_defaults(self):
        params = parse_parameters({})

        assert params.backfill is False
        assert params.days is None
        assert params.pipelines == ["members", "channels"]
        assert params.extract_only is False
        assert params.load_only is False
        assert params.cleanup is False

    def test_days_and_start_date_are_mutually_exclusive(self):
        with pytest.raises(ValidationError, match="mutually exclusive"):
            parse_parameters({"days": 7, "start_date": "2024-01-01"})

    def test_days_and_end_date_are_mutually_exclusive(self):
        with pytest.raises(ValidationError, match="mutually exclusive"):
            parse_parameters({"days": 7, "end_date": "2024-01-01"})

    def test_backfill_excludes_days(self):
        with pytest.raises(ValidationError, match="mutually exclusive"):
            parse_parameters({"backfill": True, "days": 7})

    def test_backfill_string_excludes_dates(self):
        with pytest.raises(ValidationError, match="mutually exclusive"):
            parse_parameters({"backfill": "true", "start_date": "2024-01-01"})

    @pytest.mark.parametrize("days", ["abc", 0, -3, "0"])
    def test_days_must_be_positive_integer(self, days):
        with pytest.raises(ValidationError, match="positive integer"):
            parse_parameters({"days": days})

    def test_days_string_is_coerced(self):
        assert parse_parameters({"days": "7"}).days == 7

    @pytest.mark.parametrize("value", ["2024-1-1", "01/01/2024", "2024-13-01"])
    def test_start_date_format(self, value):
        with pytest.raises(ValidationError, match="YYYY-MM-DD"):
            parse_parameters({"start_date": value})

    def test_end_date_format(self):
        with pytest.raises(ValidationError, match="end_date"):
            parse_parameters({"end_date": "yesterday"})

    def test_extract_only_and_load_only_conflict(self):
        with pytest.raises(ValidationError, match="mutually exclusive"):
            parse_parameters({"extractOnly": True, "loadOnly": "true"})

    def test_lowercased_query_aliases(self):
        params = parse_parameters({"extractonly": "1", "cleanup": "yes"})

        assert params.extract_only is True
        assert params.cleanup is True

    def test_pipelines_from_comma_string(self):
        assert parse_parameters({"pipelines": "channels"}).pipelines == ["channels"]

    def test_unknown_pipeline_rejected(self):
        with pytest.raises(ValidationError, match="pipelines"):
            parse_parameters({"pipelines": ["members", "files"]})


class TestGetDateRange:
    def test_environment_default_days(self):
        window = get_date_range(parse_parameters({}), "dev", now=NOW)

        assert window.simple_start == "2024-03-09"
        assert window.simple_end == "2024-03-12"
        assert window.days == 3

    def test_production_default(self):
        window = get_date_range(parse_parameters({}), "production", now=NOW)

        assert window.simple_start == "2024-03-05"
        assert window.days == 7

    def test_unknown_environment_falls_back_to_five_days(self):
        window = get_date_range(parse_parameters({}), "staging", now=NOW)

        assert window.simple_start == "2024-03-05"

    def test_days_override(self):
        window = get_date_range(parse_parameters({"days": 14}), "dev", now=NOW)

        assert window.simple_start == "2024-02-25"
        assert window.days == 16

    def test_explicit_dates(self):
        window = get_date_range(
            parse_parameters({"start_date": "2024-01-01", "end_date": "2024-01-03"}), "production", now=NOW
        )

        assert window.simple_start == "2024-01-01"
        assert window.simple_end == "2024-01-03"
        assert window.start == "2024-01-01T00:00:00.000Z"
        assert window.days == 2

    def test_start_date_only_keeps_lookahead_end(self):
        window = get_date_range(parse_parameters({"start_date": "2024-03-01"}), "production", now=NOW)

        assert window.simple_start == "2024-03-01"
        assert window.simple_end == "2024-03-12"

    def test_backfill(self):
        window = get_date_range(parse_parameters({"backfill": True}), "production", now=NOW)

        assert window.days == BACKFILL_DAYS
        assert window.simple_end == "2024-03-12"
        assert window.simple_start == "2023-02-09"
        assert window.end == "2024-03-12T12:00:00.000Z"
