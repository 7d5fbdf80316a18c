import pytest

from apps.pipeline.runner import PipelineRunner, format_duration
from tests.conftest import FakeSlack, FakeUploader, channel_record, member_record
from utils.errors import ValidationError

DAYS = ["2024-01-01", "2024-01-02"]
WINDOW = {"start_date": "2024-01-01", "end_date": "2024-01-02"}


def analytics():
    data = {}
    for day in DAYS:
        data[("member", day)] = [member_record("U1", day), member_record("U2", day)]
        data[("public_channel", day)] = [channel_record("C1", day)]
    return data


def make_runner(test_settings, store, rng, **fakes):
    source = fakes.get("source") or FakeSlack(
        analytics=analytics(),
        members=[{"id": "U1", "real_name": "Ada Lovelace", "profile": {}}],
        channels=[{"id": "C1", "name": "general"}],
    )
    uploader = fakes.get("uploader") or FakeUploader(store)
    runner = PipelineRunner(source, store, uploader, settings=test_settings, rng=rng)
    return runner, source, uploader


@pytest.mark.asyncio
async def test_full_run(test_settings, store, rng):
    runner, source, uploader = make_runner(test_settings, store, rng)

    report = await runner.run(dict(WINDOW))

    assert report.status == "success"
    assert report.pipeline == "all"
    assert report.params == {"start_date": "2024-01-01T00:00:00.000Z", "end_date": "2024-01-02T00:00:00.000Z", "days": 1}
    assert report.extract["members"].extracted == 2
    assert report.extract["channels"].extracted == 2
    assert report.load["members"].uploaded == 4
    assert report.load["channels"].uploaded == 4
    assert sorted(source.list_calls) == ["channels", "members"]
    assert [c["record_type"] for c in uploader.calls] == ["event", "user", "event", "group"]
    assert report.timing.duration_seconds >= 0


@pytest.mark.asyncio
async def test_validation_error_before_any_io(test_settings, store, rng):
    runner, source, uploader = make_runner(test_settings, store, rng)

    with pytest.raises(ValidationError, match="mutually exclusive"):
        await runner.run({"days": 7, "start_date": "2024-01-01"})

    assert source.list_calls == []
    assert source.fetch_calls == []
    assert uploader.calls == []


@pytest.mark.asyncio
async def test_extract_only_skips_listings_and_load(test_settings, store, rng):
    runner, source, uploader = make_runner(test_settings, store, rng)

    report = await runner.run({**WINDOW, "pipelines": ["members"], "extractOnly": True})

    assert report.pipeline == "members"
    assert report.extract["members"].extracted == 2
    assert report.load == {}
    assert source.list_calls == []
    assert uploader.calls == []


@pytest.mark.asyncio
async def test_load_only_discovers_existing_files(test_settings, store, rng):
    runner, source, uploader = make_runner(test_settings, store, rng)
    await runner.run({**WINDOW, "pipelines": ["members"], "extractOnly": True})
    source.fetch_calls.clear()

    report = await runner.run({**WINDOW, "pipelines": ["members"], "loadOnly": True})

    assert source.fetch_calls == []
    assert report.extract == {}
    assert report.load["members"].uploaded == 4
    assert uploader.calls[0]["files"] == [store.resolve_full_path(f"members/{d}-members.jsonl.gz") for d in DAYS]


@pytest.mark.asyncio
async def test_no_files_skips_load(test_settings, store, rng):
    runner, source, uploader = make_runner(test_settings, store, rng, source=FakeSlack())

    report = await runner.run(dict(WINDOW))

    assert report.load == {}
    assert uploader.calls == []


@pytest.mark.asyncio
async def test_cleanup_removes_dayfiles(test_settings, store, rng):
    runner, _, _ = make_runner(test_settings, store, rng)

    report = await runner.run({**WINDOW, "pipelines": "channels", "cleanup": "true"})

    assert report.load["channels"].deleted == 2
    assert not await store.exists("channels/2024-01-01-channels.jsonl.gz")


@pytest.mark.asyncio
async def test_channels_run_resolves_creator_from_member_listing(test_settings, store, rng):
    source = FakeSlack(
        analytics=analytics(),
        members=[{"id": "U1", "real_name": "Ada Lovelace", "profile": {}}],
        channels=[{"id": "C1", "name": "general", "creator": "U1"}],
    )
    runner, _, uploader = make_runner(test_settings, store, rng, source=source)

    await runner.run({**WINDOW, "pipelines": "channels"})

    assert sorted(source.list_calls) == ["channels", "members"]
    groups = uploader.records["group"]
    assert groups
    assert all(group["$set"]["creator"] == "Ada Lovelace" for group in groups)


def test_format_duration():
    assert format_duration(3.4) == "3.4s"
    assert format_duration(65) == "1m 5.0s"
    assert format_duration(3725.5) == "1h 2m 5.5s"
