import asyncio
import gzip

import httpx
import orjson
import pytest
import respx

from utils.errors import UploadError
from utils.mixpanel import MixpanelUploader, remove_nulls

API = "https://mixpanel.test"


def make_uploader(store, **overrides):
    options = {"api_base": API, "workers": 4, "records_per_batch": 2}
    options.update(overrides)
    return MixpanelUploader("token-123", "secret-456", store, **options)


def event_transform(record, heavy):
    if not record.get("user_id"):
        return None
    return {"event": "daily user activity", "properties": {"distinct_id": record["user_id"], "note": record.get("note")}}


def test_remove_nulls():
    assert remove_nulls({"a": 1, "b": None, "c": 0}) == {"a": 1, "c": 0}


@respx.mock
@pytest.mark.asyncio
async def test_events_batched_gzipped_with_basic_auth(store):
    path = await store.write("members/2024-01-01-members.jsonl.gz", [{"user_id": f"U{i}"} for i in range(5)] + [{}])
    route = respx.post(f"{API}/import").mock(
        side_effect=lambda request: httpx.Response(
            200, json={"code": 200, "num_records_imported": len(orjson.loads(gzip.decompress(request.content)))}
        )
    )

    uploader = make_uploader(store)
    try:
        result = await uploader.upload([path], record_type="event", transform=event_transform)
    finally:
        await uploader.close()

    assert result == {"record_type": "event", "total": 5, "success": 5, "skipped": 1, "batches": 3}
    assert route.call_count == 3

    request = route.calls[0].request
    assert request.url.params["strict"] == "0"
    assert request.headers["Content-Encoding"] == "gzip"
    assert request.headers["Authorization"].startswith("Basic ")
    batch = orjson.loads(gzip.decompress(request.content))
    assert "note" not in batch[0]["properties"]


@respx.mock
@pytest.mark.asyncio
async def test_user_profiles_carry_token(store):
    path = await store.write("members/a.jsonl.gz", [{"$distinct_id": "a@example.com", "$set": {"x": 1, "y": None}}])
    route = respx.post(f"{API}/engage").mock(return_value=httpx.Response(200, json={"status": 1, "error": None}))

    uploader = make_uploader(store)
    try:
        result = await uploader.upload([path], record_type="user")
    finally:
        await uploader.close()

    assert result["success"] == 1
    sent = orjson.loads(route.calls[0].request.content)
    assert sent == [{"$distinct_id": "a@example.com", "$set": {"x": 1}, "$token": "token-123"}]


@respx.mock
@pytest.mark.asyncio
async def test_group_profiles_default_group_key(store):
    path = await store.write("channels/a.jsonl.gz", [{"$group_id": "C1", "$set": {"name": "#general"}}])
    route = respx.post(f"{API}/groups").mock(return_value=httpx.Response(200, json={"status": 1, "error": None}))

    uploader = make_uploader(store)
    try:
        await uploader.upload([path], record_type="group", group_key="channel_id")
    finally:
        await uploader.close()

    sent = orjson.loads(route.calls[0].request.content)
    assert sent[0]["$group_key"] == "channel_id"


@pytest.mark.asyncio
async def test_group_without_key_rejected(store):
    uploader = make_uploader(store)
    try:
        with pytest.raises(UploadError, match="Group key required"):
            await uploader.upload([], record_type="group")
    finally:
        await uploader.close()


@respx.mock
@pytest.mark.asyncio
async def test_server_errors_retried(store):
    path = await store.write("members/a.jsonl.gz", [{"user_id": "U1"}])
    route = respx.post(f"{API}/import").mock(
        side_effect=[
            httpx.Response(503),
            httpx.Response(200, json={"code": 200, "num_records_imported": 1}),
        ]
    )

    uploader = make_uploader(store)
    try:
        result = await uploader.upload([path], transform=event_transform)
    finally:
        await uploader.close()

    assert route.call_count == 2
    assert result["success"] == 1


@respx.mock
@pytest.mark.asyncio
async def test_rejected_batch_raises_upload_error(store):
    path = await store.write("members/a.jsonl.gz", [{"user_id": "U1"}])
    respx.post(f"{API}/import").mock(return_value=httpx.Response(400, json={"error": "bad time"}))

    uploader = make_uploader(store)
    try:
        with pytest.raises(UploadError, match="bad time"):
            await uploader.upload([path], transform=event_transform)
    finally:
        await uploader.close()


@respx.mock
@pytest.mark.asyncio
async def test_profile_status_zero_raises(store):
    path = await store.write("members/a.jsonl.gz", [{"$distinct_id": "a", "$set": {}}])
    respx.post(f"{API}/engage").mock(return_value=httpx.Response(200, json={"status": 0, "error": "invalid token"}))

    uploader = make_uploader(store)
    try:
        with pytest.raises(UploadError, match="invalid token"):
            await uploader.upload([path], record_type="user")
    finally:
        await uploader.close()


@pytest.mark.asyncio
async def test_batches_from_many_files_sent_concurrently(store):
    paths = [await store.write(f"members/2024-01-{day:02d}-members.jsonl.gz", [{"user_id": f"U{day}"}]) for day in range(1, 21)]
    in_flight = 0
    peak = 0

    async def handler(request):
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.01)
        in_flight -= 1
        return httpx.Response(200, json={"code": 200, "num_records_imported": 1})

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    uploader = make_uploader(store, workers=5, http=http)
    try:
        result = await uploader.upload(paths, transform=event_transform)
    finally:
        await http.aclose()

    assert result["success"] == 20
    assert result["batches"] == 20
    assert 1 < peak <= 5


@respx.mock
@pytest.mark.asyncio
async def test_one_failed_file_reported_once_after_all_batches(store):
    good = await store.write("members/2024-01-01-members.jsonl.gz", [{"user_id": "U1"}])
    bad = await store.write("members/2024-01-02-members.jsonl.gz", [{"user_id": "BAD"}])

    def respond(request):
        batch = orjson.loads(gzip.decompress(request.content))
        if batch[0]["properties"]["distinct_id"] == "BAD":
            return httpx.Response(400, json={"error": "invalid event"})
        return httpx.Response(200, json={"code": 200, "num_records_imported": 1})

    route = respx.post(f"{API}/import").mock(side_effect=respond)

    uploader = make_uploader(store)
    try:
        with pytest.raises(UploadError, match="1/2 event batches failed"):
            await uploader.upload([good, bad], transform=event_transform)
    finally:
        await uploader.close()

    assert route.call_count == 2
