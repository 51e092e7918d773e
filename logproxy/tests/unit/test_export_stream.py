from __future__ import annotations

import gzip
import json

import pytest

from logproxy.core.config import Settings
from logproxy.domain.models import PiiRule
from logproxy.services.export_stream import ExportState, ExportStreamer, estimate_export
from logproxy.services.search_executor import SearchExecutor
from logproxy.tests.utils.search_engine import FakeSearchEngine, hit


def _streamer(engine: FakeSearchEngine, **overrides) -> ExportStreamer:
    params = {
        "index_pattern": "logs-*",
        "query": {"match_all": {}},
        "size": 100,
        "export_format": "json",
        "pii_rules": [],
        "pii_unmasked": False,
        "batch_size": 2,
        "scroll_ttl": "1m",
    }
    params.update(overrides)
    executor = SearchExecutor(Settings(search_url="http://search.test"), client=engine.client())
    return ExportStreamer(executor, **params)


async def _collect(streamer: ExportStreamer) -> str:
    chunks = [chunk async for chunk in streamer.stream()]
    return gzip.decompress(b"".join(chunks)).decode("utf-8")


@pytest.mark.asyncio
async def test_empty_export_writes_json_placeholder_and_completes() -> None:
    engine = FakeSearchEngine(batches=[[]])
    streamer = _streamer(engine)
    body = await _collect(streamer)
    assert body == '{"message": "No logs found"}\n'
    assert streamer.state is ExportState.COMPLETED
    assert streamer.exported == 0


@pytest.mark.asyncio
async def test_empty_export_writes_csv_placeholder() -> None:
    streamer = _streamer(FakeSearchEngine(batches=[[]]), export_format="csv")
    assert await _collect(streamer) == '"message"\n"No logs found"\n'
    assert streamer.state is ExportState.COMPLETED


@pytest.mark.asyncio
async def test_scroll_stops_at_requested_size() -> None:
    engine = FakeSearchEngine(
        batches=[
            [hit({"n": 1}), hit({"n": 2})],
            [hit({"n": 3}), hit({"n": 4})],
            [hit({"n": 5}), hit({"n": 6})],
        ]
    )
    completed: list[int] = []
    streamer = _streamer(engine, size=3, on_complete=completed.append)
    body = await _collect(streamer)
    assert [json.loads(line)["n"] for line in body.splitlines()] == [1, 2, 3]
    assert streamer.state is ExportState.COMPLETED
    assert completed == [3]
    initial = engine.calls_to("/_search")[0]
    assert initial["params"] == {"scroll": "1m"}
    assert initial["body"]["size"] == 2
    assert [sort_key for entry in initial["body"]["sort"] for sort_key in entry] == ["timestamp", "@timestamp"]
    scrolls = [call for call in engine.calls_to("/_search/scroll") if call["method"] == "POST"]
    assert len(scrolls) == 1
    deletes = [call for call in engine.calls_to("/_search/scroll") if call["method"] == "DELETE"]
    assert deletes[0]["body"] == {"scroll_id": "scroll-1"}


@pytest.mark.asyncio
async def test_scroll_drains_until_empty_batch() -> None:
    engine = FakeSearchEngine(batches=[[hit({"n": 1}), hit({"n": 2})], [hit({"n": 3})], []])
    streamer = _streamer(engine)
    body = await _collect(streamer)
    assert len(body.splitlines()) == 3
    assert streamer.exported == 3


@pytest.mark.asyncio
async def test_csv_columns_come_from_first_hit() -> None:
    engine = FakeSearchEngine(
        batches=[
            [hit({"level": "error", "message": 'said "hi"'}), hit({"level": "info", "extra": 1})],
            [],
        ]
    )
    body = await _collect(_streamer(engine, export_format="csv"))
    assert body.splitlines() == ['"level","message"', '"error","said ""hi"""', '"info",""']


@pytest.mark.asyncio
async def test_masking_is_applied_per_batch() -> None:
    engine = FakeSearchEngine(
        batches=[[hit({"user": {"email": "a@b.com"}}), hit({"user": {"email": "c@d.com"}})], [hit({"user": {"email": "e@f.com"}})], []]
    )
    rules = [PiiRule(pattern="user.email", action="mask")]
    body = await _collect(_streamer(engine, pii_rules=rules))
    assert [json.loads(line)["user"]["email"] for line in body.splitlines()] == ["[masked]"] * 3

    engine = FakeSearchEngine(batches=[[hit({"user": {"email": "a@b.com"}})], []])
    body = await _collect(_streamer(engine, pii_rules=rules, pii_unmasked=True))
    assert json.loads(body)["user"]["email"] == "a@b.com"


@pytest.mark.asyncio
async def test_mid_stream_failure_is_reported_in_band() -> None:
    engine = FakeSearchEngine(batches=[[hit({"n": 1}), hit({"n": 2})]])
    engine.fail_on_scroll = True
    engine.fail_status = 500
    engine.fail_body = {"error": {"reason": "scroll expired"}}
    errors: list[Exception] = []

    async def on_error(exc: Exception) -> None:
        errors.append(exc)

    completed: list[int] = []
    streamer = _streamer(engine, on_error=on_error, on_complete=completed.append)
    body = await _collect(streamer)
    lines = body.splitlines()
    assert [json.loads(line) for line in lines[:2]] == [{"n": 1}, {"n": 2}]
    assert json.loads(lines[2]) == {"error": "Export failed: scroll expired"}
    assert streamer.state is ExportState.FAILED
    assert completed == []
    assert len(errors) == 1


@pytest.mark.asyncio
async def test_client_disconnect_stops_scroll_loop() -> None:
    engine = FakeSearchEngine(batches=[[hit({"n": 1}), hit({"n": 2})], [hit({"n": 3}), hit({"n": 4})]])

    async def disconnected() -> bool:
        return True

    completed: list[int] = []
    streamer = _streamer(engine, is_disconnected=disconnected, on_complete=completed.append)
    async for _chunk in streamer.stream():
        pass
    assert streamer.state is ExportState.FAILED
    assert streamer.exported == 2
    assert completed == []
    assert not [call for call in engine.calls if call["path"] == "/_search/scroll" and call["method"] == "POST"]


@pytest.mark.asyncio
async def test_estimate_scales_average_source_size() -> None:
    engine = FakeSearchEngine(hits=[hit({"a": "xx"}), hit({"a": "xxxx"})])
    executor = SearchExecutor(Settings(search_url="http://search.test"), client=engine.client())
    estimate = await estimate_export(
        executor,
        index_pattern="logs-*",
        query={"match_all": {}},
        sample_size=10,
        max_export_size=5000,
    )
    # {"a":"xx"} is 10 bytes, {"a":"xxxx"} is 12 bytes.
    assert estimate == {
        "totalHits": 2,
        "sampleSize": 2,
        "avgBytes": 11,
        "estimatedBytes": 22,
        "maxExportSize": 5000,
    }
    request = engine.calls_to("/_search")[0]["body"]
    assert request["size"] == 10
    assert request["track_total_hits"] is True
