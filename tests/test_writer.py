import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from statsgoblin.common.errors import StoreError, TransientStoreError
from statsgoblin.events.schema import SearchMetricEvent
from statsgoblin.indexer.writer import IndexWriter, build_index_template, index_name_for


def test_partition_routing_uses_event_timestamp():
    ts = datetime(2024, 3, 15, 10, 0, tzinfo=timezone.utc)
    assert index_name_for("search-metrics", ts) == "search-metrics-2024-03-15"


def test_partition_routing_uses_utc_calendar_day():
    ts = datetime.fromisoformat("2024-03-15T23:30:00-05:00")
    assert index_name_for("search-metrics", ts) == "search-metrics-2024-03-16"


def test_template_maps_hits_as_nested_with_keyword_subfields():
    body = build_index_template("search-metrics", policy_id="search-metrics-policy")
    assert body["index_patterns"] == ["search-metrics-*"]
    props = body["template"]["mappings"]["properties"]
    assert props["requestId"] == {"type": "keyword"}
    assert props["query"]["fields"]["keyword"]["type"] == "keyword"
    assert props["hits"]["type"] == "nested"
    assert props["hits"]["properties"]["urlPath"]["fields"]["keyword"]["type"] == "keyword"
    assert body["template"]["settings"]["plugins.index_state_management.policy_id"] == "search-metrics-policy"


def test_template_omits_policy_when_not_configured():
    body = build_index_template("search-metrics")
    assert "plugins.index_state_management.policy_id" not in body["template"]["settings"]


@pytest.mark.asyncio
async def test_write_routes_to_event_day_partition(store, fake_os, make_event):
    writer = IndexWriter(store, "search-metrics")
    event = SearchMetricEvent.model_validate(make_event(timestamp="2024-03-15T10:00:00Z"))

    await writer.index_metric(event)

    assert list(fake_os.indices) == ["search-metrics-2024-03-15"]
    assert fake_os.indices["search-metrics-2024-03-15"]["r1"]["query"] == "redis caching"


@pytest.mark.asyncio
async def test_write_is_idempotent_on_request_id(store, fake_os, make_event):
    writer = IndexWriter(store, "search-metrics")
    await writer.write(SearchMetricEvent.model_validate(make_event(executionTimeMs=10)))
    await writer.write(SearchMetricEvent.model_validate(make_event(executionTimeMs=99)))

    docs = fake_os.indices["search-metrics-2024-01-01"]
    assert list(docs) == ["r1"]
    assert docs["r1"]["executionTimeMs"] == 99


@pytest.mark.asyncio
async def test_ensure_schema_runs_once(store, fake_os):
    writer = IndexWriter(store, "search-metrics", replicas=0)

    results = await asyncio.gather(*(writer.ensure_schema() for _ in range(5)))

    assert results == [True] * 5
    template_calls = [r for r in fake_os.requests if r.url.path.startswith("/_index_template")]
    assert len(template_calls) == 1
    assert fake_os.templates["search-metrics-template"]["template"]["settings"]["number_of_replicas"] == 0


@pytest.mark.asyncio
async def test_ensure_schema_failure_is_not_fatal(store, fake_os, make_event):
    writer = IndexWriter(store, "search-metrics")
    fake_os.fail_next(500)

    assert await writer.ensure_schema() is False
    assert await writer.ensure_schema() is False  # not retried within the process

    await writer.write(SearchMetricEvent.model_validate(make_event()))
    assert "r1" in fake_os.indices["search-metrics-2024-01-01"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "failure, expected, retryable",
    [
        (503, TransientStoreError, True),
        (429, TransientStoreError, True),
        (httpx.ConnectError, TransientStoreError, True),
        (httpx.ReadTimeout, TransientStoreError, True),
        (400, StoreError, False),
    ],
)
async def test_write_propagates_store_failures(store, fake_os, make_event, failure, expected, retryable):
    writer = IndexWriter(store, "search-metrics")
    fake_os.fail_next(failure)

    with pytest.raises(expected) as exc_info:
        await writer.write(SearchMetricEvent.model_validate(make_event()))

    assert exc_info.value.retryable is retryable
    assert fake_os.indices == {}
