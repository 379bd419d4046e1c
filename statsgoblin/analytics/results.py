"""Typed aggregation results and the decoders that build them.

Decoders never trust the response shape: a missing ``aggregations`` section
(no partition matched), missing buckets and ``null`` metrics all decode to
empty lists or zero values.
"""
from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any

from statsgoblin.events.schema import WireModel


class TopSearchResult(WireModel):
    query: str
    count: int
    avg_execution_time_ms: int
    avg_total_results: int


class ZeroResultQuery(WireModel):
    query: str
    count: int
    last_occurrence: datetime | None


class PopularDocument(WireModel):
    document_id: str
    url_host: str
    url_path: str
    appearances: int
    avg_score: float


class PerformanceTrend(WireModel):
    interval: datetime
    avg_execution_time_ms: int
    total_searches: int
    p50_execution_time_ms: int
    p95_execution_time_ms: int
    p99_execution_time_ms: int


class SearchStatsResponse(WireModel):
    total_searches: int
    unique_queries: int
    avg_execution_time_ms: int
    zero_result_rate: float


def round_half_up(value: float | None) -> int:
    if value is None:
        return 0
    return int(math.floor(value + 0.5))


def _agg(container: dict[str, Any] | None, name: str) -> dict[str, Any]:
    if not container:
        return {}
    value = container.get(name)
    return value if isinstance(value, dict) else {}


def _buckets(agg: dict[str, Any]) -> list[dict[str, Any]]:
    buckets = agg.get("buckets")
    return buckets if isinstance(buckets, list) else []


def _metric(bucket: dict[str, Any], name: str) -> float | None:
    return _agg(bucket, name).get("value")


def _first_key(bucket: dict[str, Any], name: str) -> str:
    buckets = _buckets(_agg(bucket, name))
    return str(buckets[0].get("key", "")) if buckets else ""


def _epoch_ms(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)


def _date_value(agg: dict[str, Any]) -> datetime | None:
    as_string = agg.get("value_as_string")
    if as_string:
        return datetime.fromisoformat(as_string.replace("Z", "+00:00"))
    return _epoch_ms(agg.get("value"))


def _aggregations(resp: dict[str, Any]) -> dict[str, Any]:
    return resp.get("aggregations") or {}


def decode_top_searches(resp: dict[str, Any]) -> list[TopSearchResult]:
    return [
        TopSearchResult(
            query=str(b["key"]),
            count=int(b.get("doc_count", 0)),
            avg_execution_time_ms=round_half_up(_metric(b, "avg_execution_time")),
            avg_total_results=round_half_up(_metric(b, "avg_total_results")),
        )
        for b in _buckets(_agg(_aggregations(resp), "top_queries"))
    ]


def decode_zero_result_queries(resp: dict[str, Any]) -> list[ZeroResultQuery]:
    return [
        ZeroResultQuery(
            query=str(b["key"]),
            count=int(b.get("doc_count", 0)),
            last_occurrence=_date_value(_agg(b, "last_occurrence")),
        )
        for b in _buckets(_agg(_aggregations(resp), "zero_result_queries"))
    ]


def decode_popular_documents(resp: dict[str, Any]) -> list[PopularDocument]:
    by_document = _agg(_agg(_aggregations(resp), "popular_docs"), "by_document")
    return [
        PopularDocument(
            document_id=str(b["key"]),
            url_host=_first_key(b, "url_host"),
            url_path=_first_key(b, "url_path"),
            appearances=int(b.get("doc_count", 0)),
            avg_score=float(_metric(b, "avg_score") or 0.0),
        )
        for b in _buckets(by_document)
    ]


def _percentiles(bucket: dict[str, Any]) -> tuple[int, int, int]:
    values = _agg(bucket, "percentiles_execution_time").get("values")
    by_percent: dict[float, float | None] = {}
    if isinstance(values, list):
        by_percent = {float(v["key"]): v.get("value") for v in values}
    elif isinstance(values, dict):
        # keyed response: {"50.0": 12.0, ...}
        by_percent = {float(k): v for k, v in values.items()}

    p50 = round_half_up(by_percent.get(50.0))
    p95 = max(p50, round_half_up(by_percent.get(95.0)))
    p99 = max(p95, round_half_up(by_percent.get(99.0)))
    return p50, p95, p99


def decode_performance_trends(resp: dict[str, Any]) -> list[PerformanceTrend]:
    out: list[PerformanceTrend] = []
    for b in _buckets(_agg(_aggregations(resp), "trends")):
        p50, p95, p99 = _percentiles(b)
        out.append(
            PerformanceTrend(
                interval=_epoch_ms(b.get("key")),
                avg_execution_time_ms=round_half_up(_metric(b, "avg_execution_time")),
                total_searches=int(b.get("doc_count", 0)),
                p50_execution_time_ms=p50,
                p95_execution_time_ms=p95,
                p99_execution_time_ms=p99,
            )
        )
    return out


def _total_hits(resp: dict[str, Any]) -> int:
    total = (resp.get("hits") or {}).get("total", 0)
    if isinstance(total, dict):
        return int(total.get("value", 0))
    return int(total or 0)


def decode_search_stats(resp: dict[str, Any]) -> SearchStatsResponse:
    aggs = _aggregations(resp)
    total = _total_hits(resp)
    zero = int(_agg(aggs, "zero_results").get("doc_count", 0))
    return SearchStatsResponse(
        total_searches=total,
        unique_queries=int(_agg(aggs, "unique_queries").get("value") or 0),
        avg_execution_time_ms=round_half_up(_agg(aggs, "avg_execution_time").get("value")),
        zero_result_rate=zero / total if total > 0 else 0.0,
    )
