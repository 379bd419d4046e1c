from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from statsgoblin.analytics import queries, results
from statsgoblin.analytics.results import (
    PerformanceTrend,
    PopularDocument,
    SearchStatsResponse,
    TopSearchResult,
    ZeroResultQuery,
)
from statsgoblin.analytics.timerange import TimeRange, parse_interval
from statsgoblin.common.errors import InvalidRequestError
from statsgoblin.storage.opensearch import OpenSearchStore

log = logging.getLogger(__name__)


class AggregationKind(str, Enum):
    TOP_SEARCHES = "top-searches"
    ZERO_RESULTS = "zero-results"
    POPULAR_DOCUMENTS = "popular-documents"
    PERFORMANCE_TRENDS = "performance-trends"
    STATS = "stats"


class AnalyticsService:
    """Read-only aggregations over every partition matching ``<prefix>-*``.

    Calls are independent round trips with no shared mutable state, so any
    number may run concurrently. Store failures propagate as ``StoreError``;
    an empty range is a successful empty result.
    """

    def __init__(
        self,
        store: OpenSearchStore,
        index_prefix: str,
        max_limit: int = 1000,
        max_buckets: int = 10_000,
    ):
        self.store = store
        self.index_pattern = f"{index_prefix}-*"
        self.max_limit = max_limit
        self.max_buckets = max_buckets

    def _check_limit(self, limit: int) -> int:
        if not 1 <= limit <= self.max_limit:
            raise InvalidRequestError(f"limit must be between 1 and {self.max_limit}")
        return limit

    def _build(self, kind: AggregationKind, time_range: TimeRange, options: dict[str, Any]) -> dict[str, Any]:
        if kind is AggregationKind.TOP_SEARCHES:
            return queries.top_searches(time_range, self._check_limit(options.get("limit", 10)))
        if kind is AggregationKind.ZERO_RESULTS:
            return queries.zero_result_queries(time_range, self._check_limit(options.get("limit", 10)))
        if kind is AggregationKind.POPULAR_DOCUMENTS:
            return queries.popular_documents(time_range, self._check_limit(options.get("limit", 10)))
        if kind is AggregationKind.PERFORMANCE_TRENDS:
            interval = parse_interval(options.get("interval", "1h"))
            if time_range.span / interval.width > self.max_buckets:
                raise InvalidRequestError(
                    f"interval {interval.expression} yields more than {self.max_buckets} buckets for this range"
                )
            return queries.performance_trends(time_range, interval)
        return queries.search_stats(time_range)

    async def run_aggregation(self, kind: AggregationKind | str, time_range: TimeRange, **options: Any) -> Any:
        try:
            kind = AggregationKind(kind)
        except ValueError as e:
            raise InvalidRequestError(f"unknown aggregation {kind!r}") from e

        body = self._build(kind, time_range, options)
        resp = await self.store.search(self.index_pattern, body)
        log.debug("aggregation_done", extra={"query": kind.value, "latency_ms": resp.get("took")})
        return _DECODERS[kind](resp)

    async def get_top_searches(
        self, start: str | datetime, end: str | datetime, limit: int = 10
    ) -> list[TopSearchResult]:
        return await self.run_aggregation(AggregationKind.TOP_SEARCHES, TimeRange.parse(start, end), limit=limit)

    async def get_zero_result_queries(
        self, start: str | datetime, end: str | datetime, limit: int = 10
    ) -> list[ZeroResultQuery]:
        return await self.run_aggregation(AggregationKind.ZERO_RESULTS, TimeRange.parse(start, end), limit=limit)

    async def get_popular_documents(
        self, start: str | datetime, end: str | datetime, limit: int = 10
    ) -> list[PopularDocument]:
        return await self.run_aggregation(AggregationKind.POPULAR_DOCUMENTS, TimeRange.parse(start, end), limit=limit)

    async def get_performance_trends(
        self, start: str | datetime, end: str | datetime, interval: str = "1h"
    ) -> list[PerformanceTrend]:
        return await self.run_aggregation(
            AggregationKind.PERFORMANCE_TRENDS, TimeRange.parse(start, end), interval=interval
        )

    async def get_search_stats(self, start: str | datetime, end: str | datetime) -> SearchStatsResponse:
        return await self.run_aggregation(AggregationKind.STATS, TimeRange.parse(start, end))


_DECODERS: dict[AggregationKind, Callable[[dict[str, Any]], Any]] = {
    AggregationKind.TOP_SEARCHES: results.decode_top_searches,
    AggregationKind.ZERO_RESULTS: results.decode_zero_result_queries,
    AggregationKind.POPULAR_DOCUMENTS: results.decode_popular_documents,
    AggregationKind.PERFORMANCE_TRENDS: results.decode_performance_trends,
    AggregationKind.STATS: results.decode_search_stats,
}
