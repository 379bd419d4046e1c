"""OpenSearch query bodies for each aggregation.

Every body shares the event-time range filter and returns no documents
(``size: 0``); only the ``aggregations`` section is consumed.
"""
from __future__ import annotations

from typing import Any

from statsgoblin.analytics.timerange import Interval, TimeRange

# ties on count resolve by ascending key so equal input yields equal output
BUCKET_ORDER = [{"_count": "desc"}, {"_key": "asc"}]

ZERO_RESULTS = {"term": {"totalResults": 0}}


def _base(time_range: TimeRange, *extra_filters: dict[str, Any]) -> dict[str, Any]:
    return {
        "size": 0,
        "query": {"bool": {"filter": [time_range.as_filter(), *extra_filters]}},
    }


def _terms(field: str, size: int) -> dict[str, Any]:
    return {"field": field, "size": size, "order": BUCKET_ORDER}


def top_searches(time_range: TimeRange, limit: int) -> dict[str, Any]:
    body = _base(time_range)
    body["aggs"] = {
        "top_queries": {
            "terms": _terms("query.keyword", limit),
            "aggs": {
                "avg_execution_time": {"avg": {"field": "executionTimeMs"}},
                "avg_total_results": {"avg": {"field": "totalResults"}},
            },
        }
    }
    return body


def zero_result_queries(time_range: TimeRange, limit: int) -> dict[str, Any]:
    body = _base(time_range, ZERO_RESULTS)
    body["aggs"] = {
        "zero_result_queries": {
            "terms": _terms("query.keyword", limit),
            "aggs": {
                "last_occurrence": {"max": {"field": "timestamp"}},
            },
        }
    }
    return body


def popular_documents(time_range: TimeRange, limit: int) -> dict[str, Any]:
    # sub-aggregations under `nested` only see fields of the same hit
    body = _base(time_range)
    body["aggs"] = {
        "popular_docs": {
            "nested": {"path": "hits"},
            "aggs": {
                "by_document": {
                    "terms": _terms("hits.documentId", limit),
                    "aggs": {
                        "avg_score": {"avg": {"field": "hits.score"}},
                        "url_host": {"terms": _terms("hits.urlHost", 1)},
                        "url_path": {"terms": _terms("hits.urlPath.keyword", 1)},
                    },
                }
            },
        }
    }
    return body


def performance_trends(time_range: TimeRange, interval: Interval) -> dict[str, Any]:
    body = _base(time_range)
    body["aggs"] = {
        "trends": {
            "date_histogram": {
                "field": "timestamp",
                "fixed_interval": interval.expression,
                "min_doc_count": 0,
            },
            "aggs": {
                "avg_execution_time": {"avg": {"field": "executionTimeMs"}},
                "percentiles_execution_time": {
                    "percentiles": {"field": "executionTimeMs", "percents": [50, 95, 99], "keyed": False}
                },
            },
        }
    }
    return body


def search_stats(time_range: TimeRange) -> dict[str, Any]:
    body = _base(time_range)
    body["track_total_hits"] = True
    body["aggs"] = {
        "unique_queries": {"cardinality": {"field": "query.keyword"}},
        "avg_execution_time": {"avg": {"field": "executionTimeMs"}},
        "zero_results": {"filter": ZERO_RESULTS},
    }
    return body
