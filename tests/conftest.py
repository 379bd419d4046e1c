import json
import re
from datetime import datetime, timezone
from fnmatch import fnmatch
from urllib.parse import unquote

import fakeredis
import httpx
import pytest
import pytest_asyncio

from statsgoblin.storage.opensearch import OpenSearchStore

_UNIT_MS = {"ms": 1, "s": 1000, "m": 60_000, "h": 3_600_000, "d": 86_400_000}


def _dt(value):
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _value(doc, field, prefix):
    field = field.removesuffix(".keyword")
    if prefix and field.startswith(prefix):
        field = field[len(prefix):]
    return doc.get(field)


def _percentile(values, p):
    if not values:
        return None
    rank = (p / 100.0) * (len(values) - 1)
    lo = int(rank)
    hi = min(lo + 1, len(values) - 1)
    return values[lo] + (values[hi] - values[lo]) * (rank - lo)


class FakeOpenSearch:
    """In-process stand-in for the OpenSearch REST API behind httpx.MockTransport.

    Implements document PUT, index templates, cluster health and the subset of
    the search DSL (bool/range/term, terms/avg/max/cardinality/filter/nested/
    date_histogram/percentiles aggregations) that statsgoblin emits.
    """

    def __init__(self):
        self.indices = {}
        self.templates = {}
        self.requests = []
        self.failures = []

    def transport(self):
        return httpx.MockTransport(self.handle)

    def fail_next(self, *failures):
        """Queue status codes or httpx exception classes for the next requests."""
        self.failures.extend(failures)

    def put_document(self, index, doc_id, doc):
        self.indices.setdefault(index, {})[doc_id] = doc

    def handle(self, request):
        self.requests.append(request)
        if self.failures:
            failure = self.failures.pop(0)
            if isinstance(failure, type) and issubclass(failure, Exception):
                raise failure("injected failure", request=request)
            return httpx.Response(failure, json={"error": {"type": "injected", "reason": f"injected {failure}"}})

        parts = [unquote(p) for p in request.url.path.strip("/").split("/")]
        body = json.loads(request.content) if request.content else None

        if request.method == "PUT" and parts[0] == "_index_template":
            self.templates[parts[1]] = body
            return httpx.Response(200, json={"acknowledged": True})
        if request.method == "PUT" and len(parts) == 3 and parts[1] == "_doc":
            docs = self.indices.setdefault(parts[0], {})
            result = "updated" if parts[2] in docs else "created"
            docs[parts[2]] = body
            return httpx.Response(201 if result == "created" else 200, json={"_id": parts[2], "result": result})
        if request.method == "POST" and len(parts) == 2 and parts[1] == "_search":
            return httpx.Response(200, json=self.search(parts[0], body))
        if request.method == "GET" and parts == ["_cluster", "health"]:
            return httpx.Response(
                200,
                json={"cluster_name": "fake", "status": "green", "number_of_nodes": 1, "active_shards": len(self.indices)},
            )
        return httpx.Response(404, json={"error": {"type": "not_found", "reason": request.url.path}})

    # -------------------- search --------------------
    def search(self, pattern, body):
        names = [n for n in self.indices if any(fnmatch(n, p) for p in pattern.split(","))]
        docs = [d for n in names for d in self.indices[n].values()]
        matched = [d for d in docs if self._matches(d, body.get("query", {"match_all": {}}), "")]
        resp = {"took": 1, "hits": {"total": {"value": len(matched), "relation": "eq"}, "hits": []}}
        # like OpenSearch, no aggregations section when no index matched
        if names and body.get("aggs"):
            resp["aggregations"] = self._aggregate(body["aggs"], matched, "")
        return resp

    def _matches(self, doc, query, prefix):
        if "match_all" in query:
            return True
        if "bool" in query:
            clauses = query["bool"].get("filter", []) + query["bool"].get("must", [])
            return all(self._matches(doc, c, prefix) for c in clauses)
        if "range" in query:
            (field, cond), = query["range"].items()
            value = _value(doc, field, prefix)
            if value is None:
                return False
            value = _dt(value)
            if "gte" in cond and value < _dt(cond["gte"]):
                return False
            if "lte" in cond and value > _dt(cond["lte"]):
                return False
            return True
        if "term" in query:
            (field, expected), = query["term"].items()
            if isinstance(expected, dict):
                expected = expected["value"]
            return _value(doc, field, prefix) == expected
        raise AssertionError(f"unsupported query {query}")

    def _aggregate(self, aggs, docs, prefix):
        return {name: self._one(agg, docs, prefix) for name, agg in aggs.items()}

    def _one(self, agg, docs, prefix):
        sub = agg.get("aggs", {})
        if "terms" in agg:
            t = agg["terms"]
            groups = {}
            for d in docs:
                v = _value(d, t["field"], prefix)
                if v is not None:
                    groups.setdefault(v, []).append(d)
            ordered = sorted(groups.items(), key=lambda kv: (-len(kv[1]), kv[0]))
            size = t.get("size", 10)
            return {
                "doc_count_error_upper_bound": 0,
                "sum_other_doc_count": sum(len(g) for _, g in ordered[size:]),
                "buckets": [
                    {"key": k, "doc_count": len(g), **self._aggregate(sub, g, prefix)} for k, g in ordered[:size]
                ],
            }
        if "avg" in agg:
            vals = [v for d in docs if (v := _value(d, agg["avg"]["field"], prefix)) is not None]
            return {"value": sum(vals) / len(vals) if vals else None}
        if "max" in agg:
            field = agg["max"]["field"]
            vals = [v for d in docs if (v := _value(d, field, prefix)) is not None]
            if not vals:
                return {"value": None}
            if field == "timestamp":
                best = max(_dt(v) for v in vals).astimezone(timezone.utc)
                as_string = best.isoformat(timespec="milliseconds").replace("+00:00", "Z")
                return {"value": best.timestamp() * 1000, "value_as_string": as_string}
            return {"value": max(vals)}
        if "cardinality" in agg:
            return {"value": len({_value(d, agg["cardinality"]["field"], prefix) for d in docs} - {None})}
        if "filter" in agg:
            matched = [d for d in docs if self._matches(d, agg["filter"], prefix)]
            return {"doc_count": len(matched), **self._aggregate(sub, matched, prefix)}
        if "nested" in agg:
            path = agg["nested"]["path"]
            children = [h for d in docs for h in (d.get(path) or [])]
            return {"doc_count": len(children), **self._aggregate(sub, children, path + ".")}
        if "date_histogram" in agg:
            n, unit = re.match(r"^(\d+)(ms|s|m|h|d)$", agg["date_histogram"]["fixed_interval"]).groups()
            width = int(n) * _UNIT_MS[unit]
            groups = {}
            for d in docs:
                ms = int(_dt(d["timestamp"]).timestamp() * 1000)
                groups.setdefault(ms - ms % width, []).append(d)
            if not groups:
                return {"buckets": []}
            buckets = []
            for key in range(min(groups), max(groups) + width, width):
                group = groups.get(key, [])
                buckets.append(
                    {
                        "key_as_string": datetime.fromtimestamp(key / 1000, tz=timezone.utc).isoformat(),
                        "key": key,
                        "doc_count": len(group),
                        **self._aggregate(sub, group, prefix),
                    }
                )
            return {"buckets": buckets}
        if "percentiles" in agg:
            p = agg["percentiles"]
            vals = sorted(v for d in docs if (v := _value(d, p["field"], prefix)) is not None)
            return {"values": [{"key": float(q), "value": _percentile(vals, q)} for q in p["percents"]]}
        raise AssertionError(f"unsupported aggregation {agg}")


@pytest.fixture
def fake_os():
    return FakeOpenSearch()


@pytest_asyncio.fixture
async def store(fake_os):
    s = OpenSearchStore("http://opensearch.test", transport=fake_os.transport())
    yield s
    await s.aclose()


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def make_event():
    """Build a camelCase event payload with sensible defaults."""

    def _make(**overrides):
        event = {
            "requestId": "r1",
            "query": "redis caching",
            "offset": 0,
            "executionTimeMs": 42,
            "totalResults": 10,
            "hitsCount": 1,
            "hits": [{"documentId": "doc-1", "urlHost": "docs.example.com", "urlPath": "/a", "score": 1.5}],
            "timestamp": "2024-01-01T00:00:00Z",
        }
        event.update(overrides)
        return event

    return _make
