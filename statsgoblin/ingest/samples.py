"""Synthetic events for exercising a local pipeline."""
from __future__ import annotations

import random
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any

SAMPLE_QUERIES = [
    "kubernetes tutorial",
    "docker compose",
    "fastapi dependencies",
    "redis caching",
    "opensearch aggregations",
    "python generics",
    "asyncio tasks",
    "pydantic validators",
    "graphql federation",
    "postgresql optimization",
]

SAMPLE_HOSTS = [
    "docs.example.com",
    "blog.example.com",
    "guides.example.com",
    "tutorials.example.com",
]


def sample_event(now: datetime | None = None) -> dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    return {
        "requestId": f"test-{int(time.time() * 1000)}",
        "query": "fastapi dependencies",
        "offset": 0,
        "executionTimeMs": 42,
        "totalResults": 150,
        "hitsCount": 2,
        "hits": [
            {"documentId": "doc-123", "urlHost": "docs.example.com", "urlPath": "/guides/dependencies", "score": 9.5},
            {"documentId": "doc-456", "urlHost": "docs.example.com", "urlPath": "/tutorials/fastapi", "score": 8.2},
        ],
        "timestamp": now.isoformat(),
        "userAgent": "Mozilla/5.0 Test Client",
    }


def generate_event(index: int, rng: random.Random | None = None, now: datetime | None = None) -> dict[str, Any]:
    """Random event dated within the last 7 days."""
    rng = rng or random.Random()
    now = now or datetime.now(timezone.utc)

    query = rng.choice(SAMPLE_QUERIES)
    total_results = rng.randint(0, 10_000)
    hits_count = min(10, total_results)
    slug = re.sub(r"\s+", "-", query.lower())
    hits = [
        {
            "documentId": f"doc-{rng.randint(1000, 9999)}",
            "urlHost": rng.choice(SAMPLE_HOSTS),
            "urlPath": f"/docs/{slug}",
            "score": round(rng.random() * 10, 2),
        }
        for _ in range(hits_count)
    ]

    ts = now - timedelta(milliseconds=rng.randint(0, 7 * 24 * 60 * 60 * 1000))
    return {
        "requestId": f"generated-{int(now.timestamp() * 1000)}-{index}",
        "query": query,
        "offset": 0,
        "executionTimeMs": rng.randint(10, 150),
        "totalResults": total_results,
        "hitsCount": hits_count,
        "hits": hits,
        "timestamp": ts.isoformat(),
        "userAgent": "Test Data Generator",
    }
