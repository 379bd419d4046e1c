from __future__ import annotations

from fastapi import Request

from statsgoblin.analytics.service import AnalyticsService
from statsgoblin.queue.redis_queue import RedisJobQueue
from statsgoblin.storage.opensearch import OpenSearchStore


def get_analytics(request: Request) -> AnalyticsService:
    return request.app.state.analytics


def get_store(request: Request) -> OpenSearchStore:
    return request.app.state.store


def get_queue(request: Request) -> RedisJobQueue:
    return request.app.state.queue
