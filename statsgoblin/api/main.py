from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Annotated, Any, Callable

import redis.asyncio as redis
from fastapi import Depends, FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from statsgoblin.analytics.results import (
    PerformanceTrend,
    PopularDocument,
    SearchStatsResponse,
    TopSearchResult,
    ZeroResultQuery,
)
from statsgoblin.analytics.service import AnalyticsService
from statsgoblin.api.deps import get_analytics, get_queue, get_store
from statsgoblin.api.health import check_health
from statsgoblin.api.middleware import request_logging_middleware
from statsgoblin.api.schemas import ErrorResponse, HealthResponse
from statsgoblin.common.config import Settings, settings
from statsgoblin.common.errors import InvalidRequestError, StoreError
from statsgoblin.queue.redis_queue import RedisJobQueue, connect_redis
from statsgoblin.storage.opensearch import OpenSearchStore
from statsgoblin.storage.opensearch import connect as connect_store

log = logging.getLogger(__name__)

StartParam = Annotated[str, Query(description="Inclusive start of the window (ISO-8601 datetime or date)")]
EndParam = Annotated[str, Query(description="Inclusive end of the window (ISO-8601 datetime or date)")]


async def health(
    store: OpenSearchStore = Depends(get_store),
    queue: RedisJobQueue = Depends(get_queue),
) -> HealthResponse:
    return await check_health(store, queue)


async def top_searches(
    start: StartParam,
    end: EndParam,
    limit: int = Query(settings.default_limit, ge=1),
    analytics: AnalyticsService = Depends(get_analytics),
) -> list[TopSearchResult]:
    return await analytics.get_top_searches(start, end, limit)


async def zero_results(
    start: StartParam,
    end: EndParam,
    limit: int = Query(settings.default_limit, ge=1),
    analytics: AnalyticsService = Depends(get_analytics),
) -> list[ZeroResultQuery]:
    return await analytics.get_zero_result_queries(start, end, limit)


async def popular_documents(
    start: StartParam,
    end: EndParam,
    limit: int = Query(settings.default_limit, ge=1),
    analytics: AnalyticsService = Depends(get_analytics),
) -> list[PopularDocument]:
    return await analytics.get_popular_documents(start, end, limit)


async def performance_trends(
    start: StartParam,
    end: EndParam,
    interval: str = Query("1h", description="Bucket width such as 30m, 1h or 1d"),
    analytics: AnalyticsService = Depends(get_analytics),
) -> list[PerformanceTrend]:
    return await analytics.get_performance_trends(start, end, interval)


async def stats(
    start: StartParam,
    end: EndParam,
    analytics: AnalyticsService = Depends(get_analytics),
) -> SearchStatsResponse:
    return await analytics.get_search_stats(start, end)


def _error(error: str, detail: str | None = None) -> dict[str, Any]:
    return ErrorResponse(error=error, detail=detail).model_dump(exclude_none=True)


# path, method, endpoint, response model
ROUTES: list[tuple[str, str, Callable[..., Any], Any]] = [
    ("/health", "GET", health, HealthResponse),
    ("/analytics/top-searches", "GET", top_searches, list[TopSearchResult]),
    ("/analytics/zero-results", "GET", zero_results, list[ZeroResultQuery]),
    ("/analytics/popular-documents", "GET", popular_documents, list[PopularDocument]),
    ("/analytics/performance-trends", "GET", performance_trends, list[PerformanceTrend]),
    ("/analytics/stats", "GET", stats, SearchStatsResponse),
]


def create_app(
    cfg: Settings | None = None,
    store: OpenSearchStore | None = None,
    redis_client: redis.Redis | None = None,
) -> FastAPI:
    cfg = cfg or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.store = store or connect_store(cfg)
        client = redis_client if redis_client is not None else connect_redis(cfg)
        app.state.queue = RedisJobQueue(client, cfg.queue_name, lock_seconds=cfg.lock_seconds)
        app.state.analytics = AnalyticsService(
            app.state.store,
            cfg.metrics_index_prefix,
            max_limit=cfg.max_limit,
            max_buckets=cfg.max_buckets,
        )
        log.info("api_started", extra={"index": cfg.metrics_index_prefix, "queue": cfg.queue_name})
        try:
            yield
        finally:
            await app.state.store.aclose()
            await client.aclose()

    app = FastAPI(title="Stats Goblin", version="1.0.0", lifespan=lifespan)

    app.middleware("http")(request_logging_middleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[cfg.cors_allowed_origin],
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    for path, method, endpoint, response_model in ROUTES:
        app.add_api_route(path, endpoint, methods=[method], response_model=response_model)

    @app.exception_handler(InvalidRequestError)
    async def invalid_request_handler(_, exc: InvalidRequestError):
        return JSONResponse(status_code=400, content=_error("invalid_request", str(exc)))

    @app.exception_handler(StoreError)
    async def store_error_handler(_, exc: StoreError):
        log.error("store_error", extra={"error": str(exc), "status_code": exc.status_code})
        if exc.retryable:
            return JSONResponse(status_code=503, content=_error("store_unavailable", str(exc)))
        return JSONResponse(status_code=502, content=_error("store_error", str(exc)))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(_, exc: Exception):
        log.exception("unhandled_exception", exc_info=exc)
        return JSONResponse(status_code=500, content=_error("internal_server_error"))

    return app
