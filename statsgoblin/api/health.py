from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from datetime import datetime, timezone

from redis.exceptions import RedisError

from statsgoblin.api.schemas import HealthResponse, ServiceStatus
from statsgoblin.common.errors import StoreError
from statsgoblin.queue.redis_queue import RedisJobQueue
from statsgoblin.storage.opensearch import OpenSearchStore

log = logging.getLogger(__name__)


async def check_redis(queue: RedisJobQueue | None) -> ServiceStatus:
    if queue is None:
        return ServiceStatus(status="down", message="not configured")
    try:
        await queue.client.ping()
        counts = await queue.counts()
    except (RedisError, OSError) as e:
        log.error("redis_health_failed", extra={"error": str(e)})
        return ServiceStatus(status="down", message=str(e))
    return ServiceStatus(status="up", details=asdict(counts))


async def check_opensearch(store: OpenSearchStore) -> ServiceStatus:
    try:
        health = await store.cluster_health()
    except StoreError as e:
        log.error("opensearch_health_failed", extra={"error": str(e)})
        return ServiceStatus(status="down", message=str(e))
    return ServiceStatus(
        status="up",
        details={
            "clusterName": health.get("cluster_name"),
            "clusterStatus": health.get("status"),
            "numberOfNodes": health.get("number_of_nodes"),
            "activeShards": health.get("active_shards"),
        },
    )


async def check_health(store: OpenSearchStore, queue: RedisJobQueue | None) -> HealthResponse:
    redis_status, os_status = await asyncio.gather(check_redis(queue), check_opensearch(store))

    down = sum(1 for s in (redis_status, os_status) if s.status == "down")
    overall = "healthy" if down == 0 else ("unhealthy" if down == 2 else "degraded")
    return HealthResponse(
        status=overall,
        timestamp=datetime.now(timezone.utc),
        services={"redis": redis_status, "opensearch": os_status},
    )
