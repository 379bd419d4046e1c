from __future__ import annotations

import asyncio
import json
import logging
import signal
from typing import Optional

import typer
import uvicorn

from statsgoblin.api.main import create_app
from statsgoblin.common.config import settings
from statsgoblin.common.logging import setup_logging
from statsgoblin.indexer.writer import IndexWriter
from statsgoblin.ingest.consumer import IngestionConsumer, MetricEventHandler
from statsgoblin.ingest.samples import generate_event, sample_event
from statsgoblin.queue.redis_queue import RedisJobQueue, connect_redis
from statsgoblin.storage.opensearch import connect as connect_store

app = typer.Typer(add_completion=False, help="Stats Goblin search metrics pipeline CLI")


def _writer(store) -> IndexWriter:
    return IndexWriter(
        store,
        settings.metrics_index_prefix,
        shards=settings.index_shards,
        replicas=settings.index_replicas,
        policy_id=settings.ism_policy_id,
    )


def _queue(client) -> RedisJobQueue:
    return RedisJobQueue(client, settings.queue_name, lock_seconds=settings.lock_seconds)


@app.command()
def consume(
    concurrency: Optional[int] = typer.Option(None, help="Worker count (defaults to GOBLIN_WORKER_CONCURRENCY)"),
) -> None:
    """Drain the metrics queue into OpenSearch until interrupted."""
    setup_logging("consumer")

    async def _run() -> None:
        store = connect_store(settings)
        client = connect_redis(settings)
        writer = _writer(store)
        await writer.ensure_schema()
        consumer = IngestionConsumer(
            _queue(client),
            MetricEventHandler(writer),
            concurrency=concurrency or settings.worker_concurrency,
            max_attempts=settings.max_attempts,
            backoff_base=settings.backoff_base_seconds,
            backoff_max=settings.backoff_max_seconds,
            poll_interval=settings.poll_interval_seconds,
            stalled_check_interval=settings.stalled_check_seconds,
        )
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, consumer.stop)
        try:
            await consumer.run()
        finally:
            await store.aclose()
            await client.aclose()

    asyncio.run(_run())


@app.command("ensure-schema")
def ensure_schema() -> None:
    """Install the partition index template."""
    setup_logging()
    log = logging.getLogger("statsgoblin.cli")

    async def _run() -> bool:
        store = connect_store(settings)
        try:
            return await _writer(store).ensure_schema()
        finally:
            await store.aclose()

    ok = asyncio.run(_run())
    log.info("ensure_schema_done", extra={"outcome": "ok" if ok else "failed"})
    if not ok:
        raise typer.Exit(code=1)


@app.command()
def publish(
    count: int = typer.Option(1, help="Number of events to publish"),
    random_events: bool = typer.Option(False, "--random", help="Generate random events from the last 7 days"),
) -> None:
    """Publish test events onto the metrics queue."""
    setup_logging()
    log = logging.getLogger("statsgoblin.cli")

    async def _run() -> int:
        client = connect_redis(settings)
        queue = _queue(client)
        try:
            for i in range(count):
                event = generate_event(i) if random_events else sample_event()
                await queue.add(settings.job_name, event)
            return count
        finally:
            await client.aclose()

    published = asyncio.run(_run())
    log.info("publish_done", extra={"queue": settings.queue_name, "count": published})


@app.command("dead-letters")
def dead_letters(limit: int = typer.Option(50, help="Max jobs to show")) -> None:
    """List dead-lettered jobs as JSON lines."""

    async def _run() -> list[dict]:
        client = connect_redis(settings)
        try:
            return await _queue(client).dead_letters(limit=limit)
        finally:
            await client.aclose()

    for job in asyncio.run(_run()):
        typer.echo(json.dumps(job, ensure_ascii=False))


@app.command("requeue-dead")
def requeue_dead(job_id: Optional[str] = typer.Argument(None, help="Job id; all dead jobs when omitted")) -> None:
    """Move dead-lettered jobs back onto the wait list with a fresh attempt budget."""
    setup_logging()
    log = logging.getLogger("statsgoblin.cli")

    async def _run() -> int:
        client = connect_redis(settings)
        try:
            return await _queue(client).requeue_dead(job_id)
        finally:
            await client.aclose()

    log.info("requeue_done", extra={"queue": settings.queue_name, "count": asyncio.run(_run())})


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Host to bind"),
    port: Optional[int] = typer.Option(None, help="Port to bind"),
    log_level: str = typer.Option("info", help="Uvicorn log level"),
) -> None:
    """Run the analytics HTTP API."""
    setup_logging("api")
    uvicorn.run(
        create_app(settings),
        host=host or settings.api_host,
        port=port or settings.api_port,
        log_level=log_level,
        log_config=None,
    )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
