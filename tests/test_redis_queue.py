import json

import pytest

from statsgoblin.queue.redis_queue import RedisJobQueue, _parse_sentinels


@pytest.fixture
def queue(redis_client):
    return RedisJobQueue(redis_client, "search-metrics", lock_seconds=30)


@pytest.mark.asyncio
async def test_jobs_are_fetched_in_fifo_order(queue):
    first = await queue.add("search-metric", {"requestId": "a"})
    second = await queue.add("search-metric", {"requestId": "b"})

    job = await queue.fetch()
    assert job.id == first
    assert job.name == "search-metric"
    assert json.loads(job.data) == {"requestId": "a"}
    assert job.attempts_made == 1
    assert (await queue.fetch()).id == second
    assert await queue.fetch() is None


@pytest.mark.asyncio
async def test_ack_removes_job_and_counts_completion(queue, redis_client):
    await queue.add("search-metric", "{}")
    job = await queue.fetch()

    await queue.ack(job)

    counts = await queue.counts()
    assert (counts.waiting, counts.active, counts.completed) == (0, 0, 1)
    assert not await redis_client.exists(f"search-metrics:job:{job.id}")


@pytest.mark.asyncio
async def test_retry_delays_job_until_ready(queue):
    await queue.add("search-metric", "{}")
    job = await queue.fetch()

    await queue.retry(job, delay_seconds=60, reason="boom")
    assert await queue.fetch() is None
    assert (await queue.counts()).delayed == 1

    assert await queue.promote_delayed(now=job.enqueued_at + 3600) == 1
    again = await queue.fetch()
    assert again.id == job.id
    assert again.attempts_made == 2


@pytest.mark.asyncio
async def test_dead_letter_keeps_job_for_inspection_and_requeue(queue):
    await queue.add("search-metric", '{"requestId": "x"}')
    job = await queue.fetch()

    await queue.dead_letter(job, "malformed payload")

    dead = await queue.dead_letters()
    assert [(d["id"], d["failed_reason"]) for d in dead] == [(job.id, "malformed payload")]
    assert (await queue.counts()).dead == 1

    assert await queue.requeue_dead() == 1
    requeued = await queue.fetch()
    assert requeued.id == job.id
    assert requeued.attempts_made == 1


@pytest.mark.asyncio
async def test_requeue_stalled_only_moves_unlocked_jobs(queue, redis_client):
    await queue.add("search-metric", "{}")
    await queue.add("search-metric", "{}")
    crashed = await queue.fetch()
    alive = await queue.fetch()
    await redis_client.delete(f"search-metrics:lock:{crashed.id}")

    assert await queue.requeue_stalled() == 1

    assert await redis_client.lrange("search-metrics:active", 0, -1) == [alive.id]
    assert (await queue.fetch()).id == crashed.id


def test_parse_sentinels():
    assert _parse_sentinels("s1:26379, s2:26380,s3") == [("s1", 26379), ("s2", 26380), ("s3", 26379)]
    assert _parse_sentinels("") == []


@pytest.mark.asyncio
async def test_retry_and_dead_letter_skip_jobs_already_requeued(queue, redis_client):
    await queue.add("search-metric", "{}")
    job = await queue.fetch()
    await redis_client.delete(f"search-metrics:lock:{job.id}")
    await queue.requeue_stalled()

    assert await queue.retry(job, delay_seconds=5, reason="slow") is False
    assert await queue.dead_letter(job, "slow") is False

    counts = await queue.counts()
    assert (counts.waiting, counts.delayed, counts.dead) == (1, 0, 0)


@pytest.mark.asyncio
async def test_ack_after_stall_requeue_does_not_redeliver(queue, redis_client):
    await queue.add("search-metric", "{}")
    job = await queue.fetch()
    await redis_client.delete(f"search-metrics:lock:{job.id}")
    await queue.requeue_stalled()

    await queue.ack(job)

    assert await queue.fetch() is None
    assert (await queue.counts()).completed == 1


@pytest.mark.asyncio
async def test_undecodable_job_data_is_read_as_empty(queue, redis_client):
    await redis_client.hset("search-metrics:job:7", mapping={"name": "search-metric", "data": b"\xff", "enqueued_at": "x"})
    await redis_client.lpush("search-metrics:wait", "7")

    job = await queue.fetch()

    assert (job.id, job.name, job.data, job.enqueued_at) == ("7", "search-metric", "", 0.0)
    assert job.attempts_made == 1
