"""Reliable job queue on top of Redis lists.

Layout, all keys prefixed with the queue name:

- ``wait``       list of job ids ready to run (LPUSH in, RIGHT out)
- ``active``     list of job ids currently held by a worker
- ``lock:<id>``  TTL key held while a worker owns the job
- ``delayed``    sorted set of job ids scored by the time they become ready
- ``dead``       list of dead-lettered job ids
- ``job:<id>``   hash with name, data, attempts_made, enqueued_at, failed_reason
- ``completed``  counter of acknowledged jobs
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any

import redis.asyncio as redis

from statsgoblin.common.config import Settings, settings

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Job:
    id: str
    name: str
    data: str
    attempts_made: int
    enqueued_at: float


@dataclass(frozen=True)
class QueueCounts:
    waiting: int
    active: int
    delayed: int
    dead: int
    completed: int


class RedisJobQueue:
    def __init__(self, client: redis.Redis, name: str, lock_seconds: float = 30.0):
        self.client = client
        self.name = name
        self.lock_seconds = lock_seconds

    def _key(self, suffix: str) -> str:
        return f"{self.name}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    def _lock_key(self, job_id: str) -> str:
        return self._key(f"lock:{job_id}")

    # -------------------- producer --------------------
    async def add(self, job_name: str, payload: dict[str, Any] | str) -> str:
        data = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
        job_id = str(await self.client.incr(self._key("id")))
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.hset(
                self._job_key(job_id),
                mapping={"name": job_name, "data": data, "attempts_made": 0, "enqueued_at": time.time()},
            )
            pipe.lpush(self._key("wait"), job_id)
            await pipe.execute()
        return job_id

    # -------------------- consumer --------------------
    async def fetch(self) -> Job | None:
        """Move the oldest ready job to ``active`` and take its lock, or return None."""
        await self.promote_delayed()
        job_id = await self.client.lmove(self._key("wait"), self._key("active"), "RIGHT", "LEFT")
        if job_id is None:
            return None

        await self.client.set(self._lock_key(job_id), "1", px=int(self.lock_seconds * 1000))
        attempts = await self.client.hincrby(self._job_key(job_id), "attempts_made", 1)
        fields = await self._read_fields(job_id)
        try:
            enqueued_at = float(fields.get("enqueued_at") or 0.0)
        except ValueError:
            enqueued_at = 0.0
        return Job(
            id=job_id,
            name=fields.get("name", ""),
            data=fields.get("data", ""),
            attempts_made=int(attempts),
            enqueued_at=enqueued_at,
        )

    async def _read_fields(self, job_id: str) -> dict[str, str]:
        """Read a job hash; values that are not valid UTF-8 come back as ``""``.

        An empty ``data`` fails payload validation, so such a job is
        dead-lettered by the handler instead of breaking the fetch.
        """
        key = self._job_key(job_id)
        try:
            return await self.client.hgetall(key)
        except UnicodeDecodeError:
            log.warning("job_fields_undecodable", extra={"job_id": job_id, "queue": self.name})
        fields: dict[str, str] = {}
        for name in await self.client.hkeys(key):
            try:
                fields[name] = await self.client.hget(key, name) or ""
            except UnicodeDecodeError:
                fields[name] = ""
        return fields

    async def ack(self, job: Job) -> None:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.lrem(self._key("active"), 1, job.id)
            # the stall check may already have put it back on ``wait``
            pipe.lrem(self._key("wait"), 1, job.id)
            pipe.delete(self._job_key(job.id), self._lock_key(job.id))
            pipe.incr(self._key("completed"))
            await pipe.execute()

    async def _release(self, job: Job) -> bool:
        """Take ``job`` off ``active``; False when the stall check already requeued it."""
        if await self.client.lrem(self._key("active"), 1, job.id):
            return True
        log.warning("job_ownership_lost", extra={"job_id": job.id, "queue": self.name})
        return False

    async def retry(self, job: Job, delay_seconds: float, reason: str) -> bool:
        if not await self._release(job):
            return False
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job.id), "failed_reason", reason)
            pipe.zadd(self._key("delayed"), {job.id: time.time() + delay_seconds})
            pipe.delete(self._lock_key(job.id))
            await pipe.execute()
        return True

    async def dead_letter(self, job: Job, reason: str) -> bool:
        if not await self._release(job):
            return False
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job.id), mapping={"failed_reason": reason, "dead_lettered_at": time.time()})
            pipe.lpush(self._key("dead"), job.id)
            pipe.delete(self._lock_key(job.id))
            await pipe.execute()
        return True

    async def promote_delayed(self, now: float | None = None) -> int:
        ready = await self.client.zrangebyscore(self._key("delayed"), "-inf", now if now is not None else time.time())
        moved = 0
        for job_id in ready:
            # only the worker whose ZREM succeeds re-enqueues the job
            if await self.client.zrem(self._key("delayed"), job_id):
                await self.client.lpush(self._key("wait"), job_id)
                moved += 1
        return moved

    async def requeue_stalled(self) -> int:
        """Return active jobs whose lock expired (crashed worker) to the front of ``wait``."""
        moved = 0
        for job_id in await self.client.lrange(self._key("active"), 0, -1):
            if await self.client.exists(self._lock_key(job_id)):
                continue
            if await self.client.lrem(self._key("active"), 1, job_id):
                await self.client.rpush(self._key("wait"), job_id)
                moved += 1
        if moved:
            log.warning("stalled_jobs_requeued", extra={"queue": self.name, "count": moved})
        return moved

    # -------------------- operator --------------------
    async def counts(self) -> QueueCounts:
        async with self.client.pipeline(transaction=False) as pipe:
            pipe.llen(self._key("wait"))
            pipe.llen(self._key("active"))
            pipe.zcard(self._key("delayed"))
            pipe.llen(self._key("dead"))
            pipe.get(self._key("completed"))
            waiting, active, delayed, dead, completed = await pipe.execute()
        return QueueCounts(
            waiting=int(waiting),
            active=int(active),
            delayed=int(delayed),
            dead=int(dead),
            completed=int(completed or 0),
        )

    async def dead_letters(self, limit: int = 50) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for job_id in await self.client.lrange(self._key("dead"), 0, limit - 1):
            fields = await self._read_fields(job_id)
            out.append({"id": job_id, **fields})
        return out

    async def requeue_dead(self, job_id: str | None = None) -> int:
        """Give dead-lettered jobs a fresh attempt budget; all of them when ``job_id`` is None."""
        ids = [job_id] if job_id else await self.client.lrange(self._key("dead"), 0, -1)
        moved = 0
        for jid in ids:
            if not await self.client.lrem(self._key("dead"), 1, jid):
                continue
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(self._job_key(jid), "attempts_made", 0)
                pipe.hdel(self._job_key(jid), "failed_reason", "dead_lettered_at")
                pipe.lpush(self._key("wait"), jid)
                await pipe.execute()
            moved += 1
        return moved


def _parse_sentinels(hosts: str) -> list[tuple[str, int]]:
    out = []
    for entry in hosts.split(","):
        entry = entry.strip()
        if not entry:
            continue
        if ":" in entry:
            host, port = entry.rsplit(":", 1)
            out.append((host.strip(), int(port)))
        else:
            out.append((entry, 26379))
    return out


def connect_redis(cfg: Settings | None = None) -> redis.Redis:
    cfg = cfg or settings
    if cfg.redis_mode == "sentinel":
        sentinels = _parse_sentinels(cfg.redis_sentinels)
        if not sentinels:
            raise ValueError("redis_mode is sentinel but no sentinel hosts configured")
        sentinel = redis.Sentinel(sentinels, password=cfg.redis_password)
        log.info("redis_connect", extra={"queue": cfg.queue_name, "method": "sentinel"})
        return sentinel.master_for(cfg.redis_master_name, db=cfg.redis_db, decode_responses=True)

    log.info("redis_connect", extra={"queue": cfg.queue_name, "method": "standalone"})
    return redis.Redis(
        host=cfg.redis_host,
        port=cfg.redis_port,
        db=cfg.redis_db,
        password=cfg.redis_password,
        decode_responses=True,
    )
