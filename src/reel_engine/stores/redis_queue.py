"""Redis-backed work queue.

Layout under ``{prefix}:queue``:

* ``job:{id}``   hash with the job options, payload and current state
* ``waiting``    zset scored ``priority * 1e12 + seq`` (lower runs first, FIFO per priority)
* ``delayed``    zset scored by the epoch ms at which the job becomes eligible
* ``active``     zset scored by lease expiry; workers extend it while they run
* ``failed``     zset scored by failure time (kept until ``clean``)
* ``paused``     flag key; while set no job is handed out

Completed jobs are removed outright; their history lives in the durable
record store. Every state transition is a Lua script so a concurrent
``remove`` can never be resurrected by a worker.
"""

import json
import logging
import time
from typing import Callable, Dict, Optional

from redis.asyncio import Redis

from reel_engine.core.jobs import Job, JobKind, QueueState
from reel_engine.stores.interfaces import STALLED_REASON, QueueEntry

logger = logging.getLogger(__name__)

ENQUEUE_LUA = """
local unpack = unpack or table.unpack
if redis.call("EXISTS", KEYS[1]) == 1 then return 0 end
local seq = redis.call("INCR", KEYS[4])
redis.call("HSET", KEYS[1], unpack(ARGV, 5))
redis.call("HSET", KEYS[1], "state", ARGV[2])
if ARGV[2] == "delayed" then
  redis.call("ZADD", KEYS[3], tonumber(ARGV[3]), ARGV[1])
else
  redis.call("ZADD", KEYS[2], tonumber(ARGV[4]) * 1e12 + seq, ARGV[1])
end
return 1
"""

PROMOTE_LUA = """
local due = redis.call("ZRANGEBYSCORE", KEYS[1], "-inf", ARGV[1], "LIMIT", 0, tonumber(ARGV[3]))
for _, id in ipairs(due) do
  redis.call("ZREM", KEYS[1], id)
  local jobkey = ARGV[2] .. id
  if redis.call("EXISTS", jobkey) == 1 then
    local priority = tonumber(redis.call("HGET", jobkey, "priority")) or 0
    local seq = redis.call("INCR", KEYS[3])
    redis.call("ZADD", KEYS[2], priority * 1e12 + seq, id)
    redis.call("HSET", jobkey, "state", "waiting")
  end
end
return #due
"""

TAKE_LUA = """
while true do
  local popped = redis.call("ZPOPMIN", KEYS[1])
  if #popped == 0 then return false end
  local id = popped[1]
  local jobkey = ARGV[2] .. id
  if redis.call("EXISTS", jobkey) == 1 then
    redis.call("ZADD", KEYS[2], tonumber(ARGV[3]), id)
    redis.call("HSET", jobkey, "state", "active", "processed_at", ARGV[1])
    return id
  end
end
"""

FAIL_LUA = """
if redis.call("EXISTS", KEYS[1]) == 0 then return false end
redis.call("ZREM", KEYS[2], ARGV[1])
local made = redis.call("HINCRBY", KEYS[1], "attempts_made", 1)
local attempts = tonumber(redis.call("HGET", KEYS[1], "attempts")) or 1
redis.call("HSET", KEYS[1], "failed_reason", ARGV[3])
if made < attempts then
  local delay = tonumber(ARGV[4]) * (2 ^ (made - 1))
  redis.call("ZADD", KEYS[3], tonumber(ARGV[2]) + delay, ARGV[1])
  redis.call("HSET", KEYS[1], "state", "delayed")
  return "delayed"
end
redis.call("ZADD", KEYS[4], tonumber(ARGV[2]), ARGV[1])
redis.call("HSET", KEYS[1], "state", "failed", "finished_at", ARGV[2])
return "failed"
"""

TOUCH_LUA = """
if not redis.call("ZSCORE", KEYS[1], ARGV[1]) then return 0 end
redis.call("ZADD", KEYS[1], tonumber(ARGV[2]), ARGV[1])
return 1
"""

RECLAIM_LUA = """
local stalled = redis.call("ZRANGEBYSCORE", KEYS[1], "-inf", ARGV[1])
local result = {}
for _, id in ipairs(stalled) do
  redis.call("ZREM", KEYS[1], id)
  local jobkey = ARGV[2] .. id
  if redis.call("EXISTS", jobkey) == 1 then
    local made = redis.call("HINCRBY", jobkey, "attempts_made", 1)
    local attempts = tonumber(redis.call("HGET", jobkey, "attempts")) or 1
    redis.call("HSET", jobkey, "failed_reason", ARGV[3])
    local state = "failed"
    if made < attempts then
      local delay = tonumber(ARGV[4]) * (2 ^ (made - 1))
      redis.call("ZADD", KEYS[2], tonumber(ARGV[1]) + delay, id)
      state = "delayed"
    else
      redis.call("ZADD", KEYS[3], tonumber(ARGV[1]), id)
      redis.call("HSET", jobkey, "finished_at", ARGV[1])
    end
    redis.call("HSET", jobkey, "state", state)
    table.insert(result, id)
    table.insert(result, state)
  end
end
return result
"""

CLEAN_LUA = """
local expired = redis.call("ZRANGEBYSCORE", KEYS[1], "-inf", ARGV[1])
for _, id in ipairs(expired) do
  redis.call("ZREM", KEYS[1], id)
  redis.call("DEL", ARGV[2] .. id)
end
return #expired
"""

STATE_SETS = (QueueState.WAITING, QueueState.DELAYED, QueueState.ACTIVE, QueueState.FAILED)


class RedisWorkQueue:
    """Priority/delay/attempts work queue on Redis sorted sets."""

    def __init__(
        self,
        redis: Redis,
        prefix: str = "reel",
        retry_backoff_ms: int = 2000,
        promote_batch: int = 100,
        lease_ms: int = 60000,
        clock: Callable[[], float] = time.time,
    ):
        self._redis = redis
        self._base = f"{prefix}:queue"
        self._retry_backoff_ms = retry_backoff_ms
        self._promote_batch = promote_batch
        self._lease_ms = lease_ms
        self._clock = clock

        self._enqueue = redis.register_script(ENQUEUE_LUA)
        self._promote = redis.register_script(PROMOTE_LUA)
        self._take = redis.register_script(TAKE_LUA)
        self._fail = redis.register_script(FAIL_LUA)
        self._touch = redis.register_script(TOUCH_LUA)
        self._reclaim = redis.register_script(RECLAIM_LUA)
        self._clean = redis.register_script(CLEAN_LUA)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _job_key(self, job_id: str) -> str:
        return f"{self._base}:job:{job_id}"

    def _set_key(self, state: QueueState) -> str:
        return f"{self._base}:{state.value}"

    @property
    def _seq_key(self) -> str:
        return f"{self._base}:seq"

    @property
    def _paused_key(self) -> str:
        return f"{self._base}:paused"

    async def enqueue(self, job: Job) -> QueueEntry:
        now = self._now_ms()
        state = QueueState.DELAYED if job.delay_ms > 0 else QueueState.WAITING
        fields = {
            "id": job.id,
            "kind": job.kind.value,
            "subject_id": job.subject_id,
            "priority": job.priority,
            "delay_ms": job.delay_ms,
            "attempts": job.attempts,
            "attempts_made": 0,
            "batch_id": job.batch_id or "",
            "payload": json.dumps(job.payload),
            "created_at": now,
        }
        pairs = [item for field in fields.items() for item in field]

        added = await self._enqueue(
            keys=[
                self._job_key(job.id),
                self._set_key(QueueState.WAITING),
                self._set_key(QueueState.DELAYED),
                self._seq_key,
            ],
            args=[job.id, state.value, now + job.delay_ms, job.priority, *pairs],
        )
        if not added:
            raise ValueError(f"Job {job.id} is already queued")

        logger.debug("Queued %s as %s (priority=%d, delay=%dms)", job.id, state.value, job.priority, job.delay_ms)
        return QueueEntry.from_job(job, state, created_at=now)

    async def get(self, job_id: str) -> Optional[QueueEntry]:
        data = await self._redis.hgetall(self._job_key(job_id))
        if not data:
            return None
        return self._entry_from_hash(data)

    async def remove(self, job_id: str) -> bool:
        async with self._redis.pipeline(transaction=True) as pipe:
            for state in STATE_SETS:
                pipe.zrem(self._set_key(state), job_id)
            pipe.delete(self._job_key(job_id))
            results = await pipe.execute()
        return bool(results[-1])

    async def fetch_next(self) -> Optional[QueueEntry]:
        """Promote due delayed jobs, then take the best waiting job and lease it."""
        now = self._now_ms()
        await self._promote(
            keys=[self._set_key(QueueState.DELAYED), self._set_key(QueueState.WAITING), self._seq_key],
            args=[now, f"{self._base}:job:", self._promote_batch],
        )
        if await self.is_paused():
            return None
        job_id = await self._take(
            keys=[self._set_key(QueueState.WAITING), self._set_key(QueueState.ACTIVE)],
            args=[now, f"{self._base}:job:", now + self._lease_ms],
        )
        if not job_id:
            return None
        return await self.get(job_id)

    async def complete(self, job_id: str) -> bool:
        """Completed jobs are removed; the durable record keeps their history."""
        return await self.remove(job_id)

    async def fail(self, job_id: str, reason: str) -> Optional[QueueState]:
        """Record a failed attempt. Returns DELAYED when a retry is scheduled,
        FAILED when attempts are exhausted, None when the job is gone."""
        result = await self._fail(
            keys=[
                self._job_key(job_id),
                self._set_key(QueueState.ACTIVE),
                self._set_key(QueueState.DELAYED),
                self._set_key(QueueState.FAILED),
            ],
            args=[job_id, self._now_ms(), reason, self._retry_backoff_ms],
        )
        return QueueState(result) if result else None

    async def touch(self, job_id: str) -> bool:
        """Extend the lease of an active job; False once it is no longer active."""
        touched = await self._touch(
            keys=[self._set_key(QueueState.ACTIVE)],
            args=[job_id, self._now_ms() + self._lease_ms],
        )
        return bool(touched)

    async def reclaim_stalled(self) -> Dict[str, QueueState]:
        """Treat every active job whose lease ran out as a failed attempt."""
        result = await self._reclaim(
            keys=[
                self._set_key(QueueState.ACTIVE),
                self._set_key(QueueState.DELAYED),
                self._set_key(QueueState.FAILED),
            ],
            args=[self._now_ms(), f"{self._base}:job:", STALLED_REASON, self._retry_backoff_ms],
        )
        reclaimed = {job_id: QueueState(state) for job_id, state in zip(result[::2], result[1::2])}
        if reclaimed:
            logger.warning("Reclaimed %d stalled job(s): %s", len(reclaimed), ", ".join(reclaimed))
        return reclaimed

    async def pause(self) -> None:
        await self._redis.set(self._paused_key, "1")

    async def resume(self) -> None:
        await self._redis.delete(self._paused_key)

    async def is_paused(self) -> bool:
        return bool(await self._redis.exists(self._paused_key))

    async def clean(self, grace_ms: int = 0) -> int:
        """Drop failed jobs that failed at least ``grace_ms`` ago."""
        removed = await self._clean(
            keys=[self._set_key(QueueState.FAILED)],
            args=[self._now_ms() - grace_ms, f"{self._base}:job:"],
        )
        return int(removed)

    async def counts(self) -> Dict[str, int]:
        async with self._redis.pipeline(transaction=False) as pipe:
            for state in STATE_SETS:
                pipe.zcard(self._set_key(state))
            results = await pipe.execute()
        counts = {state.value: int(n) for state, n in zip(STATE_SETS, results)}
        counts[QueueState.COMPLETED.value] = 0
        return counts

    @staticmethod
    def _entry_from_hash(data: Dict[str, str]) -> QueueEntry:
        def optional_int(key: str) -> Optional[int]:
            value = data.get(key)
            return int(value) if value else None

        return QueueEntry(
            job_id=data["id"],
            kind=JobKind(data["kind"]),
            subject_id=data.get("subject_id", ""),
            state=QueueState(data["state"]),
            priority=int(data.get("priority") or 0),
            delay_ms=int(data.get("delay_ms") or 0),
            attempts=int(data.get("attempts") or 1),
            attempts_made=int(data.get("attempts_made") or 0),
            batch_id=data.get("batch_id") or None,
            payload=json.loads(data.get("payload") or "{}"),
            failed_reason=data.get("failed_reason") or None,
            created_at=int(data.get("created_at") or 0),
            processed_at=optional_int("processed_at"),
            finished_at=optional_int("finished_at"),
        )
