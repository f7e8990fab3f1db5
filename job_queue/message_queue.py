"""
Job Queue — Durable delivery queue with Redis and in-memory backends.

Job lifecycle:
  waiting   : eligible for dequeue (or deferred until ready_at by delay/backoff)
  active    : handed to exactly one worker slot, leased until lease_until
  completed : delivered; evicted once older than the completed retention
  failed    : retries exhausted; kept longer for operator inspection

  enqueue ──▶ waiting ──dequeue──▶ active ──ack──▶ completed
                 ▲                   │
                 └──nack (backoff)───┤
                 └──stall reclaim────┤
                                     └──nack (last attempt)──▶ failed

Job envelope:
  {
      "id":         monotonically increasing id, never reused,
      "payload":    webhook body including metadata,
      "attempts":   delivery attempts so far (incremented on dequeue),
      "state":      waiting | active | completed | failed,
      "priority":   lower runs first,
      "delay":      milliseconds requested at enqueue,
  }
"""
from __future__ import annotations

import asyncio
import copy
import functools
import heapq
import itertools
import json
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import QueueConfig
from core.errors import QueueUnavailable
from models.schemas import JobOptions, JobState, QueueStats

logger = structlog.get_logger()

STALLED_REASON = "job stalled more than allowable limit"

# Ranks order waiting jobs by priority first, then by id (FIFO). Redis keeps
# zset scores as doubles, so MAX_PRIORITY * stride + id must stay below 2**53.
_RANK_STRIDE = 2 ** 31


def _now_ms() -> int:
    return int(time.time() * 1000)


def _iso(ms: Optional[int]) -> Optional[str]:
    if not ms:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


def compute_backoff(attempts: int, base_delay: float, max_delay: float) -> float:
    """Exponential backoff: base_delay * 2^(attempts-1), capped at max_delay."""
    exponent = min(max(attempts, 1) - 1, 32)
    return min(base_delay * (2 ** exponent), max_delay)


def _error_text(error: Any) -> str:
    if error is None:
        return ""
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return str(error)


# ──────────────────────────────────────────────────────────────
#  Job Model
# ──────────────────────────────────────────────────────────────

@dataclass
class Job:
    """One accepted webhook event tracked through delivery."""
    id: str
    payload: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    state: JobState = JobState.WAITING
    priority: int = 0
    delay: int = 0
    created_at: int = 0
    ready_at: int = 0
    processed_at: int = 0
    finished_at: int = 0
    lease_until: int = 0
    token: str = ""
    failed_reason: str = ""

    @property
    def rank(self) -> int:
        return self.priority * _RANK_STRIDE + int(self.id)

    def to_dict(self) -> dict[str, str]:
        """Flat string mapping, as stored in a Redis hash."""
        return {
            "id": self.id,
            "payload": json.dumps(self.payload),
            "attempts": str(self.attempts),
            "state": self.state.value,
            "priority": str(self.priority),
            "delay": str(self.delay),
            "rank": str(self.rank),
            "created_at": str(self.created_at),
            "ready_at": str(self.ready_at),
            "processed_at": str(self.processed_at),
            "finished_at": str(self.finished_at),
            "lease_until": str(self.lease_until),
            "token": self.token,
            "failed_reason": self.failed_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        data = dict(data)  # copy
        if isinstance(data.get("payload"), str):
            data["payload"] = json.loads(data["payload"])
        for key in ("attempts", "priority", "delay", "created_at", "ready_at",
                    "processed_at", "finished_at", "lease_until"):
            data[key] = int(float(data.get(key) or 0))
        data["state"] = JobState(data.get("state", JobState.WAITING.value))
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    def envelope(self) -> dict[str, Any]:
        """JSON-friendly view for operators."""
        return {
            "id": self.id,
            "payload": self.payload,
            "attempts": self.attempts,
            "state": self.state.value,
            "priority": self.priority,
            "delay": self.delay,
            "created_at": _iso(self.created_at),
            "processed_at": _iso(self.processed_at),
            "finished_at": _iso(self.finished_at),
            "failed_reason": self.failed_reason or None,
        }


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class JobQueue(ABC):
    """
    Abstract job queue interface.

    Implementations own all synchronization: every operation is safe under
    concurrent calls from worker slots and the HTTP boundary.
    """

    def __init__(self, config: QueueConfig = None):
        self.config = config or QueueConfig()

    @property
    def max_retries(self) -> int:
        return self.config.max_retries

    def backoff_ms(self, attempts: int) -> int:
        delay = compute_backoff(attempts, self.config.retry_base_delay, self.config.retry_max_delay)
        return int(delay * 1000)

    @property
    def lease_ms(self) -> int:
        return int(self.config.stall_timeout * 1000)

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def enqueue(self, payload: dict[str, Any], options: JobOptions = None) -> str:
        """Persist a new waiting job and return its id."""
        ...

    @abstractmethod
    async def dequeue(self) -> Optional[Job]:
        """Hand the next eligible job to the caller as active, or None."""
        ...

    @abstractmethod
    async def ack(self, job_id: str, token: str = None) -> Optional[JobState]:
        """Mark a job completed. Returns the new state, or None if ignored."""
        ...

    @abstractmethod
    async def nack(self, job_id: str, error: Any = None, token: str = None) -> Optional[JobState]:
        """Reschedule with backoff or fail. Returns the new state, or None if ignored."""
        ...

    @abstractmethod
    async def stats(self) -> QueueStats:
        """Point-in-time state counts."""
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def reclaim_stalled(self) -> list[str]:
        """Return active jobs whose lease expired to waiting (or fail them)."""
        ...

    @abstractmethod
    async def clean(self) -> int:
        """Evict terminal jobs past their retention. Returns the number removed."""
        ...


# ──────────────────────────────────────────────────────────────
#  Redis Implementation
# ──────────────────────────────────────────────────────────────

# KEYS: waiting, delayed, active   ARGV: now, lease_ms, token, job key prefix
DEQUEUE_LUA = """
local due = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1])
for _, id in ipairs(due) do
  redis.call('ZREM', KEYS[2], id)
  redis.call('ZADD', KEYS[1], redis.call('HGET', ARGV[4] .. id, 'rank'), id)
end
local head = redis.call('ZRANGE', KEYS[1], 0, 0)
if #head == 0 then
  return false
end
local id = head[1]
local key = ARGV[4] .. id
local lease_until = tonumber(ARGV[1]) + tonumber(ARGV[2])
redis.call('ZREM', KEYS[1], id)
redis.call('HINCRBY', key, 'attempts', 1)
redis.call('HSET', key, 'state', 'active', 'token', ARGV[3],
           'processed_at', ARGV[1], 'lease_until', lease_until)
redis.call('ZADD', KEYS[3], lease_until, id)
return id
"""

# KEYS: active, waiting, delayed, completed   ARGV: job key, id, token, now
ACK_LUA = """
local state = redis.call('HGET', ARGV[1], 'state')
if not state then
  return 'missing'
end
if state == 'completed' or state == 'failed' then
  return 'terminal'
end
if ARGV[3] ~= '' and redis.call('HGET', ARGV[1], 'token') ~= ARGV[3] then
  return 'stale'
end
redis.call('ZREM', KEYS[1], ARGV[2])
redis.call('ZREM', KEYS[2], ARGV[2])
redis.call('ZREM', KEYS[3], ARGV[2])
redis.call('HSET', ARGV[1], 'state', 'completed', 'token', '', 'finished_at', ARGV[4])
redis.call('ZADD', KEYS[4], ARGV[4], ARGV[2])
return 'completed'
"""

# KEYS: active, waiting, delayed, failed
# ARGV: job key, id, token, now, max_retries, base_ms, max_ms, reason
NACK_LUA = """
local state = redis.call('HGET', ARGV[1], 'state')
if not state then
  return 'missing'
end
if state == 'completed' or state == 'failed' then
  return 'terminal'
end
if ARGV[3] ~= '' and redis.call('HGET', ARGV[1], 'token') ~= ARGV[3] then
  return 'stale'
end
local attempts = tonumber(redis.call('HGET', ARGV[1], 'attempts') or '0')
redis.call('ZREM', KEYS[1], ARGV[2])
redis.call('ZREM', KEYS[2], ARGV[2])
redis.call('ZREM', KEYS[3], ARGV[2])
if attempts < tonumber(ARGV[5]) then
  local exponent = math.min(math.max(attempts, 1) - 1, 32)
  local backoff = math.min(tonumber(ARGV[6]) * 2 ^ exponent, tonumber(ARGV[7]))
  local ready_at = tonumber(ARGV[4]) + math.floor(backoff)
  redis.call('HSET', ARGV[1], 'state', 'waiting', 'token', '',
             'ready_at', ready_at, 'failed_reason', ARGV[8])
  redis.call('ZADD', KEYS[3], ready_at, ARGV[2])
  return 'waiting'
end
redis.call('HSET', ARGV[1], 'state', 'failed', 'token', '',
           'finished_at', ARGV[4], 'failed_reason', ARGV[8])
redis.call('ZADD', KEYS[4], ARGV[4], ARGV[2])
return 'failed'
"""

# KEYS: active, waiting, failed   ARGV: now, max_retries, job key prefix, stalled reason
RECLAIM_LUA = """
local stalled = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
local out = {}
for _, id in ipairs(stalled) do
  local key = ARGV[3] .. id
  redis.call('ZREM', KEYS[1], id)
  local attempts = tonumber(redis.call('HGET', key, 'attempts') or '0')
  if attempts >= tonumber(ARGV[2]) then
    redis.call('HSET', key, 'state', 'failed', 'token', '',
               'finished_at', ARGV[1], 'failed_reason', ARGV[4])
    redis.call('ZADD', KEYS[3], ARGV[1], id)
    table.insert(out, id .. ':failed')
  else
    redis.call('HSET', key, 'state', 'waiting', 'token', '', 'ready_at', ARGV[1])
    redis.call('ZADD', KEYS[2], redis.call('HGET', key, 'rank'), id)
    table.insert(out, id .. ':waiting')
  end
end
return out
"""


def _unavailable_on_redis_error(func):
    """Surface backend failures as QueueUnavailable."""
    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        if self._redis is None:
            raise QueueUnavailable("Redis queue is not connected")
        try:
            return await func(self, *args, **kwargs)
        except RedisError as e:
            logger.error("redis_queue_error", operation=func.__name__, error=str(e))
            raise QueueUnavailable(f"Redis queue unavailable: {e}") from e
    return wrapper


class RedisJobQueue(JobQueue):
    """
    Production queue backed by Redis hashes + sorted sets.

    - {name}:job:{id}   hash holding the job envelope
    - {name}:waiting    sorted by rank (priority, then id)
    - {name}:delayed    sorted by ready_at (delay and retry backoff)
    - {name}:active     sorted by lease_until (stall detection)
    - {name}:completed / {name}:failed   sorted by finished_at (retention)

    Dequeue, ack, nack and stall reclaim each run as one Lua script, so
    state transitions are atomic across every process sharing the queue.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        config: QueueConfig = None,
        client: aioredis.Redis = None,
    ):
        super().__init__(config)
        self._redis_url = redis_url
        self._client = client  # pre-built client; must use decode_responses=True
        self._redis: Optional[aioredis.Redis] = None
        self._prefix = self.config.name
        self._dequeue_script = None
        self._ack_script = None
        self._nack_script = None
        self._reclaim_script = None

    def _key(self, name: str) -> str:
        return f"{self._prefix}:{name}"

    @property
    def _job_prefix(self) -> str:
        return self._key("job:")

    def _job_key(self, job_id: str) -> str:
        return f"{self._job_prefix}{job_id}"

    @retry(
        retry=retry_if_exception_type(RedisError),
        stop=stop_after_attempt(5),
        wait=wait_exponential(multiplier=0.05, max=2),
        reraise=True,
    )
    async def _ping(self):
        await self._redis.ping()

    async def connect(self):
        self._redis = self._client or aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        try:
            await self._ping()
        except RedisError as e:
            logger.error("redis_queue_connect_failed", url=self._redis_url, error=str(e))
            raise QueueUnavailable(f"Cannot connect to Redis: {e}") from e

        self._dequeue_script = self._redis.register_script(DEQUEUE_LUA)
        self._ack_script = self._redis.register_script(ACK_LUA)
        self._nack_script = self._redis.register_script(NACK_LUA)
        self._reclaim_script = self._redis.register_script(RECLAIM_LUA)
        logger.info("redis_queue_connected", url=self._redis_url, queue=self._prefix)

    async def close(self):
        if self._redis:
            await self._redis.aclose()
            self._redis = None
            logger.info("redis_queue_closed", queue=self._prefix)

    @_unavailable_on_redis_error
    async def enqueue(self, payload: dict[str, Any], options: JobOptions = None) -> str:
        options = options or JobOptions()
        job_id = str(await self._redis.incr(self._key("id")))
        now = _now_ms()
        delay = max(options.delay, 0)
        job = Job(
            id=job_id,
            payload=payload,
            priority=options.priority,
            delay=delay,
            created_at=now,
            ready_at=now + delay,
        )

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job_id), mapping=job.to_dict())
            if delay > 0:
                pipe.zadd(self._key("delayed"), {job_id: job.ready_at})
            else:
                pipe.zadd(self._key("waiting"), {job_id: job.rank})
            await pipe.execute()

        logger.info("job_enqueued", job_id=job_id, priority=job.priority, delay=delay)
        return job_id

    @_unavailable_on_redis_error
    async def dequeue(self) -> Optional[Job]:
        token = uuid.uuid4().hex
        job_id = await self._dequeue_script(
            keys=[self._key("waiting"), self._key("delayed"), self._key("active")],
            args=[_now_ms(), self.lease_ms, token, self._job_prefix],
        )
        if not job_id:
            return None
        job = await self.get_job(job_id)
        logger.debug("job_dequeued", job_id=job_id, attempt=job.attempts if job else None)
        return job

    @_unavailable_on_redis_error
    async def ack(self, job_id: str, token: str = None) -> Optional[JobState]:
        outcome = await self._ack_script(
            keys=[self._key("active"), self._key("waiting"),
                  self._key("delayed"), self._key("completed")],
            args=[self._job_key(job_id), job_id, token or "", _now_ms()],
        )
        return self._log_outcome("ack", job_id, outcome)

    @_unavailable_on_redis_error
    async def nack(self, job_id: str, error: Any = None, token: str = None) -> Optional[JobState]:
        reason = _error_text(error)
        outcome = await self._nack_script(
            keys=[self._key("active"), self._key("waiting"),
                  self._key("delayed"), self._key("failed")],
            args=[
                self._job_key(job_id), job_id, token or "", _now_ms(),
                self.max_retries,
                int(self.config.retry_base_delay * 1000),
                int(self.config.retry_max_delay * 1000),
                reason,
            ],
        )
        return self._log_outcome("nack", job_id, outcome, error=reason)

    def _log_outcome(self, operation: str, job_id: str, outcome: str, **context) -> Optional[JobState]:
        if outcome == "completed":
            logger.info("job_completed", job_id=job_id)
            return JobState.COMPLETED
        if outcome == "waiting":
            logger.info("job_retry_scheduled", job_id=job_id, **context)
            return JobState.WAITING
        if outcome == "failed":
            logger.error("job_failed", job_id=job_id, max_retries=self.max_retries, **context)
            return JobState.FAILED
        logger.warning("job_signal_ignored", operation=operation, job_id=job_id, reason=outcome)
        return None

    @_unavailable_on_redis_error
    async def stats(self) -> QueueStats:
        async with self._redis.pipeline(transaction=False) as pipe:
            for name in ("waiting", "delayed", "active", "completed", "failed"):
                pipe.zcard(self._key(name))
            waiting, delayed, active, completed, failed = await pipe.execute()
        return QueueStats(
            waiting=waiting + delayed,
            active=active,
            completed=completed,
            failed=failed,
        )

    @_unavailable_on_redis_error
    async def get_job(self, job_id: str) -> Optional[Job]:
        data = await self._redis.hgetall(self._job_key(job_id))
        if not data:
            return None
        return Job.from_dict(data)

    @_unavailable_on_redis_error
    async def reclaim_stalled(self) -> list[str]:
        results = await self._reclaim_script(
            keys=[self._key("active"), self._key("waiting"), self._key("failed")],
            args=[_now_ms(), self.max_retries, self._job_prefix, STALLED_REASON],
        )
        reclaimed = []
        for entry in results or []:
            job_id, _, state = entry.rpartition(":")
            reclaimed.append(job_id)
            logger.warning("job_stalled", job_id=job_id, new_state=state)
        return reclaimed

    @_unavailable_on_redis_error
    async def clean(self) -> int:
        now = _now_ms()
        completed_key = self._key("completed")
        failed_key = self._key("failed")

        expired = set(await self._redis.zrangebyscore(
            completed_key, "-inf", now - int(self.config.completed_retention * 1000)))
        excess = await self._redis.zcard(completed_key) - self.config.completed_max_count
        if excess > 0:
            expired.update(await self._redis.zrange(completed_key, 0, excess - 1))
        expired_failed = set(await self._redis.zrangebyscore(
            failed_key, "-inf", now - int(self.config.failed_retention * 1000)))

        if not expired and not expired_failed:
            return 0

        async with self._redis.pipeline(transaction=True) as pipe:
            if expired:
                pipe.zrem(completed_key, *expired)
            if expired_failed:
                pipe.zrem(failed_key, *expired_failed)
            pipe.delete(*[self._job_key(j) for j in expired | expired_failed])
            await pipe.execute()

        removed = len(expired) + len(expired_failed)
        logger.info("jobs_evicted", completed=len(expired), failed=len(expired_failed))
        return removed


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryJobQueue(JobQueue):
    """
    Development/test queue backed by dicts and heaps under an asyncio lock.
    Single-process only; jobs do not survive a restart.
    """

    def __init__(self, config: QueueConfig = None):
        super().__init__(config)
        self._jobs: dict[str, Job] = {}
        self._waiting: list[tuple[int, str]] = []   # (rank, id)
        self._delayed: list[tuple[int, str]] = []   # (ready_at, id)
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()
        self._running = False

    async def connect(self):
        self._running = True
        logger.info("inmemory_queue_connected")

    async def close(self):
        self._running = False

    async def enqueue(self, payload: dict[str, Any], options: JobOptions = None) -> str:
        options = options or JobOptions()
        async with self._lock:
            job_id = str(next(self._ids))
            now = _now_ms()
            delay = max(options.delay, 0)
            job = Job(
                id=job_id,
                payload=copy.deepcopy(payload),
                priority=options.priority,
                delay=delay,
                created_at=now,
                ready_at=now + delay,
            )
            self._jobs[job_id] = job
            if delay > 0:
                heapq.heappush(self._delayed, (job.ready_at, job_id))
            else:
                heapq.heappush(self._waiting, (job.rank, job_id))

        logger.info("job_enqueued", job_id=job_id, priority=job.priority, delay=delay)
        return job_id

    def _promote_due(self, now: int):
        while self._delayed and self._delayed[0][0] <= now:
            _, job_id = heapq.heappop(self._delayed)
            job = self._jobs.get(job_id)
            # Entries left behind by a later reschedule are skipped
            if job and job.state == JobState.WAITING and job.ready_at <= now:
                heapq.heappush(self._waiting, (job.rank, job_id))

    async def dequeue(self) -> Optional[Job]:
        async with self._lock:
            now = _now_ms()
            self._promote_due(now)
            while self._waiting:
                _, job_id = heapq.heappop(self._waiting)
                job = self._jobs.get(job_id)
                if job is None or job.state != JobState.WAITING or job.ready_at > now:
                    continue
                job.state = JobState.ACTIVE
                job.attempts += 1
                job.token = uuid.uuid4().hex
                job.processed_at = now
                job.lease_until = now + self.lease_ms
                logger.debug("job_dequeued", job_id=job_id, attempt=job.attempts)
                return copy.deepcopy(job)
        return None

    def _check_signal(self, operation: str, job_id: str, token: Optional[str]) -> Optional[Job]:
        job = self._jobs.get(job_id)
        if job is None:
            reason = "missing"
        elif job.state.is_terminal:
            reason = "terminal"
        elif token and job.token != token:
            reason = "stale"
        else:
            return job
        logger.warning("job_signal_ignored", operation=operation, job_id=job_id, reason=reason)
        return None

    async def ack(self, job_id: str, token: str = None) -> Optional[JobState]:
        async with self._lock:
            job = self._check_signal("ack", job_id, token)
            if job is None:
                return None
            job.state = JobState.COMPLETED
            job.token = ""
            job.finished_at = _now_ms()
        logger.info("job_completed", job_id=job_id)
        return JobState.COMPLETED

    async def nack(self, job_id: str, error: Any = None, token: str = None) -> Optional[JobState]:
        reason = _error_text(error)
        async with self._lock:
            job = self._check_signal("nack", job_id, token)
            if job is None:
                return None
            now = _now_ms()
            job.token = ""
            job.failed_reason = reason
            if job.attempts < self.max_retries:
                job.state = JobState.WAITING
                job.ready_at = now + self.backoff_ms(job.attempts)
                heapq.heappush(self._delayed, (job.ready_at, job_id))
                attempts, ready_at = job.attempts, job.ready_at
            else:
                job.state = JobState.FAILED
                job.finished_at = now
                attempts, ready_at = job.attempts, None

        if ready_at is None:
            logger.error("job_failed", job_id=job_id, attempts=attempts, error=reason)
            return JobState.FAILED
        logger.info("job_retry_scheduled",
                    job_id=job_id,
                    attempt=attempts,
                    retry_at=_iso(ready_at),
                    error=reason)
        return JobState.WAITING

    async def stats(self) -> QueueStats:
        async with self._lock:
            counts = {state: 0 for state in JobState}
            for job in self._jobs.values():
                counts[job.state] += 1
        return QueueStats(
            waiting=counts[JobState.WAITING],
            active=counts[JobState.ACTIVE],
            completed=counts[JobState.COMPLETED],
            failed=counts[JobState.FAILED],
        )

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    async def reclaim_stalled(self) -> list[str]:
        reclaimed = []
        async with self._lock:
            now = _now_ms()
            for job in self._jobs.values():
                if job.state != JobState.ACTIVE or job.lease_until > now:
                    continue
                job.token = ""
                if job.attempts >= self.max_retries:
                    job.state = JobState.FAILED
                    job.finished_at = now
                    job.failed_reason = STALLED_REASON
                else:
                    job.state = JobState.WAITING
                    job.ready_at = now
                    heapq.heappush(self._waiting, (job.rank, job.id))
                reclaimed.append((job.id, job.state.value))

        for job_id, state in reclaimed:
            logger.warning("job_stalled", job_id=job_id, new_state=state)
        return [job_id for job_id, _ in reclaimed]

    async def clean(self) -> int:
        async with self._lock:
            now = _now_ms()
            completed_cutoff = now - int(self.config.completed_retention * 1000)
            failed_cutoff = now - int(self.config.failed_retention * 1000)

            completed = sorted(
                (j for j in self._jobs.values() if j.state == JobState.COMPLETED),
                key=lambda j: j.finished_at,
            )
            excess = len(completed) - self.config.completed_max_count
            expired = {j.id for j in completed[:max(excess, 0)]}
            expired.update(j.id for j in completed if j.finished_at <= completed_cutoff)
            expired_failed = {
                j.id for j in self._jobs.values()
                if j.state == JobState.FAILED and j.finished_at <= failed_cutoff
            }
            for job_id in expired | expired_failed:
                del self._jobs[job_id]

        removed = len(expired) + len(expired_failed)
        if removed:
            logger.info("jobs_evicted", completed=len(expired), failed=len(expired_failed))
        return removed


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[JobQueue] = None


def create_job_queue(config: QueueConfig = None) -> JobQueue:
    """Factory: create the appropriate queue backend."""
    global _instance
    if _instance:
        return _instance

    config = config or QueueConfig()

    if config.backend == "redis":
        _instance = RedisJobQueue(redis_url=config.redis_url, config=config)
    else:
        _instance = InMemoryJobQueue(config)

    logger.info("job_queue_created", backend=config.backend, queue=config.name)
    return _instance


def get_job_queue() -> JobQueue:
    """Return the singleton queue instance."""
    global _instance
    if _instance is None:
        _instance = create_job_queue()
    return _instance
