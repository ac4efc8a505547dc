# laneq/storage.py
"""
laneq Job State Store
---------------------

Job bookkeeping on Redis:

    {prefix}:job:{id}    hash with the Job fields (args JSON-encoded)
    {prefix}:jobs        sorted set of job ids scored by created_at

Every status change goes through a transition table. Updates to one job are serialized
by a per-job asyncio.Lock inside the process and by WATCH/MULTI optimistic transactions
across processes; a WatchError re-runs the read-modify-write.

Updates addressed to a job that no longer exists are no-ops returning None, so a worker
finishing a task whose record was deleted mid-execution does not fail.
"""

from __future__ import annotations

import json
import enum
import uuid
import weakref
import asyncio
import logging
import contextlib
import dataclasses
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

import redis.asyncio as redis_async
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from laneq.errors import InvalidTransition, JobNotFound, LaneqError
from laneq.queue.retry import Decision, Requeue
from laneq.utils.time_utils import now_ts

LOG = logging.getLogger("laneq.storage")

MAX_WATCH_RETRIES = 16
LIST_SCAN_BATCH = 200


class StorageError(LaneqError):
    pass


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.FAILED: frozenset({JobStatus.QUEUED}),
    JobStatus.COMPLETED: frozenset(),
}

_NULLABLE = ("completed_at", "error_message", "result_ref")


def new_job_id() -> str:
    return uuid.uuid4().hex


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


@dataclass
class Job:
    id: str
    type: str
    queue: str
    status: JobStatus = JobStatus.QUEUED
    retries: int = 0
    created_at: float = 0.0
    updated_at: float = 0.0
    completed_at: Optional[float] = None
    error_message: Optional[str] = None
    result_ref: Optional[str] = None
    broker_task_id: str = ""
    args: Dict[str, Any] = field(default_factory=dict)

    def to_mapping(self) -> Dict[str, str]:
        out = {
            "id": self.id,
            "type": self.type,
            "queue": self.queue,
            "status": self.status.value,
            "retries": str(self.retries),
            "created_at": repr(self.created_at),
            "updated_at": repr(self.updated_at),
            "broker_task_id": self.broker_task_id or "",
            "args": json.dumps(self.args, sort_keys=True, default=str),
        }
        if self.completed_at is not None:
            out["completed_at"] = repr(self.completed_at)
        if self.error_message is not None:
            out["error_message"] = self.error_message
        if self.result_ref is not None:
            out["result_ref"] = self.result_ref
        return out

    @classmethod
    def from_mapping(cls, data: Dict[Any, Any]) -> "Job":
        d = {
            (k.decode() if isinstance(k, bytes) else k): (v.decode() if isinstance(v, bytes) else v)
            for k, v in data.items()
        }
        return cls(
            id=d["id"],
            type=d.get("type", ""),
            queue=d.get("queue", ""),
            status=JobStatus(d.get("status", JobStatus.QUEUED.value)),
            retries=int(d.get("retries") or 0),
            created_at=float(d.get("created_at") or 0.0),
            updated_at=float(d.get("updated_at") or 0.0),
            completed_at=float(d["completed_at"]) if d.get("completed_at") else None,
            error_message=d.get("error_message"),
            result_ref=d.get("result_ref"),
            broker_task_id=d.get("broker_task_id", ""),
            args=json.loads(d["args"]) if d.get("args") else {},
        )

    def to_dict(self) -> Dict[str, Any]:
        out = dataclasses.asdict(self)
        out["status"] = self.status.value
        return out


class JobStore:
    """
    Usage:
        store = JobStore(redis_client, prefix="laneq")
        job = await store.create(Job(id=new_job_id(), type="scrape", queue="default"))
        await store.update_status(job.id, JobStatus.PROCESSING)
    """

    def __init__(self, redis: redis_async.Redis, prefix: str = "laneq"):
        self.redis = redis
        self.prefix = prefix
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    @property
    def index_key(self) -> str:
        return f"{self.prefix}:jobs"

    def _lock_for(self, job_id: str) -> asyncio.Lock:
        lock = self._locks.get(job_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[job_id] = lock
        return lock

    @contextlib.asynccontextmanager
    async def _op(self, op: str) -> AsyncIterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as e:
            LOG.warning("Job store %s failed: %s", op, e)
            raise StorageError(f"job store unavailable during {op}: {e}") from e

    # -------------------------
    # Create / read / delete
    # -------------------------
    async def create(self, job: Job) -> Job:
        ts = now_ts()
        job.created_at = job.created_at or ts
        job.updated_at = ts
        key = self._key(job.id)
        async with self._op("create"):
            if await self.redis.exists(key):
                raise StorageError(f"job {job.id} already exists")
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping=job.to_mapping())
                pipe.zadd(self.index_key, {job.id: job.created_at})
                await pipe.execute()
        return job

    async def get(self, job_id: str) -> Optional[Job]:
        async with self._op("get"):
            data = await self.redis.hgetall(self._key(job_id))
        return Job.from_mapping(data) if data else None

    async def delete(self, job_id: str) -> bool:
        async with self._lock_for(job_id):
            async with self._op("delete"):
                async with self.redis.pipeline(transaction=True) as pipe:
                    pipe.delete(self._key(job_id))
                    pipe.zrem(self.index_key, job_id)
                    removed, _ = await pipe.execute()
        if removed:
            LOG.info("Deleted job %s", job_id)
        return bool(removed)

    async def list(
        self,
        status: Optional[str] = None,
        queue: Optional[str] = None,
        type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Job]:
        """Newest first, filtered by status / queue / type."""
        want_status = JobStatus(status) if status else None
        out: List[Job] = []
        skipped = 0
        start = 0
        async with self._op("list"):
            while len(out) < limit:
                ids = await self.redis.zrevrange(self.index_key, start, start + LIST_SCAN_BATCH - 1)
                if not ids:
                    break
                start += len(ids)
                async with self.redis.pipeline(transaction=False) as pipe:
                    for job_id in ids:
                        pipe.hgetall(self._key(job_id.decode() if isinstance(job_id, bytes) else job_id))
                    rows = await pipe.execute()
                for data in rows:
                    if not data:
                        continue
                    job = Job.from_mapping(data)
                    if want_status is not None and job.status != want_status:
                        continue
                    if queue and job.queue != queue:
                        continue
                    if type and job.type != type:
                        continue
                    if skipped < offset:
                        skipped += 1
                        continue
                    out.append(job)
                    if len(out) >= limit:
                        break
        return out

    async def count(self) -> int:
        async with self._op("count"):
            return int(await self.redis.zcard(self.index_key))

    # -------------------------
    # Mutations
    # -------------------------
    async def _mutate(self, job_id: str, op: str, fn: Callable[[Job], Job]) -> Optional[Job]:
        """Read-modify-write of one job under the per-job lock and WATCH. None when absent."""
        key = self._key(job_id)
        async with self._lock_for(job_id):
            async with self._op(op):
                for _ in range(MAX_WATCH_RETRIES):
                    async with self.redis.pipeline(transaction=True) as pipe:
                        try:
                            await pipe.watch(key)
                            data = await pipe.hgetall(key)
                            if not data:
                                await pipe.unwatch()
                                return None
                            job = fn(Job.from_mapping(data))
                            job.updated_at = now_ts()
                            pipe.multi()
                            pipe.delete(key)
                            pipe.hset(key, mapping=job.to_mapping())
                            await pipe.execute()
                            return job
                        except WatchError:
                            LOG.debug("Concurrent update on job %s, retrying %s", job_id, op)
                            continue
        raise StorageError(f"job {job_id}: {op} kept conflicting with concurrent writers")

    @staticmethod
    def _apply_status(job: Job, target: JobStatus):
        if not can_transition(job.status, target):
            raise InvalidTransition(job.id, job.status.value, target.value)
        job.status = target
        if target in (JobStatus.COMPLETED, JobStatus.FAILED):
            job.completed_at = now_ts()
        else:
            job.completed_at = None

    async def update_status(self, job_id: str, status: JobStatus, **fields: Any) -> Optional[Job]:
        """
        Move the job to `status` and set the extra fields (error_message, result_ref,
        broker_task_id, retries). Raises InvalidTransition for moves outside the table.
        """
        target = JobStatus(status)

        def _fn(job: Job) -> Job:
            self._apply_status(job, target)
            for name, value in fields.items():
                setattr(job, name, value)
            return job

        return await self._mutate(job_id, f"update_status:{target.value}", _fn)

    async def set_fields(self, job_id: str, **fields: Any) -> Optional[Job]:
        """Update non-status fields (broker_task_id, result_ref, ...)."""
        if "status" in fields:
            raise ValueError("use update_status() to change status")

        def _fn(job: Job) -> Job:
            for name, value in fields.items():
                setattr(job, name, value)
            return job

        return await self._mutate(job_id, "set_fields", _fn)

    async def record_failure(
        self,
        job_id: str,
        error: str,
        decide: Callable[[int], Decision],
    ) -> Tuple[Optional[Job], Optional[Decision]]:
        """
        processing -> failed, and when decide(retries) returns Requeue, failed -> queued with
        retries + 1, as one linearized update. Returns (job, decision); (None, None) when the
        job was deleted.
        """
        decision_box: List[Decision] = []

        def _fn(job: Job) -> Job:
            self._apply_status(job, JobStatus.FAILED)
            job.error_message = error
            decision = decide(job.retries)
            decision_box.append(decision)
            if isinstance(decision, Requeue):
                self._apply_status(job, JobStatus.QUEUED)
                job.retries += 1
            return job

        job = await self._mutate(job_id, "record_failure", _fn)
        if job is None:
            return None, None
        # a WatchError retry re-runs _fn, the last decision is the committed one
        return job, decision_box[-1]

    async def reset_for_manual_retry(self, job_id: str) -> Job:
        """failed -> queued with retries reset to 0. Raises JobNotFound / InvalidTransition."""

        def _fn(job: Job) -> Job:
            if job.status != JobStatus.FAILED:
                raise InvalidTransition(job.id, job.status.value, JobStatus.QUEUED.value)
            self._apply_status(job, JobStatus.QUEUED)
            job.retries = 0
            job.error_message = None
            job.result_ref = None
            return job

        job = await self._mutate(job_id, "manual_retry", _fn)
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def fail_unstarted(self, job_id: str, error: str, **fields: Any) -> Optional[Job]:
        """
        Fail a job whose handler never ran (no handler, malformed payload, lost requeue).
        Goes through processing like any other failure; a job already processing is
        failed directly. None when the job is gone.
        """
        try:
            await self.update_status(job_id, JobStatus.PROCESSING)
        except InvalidTransition as e:
            if e.current != JobStatus.PROCESSING.value:
                raise
        return await self.update_status(job_id, JobStatus.FAILED, error_message=error, **fields)


__all__ = [
    "Job",
    "JobStatus",
    "JobStore",
    "StorageError",
    "TRANSITIONS",
    "can_transition",
    "new_job_id",
]
