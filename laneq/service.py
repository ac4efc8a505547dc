# laneq/service.py
"""
laneq core API
--------------

TaskQueue is the surface HTTP handlers, CLIs and scripts call into:

    tq = TaskQueue.from_settings(LaneqSettings.from_env(), tracing=TracingProvider(...))
    tq.register_handler("scrape", scrape)
    job_id = await tq.enqueue("scrape", {"url": "https://example.com"}, queue="critical")
    job = await tq.get_job(job_id)
    pool = tq.worker_pool()
    await pool.run_until_stopped()

enqueue opens a PRODUCER span, captures its ids into the payload, writes the job record and
puts the payload on the lane. When the broker is unreachable the record is removed again and
BrokerUnavailable reaches the caller, so no job exists without a broker entry.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

import redis.asyncio as redis_async
from opentelemetry import trace

from laneq.config import LaneqSettings
from laneq.errors import BrokerUnavailable, JobNotFound, ValidationError
from laneq.queue.payload import TaskPayload
from laneq.queue.redis_queue import PriorityBroker
from laneq.queue.retry import RetryPolicy
from laneq.storage import Job, JobStatus, JobStore, StorageError, new_job_id
from laneq.utils.tracing import (
    ATTR_JOB_ID,
    ATTR_QUEUE,
    ATTR_RETRY_COUNT,
    ATTR_TASK_TYPE,
    TracingProvider,
    capture_trace_context,
    record_span_error,
    start_producer_span,
)
from laneq.workers import Handler, HandlerRegistry, WorkerPool

LOG = logging.getLogger("laneq.service")

DEFAULT_QUEUE = "default"


class TaskQueue:
    def __init__(
        self,
        broker: PriorityBroker,
        store: JobStore,
        settings: Optional[LaneqSettings] = None,
        tracing: Optional[TracingProvider] = None,
        policy: Optional[RetryPolicy] = None,
        registry: Optional[HandlerRegistry] = None,
        redis: Optional[redis_async.Redis] = None,
    ):
        self.broker = broker
        self.store = store
        self.settings = settings or LaneqSettings()
        self.tracing = tracing
        self.tracer = tracing.get_tracer("laneq.producer") if tracing else trace.get_tracer("laneq.producer")
        self.policy = policy or RetryPolicy.from_settings(self.settings)
        self.registry = registry or HandlerRegistry()
        # client closed by close(); None when the caller owns it
        self._redis = redis

    @classmethod
    def from_settings(
        cls,
        settings: LaneqSettings,
        redis: Optional[redis_async.Redis] = None,
        tracing: Optional[TracingProvider] = None,
    ) -> "TaskQueue":
        owned = None
        if redis is None:
            redis = owned = redis_async.from_url(settings.redis_url, decode_responses=False)
            LOG.info("Connected to redis.asyncio at %s", settings.redis_url)
        broker = PriorityBroker(redis, settings.queues, prefix=settings.key_prefix, poll_interval=settings.poll_interval)
        store = JobStore(redis, prefix=settings.key_prefix)
        return cls(broker, store, settings=settings, tracing=tracing, redis=owned)

    async def close(self):
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except Exception:
                LOG.exception("Redis client close failed")
            self._redis = None

    # -------------------------
    # Jobs
    # -------------------------
    async def enqueue(self, type: str, args: Optional[Dict[str, Any]] = None, queue: str = DEFAULT_QUEUE) -> str:
        if not type or not isinstance(type, str):
            raise ValidationError("task type must be a non-empty string")
        if queue not in self.broker.weights:
            raise ValidationError(f"unknown queue {queue!r}")
        if args is not None and not isinstance(args, dict):
            raise ValidationError("task args must be a mapping")

        job_id = new_job_id()
        attrs = {ATTR_QUEUE: queue, ATTR_JOB_ID: job_id, ATTR_TASK_TYPE: type}
        with start_producer_span(self.tracer, f"{queue} publish", attrs) as span:
            payload = TaskPayload.build(job_id, type, args, queue, trace_ctx=capture_trace_context())
            await self.store.create(Job(id=job_id, type=type, queue=queue, args=payload.args))
            try:
                broker_task_id = await self.broker.put(queue, payload)
            except BrokerUnavailable as e:
                record_span_error(span, e)
                await self._discard(job_id)
                raise
            await self.store.set_fields(job_id, broker_task_id=broker_task_id)
        LOG.info("Enqueued job %s type=%s queue=%s", job_id, type, queue)
        return job_id

    async def _discard(self, job_id: str):
        try:
            await self.store.delete(job_id)
        except StorageError:
            LOG.exception("Could not remove record of unenqueued job %s", job_id)

    async def get_job(self, job_id: str) -> Job:
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def list_jobs(self, filter: Optional[Mapping[str, Any]] = None, limit: int = 50, offset: int = 0) -> List[Job]:
        """filter keys: status, queue, type."""
        filter = dict(filter or {})
        unknown = set(filter) - {"status", "queue", "type"}
        if unknown:
            raise ValidationError(f"unknown job filter(s): {', '.join(sorted(unknown))}")
        status = filter.get("status")
        if status is not None:
            try:
                status = JobStatus(status).value
            except ValueError:
                raise ValidationError(f"unknown job status {status!r}") from None
        return await self.store.list(
            status=status,
            queue=filter.get("queue"),
            type=filter.get("type"),
            limit=max(0, int(limit)),
            offset=max(0, int(offset)),
        )

    async def retry_job(self, job_id: str) -> Job:
        """Manual retry of a failed job: retries reset to 0, a fresh payload on the job's lane."""
        job = await self.store.reset_for_manual_retry(job_id)
        attrs = {ATTR_QUEUE: job.queue, ATTR_JOB_ID: job.id, ATTR_TASK_TYPE: job.type, ATTR_RETRY_COUNT: 0}
        with start_producer_span(self.tracer, f"{job.queue} publish", attrs) as span:
            payload = TaskPayload.build(job.id, job.type, job.args, job.queue, trace_ctx=capture_trace_context())
            try:
                broker_task_id = await self.broker.put(job.queue, payload)
            except (BrokerUnavailable, ValidationError) as e:
                record_span_error(span, e)
                await self.store.fail_unstarted(job.id, f"manual retry failed: {e}")
                raise
        LOG.info("Manually retried job %s on %s", job.id, job.queue)
        return await self.store.set_fields(job.id, broker_task_id=broker_task_id) or job

    async def delete_job(self, job_id: str):
        """Remove the bookkeeping record. A broker entry already queued still runs."""
        if not await self.store.delete(job_id):
            raise JobNotFound(job_id)

    # -------------------------
    # Composition
    # -------------------------
    def register_handler(self, type: str, fn: Handler) -> Handler:
        return self.registry.register(type, fn)

    def handler(self, type: str):
        return self.registry.handler(type)

    def worker_pool(self, concurrency: Optional[int] = None, **overrides: Any) -> WorkerPool:
        s = self.settings
        options: Dict[str, Any] = dict(
            concurrency=concurrency or s.concurrency,
            task_timeout=s.task_timeout,
            scheduler_interval=s.scheduler_interval,
            shutdown_timeout=s.shutdown_timeout,
        )
        options.update(overrides)
        return WorkerPool(self.broker, self.store, self.registry, policy=self.policy, tracing=self.tracing, **options)

    # -------------------------
    # Lanes / inspection
    # -------------------------
    async def pause_lane(self, name: str):
        await self.broker.pause(name)

    async def resume_lane(self, name: str):
        await self.broker.resume(name)

    async def stats(self) -> Dict[str, Any]:
        depths = await self.broker.depths()
        lanes = {
            lane.name: {"weight": lane.weight, "paused": lane.paused, **depths.get(lane.name, {})}
            for lane in await self.broker.lanes()
        }
        return {"lanes": lanes, "jobs": await self.store.count()}

    async def health(self) -> Dict[str, Any]:
        return {"broker": await self.broker.health(), "handlers": self.registry.types()}


__all__ = ["TaskQueue", "DEFAULT_QUEUE"]
