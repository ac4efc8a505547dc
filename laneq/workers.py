# laneq/workers.py
"""
laneq Workers
-------------

 - HandlerRegistry: task type -> handler, frozen once a pool starts
 - TaskContext: what a handler sees about the attempt it is running
 - Worker: one loop of pop -> process -> ack, with capped backoff on broker outages
 - WorkerPool: N workers, the delayed-requeue forwarder and the depth gauge refresher,
   graceful drain on stop / SIGINT / SIGTERM

Per task (Worker.process):
  1. queue wait = now - enqueued_at (clamped >= 0), consumer span linked to the producer
  2. unregistered type -> ValidationError -> job processing then failed, never retried
  3. job -> processing (a deleted job is a no-op, the task still runs)
  4. handler under the task deadline; async handlers are cancelled, sync handlers run in a
     thread and see ctx.cancelled set
  5. success -> completed with result_ref
  6. failure -> retry policy: Requeue(delay) puts the payload in the lane's scheduled set,
     Terminal leaves the job failed
  7. the broker entry is acked, unless the task was cancelled mid-run (shutdown timeout):
     it then stays active for recover_orphans()

Handlers:

    async def scrape(ctx: TaskContext, args: dict) -> str: ...
    def analyze(ctx: TaskContext, args: dict) -> dict: ...   # runs via asyncio.to_thread
"""

from __future__ import annotations

import json
import signal
import asyncio
import inspect
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from opentelemetry import trace
from opentelemetry.trace import Span

from laneq.errors import (
    BrokerUnavailable,
    DeadlineExceeded,
    InvalidTransition,
    TerminalFailure,
    TransientError,
    ValidationError,
)
from laneq.metrics import (
    ACTIVE_WORKERS,
    TASK_DURATION,
    TASKS_COMPLETED,
    TASKS_FAILED,
    TASKS_RETRIED,
    observe_queue_wait,
    record_depths,
)
from laneq.queue.payload import TaskPayload
from laneq.queue.redis_queue import Delivery, PriorityBroker
from laneq.queue.retry import Requeue, RetryPolicy
from laneq.storage import JobStatus, JobStore
from laneq.utils.logger import StructuredLoggerAdapter, task_log_context
from laneq.utils.time_utils import compute_backoff, monotonic_ts, queue_wait_seconds
from laneq.utils.tracing import (
    ATTR_JOB_ID,
    ATTR_QUEUE,
    ATTR_QUEUE_WAIT_MS,
    ATTR_RETRY_COUNT,
    ATTR_TASK_TYPE,
    TracingProvider,
    record_span_error,
    restore_trace_context,
    start_consumer_span,
)

LOG = logging.getLogger("laneq.workers")

DEFAULT_TASK_TIMEOUT = 600.0
DEFAULT_POP_TIMEOUT = 1.0

Handler = Callable[["TaskContext", Dict[str, Any]], Any]

# -------------------------
# Handler registry
# -------------------------
class HandlerRegistry:
    def __init__(self):
        self._handlers: Dict[str, Handler] = {}
        self._frozen = False

    def register(self, task_type: str, fn: Handler) -> Handler:
        if self._frozen:
            raise RuntimeError(f"cannot register {task_type!r}: handlers are frozen once workers start")
        if not task_type:
            raise ValueError("task type must be a non-empty string")
        if not callable(fn):
            raise TypeError(f"handler for {task_type!r} is not callable")
        if task_type in self._handlers:
            LOG.warning("Replacing handler for task type %s", task_type)
        self._handlers[task_type] = fn
        return fn

    def handler(self, task_type: str) -> Callable[[Handler], Handler]:
        """Decorator form of register()."""
        def _decorator(fn: Handler) -> Handler:
            return self.register(task_type, fn)
        return _decorator

    def get(self, task_type: str) -> Optional[Handler]:
        return self._handlers.get(task_type)

    def types(self) -> List[str]:
        return sorted(self._handlers)

    def freeze(self):
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __contains__(self, task_type: str) -> bool:
        return task_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


@dataclass
class TaskContext:
    job_id: str
    type: str
    queue: str
    retry_count: int
    deadline: float
    span: Optional[Span] = None
    # set when the deadline expires; sync handlers should poll it and return early
    cancelled: threading.Event = field(default_factory=threading.Event)

    def remaining(self) -> float:
        return max(0.0, self.deadline - monotonic_ts())


def _result_ref(result: Any) -> Optional[str]:
    if result is None:
        return None
    if isinstance(result, str):
        return result
    try:
        return json.dumps(result, sort_keys=True, default=str)
    except (TypeError, ValueError):
        return str(result)


def _contained(exc: BaseException) -> bool:
    """Handler errors and panics settle the job; process exits and cancellation propagate."""
    return not isinstance(exc, (KeyboardInterrupt, SystemExit, asyncio.CancelledError))


def _describe(exc: BaseException) -> str:
    msg = str(exc)
    return f"{exc.__class__.__name__}: {msg}" if msg else exc.__class__.__name__

# -------------------------
# Worker
# -------------------------
class Worker:
    """
    Single worker coroutine that:
      - pops entries from the PriorityBroker (weighted across lanes)
      - runs the registered handler under the task deadline
      - reports the outcome to the JobStore and applies the retry policy
    """

    def __init__(
        self,
        name: str,
        broker: PriorityBroker,
        store: JobStore,
        registry: HandlerRegistry,
        policy: RetryPolicy,
        tracer: Optional[trace.Tracer] = None,
        task_timeout: float = DEFAULT_TASK_TIMEOUT,
        pop_timeout: float = DEFAULT_POP_TIMEOUT,
        shutdown_event: Optional[asyncio.Event] = None,
    ):
        self.name = name
        self.broker = broker
        self.store = store
        self.registry = registry
        self.policy = policy
        self.log = StructuredLoggerAdapter(LOG, {"worker": name})
        self.tracer = tracer or trace.get_tracer("laneq.workers")
        self.task_timeout = task_timeout
        self.pop_timeout = pop_timeout
        self._shutdown_event = shutdown_event or asyncio.Event()
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.current_job: Optional[str] = None
        self.processed = 0
        self.failed = 0

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name=f"laneq-{self.name}")

    async def stop(self, graceful: bool = True, timeout: float = 30.0):
        self._running = False
        self._shutdown_event.set()
        if not self._task:
            return
        if not graceful:
            self._task.cancel()
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.TimeoutError:
            LOG.warning("Worker %s did not finish job %s in time; cancelling", self.name, self.current_job)
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        except asyncio.CancelledError:
            pass

    @property
    def running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def _run_loop(self):
        self.log.info("Worker %s starting", self.name)
        ACTIVE_WORKERS.inc()
        consecutive_errors = 0
        try:
            while self._running and not self._shutdown_event.is_set():
                try:
                    delivery = await self.broker.pop(timeout=self.pop_timeout)
                except BrokerUnavailable as e:
                    consecutive_errors += 1
                    delay = compute_backoff(consecutive_errors)
                    self.log.warning("Worker %s pop failed (%s); retrying in %.2fs", self.name, e, delay)
                    await asyncio.sleep(delay)
                    continue
                consecutive_errors = 0
                if delivery is None:
                    continue
                try:
                    await self.process(delivery)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    self.log.exception("Worker %s failed to settle delivery on %s", self.name, delivery.lane)
        finally:
            ACTIVE_WORKERS.dec()
            self.log.info("Worker %s stopped", self.name)

    # -------------------------
    # Processing
    # -------------------------
    async def process(self, delivery: Delivery) -> str:
        """
        Run one delivery to a settled job state. Returns the outcome:
        completed / requeued / failed / invalid / skipped / deleted.

        A cancelled task is not acked: the entry stays in the lane's active list for
        recover_orphans() and the job stays processing until it is redelivered.
        """
        cancelled = False
        try:
            if delivery.payload is None:
                return await self._fail_malformed(delivery)
            self.current_job = delivery.payload.job_id
            return await self._execute(delivery.lane, delivery.payload)
        except asyncio.CancelledError:
            cancelled = True
            self.log.warning("Cancelled job %s on %s; left in the active list", self.current_job, delivery.lane)
            raise
        finally:
            self.current_job = None
            if not cancelled:
                try:
                    await self.broker.ack(delivery)
                except BrokerUnavailable as e:
                    LOG.warning("Ack failed on %s: %s", delivery.lane, e)

    async def _fail_malformed(self, delivery: Delivery) -> str:
        TASKS_FAILED.labels(queue=delivery.lane, reason="validation").inc()
        self.failed += 1
        job_id = TaskPayload.peek_job_id(delivery.raw)
        LOG.error("Dropping malformed payload on %s (job=%s): %s", delivery.lane, job_id, delivery.error)
        if job_id:
            await self._mark_failed(job_id, str(delivery.error))
        return "invalid"

    async def _mark_failed(self, job_id: str, error: str, **fields: Any):
        try:
            await self.store.fail_unstarted(job_id, error, **fields)
        except InvalidTransition as e:
            LOG.warning("Could not mark job %s failed: %s", job_id, e)

    async def _execute(self, lane: str, payload: TaskPayload) -> str:
        wait_s = queue_wait_seconds(payload.enqueued_at)
        observe_queue_wait(lane, wait_s)
        remote_ctx = restore_trace_context(payload.trace_id, payload.span_id)
        attrs = {
            ATTR_QUEUE: lane,
            ATTR_JOB_ID: payload.job_id,
            ATTR_TASK_TYPE: payload.type,
            ATTR_RETRY_COUNT: payload.retry_count,
            ATTR_QUEUE_WAIT_MS: wait_s * 1000.0,
        }
        with task_log_context(job_id=payload.job_id, queue=lane, task_type=payload.type), \
                start_consumer_span(self.tracer, f"{lane} process", remote_ctx, attrs) as span:
            handler = self.registry.get(payload.type)
            if handler is None:
                err = ValidationError(f"no handler registered for task type {payload.type!r}")
                record_span_error(span, err)
                TASKS_FAILED.labels(queue=lane, reason="validation").inc()
                self.failed += 1
                LOG.error("Job %s failed: %s", payload.job_id, err)
                await self._mark_failed(payload.job_id, str(err))
                return "invalid"

            try:
                job = await self.store.update_status(payload.job_id, JobStatus.PROCESSING)
            except InvalidTransition as e:
                if e.current != JobStatus.PROCESSING.value:
                    LOG.warning("Skipping job %s in state %s", payload.job_id, e.current)
                    return "skipped"
                # redelivered after a crash, already marked processing
                job = None
            else:
                if job is None:
                    LOG.info("Job %s record is gone; running the task anyway", payload.job_id)

            ctx = TaskContext(
                job_id=payload.job_id,
                type=payload.type,
                queue=lane,
                retry_count=payload.retry_count,
                deadline=monotonic_ts() + self.task_timeout,
                span=span,
            )
            started = monotonic_ts()
            try:
                result = await self._invoke(handler, ctx, payload.args)
            except asyncio.CancelledError:
                ctx.cancelled.set()
                raise
            except BaseException as e:
                if not _contained(e):
                    raise
                TASK_DURATION.labels(queue=lane, type=payload.type).observe(monotonic_ts() - started)
                record_span_error(span, e)
                return await self._handle_failure(lane, payload, e)

            TASK_DURATION.labels(queue=lane, type=payload.type).observe(monotonic_ts() - started)
            return await self._complete(lane, payload, result)

    async def _invoke(self, handler: Handler, ctx: TaskContext, args: Dict[str, Any]) -> Any:
        if inspect.iscoroutinefunction(handler):
            call = handler(ctx, args)
        else:
            call = asyncio.to_thread(handler, ctx, args)
        try:
            result = await asyncio.wait_for(call, timeout=ctx.remaining())
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=ctx.remaining())
            return result
        except asyncio.TimeoutError:
            if monotonic_ts() < ctx.deadline:
                # the handler raised TimeoutError itself
                raise
            ctx.cancelled.set()
            raise DeadlineExceeded(f"deadline exceeded after {self.task_timeout:.1f}s") from None

    async def _complete(self, lane: str, payload: TaskPayload, result: Any) -> str:
        try:
            job = await self.store.update_status(payload.job_id, JobStatus.COMPLETED, result_ref=_result_ref(result))
        except InvalidTransition as e:
            LOG.warning("Job %s finished but could not be completed: %s", payload.job_id, e)
            return "skipped"
        TASKS_COMPLETED.labels(queue=lane).inc()
        self.processed += 1
        if job is None:
            LOG.info("Job %s completed after its record was deleted", payload.job_id)
            return "deleted"
        LOG.info("Job %s completed", payload.job_id)
        return "completed"

    async def _handle_failure(self, lane: str, payload: TaskPayload, exc: BaseException) -> str:
        self.failed += 1
        if not isinstance(exc, (TransientError, ValidationError)):
            exc = TransientError(_describe(exc), cause=exc)
        error = str(exc)
        try:
            job, decision = await self.store.record_failure(
                payload.job_id, error, lambda retries: self.policy.decide(retries, exc)
            )
        except InvalidTransition as e:
            LOG.warning("Job %s failed but could not be recorded: %s", payload.job_id, e)
            TASKS_FAILED.labels(queue=lane, reason="transient").inc()
            return "skipped"
        if job is None:
            TASKS_FAILED.labels(queue=lane, reason="transient").inc()
            LOG.info("Job %s failed after its record was deleted; not retrying", payload.job_id)
            return "deleted"

        if isinstance(decision, Requeue):
            TASKS_FAILED.labels(queue=lane, reason="transient").inc()
            try:
                await self.broker.schedule(lane, payload.with_retry(job.retries), decision.delay)
            except BrokerUnavailable as e:
                LOG.error("Job %s could not be requeued: %s", payload.job_id, e)
                await self._mark_failed(payload.job_id, f"{error}; requeue failed: {e}", retries=job.retries - 1)
                return "failed"
            TASKS_RETRIED.labels(queue=lane).inc()
            LOG.warning("Job %s attempt failed (%s); retry %d in %.1fs", payload.job_id, error, job.retries, decision.delay)
            return "requeued"

        TASKS_FAILED.labels(queue=lane, reason="terminal").inc()
        LOG.error("%s", TerminalFailure(payload.job_id, job.retries, error))
        return "failed"

# -------------------------
# Worker pool
# -------------------------
class WorkerPool:
    """
    Fixed-size pool of Worker coroutines plus:
      - the scheduler task forwarding due retries (broker.forward_due)
      - the metrics task refreshing laneq_queue_depth
    """

    def __init__(
        self,
        broker: PriorityBroker,
        store: JobStore,
        registry: HandlerRegistry,
        policy: Optional[RetryPolicy] = None,
        tracing: Optional[TracingProvider] = None,
        concurrency: int = 10,
        task_timeout: float = DEFAULT_TASK_TIMEOUT,
        pop_timeout: float = DEFAULT_POP_TIMEOUT,
        scheduler_interval: float = 1.0,
        metrics_interval: float = 5.0,
        shutdown_timeout: float = 30.0,
        recover_orphans: bool = False,
        name: str = "laneq",
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.broker = broker
        self.store = store
        self.registry = registry
        self.policy = policy or RetryPolicy()
        self.tracing = tracing
        self.tracer = tracing.get_tracer("laneq.workers") if tracing else trace.get_tracer("laneq.workers")
        self.concurrency = concurrency
        self.task_timeout = task_timeout
        self.pop_timeout = pop_timeout
        self.scheduler_interval = scheduler_interval
        self.metrics_interval = metrics_interval
        self.shutdown_timeout = shutdown_timeout
        self.recover_orphans = recover_orphans
        self.name = name
        self.workers: List[Worker] = []
        self._stopping = asyncio.Event()
        self._background: List[asyncio.Task] = []
        self._started = False

    async def start(self):
        if self._started:
            return
        self._started = True
        self._stopping.clear()
        self.registry.freeze()
        LOG.info("Starting worker pool %s concurrency=%d types=%s", self.name, self.concurrency, self.registry.types())
        if self.recover_orphans:
            await self.broker.recover_orphans()
        for i in range(self.concurrency):
            w = Worker(
                name=f"{self.name}-w{i + 1}",
                broker=self.broker,
                store=self.store,
                registry=self.registry,
                policy=self.policy,
                tracer=self.tracer,
                task_timeout=self.task_timeout,
                pop_timeout=self.pop_timeout,
                shutdown_event=self._stopping,
            )
            w.start()
            self.workers.append(w)
        self._background = [
            asyncio.create_task(self._scheduler_loop(), name=f"{self.name}-scheduler"),
            asyncio.create_task(self._metrics_loop(), name=f"{self.name}-metrics"),
        ]

    def request_stop(self):
        """Signal-safe: ask workers to finish their current task and exit."""
        if not self._stopping.is_set():
            LOG.info("Stop requested for worker pool %s", self.name)
            self._stopping.set()

    async def stop(self, graceful: bool = True, timeout: Optional[float] = None):
        if not self._started:
            return
        timeout = self.shutdown_timeout if timeout is None else timeout
        LOG.info("Stopping worker pool %s (graceful=%s timeout=%.1fs)", self.name, graceful, timeout)
        self._stopping.set()
        await asyncio.gather(*(w.stop(graceful=graceful, timeout=timeout) for w in self.workers), return_exceptions=True)
        for task in self._background:
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        self._background = []
        self.workers = []
        self._started = False
        LOG.info("Worker pool %s stopped", self.name)

    async def run_until_stopped(self, install_signals: bool = True):
        await self.start()
        if install_signals:
            self.install_signal_handlers()
        await self._stopping.wait()
        await self.stop(graceful=True)

    def install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                signal.signal(sig, lambda *_: loop.call_soon_threadsafe(self.request_stop))

    async def _scheduler_loop(self):
        while not self._stopping.is_set():
            try:
                await self.broker.forward_due()
            except BrokerUnavailable as e:
                LOG.warning("Scheduler tick failed: %s", e)
            except Exception:
                LOG.exception("Scheduler tick failed")
            await self._sleep(self.scheduler_interval)

    async def _metrics_loop(self):
        while not self._stopping.is_set():
            try:
                record_depths(await self.broker.depths())
            except BrokerUnavailable as e:
                LOG.debug("Depth refresh failed: %s", e)
            except Exception:
                LOG.exception("Depth refresh failed")
            await self._sleep(self.metrics_interval)

    async def _sleep(self, seconds: float):
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def health(self) -> Dict[str, Any]:
        """Worker counts and per-worker stats plus the broker view."""
        return {
            "pool": self.name,
            "desired": self.concurrency,
            "running": sum(1 for w in self.workers if w.running),
            "stopping": self._stopping.is_set(),
            "workers": {
                w.name: {"running": w.running, "current_job": w.current_job, "processed": w.processed, "failed": w.failed}
                for w in self.workers
            },
            "broker": await self.broker.health(),
        }


__all__ = [
    "HandlerRegistry",
    "TaskContext",
    "Worker",
    "WorkerPool",
    "Handler",
    "DEFAULT_TASK_TIMEOUT",
]
