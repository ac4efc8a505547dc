# tests/test_workers.py
"""
Worker pool end-to-end over fakeredis:
 - flaky handler retried until it succeeds
 - trace ids carried producer -> broker -> consumer link
 - unregistered task types fail immediately without retries
 - always-failing handler stops at max_retries
 - deadline, deletion mid-execution, clock skew, panics contained per task
 - every status change goes through processing; shutdown mid-task leaves the entry for redelivery
"""

import asyncio

import pytest
from opentelemetry.trace import SpanKind

from laneq import metrics
from laneq.errors import BrokerUnavailable, InvalidTransition
from laneq.queue.payload import TaskPayload
from laneq.queue.retry import RetryPolicy
from laneq.storage import Job, JobStatus, new_job_id
from laneq.utils.time_utils import NS_PER_SECOND, now_ns
from laneq.utils.tracing import ATTR_QUEUE_WAIT_MS, restore_trace_context
from laneq.workers import HandlerRegistry, Worker, _contained

TRACE_ID = "4bf92f3577b34da6a3ce929d0e0e4736"
SPAN_ID = "00f067aa0ba902b7"


class Panic(BaseException):
    pass


@pytest.fixture
def registry():
    return HandlerRegistry()


@pytest.fixture
def make_worker(broker, store, registry, tracing):
    def _make(policy=None, task_timeout=5.0):
        return Worker(
            "test-w1",
            broker,
            store,
            registry,
            policy or RetryPolicy(max_retries=3, schedule=[0.05]),
            tracer=tracing.get_tracer("laneq.workers"),
            task_timeout=task_timeout,
            pop_timeout=0.05,
        )
    return _make


async def _submit(store, broker, task_type="scrape", queue="default", trace_ctx=("", ""), enqueued_at=None):
    job_id = new_job_id()
    await store.create(Job(id=job_id, type=task_type, queue=queue))
    payload = TaskPayload.build(job_id, task_type, {"url": "u"}, queue, trace_ctx=trace_ctx, now_ns=enqueued_at)
    await broker.put(queue, payload)
    return job_id


def _consumer_spans(span_exporter):
    return [s for s in span_exporter.get_finished_spans() if s.kind == SpanKind.CONSUMER]


def _record_transitions(store, monkeypatch):
    seen = []
    original = store.update_status

    async def update_status(job_id, status, **fields):
        before = await store.get(job_id)
        seen.append((before.status.value if before else None, getattr(status, "value", status)))
        return await original(job_id, status, **fields)

    monkeypatch.setattr(store, "update_status", update_status)
    return seen

# -----------------------------------------------------------------------------
# Pool scenarios
# -----------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_flaky_handler_completes_after_two_retries(task_queue, pool_options, wait_for_status):
    attempts = []

    async def scrape(ctx, args):
        attempts.append(ctx.retry_count)
        if len(attempts) <= 2:
            raise RuntimeError("upstream 503")
        return "ok"

    task_queue.register_handler("scrape", scrape)
    pool = task_queue.worker_pool(concurrency=2, **pool_options)
    await pool.start()
    try:
        job_id = await task_queue.enqueue("scrape", {"url": "https://example.com"}, queue="default")
        job = await wait_for_status(job_id, JobStatus.COMPLETED)
    finally:
        await pool.stop()

    assert job.retries == 2
    assert attempts == [0, 1, 2]
    assert job.result_ref == "ok"
    assert job.completed_at is not None
    assert job.error_message == "RuntimeError: upstream 503"


@pytest.mark.asyncio
async def test_unregistered_type_fails_without_retries(task_queue, pool_options, wait_for_status):
    task_queue.register_handler("scrape", lambda ctx, args: None)
    pool = task_queue.worker_pool(concurrency=1, **pool_options)
    await pool.start()
    try:
        job_id = await task_queue.enqueue("transcode", {}, queue="low")
        job = await wait_for_status(job_id, JobStatus.FAILED)
        await asyncio.sleep(0.1)
    finally:
        await pool.stop()

    assert job.retries == 0
    assert "no handler registered" in job.error_message
    assert (await task_queue.get_job(job_id)).status == JobStatus.FAILED
    assert (await task_queue.broker.depths())["low"] == {"pending": 0, "active": 0, "retry": 0}


@pytest.mark.asyncio
async def test_always_failing_handler_stops_at_max_retries(task_queue, pool_options, wait_for_status):
    calls = []

    def explode(ctx, args):
        calls.append(ctx.retry_count)
        raise ValueError("bad input upstream")

    task_queue.register_handler("explode", explode)
    pool = task_queue.worker_pool(concurrency=2, **pool_options)
    await pool.start()
    try:
        job_id = await task_queue.enqueue("explode", {}, queue="critical")
        job = await wait_for_status(job_id, JobStatus.FAILED)
        await asyncio.sleep(0.2)
    finally:
        await pool.stop()

    assert job.retries == task_queue.settings.max_retries == 3
    assert calls == [0, 1, 2, 3]
    assert (await task_queue.get_job(job_id)).status == JobStatus.FAILED


@pytest.mark.asyncio
async def test_handler_panic_does_not_stop_other_work(task_queue, pool_options, wait_for_status):
    async def panics(ctx, args):
        raise Panic("handler crashed")

    async def fine(ctx, args):
        return {"n": args["n"]}

    task_queue.register_handler("panics", panics)
    task_queue.register_handler("fine", fine)
    pool = task_queue.worker_pool(concurrency=1, **pool_options)
    await pool.start()
    try:
        bad = await task_queue.enqueue("panics", {}, queue="default")
        good = await task_queue.enqueue("fine", {"n": 7}, queue="default")
        done = await wait_for_status(good, JobStatus.COMPLETED)
        failed = await task_queue.get_job(bad)
        health = await pool.health()
    finally:
        await pool.stop()

    assert done.result_ref == '{"n": 7}'
    assert failed.error_message == "Panic: handler crashed"
    assert health["running"] == 1


@pytest.mark.asyncio
async def test_registration_frozen_once_pool_starts(task_queue, pool_options):
    task_queue.register_handler("scrape", lambda ctx, args: None)
    pool = task_queue.worker_pool(concurrency=1, **pool_options)
    await pool.start()
    try:
        with pytest.raises(RuntimeError):
            task_queue.register_handler("late", lambda ctx, args: None)
    finally:
        await pool.stop()

# -----------------------------------------------------------------------------
# Single deliveries
# -----------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_trace_ids_round_trip_to_consumer_link(store, broker, registry, make_worker, span_exporter):
    registry.register("scrape", lambda ctx, args: "done")
    job_id = await _submit(store, broker, trace_ctx=(TRACE_ID, SPAN_ID))

    delivery = await broker.pop_nowait()
    assert (delivery.payload.trace_id, delivery.payload.span_id) == (TRACE_ID, SPAN_ID)
    restored = restore_trace_context(delivery.payload.trace_id, delivery.payload.span_id)
    assert format(restored.trace_id, "032x") == TRACE_ID

    assert await make_worker().process(delivery) == "completed"
    (span,) = _consumer_spans(span_exporter)
    assert span.parent is None
    link = span.links[0].context
    assert (format(link.trace_id, "032x"), format(link.span_id, "016x")) == (TRACE_ID, SPAN_ID)
    assert span.attributes["laneq.job_id"] == job_id


@pytest.mark.asyncio
async def test_enqueue_links_consumer_to_producer_span(task_queue, registry, span_exporter, make_worker):
    job_id = await task_queue.enqueue("scrape", {}, queue="default")
    (producer,) = [s for s in span_exporter.get_finished_spans() if s.kind == SpanKind.PRODUCER]

    registry.register("scrape", lambda ctx, args: None)
    await make_worker().process(await task_queue.broker.pop_nowait())
    (consumer,) = _consumer_spans(span_exporter)
    assert consumer.links[0].context.span_id == producer.context.span_id
    assert consumer.links[0].context.trace_id == producer.context.trace_id
    assert (await task_queue.get_job(job_id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_queue_wait_clamped_under_clock_skew(store, broker, registry, make_worker, span_exporter):
    registry.register("scrape", lambda ctx, args: None)
    await _submit(store, broker, enqueued_at=now_ns() + 30 * NS_PER_SECOND)
    count_before = metrics.sample("laneq_queue_wait_seconds_count", {"queue": "default"})
    sum_before = metrics.sample("laneq_queue_wait_seconds_sum", {"queue": "default"})

    await make_worker().process(await broker.pop_nowait())

    (span,) = _consumer_spans(span_exporter)
    assert span.attributes[ATTR_QUEUE_WAIT_MS] == 0.0
    assert metrics.sample("laneq_queue_wait_seconds_count", {"queue": "default"}) == count_before + 1
    assert metrics.sample("laneq_queue_wait_seconds_sum", {"queue": "default"}) == sum_before


@pytest.mark.asyncio
async def test_queue_wait_reflects_time_in_lane(store, broker, registry, make_worker, span_exporter):
    registry.register("scrape", lambda ctx, args: None)
    await _submit(store, broker, enqueued_at=now_ns() - 2 * NS_PER_SECOND)
    await make_worker().process(await broker.pop_nowait())
    (span,) = _consumer_spans(span_exporter)
    assert span.attributes[ATTR_QUEUE_WAIT_MS] >= 2000.0


@pytest.mark.asyncio
async def test_async_handler_deadline_is_transient(store, broker, registry, make_worker):
    async def slow(ctx, args):
        await asyncio.sleep(10)

    registry.register("scrape", slow)
    job_id = await _submit(store, broker)
    worker = make_worker(task_timeout=0.1)
    assert await worker.process(await broker.pop_nowait()) == "requeued"

    job = await store.get(job_id)
    assert job.status == JobStatus.QUEUED
    assert job.retries == 1
    assert "deadline exceeded" in job.error_message
    assert (await broker.depths())["default"]["retry"] == 1


@pytest.mark.asyncio
async def test_sync_handler_sees_cancellation_at_deadline(store, broker, registry, make_worker):
    observed = []

    def slow(ctx, args):
        observed.append(ctx.cancelled.wait(2.0))

    registry.register("scrape", slow)
    job_id = await _submit(store, broker)
    worker = make_worker(policy=RetryPolicy(max_retries=0), task_timeout=0.1)
    assert await worker.process(await broker.pop_nowait()) == "failed"

    for _ in range(50):
        if observed:
            break
        await asyncio.sleep(0.02)
    assert observed == [True]
    job = await store.get(job_id)
    assert job.status == JobStatus.FAILED
    assert job.retries == 0


@pytest.mark.asyncio
async def test_job_deleted_mid_execution(store, broker, registry, make_worker):
    started = asyncio.Event()
    release = asyncio.Event()

    async def long_running(ctx, args):
        started.set()
        await release.wait()
        return "finished"

    registry.register("scrape", long_running)
    job_id = await _submit(store, broker)
    worker = make_worker()
    running = asyncio.create_task(worker.process(await broker.pop_nowait()))

    await asyncio.wait_for(started.wait(), timeout=2)
    assert (await store.get(job_id)).status == JobStatus.PROCESSING
    assert await store.delete(job_id)
    release.set()

    assert await asyncio.wait_for(running, timeout=2) == "deleted"
    assert await store.get(job_id) is None
    assert (await broker.depths())["default"] == {"pending": 0, "active": 0, "retry": 0}


@pytest.mark.asyncio
async def test_failure_after_delete_is_not_retried(store, broker, registry, make_worker):
    async def fails_late(ctx, args):
        await store.delete(ctx.job_id)
        raise RuntimeError("too late")

    registry.register("scrape", fails_late)
    await _submit(store, broker)
    assert await make_worker().process(await broker.pop_nowait()) == "deleted"
    assert (await broker.depths())["default"]["retry"] == 0


@pytest.mark.asyncio
async def test_malformed_payload_fails_its_job(store, broker, redis_client, make_worker):
    job_id = new_job_id()
    await store.create(Job(id=job_id, type="scrape", queue="default"))
    raw = f'{{"job_id": "{job_id}", "type": "scrape", "trace_id": "{TRACE_ID}"}}'
    await redis_client.lpush(broker.pending_key("default"), raw)

    assert await make_worker().process(await broker.pop_nowait()) == "invalid"
    job = await store.get(job_id)
    assert job.status == JobStatus.FAILED
    assert job.retries == 0
    assert "trace_id/span_id" in job.error_message


@pytest.mark.asyncio
async def test_manual_retry_only_for_failed_jobs(task_queue, registry, make_worker):
    job_id = await task_queue.enqueue("scrape", {}, queue="default")
    with pytest.raises(InvalidTransition):
        await task_queue.retry_job(job_id)

    registry.register("scrape", lambda ctx, args: 1 / 0)
    worker = make_worker(policy=RetryPolicy(max_retries=0))
    assert await worker.process(await task_queue.broker.pop_nowait()) == "failed"
    assert (await task_queue.get_job(job_id)).error_message == "ZeroDivisionError: division by zero"

    job = await task_queue.retry_job(job_id)
    assert job.status == JobStatus.QUEUED
    assert job.retries == 0
    delivery = await task_queue.broker.pop_nowait()
    assert delivery.payload.job_id == job_id
    assert delivery.payload.retry_count == 0

    with pytest.raises(InvalidTransition):
        await task_queue.retry_job(job_id)

# -----------------------------------------------------------------------------
# Status transitions and shutdown
# -----------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_unregistered_type_passes_through_processing(task_queue, pool_options, wait_for_status, monkeypatch):
    seen = _record_transitions(task_queue.store, monkeypatch)
    task_queue.register_handler("scrape", lambda ctx, args: None)
    pool = task_queue.worker_pool(concurrency=1, **pool_options)
    await pool.start()
    try:
        job_id = await task_queue.enqueue("transcode", {}, queue="low")
        job = await wait_for_status(job_id, JobStatus.FAILED)
    finally:
        await pool.stop()

    assert seen == [("queued", "processing"), ("processing", "failed")]
    assert job.retries == 0


@pytest.mark.asyncio
async def test_successful_run_transitions(store, broker, registry, make_worker, monkeypatch):
    seen = _record_transitions(store, monkeypatch)
    registry.register("scrape", lambda ctx, args: "ok")
    await _submit(store, broker)
    assert await make_worker().process(await broker.pop_nowait()) == "completed"
    assert seen == [("queued", "processing"), ("processing", "completed")]


@pytest.mark.asyncio
async def test_lost_requeue_fails_job_through_processing(store, broker, registry, make_worker, monkeypatch):
    async def schedule_down(lane, payload, delay):
        raise BrokerUnavailable("schedule", ConnectionError("refused"))

    registry.register("scrape", lambda ctx, args: 1 / 0)
    job_id = await _submit(store, broker)
    monkeypatch.setattr(broker, "schedule", schedule_down)
    worker = make_worker()
    delivery = await broker.pop_nowait()
    seen = _record_transitions(store, monkeypatch)

    assert await worker.process(delivery) == "failed"
    job = await store.get(job_id)
    assert job.status == JobStatus.FAILED
    assert job.retries == 0
    assert "requeue failed" in job.error_message
    assert ("queued", "failed") not in seen
    assert seen[-2:] == [("queued", "processing"), ("processing", "failed")]


@pytest.mark.asyncio
async def test_stop_mid_handler_keeps_task_for_redelivery(task_queue, pool_options, wait_for_status):
    calls = []

    async def slow_once(ctx, args):
        calls.append(ctx.job_id)
        if len(calls) == 1:
            await asyncio.sleep(30)
        return "recovered"

    task_queue.register_handler("scrape", slow_once)
    pool = task_queue.worker_pool(concurrency=1, **pool_options)
    await pool.start()
    job_id = await task_queue.enqueue("scrape", {}, queue="default")
    await wait_for_status(job_id, JobStatus.PROCESSING)
    while not calls:
        await asyncio.sleep(0.01)
    await pool.stop(timeout=0.2)

    assert (await task_queue.get_job(job_id)).status == JobStatus.PROCESSING
    assert (await task_queue.broker.depths())["default"] == {"pending": 0, "active": 1, "retry": 0}

    pool = task_queue.worker_pool(concurrency=1, recover_orphans=True, **pool_options)
    await pool.start()
    try:
        job = await wait_for_status(job_id, JobStatus.COMPLETED)
    finally:
        await pool.stop()

    assert job.result_ref == "recovered"
    assert calls == [job_id, job_id]
    assert (await task_queue.broker.depths())["default"] == {"pending": 0, "active": 0, "retry": 0}


@pytest.mark.asyncio
async def test_cancelled_process_is_not_acked(store, broker, registry, make_worker):
    started = asyncio.Event()

    async def hangs(ctx, args):
        started.set()
        await asyncio.sleep(30)

    registry.register("scrape", hangs)
    job_id = await _submit(store, broker)
    running = asyncio.create_task(make_worker().process(await broker.pop_nowait()))
    await asyncio.wait_for(started.wait(), timeout=2)
    running.cancel()
    with pytest.raises(asyncio.CancelledError):
        await running

    assert (await store.get(job_id)).status == JobStatus.PROCESSING
    assert (await broker.depths())["default"]["active"] == 1


@pytest.mark.parametrize("exc,contained", [
    (RuntimeError("boom"), True),
    (Panic("crash"), True),
    (SystemExit(1), False),
    (KeyboardInterrupt(), False),
    (asyncio.CancelledError(), False),
])
def test_process_exits_are_not_contained(exc, contained):
    assert _contained(exc) is contained
