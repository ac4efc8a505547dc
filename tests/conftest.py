"""
laneq Pytest Configuration
--------------------------

Centralized fixtures for all tests.

Features:
 - In-process Redis (fakeredis FakeServer) per test, no network I/O
 - Tracing provider exporting into an InMemorySpanExporter for span assertions
 - Settings with millisecond backoff / poll intervals so retry paths finish fast
 - Auto-clean LANEQ_* environment variables
 - wait_for_status helper for worker-driven state changes
"""

import os
import asyncio
import logging

import pytest
import pytest_asyncio
import fakeredis
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from laneq.config import LaneqSettings
from laneq.queue.redis_queue import PriorityBroker
from laneq.service import TaskQueue
from laneq.storage import JobStore
from laneq.utils.tracing import TracingProvider

LOG = logging.getLogger("laneq.tests")
LOG.setLevel(logging.WARNING)

TEST_LANES = {"critical": 6, "default": 3, "low": 1}

# -----------------------------------------------------------------------------
# Global environment sanitization
# -----------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep LANEQ_* variables from the developer shell out of the tests."""
    for var in list(os.environ):
        if var.startswith("LANEQ_"):
            monkeypatch.delenv(var, raising=False)
    yield

# -----------------------------------------------------------------------------
# Redis
# -----------------------------------------------------------------------------
@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()

@pytest_asyncio.fixture
async def redis_client(redis_server):
    client = fakeredis.FakeAsyncRedis(server=redis_server)
    yield client
    redis_server.connected = True
    await client.flushall()
    await client.aclose()

# -----------------------------------------------------------------------------
# Tracing
# -----------------------------------------------------------------------------
@pytest.fixture
def span_exporter():
    return InMemorySpanExporter()

@pytest.fixture
def tracing(span_exporter):
    provider = TracingProvider(service_name="laneq-test", exporter=span_exporter, sampler="always", batch=False)
    yield provider
    provider.shutdown()

# -----------------------------------------------------------------------------
# Core objects
# -----------------------------------------------------------------------------
@pytest.fixture
def settings():
    return LaneqSettings(
        key_prefix="laneq-test",
        concurrency=2,
        queues=dict(TEST_LANES),
        max_retries=3,
        backoff=[0.05, 0.05, 0.05],
        task_timeout=5.0,
        poll_interval=0.01,
        scheduler_interval=0.02,
        shutdown_timeout=2.0,
        tracing_exporter="none",
        log_json=False,
    )

@pytest.fixture
def broker(redis_client, settings):
    return PriorityBroker(redis_client, settings.queues, prefix=settings.key_prefix, poll_interval=settings.poll_interval)

@pytest.fixture
def store(redis_client, settings):
    return JobStore(redis_client, prefix=settings.key_prefix)

@pytest.fixture
def task_queue(redis_client, settings, tracing):
    return TaskQueue.from_settings(settings, redis=redis_client, tracing=tracing)

@pytest.fixture
def pool_options():
    """Short timeouts for worker pools started inside tests."""
    return {"pop_timeout": 0.05, "metrics_interval": 0.05}

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
@pytest.fixture
def wait_for_status(task_queue):
    async def _wait(job_id, *statuses, timeout=5.0):
        wanted = {getattr(s, "value", s) for s in statuses}
        deadline = asyncio.get_running_loop().time() + timeout
        while True:
            job = await task_queue.store.get(job_id)
            if job is not None and job.status.value in wanted:
                return job
            if asyncio.get_running_loop().time() >= deadline:
                raise AssertionError(f"job {job_id} never reached {wanted}; last seen {job}")
            await asyncio.sleep(0.01)
    return _wait
