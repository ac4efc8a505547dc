# laneq/metrics.py
"""
laneq Metrics
-------------

Prometheus metrics for the queue core, on a dedicated registry:

 - laneq_queue_depth{queue,state}           pending / active / retry entries per lane
 - laneq_queue_wait_seconds{queue}          enqueue -> execution start (clamped >= 0)
 - laneq_tasks_enqueued_total{queue}
 - laneq_tasks_completed_total{queue}
 - laneq_tasks_failed_total{queue,reason}   reason: transient / validation / terminal
 - laneq_tasks_retried_total{queue}
 - laneq_task_duration_seconds{queue,type}
 - laneq_broker_errors_total{op}
 - laneq_active_workers

Exposed via start_metrics_server() or render_latest() for an external scrape endpoint.
"""

from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest, start_http_server
from prometheus_client.exposition import CONTENT_TYPE_LATEST

LOG = logging.getLogger("laneq.metrics")

DEPTH_STATES = ("pending", "active", "retry")

# -----------------------------------------------------------------------------
# Metric definitions (central registry)
# -----------------------------------------------------------------------------
REGISTRY = CollectorRegistry(auto_describe=False)

QUEUE_DEPTH = Gauge("laneq_queue_depth", "Entries per lane and state", ["queue", "state"], registry=REGISTRY)
QUEUE_WAIT = Histogram(
    "laneq_queue_wait_seconds",
    "Time between enqueue and execution start",
    ["queue"],
    buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1, 5, 10, 30, 60, 300, 900, 3600),
    registry=REGISTRY,
)
TASKS_ENQUEUED = Counter("laneq_tasks_enqueued_total", "Tasks put on a lane", ["queue"], registry=REGISTRY)
TASKS_COMPLETED = Counter("laneq_tasks_completed_total", "Tasks completed", ["queue"], registry=REGISTRY)
TASKS_FAILED = Counter("laneq_tasks_failed_total", "Failed task attempts", ["queue", "reason"], registry=REGISTRY)
TASKS_RETRIED = Counter("laneq_tasks_retried_total", "Tasks scheduled for retry", ["queue"], registry=REGISTRY)
TASK_DURATION = Histogram(
    "laneq_task_duration_seconds",
    "Handler execution time",
    ["queue", "type"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60, 300, 600),
    registry=REGISTRY,
)
BROKER_ERRORS = Counter("laneq_broker_errors_total", "Broker operations that failed", ["op"], registry=REGISTRY)
ACTIVE_WORKERS = Gauge("laneq_active_workers", "Worker coroutines currently running", registry=REGISTRY)

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def observe_queue_wait(queue: str, seconds: float):
    QUEUE_WAIT.labels(queue=queue).observe(max(0.0, seconds))

def record_depths(depths: Mapping[str, Mapping[str, int]]):
    """depths: {lane: {"pending": n, "active": n, "retry": n}}"""
    for lane, states in depths.items():
        for state in DEPTH_STATES:
            QUEUE_DEPTH.labels(queue=lane, state=state).set(int(states.get(state, 0)))

def sample(name: str, labels: Optional[Dict[str, str]] = None) -> float:
    """Current value of a sample in the laneq registry (0.0 when never observed)."""
    value = REGISTRY.get_sample_value(name, labels or {})
    return float(value) if value is not None else 0.0

def render_latest() -> bytes:
    return generate_latest(REGISTRY)

def start_metrics_server(port: int, addr: str = "0.0.0.0"):
    """Start the Prometheus HTTP exporter in a background thread."""
    start_http_server(port, addr=addr, registry=REGISTRY)
    LOG.info("Prometheus metrics server started on %s:%d", addr, port)


__all__ = [
    "REGISTRY",
    "CONTENT_TYPE_LATEST",
    "DEPTH_STATES",
    "QUEUE_DEPTH",
    "QUEUE_WAIT",
    "TASKS_ENQUEUED",
    "TASKS_COMPLETED",
    "TASKS_FAILED",
    "TASKS_RETRIED",
    "TASK_DURATION",
    "BROKER_ERRORS",
    "ACTIVE_WORKERS",
    "observe_queue_wait",
    "record_depths",
    "sample",
    "render_latest",
    "start_metrics_server",
]
