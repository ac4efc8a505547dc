# laneq/utils/logger.py
"""
laneq Logger Utilities
----------------------

 - JSONFormatter and human-friendly formatter
 - OpenTelemetry trace/span ids attached to every record emitted inside a span
 - Task context (job_id, queue, task_type) carried in contextvars so handler logs
   are correlated without threading ids through every call
 - Optional queue-based handler so slow sinks never block the event loop
 - configure_logging() for entrypoints, StructuredLoggerAdapter for per-component fields

Usage:
    from laneq.utils.logger import configure_logging
    configure_logging(app_name="laneq", level="INFO", json=True)
    log = logging.getLogger("laneq.tasks")
    log.info("hello", extra={"job_id": "123"})
"""

from __future__ import annotations

import os
import sys
import json
import queue
import atexit
import socket
import logging
import logging.handlers
import threading
import contextlib
import contextvars
import datetime
from typing import Any, Dict, Iterator, Optional

from opentelemetry.trace import get_current_span

# -------------------------
# Task context
# -------------------------
_TASK_CONTEXT: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("laneq_task_context", default={})

def get_task_context() -> Dict[str, Any]:
    return dict(_TASK_CONTEXT.get())

@contextlib.contextmanager
def task_log_context(**fields: Any) -> Iterator[None]:
    """Bind fields (job_id, queue, ...) to every log record emitted inside the block."""
    merged = dict(_TASK_CONTEXT.get())
    merged.update({k: v for k, v in fields.items() if v is not None})
    token = _TASK_CONTEXT.set(merged)
    try:
        yield
    finally:
        _TASK_CONTEXT.reset(token)

# -------------------------
# Utilities
# -------------------------
def _get_hostname() -> str:
    try:
        return socket.gethostname()
    except Exception:
        return "unknown-host"

def _now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat().replace("+00:00", "Z")

_RESERVED_ATTRS = frozenset((
    "args", "msg", "levelname", "levelno", "name", "pathname", "filename", "module", "lineno",
    "funcName", "exc_info", "exc_text", "stack_info", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "message", "asctime", "taskName",
))

# -------------------------
# Filters & formatters
# -------------------------
class TaskContextFilter(logging.Filter):
    """Copy the current task context and trace ids onto the record."""

    def filter(self, record: logging.LogRecord) -> bool:
        for k, v in _TASK_CONTEXT.get().items():
            if not hasattr(record, k):
                setattr(record, k, v)
        try:
            ctx = get_current_span().get_span_context()
            if ctx.is_valid:
                record.trace_id = format(ctx.trace_id, "032x")
                record.span_id = format(ctx.span_id, "016x")
        except Exception:
            pass
        return True


class JSONFormatter(logging.Formatter):
    """
    JSON formatter that attaches standard fields:
      - ts, level, logger, message, module, line
      - service, hostname, pid
      - optional: trace_id, span_id, job_id, queue, any `extra`
    """
    def __init__(self, service_name: str = "laneq", extra_fields: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.service = service_name
        self.extra_fields = extra_fields or {}
        self.hostname = _get_hostname()
        self.pid = os.getpid()

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": _now_iso(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
            "service": self.service,
            "hostname": self.hostname,
            "pid": self.pid,
        }
        for k, v in record.__dict__.items():
            if k in _RESERVED_ATTRS or k.startswith("_"):
                continue
            payload[k] = v
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        payload.update(self.extra_fields)
        return json.dumps(payload, default=str)


class HumanFormatter(logging.Formatter):
    """Human-friendly formatter that appends job/trace correlation when present."""
    def __init__(self, service_name: str = "laneq"):
        super().__init__(fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
        self.service = service_name

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extras = []
        for key in ("job_id", "queue", "trace_id"):
            val = getattr(record, key, None)
            if val:
                extras.append(f"{key}={val}")
        if extras:
            base = f"{base} | {' '.join(extras)}"
        return base

# -------------------------
# Configure logging
# -------------------------
_CONFIGURED = False
_LOCK = threading.Lock()
_LISTENER: Optional[logging.handlers.QueueListener] = None

def configure_logging(
    app_name: str = "laneq",
    level: Optional[str] = None,
    json: bool = True,
    async_worker: bool = False,
    extra_fields: Optional[Dict[str, Any]] = None,
    force: bool = False,
):
    """
    Configure root logging for laneq processes (worker, CLI).

    Parameters:
      - app_name: service name inserted into JSON logs
      - level: logging level (default LANEQ_LOG_LEVEL or INFO)
      - json: JSONFormatter if True, HumanFormatter otherwise
      - async_worker: route records through a QueueHandler/QueueListener pair
      - force: reconfigure even if already configured (tests)
    """
    global _CONFIGURED, _LISTENER
    with _LOCK:
        if _CONFIGURED and not force:
            return
        level_name = (level or os.getenv("LANEQ_LOG_LEVEL", "INFO")).upper()
        lvl = getattr(logging, level_name, logging.INFO)

        root = logging.getLogger()
        root.setLevel(lvl)
        for h in list(root.handlers):
            root.removeHandler(h)
        if _LISTENER is not None:
            _LISTENER.stop()
            _LISTENER = None

        ch = logging.StreamHandler(stream=sys.stdout)
        ch.setFormatter(JSONFormatter(service_name=app_name, extra_fields=extra_fields) if json else HumanFormatter(service_name=app_name))
        ch.setLevel(lvl)
        ch.addFilter(TaskContextFilter())

        if async_worker:
            q: "queue.Queue[logging.LogRecord]" = queue.Queue(maxsize=10000)
            qh = logging.handlers.QueueHandler(q)
            # context must be captured on the emitting thread, before the record crosses the queue
            qh.addFilter(TaskContextFilter())
            root.addHandler(qh)
            _LISTENER = logging.handlers.QueueListener(q, ch, respect_handler_level=True)
            _LISTENER.start()
            atexit.register(_LISTENER.stop)
        else:
            root.addHandler(ch)

        _CONFIGURED = True

# -------------------------
# Structured Logger Adapter
# -------------------------
class StructuredLoggerAdapter(logging.LoggerAdapter):
    """
    Attach structured context to logs conveniently. Works well with JSONFormatter.
    Usage:
        log = StructuredLoggerAdapter(logging.getLogger("laneq.workers"), {"worker": "w-1"})
        log.info("hello", extra={"job_id": "123"})
    """
    def process(self, msg, kwargs):
        extra = kwargs.setdefault("extra", {})
        if isinstance(self.extra, dict):
            for k, v in self.extra.items():
                extra.setdefault(k, v)
        for k, v in _TASK_CONTEXT.get().items():
            extra.setdefault(k, v)
        return msg, kwargs


__all__ = [
    "configure_logging",
    "JSONFormatter",
    "HumanFormatter",
    "TaskContextFilter",
    "StructuredLoggerAdapter",
    "task_log_context",
    "get_task_context",
]
