# laneq/utils/tracing.py
"""
laneq Tracing Utilities
-----------------------

OpenTelemetry helpers for carrying a trace across the enqueue -> dequeue boundary.

 - TracingProvider: explicit provider object built at process start and passed to the
   enqueue path and the worker pool. Shutdown is an explicit call, there is no global
   tracer state unless `set_global=True` is requested (CLI entrypoints do that).
 - capture_trace_context(): hex (trace_id, span_id) of the active span, or ("", "")
 - restore_trace_context(): remote SpanContext from hex ids, or None on any malformed input
 - start_producer_span() / start_consumer_span(): PRODUCER / CONSUMER spans. The consumer
   span *links* to the producer span instead of being parented under it, since the two
   sides are not a synchronous call.

Tracing is best-effort everywhere: nothing in this module raises into the enqueue or the
task processing path.

Environment variables (read through laneq.config):
 - LANEQ_TRACING_ENABLED=true/false
 - LANEQ_TRACING_EXPORTER=otlp|console|none
 - LANEQ_TRACING_OTLP_ENDPOINT (e.g., http://otel-collector:4317)
 - LANEQ_TRACING_SERVICE_NAME=laneq
 - LANEQ_TRACING_SAMPLER=always|probabilistic|parentbased
 - LANEQ_TRACING_PROBABILITY=1.0
"""

from __future__ import annotations

import re
import logging
import contextlib
from typing import Any, Dict, Iterator, Optional, Tuple

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider, sampling
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
    SpanExporter,
)
from opentelemetry.trace import Link, Span, SpanContext, SpanKind, TraceFlags

LOG = logging.getLogger("laneq.utils.tracing")

TRACE_ID_RE = re.compile(r"^[0-9a-fA-F]{32}$")
SPAN_ID_RE = re.compile(r"^[0-9a-fA-F]{16}$")

ATTR_QUEUE_WAIT_MS = "messaging.queue_wait_ms"
ATTR_QUEUE = "messaging.destination.name"
ATTR_JOB_ID = "laneq.job_id"
ATTR_TASK_TYPE = "laneq.task_type"
ATTR_RETRY_COUNT = "laneq.retry_count"

# -----------------------------------------------------------------------------
# Provider
# -----------------------------------------------------------------------------
def _choose_sampler(name: str, probability: float) -> sampling.Sampler:
    name = (name or "").lower()
    if name == "always":
        return sampling.ALWAYS_ON
    if name == "never":
        return sampling.ALWAYS_OFF
    if name in ("probabilistic", "traceidratio"):
        return sampling.TraceIdRatioBased(probability)
    return sampling.ParentBased(sampling.TraceIdRatioBased(probability))


class TracingProvider:
    """
    Owns an OpenTelemetry SDK TracerProvider and its span processors.

    Usage:
        tracing = TracingProvider(service_name="laneq", exporter="console")
        tracer = tracing.get_tracer("laneq.workers")
        ...
        tracing.shutdown()
    """

    def __init__(
        self,
        service_name: str = "laneq",
        enabled: bool = True,
        exporter: Any = "console",
        otlp_endpoint: Optional[str] = None,
        sampler: str = "parentbased",
        probability: float = 1.0,
        resource_attrs: Optional[Dict[str, str]] = None,
        batch: bool = True,
        set_global: bool = False,
    ):
        self.service_name = service_name
        self.enabled = enabled
        self._shutdown = False
        attrs = {"service.name": service_name}
        attrs.update(resource_attrs or {})
        sampler_obj = _choose_sampler(sampler, probability) if enabled else sampling.ALWAYS_OFF
        self._provider = TracerProvider(resource=Resource.create(attrs), sampler=sampler_obj)
        self.exporter_name = "none"
        if enabled:
            span_exporter = self._build_exporter(exporter, otlp_endpoint)
            if span_exporter is not None:
                processor = BatchSpanProcessor(span_exporter) if batch else SimpleSpanProcessor(span_exporter)
                self._provider.add_span_processor(processor)
        if set_global:
            trace.set_tracer_provider(self._provider)
        LOG.info("Tracing initialized: service=%s exporter=%s sampler=%s enabled=%s",
                 service_name, self.exporter_name, sampler, enabled)

    def _build_exporter(self, exporter: Any, otlp_endpoint: Optional[str]) -> Optional[SpanExporter]:
        if isinstance(exporter, SpanExporter):
            self.exporter_name = exporter.__class__.__name__
            return exporter
        chosen = (exporter or "none").lower()
        if chosen == "otlp":
            if not otlp_endpoint:
                LOG.warning("OTLP exporter selected but endpoint not provided; falling back to console")
                chosen = "console"
            else:
                from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
                self.exporter_name = "otlp"
                LOG.info("Configured OTLP exporter -> %s", otlp_endpoint)
                return OTLPSpanExporter(endpoint=otlp_endpoint)
        if chosen == "console":
            self.exporter_name = "console"
            return ConsoleSpanExporter()
        if chosen != "none":
            LOG.warning("Unknown tracing exporter %r; spans will not be exported", exporter)
        return None

    @property
    def provider(self) -> TracerProvider:
        return self._provider

    def get_tracer(self, name: Optional[str] = None) -> trace.Tracer:
        return self._provider.get_tracer(name or self.service_name)

    def force_flush(self, timeout_ms: int = 5000) -> bool:
        return self._provider.force_flush(timeout_ms)

    def shutdown(self) -> None:
        """Flush and shut down span processors. Safe to call more than once."""
        if self._shutdown:
            return
        self._shutdown = True
        try:
            self._provider.shutdown()
            LOG.info("Tracing shutdown completed")
        except Exception:
            LOG.exception("Tracing shutdown failed")

# -----------------------------------------------------------------------------
# Codec
# -----------------------------------------------------------------------------
def format_trace_id(trace_id: int) -> str:
    return format(trace_id, "032x")

def format_span_id(span_id: int) -> str:
    return format(span_id, "016x")

def capture_trace_context(span: Optional[Span] = None) -> Tuple[str, str]:
    """
    Hex ids of `span` (default: the currently active span) when it is valid and sampled.
    Returns ("", "") otherwise; never raises.
    """
    try:
        span = span if span is not None else trace.get_current_span()
        ctx = span.get_span_context()
        if not ctx.is_valid or not ctx.trace_flags.sampled:
            return "", ""
        return format_trace_id(ctx.trace_id), format_span_id(ctx.span_id)
    except Exception:
        LOG.debug("capture_trace_context failed", exc_info=True)
        return "", ""

def is_valid_trace_pair(trace_id: str, span_id: str) -> bool:
    """Both empty, or both well-formed hex of the right length."""
    trace_id = trace_id or ""
    span_id = span_id or ""
    if not trace_id and not span_id:
        return True
    if not isinstance(trace_id, str) or not isinstance(span_id, str):
        return False
    return bool(TRACE_ID_RE.match(trace_id) and SPAN_ID_RE.match(span_id))

def restore_trace_context(trace_id: Optional[str], span_id: Optional[str]) -> Optional[SpanContext]:
    """
    Parse hex ids back into a remote, sampled SpanContext.
    Malformed, one-sided or all-zero ids yield None.
    """
    try:
        if not trace_id or not span_id:
            return None
        if not TRACE_ID_RE.match(trace_id) or not SPAN_ID_RE.match(span_id):
            return None
        ctx = SpanContext(
            trace_id=int(trace_id, 16),
            span_id=int(span_id, 16),
            is_remote=True,
            trace_flags=TraceFlags(TraceFlags.SAMPLED),
        )
        return ctx if ctx.is_valid else None
    except Exception:
        LOG.debug("restore_trace_context failed", exc_info=True)
        return None

# -----------------------------------------------------------------------------
# Spans
# -----------------------------------------------------------------------------
def _set_attributes(span: Span, attributes: Optional[Dict[str, Any]]):
    for k, v in (attributes or {}).items():
        if v is None:
            continue
        try:
            span.set_attribute(k, v)
        except Exception:
            LOG.debug("set_attribute %s failed", k, exc_info=True)

@contextlib.contextmanager
def start_producer_span(tracer: trace.Tracer, name: str, attributes: Optional[Dict[str, Any]] = None) -> Iterator[Span]:
    """PRODUCER span around the enqueue; becomes the current span so it can be captured."""
    with tracer.start_as_current_span(name, kind=SpanKind.PRODUCER, record_exception=False,
                                      set_status_on_exception=False) as span:
        _set_attributes(span, attributes)
        yield span

@contextlib.contextmanager
def start_consumer_span(
    tracer: trace.Tracer,
    name: str,
    remote_ctx: Optional[SpanContext],
    attributes: Optional[Dict[str, Any]] = None,
) -> Iterator[Span]:
    """
    CONSUMER span for one task execution. It starts a new trace root (an empty parent
    context) and carries a Link to the producer span when `remote_ctx` is available.
    """
    links = [Link(remote_ctx, {"laneq.link": "producer"})] if remote_ctx is not None else None
    with tracer.start_as_current_span(
        name,
        context=Context(),
        kind=SpanKind.CONSUMER,
        links=links,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        _set_attributes(span, attributes)
        yield span

def record_span_error(span: Span, exc: BaseException, description: Optional[str] = None):
    try:
        span.record_exception(exc)
        span.set_status(trace.Status(trace.StatusCode.ERROR, description or str(exc)))
    except Exception:
        LOG.debug("record_span_error failed", exc_info=True)


__all__ = [
    "TracingProvider",
    "capture_trace_context",
    "restore_trace_context",
    "is_valid_trace_pair",
    "format_trace_id",
    "format_span_id",
    "start_producer_span",
    "start_consumer_span",
    "record_span_error",
    "ATTR_QUEUE_WAIT_MS",
    "ATTR_QUEUE",
    "ATTR_JOB_ID",
    "ATTR_TASK_TYPE",
    "ATTR_RETRY_COUNT",
]
