# laneq/queue/payload.py
"""
Task payload wire model.

One TaskPayload is one execution attempt of a job. The JSON schema is the wire contract
between producers and workers:

    {
      "job_id": "<opaque string>",
      "type": "<string>",
      "args": {...},
      "trace_id": "<32 hex | empty>",
      "span_id": "<16 hex | empty>",
      "enqueued_at": <int unix ns>,
      "queue": "<string>",
      "retry_count": <int>
    }
"""

from __future__ import annotations

import json
import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union

from laneq.errors import ValidationError
from laneq.utils.time_utils import now_ns as _now_ns
from laneq.utils.tracing import is_valid_trace_pair


@dataclass(frozen=True)
class TaskPayload:
    job_id: str
    type: str
    args: Dict[str, Any] = field(default_factory=dict)
    trace_id: str = ""
    span_id: str = ""
    enqueued_at: int = 0
    queue: str = ""
    retry_count: int = 0

    @classmethod
    def build(
        cls,
        job_id: str,
        type: str,
        args: Optional[Dict[str, Any]],
        queue: str,
        trace_ctx: Tuple[str, str] = ("", ""),
        retry_count: int = 0,
        now_ns: Optional[int] = None,
    ) -> "TaskPayload":
        """Stamp a new attempt with the current time and the captured (trace_id, span_id)."""
        trace_id, span_id = trace_ctx or ("", "")
        if not is_valid_trace_pair(trace_id, span_id):
            # tracing is best-effort: a bad capture is dropped, never fatal
            trace_id, span_id = "", ""
        return cls(
            job_id=job_id,
            type=type,
            args=dict(args or {}),
            trace_id=trace_id or "",
            span_id=span_id or "",
            enqueued_at=int(now_ns if now_ns is not None else _now_ns()),
            queue=queue,
            retry_count=int(retry_count),
        )

    def restamp(self, now_ns: Optional[int] = None) -> "TaskPayload":
        return dataclasses.replace(self, enqueued_at=int(now_ns if now_ns is not None else _now_ns()))

    def with_retry(self, retry_count: int) -> "TaskPayload":
        return dataclasses.replace(self, retry_count=int(retry_count))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "type": self.type,
            "args": self.args,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "enqueued_at": self.enqueued_at,
            "queue": self.queue,
            "retry_count": self.retry_count,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_json(cls, raw: Union[str, bytes, bytearray, Dict[str, Any]]) -> "TaskPayload":
        """
        Parse and validate a wire payload.

        Raises:
            ValidationError: not a JSON object, missing job_id/type, bad field types,
                or a trace_id/span_id pair that is one-sided or malformed.
        """
        if isinstance(raw, dict):
            data = raw
        else:
            try:
                if isinstance(raw, (bytes, bytearray)):
                    raw = raw.decode("utf-8")
                data = json.loads(raw)
            except (UnicodeDecodeError, ValueError, TypeError) as e:
                raise ValidationError(f"payload is not valid JSON: {e}") from None
        if not isinstance(data, dict):
            raise ValidationError("payload must be a JSON object")

        job_id = data.get("job_id")
        ttype = data.get("type")
        if not job_id or not isinstance(job_id, str):
            raise ValidationError("payload missing job_id")
        if not ttype or not isinstance(ttype, str):
            raise ValidationError("payload missing type")

        trace_id = data.get("trace_id") or ""
        span_id = data.get("span_id") or ""
        if not is_valid_trace_pair(trace_id, span_id):
            raise ValidationError("payload has inconsistent trace_id/span_id")

        args = data.get("args")
        if args is None:
            args = {}
        if not isinstance(args, dict):
            raise ValidationError("payload args must be an object")

        try:
            enqueued_at = int(data.get("enqueued_at") or 0)
            retry_count = int(data.get("retry_count") or 0)
        except (TypeError, ValueError):
            raise ValidationError("payload enqueued_at/retry_count must be integers") from None

        return cls(
            job_id=job_id,
            type=ttype,
            args=args,
            trace_id=trace_id,
            span_id=span_id,
            enqueued_at=enqueued_at,
            queue=str(data.get("queue") or ""),
            retry_count=retry_count,
        )

    @staticmethod
    def peek_job_id(raw: Union[str, bytes, bytearray]) -> Optional[str]:
        """Best-effort job id of a payload that failed validation."""
        try:
            data = json.loads(raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw)
            job_id = data.get("job_id") if isinstance(data, dict) else None
            return job_id if isinstance(job_id, str) and job_id else None
        except Exception:
            return None


__all__ = ["TaskPayload"]
