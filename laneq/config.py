# laneq/config.py
"""
laneq configuration
-------------------

Environment-driven settings (optionally loaded from a .env file) validated by pydantic.

    LANEQ_REDIS_URL            redis://localhost:6379/0
    LANEQ_KEY_PREFIX           laneq
    LANEQ_CONCURRENCY          10
    LANEQ_QUEUES               critical:6,default:3,low:1
    LANEQ_MAX_RETRIES          3
    LANEQ_BACKOFF              1m,5m,15m
    LANEQ_TASK_TIMEOUT         10m
    LANEQ_POLL_INTERVAL        0.1
    LANEQ_SCHEDULER_INTERVAL   1.0
    LANEQ_SHUTDOWN_TIMEOUT     30
    LANEQ_METRICS_PORT         0 (disabled)
    LANEQ_METRICS_ADDR         0.0.0.0
    LANEQ_TRACING_*            see laneq.utils.tracing
    LANEQ_LOG_LEVEL            INFO
    LANEQ_LOG_JSON             true
"""

from __future__ import annotations

import os
import logging
from typing import Any, Dict, List, Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from laneq.queue.retry import DEFAULT_SCHEDULE, parse_schedule
from laneq.utils.time_utils import parse_duration

LOG = logging.getLogger("laneq.config")

ENV_PREFIX = "LANEQ_"
DEFAULT_QUEUES = {"critical": 6, "default": 3, "low": 1}
DEFAULT_BACKOFF = list(DEFAULT_SCHEDULE)

_TRUE = ("1", "true", "yes", "on")

# -------------------------
# Parsers
# -------------------------
def parse_queue_weights(spec: str) -> Dict[str, int]:
    """
    "critical:6,default:3,low:1" -> {"critical": 6, "default": 3, "low": 1}
    A lane given without a weight gets weight 1.
    """
    weights: Dict[str, int] = {}
    for part in (spec or "").split(","):
        part = part.strip()
        if not part:
            continue
        name, _, raw_weight = part.partition(":")
        name = name.strip()
        if not name:
            raise ValueError(f"empty lane name in {spec!r}")
        if name in weights:
            raise ValueError(f"lane {name!r} listed twice")
        try:
            weights[name] = int(raw_weight.strip()) if raw_weight.strip() else 1
        except ValueError:
            raise ValueError(f"invalid weight for lane {name!r}: {raw_weight!r}") from None
    if not weights:
        raise ValueError("at least one lane is required")
    return weights

def parse_backoff_schedule(spec: str) -> List[float]:
    """ "1m,5m,15m" -> [60.0, 300.0, 900.0] """
    return list(parse_schedule(spec))

# -------------------------
# Settings model
# -------------------------
class LaneqSettings(BaseModel):
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "laneq"
    concurrency: int = Field(10, ge=1)
    queues: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_QUEUES))
    max_retries: int = Field(3, ge=0)
    backoff: List[float] = Field(default_factory=lambda: list(DEFAULT_BACKOFF))
    task_timeout: float = Field(600.0, gt=0)
    poll_interval: float = Field(0.1, gt=0)
    scheduler_interval: float = Field(1.0, gt=0)
    shutdown_timeout: float = Field(30.0, ge=0)
    metrics_port: int = Field(0, ge=0)
    metrics_addr: str = "0.0.0.0"
    tracing_enabled: bool = True
    tracing_exporter: str = "console"
    tracing_otlp_endpoint: Optional[str] = None
    tracing_service_name: str = "laneq"
    tracing_sampler: str = "parentbased"
    tracing_probability: float = Field(1.0, ge=0.0, le=1.0)
    log_level: str = "INFO"
    log_json: bool = True

    @field_validator("queues", mode="before")
    @classmethod
    def _parse_queues(cls, v: Any) -> Any:
        if isinstance(v, str):
            return parse_queue_weights(v)
        return v

    @field_validator("queues")
    @classmethod
    def _check_weights(cls, v: Dict[str, int]) -> Dict[str, int]:
        if not v:
            raise ValueError("at least one lane is required")
        for name, weight in v.items():
            if weight < 1:
                raise ValueError(f"lane {name!r} weight must be a positive integer, got {weight}")
        return v

    @field_validator("backoff", mode="before")
    @classmethod
    def _parse_backoff(cls, v: Any) -> Any:
        if isinstance(v, str):
            return parse_backoff_schedule(v)
        return v

    @field_validator("backoff")
    @classmethod
    def _check_backoff(cls, v: List[float]) -> List[float]:
        if not v:
            raise ValueError("backoff schedule must not be empty")
        if any(d <= 0 for d in v):
            raise ValueError("backoff delays must be positive")
        return v

    @field_validator("task_timeout", mode="before")
    @classmethod
    def _parse_timeout(cls, v: Any) -> Any:
        if isinstance(v, str):
            return parse_duration(v)
        return v

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, dotenv: bool = True, **overrides: Any) -> "LaneqSettings":
        """
        Build settings from LANEQ_* variables. `env` defaults to os.environ (after
        loading a .env file when `dotenv` is set); keyword overrides win over both.
        """
        if env is None:
            if dotenv:
                load_dotenv(override=False)
            env = os.environ
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            key = ENV_PREFIX + name.upper()
            if key in env and env[key] != "":
                values[name] = env[key]
        for name in ("tracing_enabled", "log_json"):
            if name in values and isinstance(values[name], str):
                values[name] = values[name].strip().lower() in _TRUE
        values.update(overrides)
        settings = cls(**values)
        LOG.debug("Loaded settings: lanes=%s concurrency=%d max_retries=%d", settings.queues, settings.concurrency, settings.max_retries)
        return settings


__all__ = ["LaneqSettings", "parse_queue_weights", "parse_backoff_schedule", "DEFAULT_QUEUES", "DEFAULT_BACKOFF"]
