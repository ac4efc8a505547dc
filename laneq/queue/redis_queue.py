# laneq/queue/redis_queue.py
"""
laneq Redis priority broker

Features:
 - One Redis list per lane (LPUSH on put, RPOP side on pop): FIFO inside a lane
 - Smooth weighted round-robin across lanes that are neither paused nor empty
 - Popped entries move atomically (LMOVE) to a per-lane active list until acked
 - Durable delayed requeue: per-lane sorted set scored by due time, forwarded by forward_due()
 - Pause / resume persisted in a Redis set, visible to every process
 - Orphan recovery for active entries left behind by a crashed worker process
 - Depth inspection per lane and state (pending / active / retry), health check
 - Redis connection / timeout errors surface as BrokerUnavailable

Key layout (prefix defaults to "laneq"):

    {prefix}:lane:{name}              pending list
    {prefix}:lane:{name}:active       popped, not yet acked
    {prefix}:lane:{name}:scheduled    zset, score = due unix seconds
    {prefix}:paused                   set of paused lane names
    {prefix}:seq                      broker task id counter
"""

from __future__ import annotations

import asyncio
import logging
import contextlib
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence

import redis.asyncio as redis_async
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from laneq.errors import BrokerUnavailable, ValidationError
from laneq.metrics import BROKER_ERRORS, TASKS_ENQUEUED
from laneq.queue.payload import TaskPayload
from laneq.utils.time_utils import monotonic_ts, now_ts

LOG = logging.getLogger("laneq.queue.redis")

DEFAULT_POLL_INTERVAL = 0.1
FORWARD_BATCH = 100


@dataclass(frozen=True)
class LaneConfig:
    name: str
    weight: int
    paused: bool = False


@dataclass
class Delivery:
    """
    One popped entry. `payload` is None when the raw entry failed validation, in which
    case `error` holds the ValidationError and the worker fails the job from `raw`.
    """
    lane: str
    raw: bytes
    payload: Optional[TaskPayload]
    error: Optional[ValidationError] = None

    def __iter__(self):
        # (lane, payload) unpacking
        yield self.lane
        yield self.payload

# -------------------------
# Lane selection
# -------------------------
class SmoothWeightedRoundRobin:
    """
    Smooth weighted round-robin (the nginx upstream algorithm). Each eligible lane gains its
    weight, the largest current value wins and pays back the eligible total. Over any window
    where the same lanes stay eligible, lane i is chosen weight_i / sum(weights) of the time,
    interleaved rather than in bursts.
    """

    def __init__(self, weights: Mapping[str, int]):
        self.weights: Dict[str, int] = dict(weights)
        self._current: Dict[str, int] = {name: 0 for name in self.weights}

    def next(self, eligible: Sequence[str]) -> Optional[str]:
        best: Optional[str] = None
        total = 0
        for lane in eligible:
            weight = self.weights[lane]
            self._current[lane] += weight
            total += weight
            if best is None or self._current[lane] > self._current[best]:
                best = lane
        if best is not None:
            self._current[best] -= total
        return best

# -------------------------
# Broker
# -------------------------
class PriorityBroker:
    """
    Weighted multi-lane broker over redis.asyncio.

    Usage:
        broker = PriorityBroker.from_url("redis://localhost:6379/0", {"critical": 6, "default": 3, "low": 1})
        await broker.put("default", payload)
        delivery = await broker.pop(timeout=1.0)
        ...
        await broker.ack(delivery)
    """

    def __init__(
        self,
        redis: redis_async.Redis,
        weights: Mapping[str, int],
        prefix: str = "laneq",
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        owns_client: bool = False,
    ):
        if not weights:
            raise ValueError("at least one lane is required")
        for name, weight in weights.items():
            if int(weight) < 1:
                raise ValueError(f"lane {name!r} weight must be a positive integer")
        self.redis = redis
        self.weights: Dict[str, int] = {name: int(w) for name, w in weights.items()}
        self.prefix = prefix
        self.poll_interval = poll_interval
        self._owns_client = owns_client
        self._rr = SmoothWeightedRoundRobin(self.weights)

    @classmethod
    def from_url(cls, url: str, weights: Mapping[str, int], **kwargs: Any) -> "PriorityBroker":
        client = redis_async.from_url(url, decode_responses=False)
        LOG.info("Connected to redis.asyncio at %s", url)
        return cls(client, weights, owns_client=True, **kwargs)

    async def close(self):
        if self._owns_client:
            try:
                await self.redis.aclose()
            except Exception:
                LOG.exception("Redis client close failed")

    # -------------------------
    # Keys
    # -------------------------
    def pending_key(self, lane: str) -> str:
        return f"{self.prefix}:lane:{lane}"

    def active_key(self, lane: str) -> str:
        return f"{self.prefix}:lane:{lane}:active"

    def scheduled_key(self, lane: str) -> str:
        return f"{self.prefix}:lane:{lane}:scheduled"

    @property
    def paused_key(self) -> str:
        return f"{self.prefix}:paused"

    @property
    def seq_key(self) -> str:
        return f"{self.prefix}:seq"

    def _check_lane(self, lane: str):
        if lane not in self.weights:
            raise ValidationError(f"unknown queue {lane!r}")

    @contextlib.asynccontextmanager
    async def _op(self, op: str) -> AsyncIterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as e:
            BROKER_ERRORS.labels(op=op).inc()
            LOG.warning("Broker %s failed: %s", op, e)
            raise BrokerUnavailable(op, e) from e

    # -------------------------
    # Produce
    # -------------------------
    async def put(self, lane: str, payload: TaskPayload) -> str:
        """Append to the tail of `lane`. Returns the broker task id."""
        self._check_lane(lane)
        async with self._op("put"):
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.incr(self.seq_key)
                pipe.lpush(self.pending_key(lane), payload.to_json())
                seq, _ = await pipe.execute()
        TASKS_ENQUEUED.labels(queue=lane).inc()
        return f"{lane}:{seq}"

    async def schedule(self, lane: str, payload: TaskPayload, delay: float) -> float:
        """Durably park `payload` until now + delay; forward_due() moves it back onto the lane."""
        self._check_lane(lane)
        due = now_ts() + max(0.0, float(delay))
        async with self._op("schedule"):
            await self.redis.zadd(self.scheduled_key(lane), {payload.to_json(): due})
        LOG.debug("Scheduled job %s on %s in %.1fs", payload.job_id, lane, delay)
        return due

    async def forward_due(self, now: Optional[float] = None) -> int:
        """
        Move every due scheduled entry back onto its lane, re-stamped with the actual
        re-enqueue time. The zset entry is removed in the same MULTI as the LPUSH, under
        WATCH, so a given entry is forwarded by exactly one caller.
        """
        now = now if now is not None else now_ts()
        moved = 0
        for lane in self.weights:
            key = self.scheduled_key(lane)
            async with self._op("forward_due"):
                due = await self.redis.zrangebyscore(key, "-inf", now, start=0, num=FORWARD_BATCH)
                for raw in due:
                    if await self._forward_one(lane, key, raw):
                        moved += 1
        if moved:
            LOG.debug("Forwarded %d scheduled entries", moved)
        return moved

    async def _forward_one(self, lane: str, key: str, raw: bytes) -> bool:
        try:
            entry = TaskPayload.from_json(raw).restamp().to_json()
        except ValidationError:
            # the worker fails the job when it pops the entry
            LOG.warning("Forwarding malformed scheduled entry on %s unchanged", lane)
            entry = raw
        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                if await pipe.zscore(key, raw) is None:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.zrem(key, raw)
                pipe.lpush(self.pending_key(lane), entry)
                await pipe.execute()
            except WatchError:
                # zset changed underneath; the entry is picked up again next tick
                return False
        TASKS_ENQUEUED.labels(queue=lane).inc()
        return True

    # -------------------------
    # Consume
    # -------------------------
    async def _eligible_lanes(self) -> List[str]:
        async with self.redis.pipeline(transaction=False) as pipe:
            pipe.smembers(self.paused_key)
            for lane in self.weights:
                pipe.llen(self.pending_key(lane))
            res = await pipe.execute()
        paused = {p.decode() if isinstance(p, bytes) else p for p in res[0]}
        return [lane for lane, n in zip(self.weights, res[1:]) if n and lane not in paused]

    async def pop_nowait(self) -> Optional[Delivery]:
        """One selection round. Returns None when no eligible lane has an entry."""
        async with self._op("pop"):
            eligible = await self._eligible_lanes()
            while eligible:
                lane = self._rr.next(eligible)
                raw = await self.redis.lmove(self.pending_key(lane), self.active_key(lane), "RIGHT", "LEFT")
                if raw is None:
                    # drained by another consumer since the length check
                    eligible.remove(lane)
                    continue
                return self._decode(lane, raw)
        return None

    async def pop(self, timeout: Optional[float] = None) -> Optional[Delivery]:
        """
        Block until an entry is available, polling every `poll_interval`.
        Returns None once `timeout` seconds elapse without work (never, when timeout is None).
        """
        deadline = monotonic_ts() + timeout if timeout is not None else None
        while True:
            delivery = await self.pop_nowait()
            if delivery is not None:
                return delivery
            if deadline is not None and monotonic_ts() >= deadline:
                return None
            await asyncio.sleep(self.poll_interval)

    def _decode(self, lane: str, raw: bytes) -> Delivery:
        try:
            return Delivery(lane=lane, raw=raw, payload=TaskPayload.from_json(raw))
        except ValidationError as e:
            LOG.warning("Malformed payload on lane %s: %s", lane, e)
            return Delivery(lane=lane, raw=raw, payload=None, error=e)

    async def ack(self, delivery: Delivery) -> bool:
        async with self._op("ack"):
            removed = await self.redis.lrem(self.active_key(delivery.lane), 1, delivery.raw)
        return bool(removed)

    # -------------------------
    # Lane control
    # -------------------------
    async def pause(self, lane: str):
        self._check_lane(lane)
        async with self._op("pause"):
            await self.redis.sadd(self.paused_key, lane)
        LOG.info("Paused lane %s", lane)

    async def resume(self, lane: str):
        self._check_lane(lane)
        async with self._op("resume"):
            await self.redis.srem(self.paused_key, lane)
        LOG.info("Resumed lane %s", lane)

    async def is_paused(self, lane: str) -> bool:
        async with self._op("is_paused"):
            return bool(await self.redis.sismember(self.paused_key, lane))

    async def lanes(self) -> List[LaneConfig]:
        async with self._op("lanes"):
            paused = {p.decode() if isinstance(p, bytes) else p for p in await self.redis.smembers(self.paused_key)}
        return [LaneConfig(name=name, weight=w, paused=name in paused) for name, w in self.weights.items()]

    # -------------------------
    # Maintenance / inspection
    # -------------------------
    async def recover_orphans(self) -> int:
        """
        Return entries stranded in active lists to the head of their lanes, oldest first.
        Only safe while no other worker process is consuming the same prefix.
        """
        recovered = 0
        async with self._op("recover_orphans"):
            for lane in self.weights:
                while await self.redis.lmove(self.active_key(lane), self.pending_key(lane), "LEFT", "RIGHT") is not None:
                    recovered += 1
        if recovered:
            LOG.warning("Recovered %d orphaned entries", recovered)
        return recovered

    async def depths(self) -> Dict[str, Dict[str, int]]:
        async with self._op("depths"):
            async with self.redis.pipeline(transaction=False) as pipe:
                for lane in self.weights:
                    pipe.llen(self.pending_key(lane))
                    pipe.llen(self.active_key(lane))
                    pipe.zcard(self.scheduled_key(lane))
                res = await pipe.execute()
        out: Dict[str, Dict[str, int]] = {}
        for i, lane in enumerate(self.weights):
            pending, active, retry = res[i * 3:i * 3 + 3]
            out[lane] = {"pending": int(pending), "active": int(active), "retry": int(retry)}
        return out

    async def ping(self) -> bool:
        async with self._op("ping"):
            return bool(await self.redis.ping())

    async def health(self) -> Dict[str, Any]:
        res: Dict[str, Any] = {"ok": False, "lanes": {}}
        try:
            res["ok"] = await self.ping()
            depths = await self.depths()
            for lane in await self.lanes():
                res["lanes"][lane.name] = {"weight": lane.weight, "paused": lane.paused, **depths.get(lane.name, {})}
        except BrokerUnavailable as e:
            res["error"] = str(e)
        return res


__all__ = ["PriorityBroker", "Delivery", "LaneConfig", "SmoothWeightedRoundRobin", "DEFAULT_POLL_INTERVAL"]
