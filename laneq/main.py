# laneq/main.py
"""
laneq command line

    laneq worker --handlers myapp.tasks:register [--concurrency 10] [--recover]
    laneq worker --handler scrape=myapp.tasks:scrape
    laneq enqueue scrape --args '{"url": "https://example.com"}' --queue critical
    laneq job <id>
    laneq jobs [--status failed] [--queue low] [--type scrape] [--limit 50] [--offset 0]
    laneq retry <id>
    laneq delete <id>
    laneq pause <lane> / laneq resume <lane>
    laneq stats
    laneq health

`--handlers module:function` imports the function and calls it with the TaskQueue so it can
register_handler() its task types. Settings come from LANEQ_* variables / .env.
"""

from __future__ import annotations

import sys
import json
import asyncio
import logging
import importlib
from typing import Any, Callable, List, Optional

from laneq.config import LaneqSettings
from laneq.errors import LaneqError
from laneq.metrics import start_metrics_server
from laneq.service import DEFAULT_QUEUE, TaskQueue
from laneq.utils.logger import configure_logging
from laneq.utils.tracing import TracingProvider

LOG = logging.getLogger("laneq.main")


def load_object(target: str) -> Any:
    """ "package.module:attr" -> attr """
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"expected module:attribute, got {target!r}")
    module = importlib.import_module(module_name)
    obj = module
    for part in attr.split("."):
        obj = getattr(obj, part)
    return obj


def _print_json(obj: Any):
    print(json.dumps(obj, indent=2, sort_keys=True, default=str))

# -------------------------
# CLI
# -------------------------
def _build_cli():
    import argparse
    p = argparse.ArgumentParser(prog="laneq", description="laneq weighted task queue")
    sub = p.add_subparsers(dest="cmd", required=True)

    w = sub.add_parser("worker", help="Run a worker pool")
    w.add_argument("--handlers", action="append", default=[], metavar="MODULE:FUNCTION",
                   help="registration hook called with the TaskQueue (repeatable)")
    w.add_argument("--handler", action="append", default=[], metavar="TYPE=MODULE:FUNCTION",
                   help="register a single handler (repeatable)")
    w.add_argument("--concurrency", type=int, default=None)
    w.add_argument("--recover", action="store_true", help="move orphaned active entries back to their lanes first")
    w.add_argument("--metrics-port", type=int, default=None)

    e = sub.add_parser("enqueue", help="Enqueue a task")
    e.add_argument("type")
    e.add_argument("--args", default="{}", help="JSON object")
    e.add_argument("--queue", default=DEFAULT_QUEUE)

    j = sub.add_parser("job", help="Show one job")
    j.add_argument("job_id")

    js = sub.add_parser("jobs", help="List jobs, newest first")
    js.add_argument("--status", default=None)
    js.add_argument("--queue", default=None)
    js.add_argument("--type", default=None)
    js.add_argument("--limit", type=int, default=50)
    js.add_argument("--offset", type=int, default=0)

    r = sub.add_parser("retry", help="Manually retry a failed job")
    r.add_argument("job_id")

    d = sub.add_parser("delete", help="Delete a job record")
    d.add_argument("job_id")

    pa = sub.add_parser("pause", help="Pause a lane")
    pa.add_argument("lane")
    re_ = sub.add_parser("resume", help="Resume a lane")
    re_.add_argument("lane")

    sub.add_parser("stats", help="Lane depths and job count")
    sub.add_parser("health", help="Broker health")
    return p


def _register_handlers(tq: TaskQueue, hooks: List[str], singles: List[str]):
    for target in hooks:
        hook: Callable[[TaskQueue], Any] = load_object(target)
        hook(tq)
    for spec in singles:
        task_type, sep, target = spec.partition("=")
        if not sep:
            raise ValueError(f"expected TYPE=MODULE:FUNCTION, got {spec!r}")
        tq.register_handler(task_type.strip(), load_object(target.strip()))


async def _run_worker(tq: TaskQueue, settings: LaneqSettings, args) -> int:
    _register_handlers(tq, args.handlers, args.handler)
    if not tq.registry.types():
        LOG.error("No handlers registered; pass --handlers or --handler")
        return 2
    port = args.metrics_port if args.metrics_port is not None else settings.metrics_port
    if port:
        start_metrics_server(port, addr=settings.metrics_addr)
    pool = tq.worker_pool(concurrency=args.concurrency, recover_orphans=args.recover)
    await pool.run_until_stopped()
    return 0


async def _cli_async_main(args) -> int:
    settings = LaneqSettings.from_env()
    configure_logging(app_name=settings.tracing_service_name, level=settings.log_level,
                      json=settings.log_json, async_worker=args.cmd == "worker")
    tracing = TracingProvider(
        service_name=settings.tracing_service_name,
        enabled=settings.tracing_enabled,
        exporter=settings.tracing_exporter,
        otlp_endpoint=settings.tracing_otlp_endpoint,
        sampler=settings.tracing_sampler,
        probability=settings.tracing_probability,
        set_global=True,
    )
    tq = TaskQueue.from_settings(settings, tracing=tracing)
    try:
        if args.cmd == "worker":
            return await _run_worker(tq, settings, args)
        if args.cmd == "enqueue":
            payload = json.loads(args.args)
            print(await tq.enqueue(args.type, payload, queue=args.queue))
        elif args.cmd == "job":
            _print_json((await tq.get_job(args.job_id)).to_dict())
        elif args.cmd == "jobs":
            flt = {k: v for k, v in (("status", args.status), ("queue", args.queue), ("type", args.type)) if v}
            _print_json([job.to_dict() for job in await tq.list_jobs(flt, limit=args.limit, offset=args.offset)])
        elif args.cmd == "retry":
            _print_json((await tq.retry_job(args.job_id)).to_dict())
        elif args.cmd == "delete":
            await tq.delete_job(args.job_id)
        elif args.cmd == "pause":
            await tq.pause_lane(args.lane)
        elif args.cmd == "resume":
            await tq.resume_lane(args.lane)
        elif args.cmd == "stats":
            _print_json(await tq.stats())
        elif args.cmd == "health":
            _print_json(await tq.health())
        return 0
    except (LaneqError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    finally:
        await tq.close()
        tracing.shutdown()


def main_cli(argv: Optional[List[str]] = None):
    parser = _build_cli()
    args = parser.parse_args(argv)
    sys.exit(asyncio.run(_cli_async_main(args)))

if __name__ == "__main__":
    main_cli()


__all__ = ["main_cli", "load_object"]
