# tests/test_main.py
"""
CLI argument parsing and handler loading.
"""

import pytest

from laneq.main import _build_cli, _register_handlers, load_object
from laneq.workers import HandlerRegistry


def test_worker_arguments():
    args = _build_cli().parse_args(["worker", "--handlers", "pkg.tasks:register", "--handler",
                                    "scrape=pkg.tasks:scrape", "--concurrency", "4", "--recover"])
    assert args.cmd == "worker"
    assert args.handlers == ["pkg.tasks:register"]
    assert args.handler == ["scrape=pkg.tasks:scrape"]
    assert args.concurrency == 4
    assert args.recover is True


def test_enqueue_arguments_default_lane():
    args = _build_cli().parse_args(["enqueue", "scrape", "--args", '{"url": "u"}'])
    assert (args.type, args.queue, args.args) == ("scrape", "default", '{"url": "u"}')


def test_jobs_filters():
    args = _build_cli().parse_args(["jobs", "--status", "failed", "--limit", "5"])
    assert args.status == "failed" and args.limit == 5 and args.offset == 0


def test_load_object_resolves_dotted_attributes():
    assert load_object("laneq.workers:HandlerRegistry.register") is HandlerRegistry.register
    with pytest.raises(ValueError):
        load_object("laneq.workers")
    with pytest.raises(AttributeError):
        load_object("laneq.workers:nothing_here")


class _FakeQueue:
    def __init__(self):
        self.registry = HandlerRegistry()

    def register_handler(self, task_type, fn):
        return self.registry.register(task_type, fn)


def test_register_handlers_from_type_mapping():
    tq = _FakeQueue()
    _register_handlers(tq, [], ["normalize=laneq.utils.time_utils:format_duration"])
    assert tq.registry.types() == ["normalize"]
    with pytest.raises(ValueError):
        _register_handlers(tq, [], ["laneq.utils.time_utils:format_duration"])
