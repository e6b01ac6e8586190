from __future__ import annotations

import threading
from typing import List

from repo_agent.queue import LatestTriggerQueue


def test_idle_submit_runs_immediately() -> None:
    seen: List[str] = []
    queue = LatestTriggerQueue(seen.append)

    assert queue.submit("first") is True
    assert queue.wait_idle(5)
    assert seen == ["first"]
    assert queue.processed == 1
    assert queue.busy is False


def test_only_latest_trigger_is_replayed() -> None:
    started = threading.Event()
    release = threading.Event()
    seen: List[str] = []

    def handler(trigger: str) -> None:
        seen.append(trigger)
        if trigger == "first":
            started.set()
            release.wait(5)

    queue = LatestTriggerQueue(handler)
    assert queue.submit("first") is True
    assert started.wait(5)

    assert queue.submit("second") is False
    assert queue.submit("third") is False
    assert queue.pending == "third"
    assert queue.busy is True

    release.set()
    assert queue.wait_idle(5)
    assert seen == ["first", "third"]
    assert queue.pending is None


def test_handler_errors_do_not_stop_the_loop() -> None:
    started = threading.Event()
    release = threading.Event()
    seen: List[str] = []

    def handler(trigger: str) -> None:
        seen.append(trigger)
        if trigger == "boom":
            started.set()
            release.wait(5)
            raise ValueError("bad trigger")

    queue = LatestTriggerQueue(handler)
    queue.submit("boom")
    assert started.wait(5)
    queue.submit("after")
    release.set()

    assert queue.wait_idle(5)
    assert seen == ["boom", "after"]
    assert isinstance(queue.last_error, ValueError)
    assert queue.processed == 2

    assert queue.submit("again") is True
    assert queue.wait_idle(5)
    assert seen[-1] == "again"


def test_error_history_is_bounded() -> None:
    def handler(trigger: int) -> None:
        raise ValueError(trigger)

    queue = LatestTriggerQueue(handler, max_errors=2)
    for trigger in range(3):
        queue.submit(trigger)
        assert queue.wait_idle(5)

    assert [error.args[0] for error in queue.errors] == [1, 2]
    assert queue.errors.maxlen == 2
    assert queue.processed == 3
    assert queue.last_error.args[0] == 2
