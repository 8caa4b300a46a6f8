"""Tests for the bounded priority queue."""

import errno
import os
import signal
import time

import pytest

from forkq.exceptions import ForkError, WorkloadContractError
from forkq.process import ProcessHandle, Queue
from forkq.types import ProcessStatus, QueueFlag


def _record_starts(handle: ProcessHandle, order: list) -> ProcessHandle:
    handle.add_event_listener("start", lambda p, e: order.append(p.name))
    return handle


def test_empty_queue():
    queue = Queue()
    assert len(queue) == 0
    assert queue.limit == 0
    assert not queue.is_active
    assert not queue.is_maxed
    assert queue.wait() is queue


def test_priority_then_insertion_order(controller):
    queue = Queue(limit=1)
    order = []
    for name, priority in [("a", 5), ("b", 1), ("c", 5), ("d", 2)]:
        queue.insert(_record_starts(ProcessHandle(lambda p: 0, name=name), order), priority)

    assert [p.name for p in queue.pending] == ["a", "c", "d", "b"]
    queue.start(block=True)

    assert order == ["a", "c", "d", "b"]
    assert [p.name for p in queue.finished] == ["a", "c", "d", "b"]


def test_insert_wraps_callables():
    queue = Queue()
    handle = queue.insert(lambda p: 0)
    assert isinstance(handle, ProcessHandle)
    assert handle.status == ProcessStatus.PENDING
    assert len(queue) == 1


def test_insert_rejects_non_callables():
    queue = Queue()
    with pytest.raises(WorkloadContractError):
        queue.insert(object())
    assert len(queue) == 0


def test_limit_is_never_exceeded(controller, sleeper):
    limit = 2
    queue = Queue(limit=limit)
    samples = []

    def sample(process, event):
        samples.append(len(queue.active))

    for _ in range(6):
        handle = queue.insert(sleeper(0.05))
        handle.add_event_listener("start", sample)
        handle.add_event_listener("exit", sample)

    queue.start()
    samples.append(len(queue.active))
    queue.wait()

    assert samples
    assert max(samples) <= limit
    assert len(queue.finished) == 6
    assert all(p.status == ProcessStatus.FINISHED for p in queue.finished)


def test_zero_limit_is_unbounded(controller, sleeper):
    queue = Queue()
    for _ in range(5):
        queue.insert(sleeper(0.5))
    queue.start()
    assert len(queue.active) == 5
    assert len(queue) == 0
    queue.wait()
    assert len(queue.finished) == 5


def test_not_started_without_autostart():
    queue = Queue(limit=1)
    handle = queue.insert(lambda p: 0)
    assert handle.status == ProcessStatus.PENDING
    assert not queue.is_active


def test_autostart_runs_on_insert(controller):
    queue = Queue(flags=QueueFlag.AUTOSTART)
    handle = queue.insert(lambda p: 0)
    assert handle.status != ProcessStatus.PENDING
    queue.wait()
    assert handle.status == ProcessStatus.FINISHED


def test_insert_while_active_admits(controller, sleeper):
    queue = Queue(limit=2)
    queue.insert(sleeper(0.5))
    queue.start()
    late = queue.insert(lambda p: 0)
    assert late.status != ProcessStatus.PENDING
    queue.wait()


def test_block_flag_makes_start_synchronous(controller):
    queue = Queue(limit=2, flags=QueueFlag.BLOCK)
    for code in (0, 3, 0):
        queue.insert(lambda p, code=code: code)
    queue.start()
    assert not queue.is_active
    assert sorted(p.exit_code for p in queue.finished) == [0, 0, 3]


def test_failed_jobs_are_finished_too(controller):
    queue = Queue()
    queue.insert(lambda p: 7)
    queue.start(block=True)
    (job,) = queue.finished
    assert job.status == ProcessStatus.FAILURE
    assert job.exit_code == 7


def test_stop_signals_active_jobs(controller, sleeper):
    queue = Queue()
    for _ in range(2):
        queue.insert(sleeper(30))
    queue.start()
    queue.stop()
    queue.wait()
    assert [p.status for p in queue.finished] == [ProcessStatus.KILLED] * 2
    assert all(p.term_signal == signal.SIGTERM for p in queue.finished)


def test_raising_limit_admits_pending(controller, sleeper):
    queue = Queue(limit=1)
    for _ in range(3):
        queue.insert(sleeper(1))
    queue.start()
    assert len(queue.active) == 1
    assert len(queue) == 2

    queue.set_limit(3)
    assert len(queue.active) == 3
    assert len(queue) == 0
    queue.wait()


def test_lowering_limit_does_not_admit(controller, sleeper):
    queue = Queue(limit=2)
    for _ in range(3):
        queue.insert(sleeper(0.5))
    queue.start()
    queue.limit = 1
    assert len(queue.active) == 2
    queue.wait()
    assert len(queue.finished) == 3


def test_negative_limit_raises():
    with pytest.raises(ValueError):
        Queue(limit=-1)


def test_user_exit_listeners_see_queue_bookkeeping(controller):
    queue = Queue()
    seen = []
    handle = queue.insert(lambda p: 0)
    handle.add_event_listener("exit", lambda p, e: seen.append(p.status))
    queue.start(block=True)
    assert seen == [ProcessStatus.FINISHED]


def test_stop_signals_every_job_even_if_one_exits_meanwhile(controller, sleeper, monkeypatch):
    real_kill = ProcessHandle.kill

    def slow_kill(self, sig=None):
        real_kill(self, sig)
        time.sleep(0.5)
        return self

    queue = Queue()
    slow = queue.insert(sleeper(30))
    fast = queue.insert(sleeper(0.1))
    queue.start()

    monkeypatch.setattr(ProcessHandle, "kill", slow_kill)
    queue.stop()
    queue.wait()

    assert slow.status == ProcessStatus.KILLED
    assert fast.is_terminated
    assert len(queue.finished) == 2


def test_fork_failure_requeues_job(controller, monkeypatch):
    queue = Queue()
    handle = queue.insert(lambda p: 0)
    real_fork = os.fork

    def broken_fork():
        raise OSError(errno.EAGAIN, "Resource temporarily unavailable")

    monkeypatch.setattr(os, "fork", broken_fork)
    with pytest.raises(ForkError):
        queue.start()

    assert queue.pending == [handle]
    assert handle.status == ProcessStatus.PENDING
    assert handle.lock.held == 0
    assert not queue.is_active

    monkeypatch.setattr(os, "fork", real_fork)
    queue.start(block=True)
    assert handle.status == ProcessStatus.FINISHED
