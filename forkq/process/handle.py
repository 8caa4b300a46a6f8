"""ProcessHandle — one forked OS process and its lifecycle.

    PENDING --run()--> RUNNING --reaped--> FINISHED | FAILURE | KILLED

The parent and child synchronise on a private Lock while forking. The parent
holds it across fork() and registration; the child touches it before doing
anything else. So a fast child can never exit, and be reaped, before the
parent has recorded it. ``run(defer_lock_release=True)`` leaves the release
to the caller, which lets a scheduler finish its own bookkeeping first.
"""

from __future__ import annotations

import logging
import os
import sys
from collections import defaultdict

from forkq.config import settings
from forkq.exceptions import ForkError, ProcessStateError, SignalError, WorkloadContractError
from forkq.process.controller import Controller, get_controller, is_signalable
from forkq.sync.lock import Lock
from forkq.types import (
    EXIT_FAILURE,
    EXIT_SUCCESS,
    TERMINAL_STATES,
    Listener,
    ProcessEvent,
    ProcessStatus,
    Workload,
    new_id,
)

_logger = logging.getLogger(__name__)

# Valid state transitions; terminal states have none
VALID_TRANSITIONS: dict[ProcessStatus, set[ProcessStatus]] = {
    ProcessStatus.PENDING: {ProcessStatus.RUNNING},
    ProcessStatus.RUNNING: {
        ProcessStatus.FINISHED,
        ProcessStatus.FAILURE,
        ProcessStatus.KILLED,
    },
    ProcessStatus.FINISHED: set(),
    ProcessStatus.FAILURE: set(),
    ProcessStatus.KILLED: set(),
}


def status_from_wait(status: int) -> tuple[ProcessStatus, int, int | None]:
    """Decode a raw wait status into (status, exit code, terminating signal)."""
    exit_code = os.waitstatus_to_exitcode(status)
    if os.WIFSIGNALED(status):
        return ProcessStatus.KILLED, exit_code, os.WTERMSIG(status)
    if exit_code != EXIT_SUCCESS:
        return ProcessStatus.FAILURE, exit_code, None
    return ProcessStatus.FINISHED, exit_code, None


class ProcessHandle:
    """Runs a workload in a forked child and tracks it from the parent.

    Pass a workload callable, or subclass and override ``execute()``. The
    workload receives the handle and returns the child's exit code (None
    counts as success).
    """

    def __init__(
        self,
        workload: Workload | None = None,
        *,
        name: str | None = None,
        controller: Controller | None = None,
    ) -> None:
        if workload is not None and not callable(workload):
            raise WorkloadContractError(f"Expected a callable workload, got {type(workload).__name__}")
        self._workload = workload
        self.name = name or getattr(workload, "__name__", None) or type(self).__name__
        self.pid: int | None = None
        self.exit_code: int | None = None
        self.term_signal: int | None = None
        self._status = ProcessStatus.PENDING
        self._listeners: dict[ProcessEvent, list[Listener]] = defaultdict(list)
        self._controller = controller
        self.lock = Lock(f"forkq.process.{new_id()}")

    @classmethod
    def from_workload(cls, workload: Workload, **kwargs) -> ProcessHandle:
        """Wrap a bare workload callable."""
        return cls(workload, **kwargs)

    @property
    def status(self) -> ProcessStatus:
        return self._status

    @property
    def controller(self) -> Controller:
        if self._controller is None:
            self._controller = get_controller()
        return self._controller

    @property
    def is_running(self) -> bool:
        return self._status is ProcessStatus.RUNNING

    @property
    def is_terminated(self) -> bool:
        return self._status in TERMINAL_STATES

    def _transition(self, target: ProcessStatus) -> None:
        if target not in VALID_TRANSITIONS[self._status]:
            raise ProcessStateError(
                f"Cannot transition process {self.name} (pid {self.pid}) "
                f"from {self._status.value} to {target.value}"
            )
        self._status = target

    # ── Events ────────────────────────────────────────────────────────────

    def add_event_listener(self, event: ProcessEvent | str, callback: Listener) -> ProcessHandle:
        if not callable(callback):
            raise WorkloadContractError("Event listener must be callable")
        self._listeners[ProcessEvent(event)].append(callback)
        return self

    def _fire(self, event: ProcessEvent) -> None:
        for callback in list(self._listeners.get(event, ())):
            callback(self, event)

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def run(self, defer_lock_release: bool = False) -> ProcessHandle:
        """Fork and start the workload in the child.

        With ``defer_lock_release`` the handshake lock stays held on return
        and the caller must ``self.lock.release()`` to let the child go.
        """
        if self._status is not ProcessStatus.PENDING:
            raise ProcessStateError(f"Process {self.name} has already been started")

        controller = self.controller
        with controller.guarded():
            self.lock.acquire()
            try:
                pid = os.fork()
            except OSError as e:
                self.lock.release()
                raise ForkError(f"fork() failed: {e}") from e

            if pid == 0:
                self._run_child()

            self.pid = pid
            self._transition(ProcessStatus.RUNNING)
            try:
                controller.register(self)
            except Exception:
                self.lock.release()
                raise
            _logger.debug("Forked %s as pid %d", self.name, pid)

            if not defer_lock_release:
                self.lock.release()
            self._fire(ProcessEvent.START)
        return self

    def _run_child(self) -> None:
        """Child side of run(); never returns."""
        code = EXIT_FAILURE
        try:
            self.pid = os.getpid()
            self._status = ProcessStatus.RUNNING
            self._controller = self.controller.forked()
            # Blocks until the parent has registered us
            self.lock.touch()
            code = self._exit_code(self.execute())
        except SystemExit as e:
            code = self._exit_code(e.code)
        except BaseException:
            _logger.exception("Workload %s failed in pid %d", self.name, os.getpid())
        finally:
            for stream in (sys.stdout, sys.stderr):
                try:
                    stream.flush()
                except (AttributeError, OSError, ValueError):
                    pass
            os._exit(code)

    def _exit_code(self, result) -> int:
        if result is None:
            return EXIT_SUCCESS
        try:
            code = int(result)
        except (TypeError, ValueError):
            _logger.warning("Workload %s returned non-integer %r", self.name, result)
            return EXIT_FAILURE
        if not 0 <= code <= 255:
            _logger.warning("Workload %s returned out-of-range exit code %d", self.name, code)
            return EXIT_FAILURE
        return code

    def execute(self) -> int | None:
        """Run the workload in the child and return its exit code."""
        if self._workload is None:
            raise NotImplementedError("Pass a workload or override execute()")
        return self._workload(self)

    def exited(self, status: int) -> None:
        """Record the reaped wait status; called by the Controller."""
        if self._status is not ProcessStatus.RUNNING:
            raise ProcessStateError(f"Process {self.name} is not running ({self._status.value})")
        if is_signalable(self.pid):
            raise ProcessStateError(f"Process {self.pid} is still running")

        target, self.exit_code, self.term_signal = status_from_wait(status)
        self._transition(target)
        self.lock.remove()
        _logger.debug("Process %s (pid %d) %s, exit code %d", self.name, self.pid, target.value, self.exit_code)
        self._fire(ProcessEvent.EXIT)

    def join(self) -> ProcessHandle:
        """Block until the process has exited; no-op unless running."""
        controller = self.controller
        while self._status is ProcessStatus.RUNNING and controller.owns(self.pid):
            controller.wait(self.pid)
        return self

    def kill(self, sig: int | None = None) -> ProcessHandle:
        """Send ``sig`` (SIGTERM by default). Status changes once reaped."""
        if self._status is not ProcessStatus.RUNNING:
            raise ProcessStateError(f"Process {self.name} is not running ({self._status.value})")
        if sig is None:
            sig = settings.kill_signal
        try:
            os.kill(self.pid, sig)
        except OSError as e:
            raise SignalError(f"kill({self.pid}, {sig}) failed: {e}") from e
        return self

    def __repr__(self) -> str:
        return f"ProcessHandle(name={self.name!r}, pid={self.pid}, status={self._status.value})"
