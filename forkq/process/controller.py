"""Controller — reaps the children of the current OS process.

Every ProcessHandle started in this process registers here. The controller
owns the SIGCHLD handler, waits for children, and hands each exit status to
the handle that spawned it.

There is one controller per OS process image. A forked child inherits the
parent's object, so the first thing a child does is call ``forked()`` to
drop the parent's registry and install its own controller.

Signal handling:
    Python runs the SIGCHLD handler between bytecodes of the main thread, so
    it can fire in the middle of a registry update or a queue admission.
    Every mutating operation therefore runs inside ``guarded()``. While a
    guarded section is open the handler only flags a pending reap; the
    outermost section drains it on exit.

    There is a single module-level handler. It fans out to every live
    controller of this process that asked for signal-driven reaping, so an
    injected controller never takes the signal away from the default one.
"""

from __future__ import annotations

import atexit
import logging
import os
import signal
import weakref
from contextlib import contextmanager
from types import MappingProxyType
from typing import TYPE_CHECKING, Iterator, Mapping

from forkq.config import settings
from forkq.exceptions import NotSignalableError, ProcessStateError, SignalError, WaitError
from forkq.types import ANY

if TYPE_CHECKING:
    from forkq.process.handle import ProcessHandle

_logger = logging.getLogger(__name__)

_instance: Controller | None = None

# Every controller built in this interpreter; entries of other pids are inert
_controllers: weakref.WeakSet[Controller] = weakref.WeakSet()


def _on_sigchld(signum, frame) -> None:
    pid = os.getpid()
    for controller in list(_controllers):
        if controller.pid == pid and controller.reaps_on_signal:
            controller._child_signalled(signum, frame)


def _shutdown_all() -> None:
    for controller in list(_controllers):
        controller.shutdown()


atexit.register(_shutdown_all)


def is_signalable(pid: int) -> bool:
    """True if ``pid`` exists and this process may signal it."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except OSError:
        return False
    return True


def get_controller() -> Controller:
    """Return the controller of the current process, creating it if needed."""
    global _instance
    if _instance is None:
        _instance = Controller()
    return _instance


class Controller:
    """Process-wide child registry and reaper."""

    def __init__(self, install_handler: bool | None = None) -> None:
        self.pid = os.getpid()
        self._processes: dict[int, ProcessHandle] = {}
        self._guard = 0
        self._pending = False
        if install_handler is None:
            install_handler = settings.install_sigchld_handler
        self.reaps_on_signal = bool(install_handler)
        if self.reaps_on_signal:
            self._install_handler()
        _controllers.add(self)

    @staticmethod
    def _install_handler() -> None:
        if signal.getsignal(signal.SIGCHLD) is _on_sigchld:
            return
        try:
            signal.signal(signal.SIGCHLD, _on_sigchld)
        except (OSError, ValueError) as e:
            raise SignalError(f"installing the SIGCHLD handler failed: {e}") from e

    # ── Registry ──────────────────────────────────────────────────────────

    @property
    def processes(self) -> Mapping[int, ProcessHandle]:
        return MappingProxyType(self._processes)

    def owns(self, pid: int) -> bool:
        return pid in self._processes

    def __contains__(self, pid: object) -> bool:
        return pid in self._processes

    def __len__(self) -> int:
        return len(self._processes)

    def register(self, process: ProcessHandle) -> None:
        """Start tracking a running child."""
        if not is_signalable(process.pid):
            raise NotSignalableError(f"process {process.pid} is not signalable")
        with self.guarded():
            self._processes[process.pid] = process
        _logger.debug("Registered child %d (%s)", process.pid, process.name)

    # ── Reaping ───────────────────────────────────────────────────────────

    @contextmanager
    def guarded(self) -> Iterator[None]:
        """Defer signal-driven reaping until the outermost section exits."""
        self._guard += 1
        try:
            yield
        finally:
            self._guard -= 1
            self._drain()

    def _child_signalled(self, signum, frame) -> None:
        self._pending = True
        self._drain()

    def _drain(self) -> None:
        while self._pending and self._guard == 0:
            self._guard += 1
            try:
                self._pending = False
                for pid in list(self._processes):
                    self._reap(pid, os.WNOHANG)
            finally:
                self._guard -= 1

    def _reap(self, pid: int, options: int) -> bool:
        try:
            reaped, status = os.waitpid(pid, options)
        except ChildProcessError:
            # Somebody else collected them; the exit status is gone
            lost = list(self._processes) if pid == ANY else [pid]
            for child in lost:
                if self._processes.pop(child, None) is not None:
                    _logger.warning("Child %d was reaped outside the controller", child)
            return False
        except InterruptedError:
            return False
        except OSError as e:
            raise WaitError(f"waitpid({pid}) failed: {e}") from e

        if reaped == 0:
            return False
        return self._process_exited(reaped, status)

    def _process_exited(self, pid: int, status: int) -> bool:
        process = self._processes.pop(pid, None)
        if process is None:
            _logger.debug("Ignoring exit of unknown child %d", pid)
            return False
        _logger.debug("Reaped child %d with status %#x", pid, status)
        process.exited(status)
        return True

    def wait(self, pid: int = ANY) -> bool:
        """Block until one child (``pid`` or any) exits and route its status.

        Returns True when a registered child was reaped. Returns False
        straight away when nothing is registered, and also when the wait was
        interrupted or the child was unknown.
        """
        with self.guarded():
            if not self._processes:
                return False
            return self._reap(pid, 0)

    def shutdown(self) -> None:
        """Reap every registered child so none is left as a zombie."""
        if self.pid != os.getpid():
            return
        while self._processes:
            self.wait()

    # ── Fork ──────────────────────────────────────────────────────────────

    def forked(self) -> Controller:
        """Replace this (inherited) controller with one owned by the child."""
        global _instance
        if self.pid == os.getpid():
            raise ProcessStateError(
                f"forked() called in process {self.pid}, which owns this controller"
            )
        self._processes = {}
        self._pending = False
        if _instance is None or _instance.pid != os.getpid():
            _instance = Controller()
        return _instance

    def __repr__(self) -> str:
        return f"Controller(pid={self.pid}, children={sorted(self._processes)})"
