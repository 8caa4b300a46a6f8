"""Queue — priority scheduler that runs a bounded number of processes.

Pending work is a heap keyed by ``(-priority, sequence)``: higher priority
first, insertion order among equals. Admission forks with the handle's
handshake lock held, records the child as active, and only then lets it go,
so the queue's own bookkeeping can never miss an exit.
"""

from __future__ import annotations

import heapq
import itertools
import logging
from types import MappingProxyType
from typing import Mapping

from forkq.config import settings
from forkq.exceptions import WorkloadContractError
from forkq.process.controller import Controller, get_controller
from forkq.process.handle import ProcessHandle
from forkq.types import ProcessEvent, ProcessStatus, QueueFlag, Workload

_logger = logging.getLogger(__name__)


class Queue:
    """Runs queued processes, at most ``limit`` at a time (0 = unbounded)."""

    def __init__(
        self,
        limit: int = 0,
        flags: QueueFlag | int = QueueFlag.NONE,
        controller: Controller | None = None,
    ) -> None:
        self._pending: list[tuple[int, int, ProcessHandle]] = []
        self._sequence = itertools.count()
        self._active: dict[int, ProcessHandle] = {}
        self._finished: list[ProcessHandle] = []
        self._limit = 0
        self._controller = controller
        self.flags = QueueFlag(flags)
        self.set_limit(limit)

    @property
    def controller(self) -> Controller:
        if self._controller is None:
            self._controller = get_controller()
        return self._controller

    # ── State ─────────────────────────────────────────────────────────────

    @property
    def limit(self) -> int:
        return self._limit

    @limit.setter
    def limit(self, limit: int) -> None:
        self.set_limit(limit)

    def set_limit(self, limit: int) -> Queue:
        """Change the concurrency bound; raising it admits waiting work."""
        limit = int(limit)
        if limit < 0:
            raise ValueError(f"limit must be >= 0, got {limit}")
        raised = limit == 0 or (self._limit != 0 and limit > self._limit)
        self._limit = limit
        if raised and self.is_active:
            self._execute()
        return self

    @property
    def active(self) -> Mapping[int, ProcessHandle]:
        return MappingProxyType(self._active)

    @property
    def finished(self) -> tuple[ProcessHandle, ...]:
        return tuple(self._finished)

    @property
    def pending(self) -> list[ProcessHandle]:
        """Pending handles in admission order."""
        return [entry[2] for entry in sorted(self._pending)]

    @property
    def is_active(self) -> bool:
        return bool(self._active)

    @property
    def is_maxed(self) -> bool:
        return self._limit > 0 and len(self._active) >= self._limit

    def __len__(self) -> int:
        return len(self._pending)

    # ── Scheduling ────────────────────────────────────────────────────────

    def insert(self, job: ProcessHandle | Workload, priority: int = 0) -> ProcessHandle:
        """Queue a handle or a bare workload callable."""
        if not isinstance(job, ProcessHandle):
            if not callable(job):
                raise WorkloadContractError(
                    f"Expected a ProcessHandle or a callable, got {type(job).__name__}"
                )
            job = ProcessHandle.from_workload(job, controller=self._controller)

        heapq.heappush(self._pending, (-priority, next(self._sequence), job))
        _logger.debug("Queued %s with priority %d", job.name, priority)

        if self.flags & QueueFlag.AUTOSTART or self.is_active:
            self._execute()
        return job

    def _execute(self) -> None:
        with self.controller.guarded():
            while self._pending and not self.is_maxed:
                entry = heapq.heappop(self._pending)
                job = entry[2]
                try:
                    job.run(defer_lock_release=True)
                except Exception:
                    if job.status is ProcessStatus.PENDING:
                        heapq.heappush(self._pending, entry)
                    raise
                job.add_event_listener(ProcessEvent.EXIT, self._job_exited)
                self._active[job.pid] = job
                job.lock.release()
                _logger.debug(
                    "Admitted %s as pid %d (%d active, %d pending)",
                    job.name, job.pid, len(self._active), len(self._pending),
                )

    def _job_exited(self, job: ProcessHandle, event: ProcessEvent) -> None:
        if self._active.pop(job.pid, None) is None:
            return
        self._finished.append(job)
        self._execute()

    def start(self, block: bool = False) -> Queue:
        """Admit as much pending work as the limit allows."""
        self._execute()
        if self.flags & QueueFlag.BLOCK or block:
            self.wait()
        return self

    def wait(self) -> Queue:
        """Block until no job is active."""
        controller = self.controller
        while self._active:
            if not controller.wait():
                self._drop_lost(controller)
        return self

    def _drop_lost(self, controller: Controller) -> None:
        # Jobs reaped behind the controller's back never report an exit
        for pid, job in list(self._active.items()):
            if job.is_running and not controller.owns(pid):
                _logger.warning("Lost track of %s (pid %d)", job.name, pid)
                del self._active[pid]

    def stop(self, sig: int | None = None) -> Queue:
        """Signal every active job; does not wait for them."""
        if sig is None:
            sig = settings.kill_signal
        # Guarded: a job that exits mid-loop stays RUNNING until we are done
        with self.controller.guarded():
            for job in list(self._active.values()):
                if job.is_running:
                    job.kill(sig)
        return self

    def __repr__(self) -> str:
        return (
            f"Queue(limit={self._limit}, pending={len(self._pending)}, "
            f"active={len(self._active)}, finished={len(self._finished)})"
        )
