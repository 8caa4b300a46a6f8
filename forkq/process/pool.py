"""WorkerPool — spread work items over a bounded set of forked workers."""

from __future__ import annotations

from typing import Any, Callable, Iterable

from forkq.config import settings
from forkq.exceptions import WorkloadContractError
from forkq.process.controller import Controller
from forkq.process.handle import ProcessHandle
from forkq.process.queue import Queue


class WorkerPool:
    """Runs ``worker(item)`` in its own process for every work item.

    At most ``max_workers`` run at once. The worker's return value is the
    child's exit code.
    """

    def __init__(
        self,
        worker: Callable[[Any], int | None],
        work: Iterable[Any] = (),
        max_workers: int | None = None,
        controller: Controller | None = None,
    ) -> None:
        if not callable(worker):
            raise WorkloadContractError("Worker must be callable")
        self.worker = worker
        self._controller = controller
        if max_workers is None:
            max_workers = settings.default_max_workers
        self.queue = Queue(max_workers, controller=controller)
        for item in work:
            self.add_work(item)

    def add_work(self, item: Any, priority: int = 0) -> ProcessHandle:
        worker = self.worker

        def _work(process: ProcessHandle) -> int | None:
            return worker(item)

        name = f"{getattr(worker, '__name__', 'worker')}({item!r:.40})"
        return self.queue.insert(
            ProcessHandle(_work, name=name, controller=self._controller),
            priority,
        )

    def start(self, block: bool = False) -> WorkerPool:
        self.queue.start()
        if block:
            self.wait()
        return self

    def wait(self) -> WorkerPool:
        """Block until all started work is done."""
        self.queue.wait()
        return self
