"""Process management — forked workloads, reaping and scheduling.

- ProcessHandle: fork a workload and follow it through its lifecycle
- Controller: per-process registry of children and the SIGCHLD reaper
- Queue: priority scheduler with a concurrency limit
- WorkerPool: map a worker function over work items with bounded workers
"""

from forkq.process.controller import Controller, get_controller
from forkq.process.handle import ProcessHandle
from forkq.process.pool import WorkerPool
from forkq.process.queue import Queue

__all__ = ["Controller", "ProcessHandle", "Queue", "WorkerPool", "get_controller"]
