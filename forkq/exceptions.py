"""Custom exception hierarchy for forkq."""

from __future__ import annotations

import os


class ForkqError(Exception):
    """Base for all forkq errors."""


class ProcessError(ForkqError):
    """The process environment failed (fork, signals, wait, semaphores).

    These are not retryable. The message always carries the pid of the
    process that raised it, since the same code runs on both sides of a fork.
    """

    def __init__(self, message: str) -> None:
        self.pid = os.getpid()
        super().__init__(f"[pid:{self.pid}] {message}")


class ForkError(ProcessError):
    """os.fork() failed."""


class SignalError(ProcessError):
    """Sending a signal or installing a signal handler failed."""


class WaitError(ProcessError):
    """Waiting for a child failed for a reason other than ECHILD/EINTR."""


class NotSignalableError(ProcessError):
    """A process could not be registered because it cannot be signalled."""


class LockError(ProcessError):
    """A semaphore could not be created, acquired, released or removed."""

    def __init__(self, lock_id: int, message: str) -> None:
        self.lock_id = lock_id
        super().__init__(f"semaphore {lock_id}: {message}")


class ProcessStateError(ForkqError):
    """Invalid process state transition or lifecycle call."""


class WorkloadContractError(ForkqError, TypeError):
    """Something that should be callable, or a ProcessHandle, is not."""
