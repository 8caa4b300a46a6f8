"""Core types shared across all forkq subsystems."""

from __future__ import annotations

import uuid
from enum import Enum, IntFlag
from typing import TYPE_CHECKING, Callable, TypeAlias

if TYPE_CHECKING:
    from forkq.process.handle import ProcessHandle

# ── Exit codes ────────────────────────────────────────────────────────────────

EXIT_SUCCESS = 0
EXIT_FAILURE = 1

# Wait for any child
ANY = -1


def new_id() -> str:
    return uuid.uuid4().hex[:12]


# ── Process States ───────────────────────────────────────────────────────────


class ProcessStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    FINISHED = "finished"
    FAILURE = "failure"
    KILLED = "killed"


TERMINAL_STATES = frozenset(
    {ProcessStatus.FINISHED, ProcessStatus.FAILURE, ProcessStatus.KILLED}
)


class ProcessEvent(str, Enum):
    START = "start"
    EXIT = "exit"


# ── Queue ────────────────────────────────────────────────────────────────────


class QueueFlag(IntFlag):
    NONE = 0
    BLOCK = 1  # start() waits for all jobs
    AUTOSTART = 2  # insert() admits immediately


# ── Callables ────────────────────────────────────────────────────────────────

Workload: TypeAlias = "Callable[[ProcessHandle], int | None]"
Listener: TypeAlias = "Callable[[ProcessHandle, ProcessEvent], None]"
