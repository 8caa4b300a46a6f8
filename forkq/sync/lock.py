"""Lock — a named counting semaphore shared between forked processes.

The semaphore is backed by advisory file locks (``filelock``): a lock with
``max_acquire=N`` owns N slot files and holding the semaphore means holding
one of them. Everything is created lazily on first use.

Ids are derived from a name plus a filesystem inode, so the same logical
lock is reproducible while two unrelated programs using the same name do
not collide.

After a fork the child gets its own handle. The descriptors it inherited
share lock ownership with the parent, so the child keeps them open but
never touches them.
"""

from __future__ import annotations

import functools
import hashlib
import logging
import os
import sys
import time
import weakref
from pathlib import Path

from filelock import FileLock, Timeout

from forkq.config import settings
from forkq.exceptions import LockError

_logger = logging.getLogger(__name__)


@functools.lru_cache(maxsize=None)
def script_inode() -> int:
    """Inode of the running main script (or of this module as a fallback)."""
    try:
        return os.stat(sys.argv[0]).st_ino
    except (OSError, IndexError):
        return os.stat(__file__).st_ino


def _remove_files(paths: list[Path], creator_pid: int) -> None:
    # Only the creator cleans up; children inherit the object but not the lock
    if os.getpid() != creator_pid:
        return
    for path in paths:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            _logger.warning("Could not remove lock file %s: %s", path, e)


class Lock:
    """Counting semaphore with acquire/release/touch/remove.

    ``touch()`` is a rendezvous: it blocks until the lock is free once and
    gives it straight back. With ``auto_remove`` the lock files are deleted
    when the object is collected, but only in the process that created it.
    """

    def __init__(
        self,
        name: str = "",
        max_acquire: int = 1,
        mode: int | None = None,
        auto_remove: bool = True,
        inode: int | None = None,
        lock_dir: Path | str | None = None,
    ) -> None:
        if max_acquire < 1:
            raise ValueError(f"max_acquire must be >= 1, got {max_acquire}")
        self.name = name
        self.id = self.create_id(name, inode)
        self.max_acquire = max_acquire
        self.mode = settings.lock_mode if mode is None else mode
        self.auto_remove = auto_remove
        self.creator_pid = os.getpid()
        self._dir = Path(lock_dir) if lock_dir is not None else settings.lock_dir
        self._slots: list[FileLock] | None = None
        self._slots_pid: int | None = None
        self._held: list[FileLock] = []
        self._inherited: list[FileLock] = []
        self._finalizer = (
            weakref.finalize(self, _remove_files, self.paths, self.creator_pid)
            if auto_remove
            else None
        )

    @staticmethod
    def create_id(name: str, inode: int | None = None) -> int:
        if inode is None:
            inode = script_inode()
        digest = hashlib.md5(name.encode(), usedforsecurity=False).hexdigest()
        return inode + int(digest[24:], 16)

    @property
    def paths(self) -> list[Path]:
        return [self._dir / f"{self.id}.{n}.lock" for n in range(self.max_acquire)]

    @property
    def held(self) -> int:
        """Number of slots the current process holds."""
        if self._slots_pid != os.getpid():
            return 0
        return len(self._held)

    def _create(self) -> None:
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LockError(self.id, f"create failed: {e}") from e
        self._slots = [FileLock(str(p), mode=self.mode) for p in self.paths]
        self._slots_pid = os.getpid()
        _logger.debug("Semaphore %d created in pid %d", self.id, self._slots_pid)

    def _detach_inherited(self) -> None:
        if self._slots is not None and self._slots_pid != os.getpid():
            # Inherited across fork: releasing or collecting these would
            # drop the parent's lock.
            self._inherited.extend(self._slots)
            self._held = []
            self._slots = None

    def _handles(self) -> list[FileLock]:
        self._detach_inherited()
        if self._slots is None:
            self._create()
        return self._slots

    def acquire(self) -> None:
        """Block until one slot is held by this process."""
        slots = self._handles()
        free = [s for s in slots if s not in self._held]
        if not free:
            raise LockError(self.id, "acquire failed: every slot is already held by this process")

        try:
            if len(free) == 1:
                free[0].acquire(poll_interval=settings.lock_poll_interval)
                self._held.append(free[0])
                return
            while True:
                for slot in free:
                    try:
                        slot.acquire(timeout=0)
                    except Timeout:
                        continue
                    self._held.append(slot)
                    return
                time.sleep(settings.lock_poll_interval)
        except OSError as e:
            raise LockError(self.id, f"acquire failed: {e}") from e

    def release(self) -> None:
        """Release the most recently acquired slot."""
        self._handles()
        if not self._held:
            raise LockError(self.id, "release failed: not held by this process")
        slot = self._held.pop()
        try:
            slot.release()
        except OSError as e:
            raise LockError(self.id, f"release failed: {e}") from e

    def touch(self) -> None:
        """Wait until the lock is available, without keeping it."""
        self.acquire()
        self.release()

    def remove(self) -> None:
        """Destroy the semaphore, whether or not it is held."""
        self._detach_inherited()
        try:
            while self._held:
                self._held.pop().release(force=True)
            for path in self.paths:
                path.unlink(missing_ok=True)
        except OSError as e:
            raise LockError(self.id, f"remove failed: {e}") from e
        self._held = []
        self._slots = None
        self._slots_pid = None
        _logger.debug("Semaphore %d removed", self.id)

    def __enter__(self) -> Lock:
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()

    def __repr__(self) -> str:
        return f"Lock(name={self.name!r}, id={self.id}, max_acquire={self.max_acquire})"
