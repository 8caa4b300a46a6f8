"""Cross-process synchronization primitives."""

from forkq.sync.lock import Lock

__all__ = ["Lock"]
