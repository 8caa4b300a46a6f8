"""Shared test fixtures — isolated lock directories and workload factories."""

from __future__ import annotations

import time

import pytest

from forkq.config import settings
from forkq.process import get_controller


@pytest.fixture(autouse=True)
def lock_dir(tmp_path, monkeypatch):
    """Give every test its own semaphore directory."""
    path = tmp_path / "locks"
    monkeypatch.setattr(settings, "lock_dir", path)
    return path


@pytest.fixture
def controller():
    """The process-wide controller; tests must leave no child behind."""
    ctrl = get_controller()
    yield ctrl
    assert len(ctrl) == 0, f"children left registered: {ctrl}"


@pytest.fixture
def sleeper():
    """Build a workload that sleeps, then exits with ``code``."""
    def _factory(seconds: float, code: int = 0):
        def _sleep(process):
            time.sleep(seconds)
            return code
        return _sleep
    return _factory


def wait_until(predicate, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            return False
        time.sleep(0.01)
    return True


@pytest.fixture
def eventually():
    """Poll a predicate until it holds or a timeout expires."""
    return wait_until
