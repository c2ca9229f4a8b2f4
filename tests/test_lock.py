"""Tests for InstallationLock."""

import tempfile
from pathlib import Path

import pytest
from refdeploy import BusyError
from refdeploy import Cancellable
from refdeploy import InstallationLock
from refdeploy import OperationCancelledError


def test_lock_acquire_and_release():
    with tempfile.TemporaryDirectory() as tmpdir:
        lock_path = Path(tmpdir) / "nested" / "lock"

        with InstallationLock(lock_path) as lock:
            assert lock.held
            assert lock_path.exists()

        assert not lock.held


def test_contended_lock_raises_busy():
    """A second holder gives up after the bounded wait."""
    with tempfile.TemporaryDirectory() as tmpdir:
        lock_path = Path(tmpdir) / "lock"

        with InstallationLock(lock_path):
            other = InstallationLock(lock_path, timeout=0.1, poll_interval=0.02)
            with pytest.raises(BusyError, match="locked"):
                other.acquire()
            assert not other.held


def test_lock_reacquirable_after_release():
    with tempfile.TemporaryDirectory() as tmpdir:
        lock_path = Path(tmpdir) / "lock"
        first = InstallationLock(lock_path)
        first.acquire()
        first.release()

        second = InstallationLock(lock_path, timeout=0.1)
        second.acquire()

        assert second.held
        second.release()


def test_early_release_makes_exit_noop():
    with tempfile.TemporaryDirectory() as tmpdir:
        with InstallationLock(Path(tmpdir) / "lock") as lock:
            lock.release()
            assert not lock.held


def test_cancelled_while_waiting():
    with tempfile.TemporaryDirectory() as tmpdir:
        lock_path = Path(tmpdir) / "lock"
        cancellable = Cancellable()
        cancellable.cancel()

        with InstallationLock(lock_path):
            waiter = InstallationLock(lock_path, timeout=5.0, cancellable=cancellable)
            with pytest.raises(OperationCancelledError):
                waiter.acquire()
