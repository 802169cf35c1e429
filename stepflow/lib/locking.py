"""
Lock management for stepflow.

A workflow instance's state file is owned by one executor at a time.
Drivers take a per-instance flock before touching it.
"""

import fcntl
import os
import sys
import time
import signal
import atexit
from pathlib import Path
from contextlib import contextmanager

from stepflow.lib.errors import StepflowError


class LockTimeout(StepflowError):
    """Lock acquisition timed out."""
    pass


def lock_path(state_dir: Path, workflow_name: str) -> Path:
    """Lock file for a workflow instance, next to its state record."""
    return Path(state_dir) / "locks" / f"{workflow_name}.lock"


def is_locked(state_dir: Path, workflow_name: str) -> bool:
    """Return True if another executor currently holds the instance lock."""
    lock_file = lock_path(state_dir, workflow_name)
    if not lock_file.exists():
        return False

    try:
        fd = open(lock_file, 'r')
    except OSError:
        return False
    try:
        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        fcntl.flock(fd, fcntl.LOCK_UN)
        return False
    except BlockingIOError:
        return True
    finally:
        fd.close()


@contextmanager
def _acquire_lock(lock_file: Path, timeout: int, lock_name: str):
    """
    Internal helper to acquire a file lock.

    Args:
        lock_file: Path to the lock file
        timeout: Seconds to wait for lock
        lock_name: Human-readable name for error messages
    """
    lock_file.parent.mkdir(parents=True, exist_ok=True)

    fd = open(lock_file, 'w')
    start = time.time()

    while True:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            break
        except BlockingIOError:
            if time.time() - start >= timeout:
                fd.close()
                raise LockTimeout(f"Could not acquire {lock_name} within {timeout}s")
            time.sleep(min(1, timeout))

    def cleanup():
        if fd.closed:
            return
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        except OSError:
            pass
        fd.close()

    atexit.register(cleanup)
    original_sigterm = signal.signal(signal.SIGTERM, lambda *_: sys.exit(1))

    try:
        fd.write(f"{os.getpid()}\n")
        fd.flush()
        yield
    finally:
        atexit.unregister(cleanup)
        signal.signal(signal.SIGTERM, original_sigterm)
        cleanup()


@contextmanager
def instance_lock(state_dir: Path, workflow_name: str, timeout: int = 60):
    """
    Acquire the per-instance lock, yield, release on exit.

    Different workflow instances can run in parallel processes; the same
    instance cannot.
    """
    lock_file = lock_path(state_dir, workflow_name)
    with _acquire_lock(lock_file, timeout, f"lock for workflow '{workflow_name}'"):
        yield
