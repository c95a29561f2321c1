"""Scoped exclusive access to a named lock file, with one adapter per platform.

The lock is advisory and tied to the open file descriptor, so the OS drops it
when a crashed holder's descriptors are closed. Acquisition blocks until the
lock is free.
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Iterator

from onetap.models import LockUnavailable

logger = logging.getLogger("onetap.locking")


if sys.platform == "win32":
    import msvcrt

    def _acquire(f: IO) -> None:
        # LK_LOCK retries for ~10s before raising; loop to keep blocking semantics
        while True:
            try:
                msvcrt.locking(f.fileno(), msvcrt.LK_LOCK, 1)
                return
            except OSError as e:
                if e.errno != 36:  # EDEADLOCK: still held by another process
                    raise

    def _release(f: IO) -> None:
        f.seek(0)
        msvcrt.locking(f.fileno(), msvcrt.LK_UNLCK, 1)

else:
    import fcntl

    def _acquire(f: IO) -> None:
        fcntl.flock(f.fileno(), fcntl.LOCK_EX)

    def _release(f: IO) -> None:
        fcntl.flock(f.fileno(), fcntl.LOCK_UN)


@contextmanager
def exclusive_lock(lock_file: Path) -> Iterator[None]:
    """Hold an exclusive host-wide lock on lock_file for the duration of the block.

    Raises:
        LockUnavailable: the lock file could not be created, opened or locked
    """
    try:
        lock_file.parent.mkdir(parents=True, exist_ok=True)
        lock_file.touch(exist_ok=True)
        f = open(lock_file, "r+")
    except OSError as e:
        raise LockUnavailable(f"Failed to open state lock {lock_file}: {e}", tool="lock") from e

    try:
        try:
            _acquire(f)
        except OSError as e:
            raise LockUnavailable(f"Failed to acquire state lock {lock_file}: {e}", tool="lock") from e
        logger.debug("Acquired lock %s (pid %d)", lock_file, os.getpid())
        try:
            yield
        finally:
            _release(f)
            logger.debug("Released lock %s", lock_file)
    finally:
        f.close()
