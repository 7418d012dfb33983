"""
Destination lock — one install run per destination root at a time.

An exclusive ``flock`` on a lock file kept in the state directory (not
in the destination root, which should only ever contain installed
files). The lock file name is derived from the resolved root, so two
spellings of the same prefix share one lock.
"""

from __future__ import annotations

import fcntl
import hashlib
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from keg.core.errors import LockError

logger = logging.getLogger(__name__)


def lock_path_for(root: Path, locks_dir: Path) -> Path:
    key = hashlib.sha256(str(root.expanduser().resolve()).encode("utf-8")).hexdigest()[:16]
    return locks_dir / f"{key}.lock"


@contextmanager
def destination_lock(
    root: Path,
    locks_dir: Path,
    *,
    timeout: float = 30.0,
    poll_interval: float = 0.1,
) -> Iterator[Path]:
    """Hold the exclusive lock for ``root`` for the duration of the block.

    Raises:
        LockError: If the lock is still held by someone else after
            ``timeout`` seconds.
    """
    path = lock_path_for(root, locks_dir)
    locks_dir.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
    try:
        deadline = time.monotonic() + timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise LockError(
                        f"Another install is running for {root} "
                        f"(lock {path} held for more than {timeout:.0f}s)"
                    ) from None
                time.sleep(poll_interval)

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()} {root}\n".encode("utf-8"))
        logger.debug("Acquired destination lock %s for %s", path, root)
        try:
            yield path
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Released destination lock %s", path)
    finally:
        os.close(fd)
