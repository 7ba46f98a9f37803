"""File-based mutual exclusion for shared pipeline resources.

Concurrent runs serialize on the target namespace while deploying and on the
signing key while signing. Locks are ``flock`` locks on per-resource files,
so they hold across threads (each acquisition opens its own descriptor) and
across processes on the same host.

Example:
    >>> from keel_core.locks import resource_lock
    >>> with resource_lock("namespace", "prod"):
    ...     executor.apply(...)
"""

from __future__ import annotations

import errno
import fcntl
import hashlib
import os
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import structlog

from keel_core.errors import ConcurrentLockError

logger = structlog.get_logger(__name__)

# Default lock timeout in seconds (configurable via KEEL_LOCK_TIMEOUT)
DEFAULT_LOCK_TIMEOUT = 30.0

LOCK_RETRY_INTERVAL = 0.1


def default_lock_dir() -> Path:
    """Directory holding lock files (``KEEL_LOCK_DIR`` or the temp dir)."""
    configured = os.environ.get("KEEL_LOCK_DIR")
    lock_dir = Path(configured) if configured else Path(tempfile.gettempdir()) / "keel" / "locks"
    lock_dir.mkdir(parents=True, exist_ok=True)
    return lock_dir


def lock_path(kind: str, name: str, lock_dir: Path | None = None) -> Path:
    """Lock file path for a resource."""
    name_hash = hashlib.sha256(f"{kind}:{name}".encode()).hexdigest()[:16]
    directory = lock_dir if lock_dir is not None else default_lock_dir()
    directory.mkdir(parents=True, exist_ok=True)
    return directory / f"{kind}-{name_hash}.lock"


@contextmanager
def resource_lock(
    kind: str,
    name: str,
    timeout_seconds: float | None = None,
    lock_dir: Path | None = None,
) -> Iterator[None]:
    """Hold an exclusive lock on ``kind:name`` for the duration of the block.

    Args:
        kind: Resource kind (``namespace``, ``signing-key``).
        name: Resource name.
        timeout_seconds: How long to wait (default: KEEL_LOCK_TIMEOUT or 30s).
        lock_dir: Directory for lock files.

    Raises:
        ConcurrentLockError: If the lock cannot be acquired within the timeout.
    """
    if timeout_seconds is None:
        timeout_seconds = float(os.environ.get("KEEL_LOCK_TIMEOUT", DEFAULT_LOCK_TIMEOUT))

    path = lock_path(kind, name, lock_dir)
    path.touch(exist_ok=True)
    resource = f"{kind}:{name}"

    start_time = time.monotonic()
    lock_fd = os.open(str(path), os.O_RDWR)

    lock_acquired = False
    try:
        while True:
            try:
                fcntl.flock(lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                lock_acquired = True
                logger.debug("lock_acquired", resource=resource, path=str(path))
                break
            except OSError as e:
                if e.errno not in (errno.EAGAIN, errno.EWOULDBLOCK):
                    raise

                elapsed = time.monotonic() - start_time
                if elapsed >= timeout_seconds:
                    raise ConcurrentLockError(resource, timeout_seconds) from e

                time.sleep(LOCK_RETRY_INTERVAL)

        yield

    finally:
        if lock_acquired:
            fcntl.flock(lock_fd, fcntl.LOCK_UN)
            logger.debug("lock_released", resource=resource)
        os.close(lock_fd)


__all__ = ["DEFAULT_LOCK_TIMEOUT", "default_lock_dir", "lock_path", "resource_lock"]
