"""Run cancellation.

Cancellation is cooperative: the pipeline checks the token at stage
boundaries. A stage that is running when the cancel arrives runs to
completion and its result is discarded. Flags are cleared once the run
reaches a terminal state.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

import structlog

logger = structlog.get_logger(__name__)


@runtime_checkable
class CancellationSource(Protocol):
    """Answers whether a run has been asked to stop."""

    def is_cancelled(self, run_id: str) -> bool: ...

    def cancel(self, run_id: str) -> None: ...

    def clear(self, run_id: str) -> None: ...


class CancellationToken:
    """In-process cancellation flags keyed by run id."""

    def __init__(self) -> None:
        self._cancelled: set[str] = set()
        self._lock = threading.Lock()

    def cancel(self, run_id: str) -> None:
        with self._lock:
            self._cancelled.add(run_id)
        logger.info("run_cancel_requested", run_id=run_id)

    def is_cancelled(self, run_id: str) -> bool:
        with self._lock:
            return run_id in self._cancelled

    def clear(self, run_id: str) -> None:
        with self._lock:
            self._cancelled.discard(run_id)


class FileCancellationToken:
    """Cancellation flags as marker files, visible across processes."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def _marker(self, run_id: str) -> Path:
        return self.directory / f"{run_id}.cancel"

    def cancel(self, run_id: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        self._marker(run_id).touch(exist_ok=True)
        logger.info("run_cancel_requested", run_id=run_id)

    def is_cancelled(self, run_id: str) -> bool:
        return self._marker(run_id).exists()

    def clear(self, run_id: str) -> None:
        self._marker(run_id).unlink(missing_ok=True)


__all__ = ["CancellationSource", "CancellationToken", "FileCancellationToken"]
