"""Append-only deployment log.

Every deployment attempt, successful or not, is appended as one JSON line.
Records are never rewritten. Without a path the log is kept in memory.
"""

from __future__ import annotations

import fcntl
import threading
from pathlib import Path

import structlog
from pydantic import ValidationError

from keel_core.schemas.deployment import DeploymentRecord, DeployOutcome
from keel_core.schemas.stages import StageName

logger = structlog.get_logger(__name__)


class DeploymentLog:
    """Log of ``DeploymentRecord`` entries across runs."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = Path(path) if path is not None else None
        self._memory: list[DeploymentRecord] = []
        self._lock = threading.Lock()

    def append(self, record: DeploymentRecord) -> None:
        with self._lock:
            if self.path is None:
                self._memory.append(record)
            else:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as f:
                    fcntl.flock(f.fileno(), fcntl.LOCK_EX)
                    try:
                        f.write(record.model_dump_json() + "\n")
                    finally:
                        fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        logger.debug(
            "deployment_recorded",
            record_id=record.record_id,
            stage=record.stage.value,
            outcome=record.outcome.value,
        )

    def _all(self) -> list[DeploymentRecord]:
        with self._lock:
            if self.path is None:
                return list(self._memory)
            if not self.path.exists():
                return []
            lines = self.path.read_text(encoding="utf-8").splitlines()
        records: list[DeploymentRecord] = []
        for lineno, line in enumerate(lines, 1):
            if not line.strip():
                continue
            try:
                records.append(DeploymentRecord.model_validate_json(line))
            except ValidationError:
                logger.warning("deployment_line_invalid", path=str(self.path), line=lineno)
        return records

    def records(
        self,
        namespace: str | None = None,
        stage: StageName | None = None,
        run_id: str | None = None,
    ) -> list[DeploymentRecord]:
        """Records matching the filters, oldest first."""
        return [
            r
            for r in self._all()
            if (namespace is None or r.namespace == namespace)
            and (stage is None or r.stage is stage)
            and (run_id is None or r.run_id == run_id)
        ]

    def latest(self, namespace: str, release_name: str | None = None) -> DeploymentRecord | None:
        """Most recent record for a namespace (and release)."""
        for record in reversed(self.records(namespace=namespace)):
            if release_name is None or record.release_name == release_name:
                return record
        return None

    def has_succeeded(self, stage: StageName, source_commit_id: str) -> bool:
        """Whether ``source_commit_id`` was ever deployed successfully to ``stage``."""
        return any(
            r.outcome is DeployOutcome.SUCCEEDED and r.source_commit_id == source_commit_id
            for r in self.records(stage=stage)
        )


__all__ = ["DeploymentLog"]
